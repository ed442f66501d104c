"""Quota grants and the balance they credit."""

from __future__ import annotations

from datetime import datetime, timezone
from importlib import import_module
from typing import Any, Protocol, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger_api.core.settings import settings
from quota_ledger_api.models.quota import QuotaGrant, QuotaGrantSource, QuotaGrantStatus
from quota_ledger_api.models.user import User
from quota_ledger_api.services.errors import UserNotFound


class QuotaBalanceStore(Protocol):
    """Destination of quota credits.

    ``transactional`` stores share the ledger's database session, so a credit
    commits or rolls back together with the grant row. Other stores are called
    after commit and must treat ``grant_id`` as an idempotency key.
    """

    transactional: bool

    async def credit(self, user_id: UUID, amount: int, *, grant_id: UUID) -> None:
        ...


class SqlQuotaBalanceStore:
    """Credits ``users.quota`` inside the caller's transaction."""

    transactional = True

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def credit(self, user_id: UUID, amount: int, *, grant_id: UUID) -> None:
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(quota=User.quota + amount)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        if result.rowcount == 0:
            raise UserNotFound(userId=str(user_id), grantId=str(grant_id))


def resolve_balance_store(session: AsyncSession) -> QuotaBalanceStore:
    """Build the configured balance store for ``session``.

    ``settings.quota_balance_store`` names a ``module.attr`` factory called with
    the session; when unset, credits go to ``users.quota``.
    """

    path = (settings.quota_balance_store or "").strip()
    if not path:
        return SqlQuotaBalanceStore(session)
    module_name, _, attr = path.rpartition(".")
    if not module_name:
        raise ValueError(f"Invalid balance store path: {path}")
    factory = getattr(import_module(module_name), attr, None)
    if factory is None:
        raise AttributeError(f"Balance store {path} not found")
    return factory(session)


class QuotaLedger:
    """Record a :class:`QuotaGrant` per rewarded event and apply it to the balance."""

    def __init__(self, session: AsyncSession, *, balance_store: QuotaBalanceStore | None = None) -> None:
        self._db = session
        self._balance = balance_store or resolve_balance_store(session)

    @property
    def applies_immediately(self) -> bool:
        return self._balance.transactional

    async def grant(
        self,
        *,
        user_id: UUID,
        amount: int,
        source: QuotaGrantSource,
        source_ref: str,
        description: str | None = None,
    ) -> QuotaGrant:
        """Add a grant to the current transaction; the caller commits.

        A second grant with the same ``(source, source_ref)`` violates the unique
        constraint at flush time and aborts the caller's transaction.
        """

        now = datetime.now(timezone.utc)
        grant = QuotaGrant(
            user_id=user_id,
            amount=amount,
            source=source,
            source_ref=source_ref,
            status=QuotaGrantStatus.PENDING,
            description=description,
            created_at=now,
        )
        self._db.add(grant)
        await self._db.flush()

        if self._balance.transactional:
            await self._balance.credit(user_id, amount, grant_id=grant.id)
            grant.status = QuotaGrantStatus.APPLIED
            grant.applied_at = now
            await self._db.flush()
        return grant

    async def find(self, source: QuotaGrantSource, source_ref: str) -> QuotaGrant | None:
        stmt = select(QuotaGrant).where(QuotaGrant.source == source, QuotaGrant.source_ref == source_ref)
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def pending_grants(self, *, limit: int = 100) -> Sequence[QuotaGrant]:
        stmt = (
            select(QuotaGrant)
            .where(QuotaGrant.status == QuotaGrantStatus.PENDING)
            .order_by(QuotaGrant.created_at.asc(), QuotaGrant.id.asc())
            .limit(limit)
        )
        return (await self._db.execute(stmt)).scalars().all()

    async def settle_pending(
        self,
        *,
        grant_ids: Sequence[UUID] | None = None,
        limit: int = 100,
    ) -> dict[str, Any]:
        """Apply pending grants one at a time, committing after each.

        Marking a grant applied is guarded by ``status = pending`` so a grant
        settled concurrently by another worker is skipped rather than credited
        twice. Failures leave the grant pending for the next run.
        """

        if grant_ids is not None:
            stmt = select(QuotaGrant).where(
                QuotaGrant.id.in_(list(grant_ids)),
                QuotaGrant.status == QuotaGrantStatus.PENDING,
            )
            grants = (await self._db.execute(stmt)).scalars().all()
        else:
            grants = await self.pending_grants(limit=limit)
        # Detach the work list from the session transaction before settling
        work = [(grant.id, grant.user_id, grant.amount) for grant in grants]
        await self._db.commit()

        summary: dict[str, Any] = {"examined": len(work), "applied": 0, "skipped": 0, "failed": 0}
        for grant_id, user_id, amount in work:
            try:
                applied = await self._settle_one(grant_id, user_id, amount)
            except Exception as exc:  # noqa: BLE001 - grant stays pending for the next run
                await self._db.rollback()
                summary["failed"] += 1
                logger.bind(grant_id=str(grant_id), user_id=str(user_id)).warning(
                    "Quota grant settlement failed",
                    error=str(exc),
                )
                continue
            summary["applied" if applied else "skipped"] += 1
        return summary

    async def _settle_one(self, grant_id: UUID, user_id: UUID, amount: int) -> bool:
        now = datetime.now(timezone.utc)
        if not self._balance.transactional:
            await self._balance.credit(user_id, amount, grant_id=grant_id)

        mark = (
            update(QuotaGrant)
            .where(QuotaGrant.id == grant_id, QuotaGrant.status == QuotaGrantStatus.PENDING)
            .values(status=QuotaGrantStatus.APPLIED, applied_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(mark)
        if result.rowcount == 0:
            await self._db.rollback()
            return False

        if self._balance.transactional:
            await self._balance.credit(user_id, amount, grant_id=grant_id)
        await self._db.commit()
        return True


__all__ = ["QuotaBalanceStore", "QuotaLedger", "SqlQuotaBalanceStore", "resolve_balance_store"]
