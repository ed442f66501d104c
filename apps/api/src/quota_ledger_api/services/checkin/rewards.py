"""Check-in reward draws."""

from __future__ import annotations

import random
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import CheckInConfig

_DEFAULT_RNG = random.Random()


@dataclass(frozen=True, slots=True)
class RewardQuote:
    """Outcome of a single reward draw."""

    base_amount: int
    multiplier: Decimal
    amount: int

    @property
    def bonus_applied(self) -> bool:
        return self.multiplier > 1


def calculate_reward(
    continuous_days: int,
    config: "CheckInConfig",
    rng: random.Random | None = None,
) -> RewardQuote:
    """Draw a reward uniformly from ``[min_reward, max_reward]``.

    Streaks of at least ``continuous_bonus_days`` scale the draw by the bonus
    multiplier when the bonus is enabled. The product is floored to whole quota
    units, so the amount never leaves ``[min_reward, max_reward * multiplier]``.
    """

    generator = rng or _DEFAULT_RNG
    base = generator.randint(config.min_reward, config.max_reward)

    multiplier = Decimal(1)
    if config.continuous_bonus_enabled and continuous_days >= config.continuous_bonus_days:
        multiplier = Decimal(config.continuous_bonus_multiplier)

    amount = int((Decimal(base) * multiplier).to_integral_value(rounding=ROUND_FLOOR))
    return RewardQuote(base_amount=base, multiplier=multiplier, amount=amount)


__all__ = ["RewardQuote", "calculate_reward"]
