from __future__ import annotations

import json
import logging
from logging import LogRecord
from typing import Any, Dict, Mapping

from loguru import logger
from opentelemetry import trace


# Standard LogRecord attributes; anything else on a record is structured context
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

# Verification codes, redemption keys and API keys never reach the log sink
_SECRET_FIELDS = frozenset({"verify_code", "verifyCode", "code_key", "key", "api_key", "x_api_key"})
_REDACTED = "***"


def redact(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy ``fields`` with secret values masked, recursing into nested mappings."""

    masked: Dict[str, Any] = {}
    for name, value in fields.items():
        if name in _SECRET_FIELDS and value:
            masked[name] = _REDACTED
        elif isinstance(value, Mapping):
            masked[name] = redact(value)
        else:
            masked[name] = value
    return masked


class InterceptHandler(logging.Handler):
    """Route stdlib logging (uvicorn, sqlalchemy, apscheduler) into Loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(record.msg)

        context = {key: value for key, value in vars(record).items() if key not in _RECORD_ATTRS}
        bound = logger.bind(**context) if context else logger
        escaped = message.replace("{", "{{").replace("}", "}}")
        bound.opt(depth=6, exception=record.exc_info).log(level, escaped)


def _serialize_log(message: "logger.Message", metadata: Dict[str, Any]) -> None:
    record = message.record
    span_context = trace.get_current_span().get_span_context()

    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        "service": metadata["service_name"],
        "environment": metadata["environment"],
        "version": metadata["version"],
    }

    if span_context.is_valid:
        payload["trace_id"] = f"{span_context.trace_id:032x}"
        payload["span_id"] = f"{span_context.span_id:016x}"

    if record["extra"]:
        payload.update(redact(record["extra"]))

    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)

    print(json.dumps(payload, default=str))


def configure_logging(*, service_name: str, environment: str, version: str, level: str = "INFO") -> None:
    """Send Loguru and stdlib records to stdout as one JSON object per line."""

    metadata = {"service_name": service_name, "environment": environment, "version": version}
    logger.remove()
    logger.add(
        lambda message: _serialize_log(message, metadata),
        level=level.upper(),
        backtrace=False,
        diagnose=False,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "apscheduler.executors.default"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
