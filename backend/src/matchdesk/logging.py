"""Logging setup for matchdesk.

Logs go to stderr so CLI output on stdout stays machine-readable. The
format is JSON or text depending on ``MATCHDESK_LOG_FORMAT``.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from .config import get_settings

# Attributes every LogRecord carries; anything else arrived via ``extra=``
_RECORD_FIELDS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, ``extra`` fields inlined."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (key, value) for key, value in record.__dict__.items() if key not in _RECORD_FIELDS
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging() -> None:
    """Attach a single stderr handler to the ``matchdesk`` logger."""
    settings = get_settings()

    handler = logging.StreamHandler(sys.stderr)
    if settings.log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%H:%M:%S"))

    package_logger = logging.getLogger("matchdesk")
    package_logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    package_logger.handlers = [handler]
    package_logger.propagate = False

    package_logger.debug(
        "Logging initialized",
        extra={"environment": settings.environment, "log_format": settings.log_format},
    )


class ContextLogger(logging.LoggerAdapter):
    """Adapter that merges its bound context into each call's ``extra``."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_context_logger(name: str, **context: Any) -> ContextLogger:
    """Logger for ``name`` with ``context`` attached to every record.

    Usage:
        logger = get_context_logger(__name__, task_id="abc123")
        logger.info("Loaded records")  # record carries task_id
    """
    return ContextLogger(logging.getLogger(name), context)


# =========================
# Event helpers
# =========================


def log_poll_change(source: str, changed: int, added: int, removed: int) -> None:
    """Log a poll tick that replaced the snapshot."""
    logging.getLogger("matchdesk.polling").info(
        f"Poll detected changes for {source}",
        extra={
            "event": "poll_change",
            "source": source,
            "changed": changed,
            "added": added,
            "removed": removed,
        },
    )


def log_stale_response(kind: str, token: int, latest: int) -> None:
    """Log a response dropped because a newer request was issued."""
    logging.getLogger("matchdesk.session").debug(
        f"Discarded stale {kind} response (token {token}, latest {latest})",
        extra={"event": "stale_response", "kind": kind},
    )


def log_batch_result(
    action: str,
    submitted: int,
    succeeded: int,
    failed: int,
    duration_seconds: float,
) -> None:
    """Log a finished batch run; partial failure logs at WARNING."""
    level = logging.INFO if failed == 0 else logging.WARNING
    logging.getLogger("matchdesk.batch").log(
        level,
        f"Batch {action}: {succeeded}/{submitted} succeeded in {duration_seconds:.2f}s",
        extra={
            "event": "batch_complete",
            "action": action,
            "submitted": submitted,
            "succeeded": succeeded,
            "failed": failed,
        },
    )
