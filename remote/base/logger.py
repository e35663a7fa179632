"""
Structured logging for remote.

Every record is one JSON line on stderr. Records emitted by the same
invocation share an ``invocation`` id, so interleaved output from two
``remote`` commands touching the same registry can be told apart. Status
changes are logged through :meth:`RemoteLogger.log_transition`, which
carries the instance id and the ``from``/``to`` statuses as fields.
"""

from __future__ import annotations

import json
import logging
import uuid
from enum import Enum
from typing import Any

# Context attributes copied from a LogRecord into the JSON entry, in order.
CONTEXT_FIELDS = ("invocation", "provider", "alias", "instance_id", "operation", "from", "to")


def _new_invocation_id() -> str:
    return uuid.uuid4().hex[:12]


class StructuredFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "remote", None) or {}
        for key in CONTEXT_FIELDS:
            val = context.get(key)
            if val is not None:
                log_entry[key] = val.value if isinstance(val, Enum) else val
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = f"{type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return json.dumps(log_entry)


class RemoteLogger:
    """Wrapper around :mod:`logging` that tags records with lifecycle context."""

    def __init__(self, name: str = "remote", level: int = logging.WARNING) -> None:
        self.logger = logging.getLogger(name)
        self.invocation = _new_invocation_id()
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(StructuredFormatter())
            self.logger.addHandler(handler)
            self.logger.setLevel(level)

    def set_level(self, level: int | str) -> None:
        """Change the threshold, accepting names such as ``"INFO"``."""
        if isinstance(level, str):
            level = level.upper()
        self.logger.setLevel(level)

    def begin_invocation(self) -> str:
        """Start a new correlation id; the CLI calls this once per command."""
        self.invocation = _new_invocation_id()
        return self.invocation

    def log_operation(
        self,
        level: int,
        message: str,
        *,
        provider: str | None = None,
        alias: str | None = None,
        operation: str | None = None,
        instance_id: str | None = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        """Emit a structured record.

        Args:
            level: Logging level (e.g. logging.INFO).
            message: Human-readable message.
            provider: Cloud provider name.
            alias: Registry alias of the instance.
            operation: Lifecycle operation (e.g. 'start').
            instance_id: Provider instance id, when known.
            exc_info: Whether to include exception info.
            **context: Further fields, limited to :data:`CONTEXT_FIELDS`.
        """
        fields = {
            "invocation": self.invocation,
            "provider": provider,
            "alias": alias,
            "operation": operation,
            "instance_id": instance_id,
            **context,
        }
        self.logger.log(level, message, extra={"remote": fields}, exc_info=exc_info)

    def log_transition(
        self,
        config: Any,
        operation: str,
        previous: Any,
        current: Any,
        *,
        level: int = logging.INFO,
    ) -> None:
        """Log that *config* moved from *previous* to *current* during *operation*."""
        before = getattr(previous, "value", previous)
        after = getattr(current, "value", current)
        self.log_operation(
            level,
            f"{config.alias}: {before} -> {after}",
            provider=config.provider_kind.value,
            alias=config.alias,
            operation=operation,
            instance_id=config.provider_instance_id,
            **{"from": before, "to": after},
        )

    def info(self, message: str, **kwargs: Any) -> None:
        self.log_operation(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.log_operation(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self.log_operation(logging.ERROR, message, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self.log_operation(logging.DEBUG, message, **kwargs)


# Module-level singleton
remote_logger = RemoteLogger()
