# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Structured logging for the 2-Check engine.

Provides:
- JSON formatter for deployments, with audit fields indexed
- Compact terminal formatter tagged with correlation and transaction
- Correlation IDs so every log line of one orchestrator call can be joined
- An audit logger for engine operations that masks evidence secrets
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

_correlation_id: ContextVar[str | None] = ContextVar("twocheck_correlation_id", default=None)


def get_correlation_id() -> str | None:
    """Return the correlation ID of the current context, if any."""
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None) -> None:
    _correlation_id.set(correlation_id)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


@contextmanager
def correlation_context(
    correlation_id: str | None = None,
) -> Generator[str, None, None]:
    """Scope a correlation ID.

    A nested context keeps the outer ID unless a new one is passed, so a
    sweep that calls back into the orchestrator logs under one ID.

    Example:
        with correlation_context() as cid:
            logger.info("Sweeping timeouts")  # carries cid
    """
    cid = correlation_id or get_correlation_id() or generate_correlation_id()
    token = _correlation_id.set(cid)
    try:
        yield cid
    finally:
        _correlation_id.reset(token)


# Audit fields lifted to the top level of a JSON line
INDEXED_FIELDS = ("operation", "transaction_id", "participant", "stop_id")


def indexed_fields(extra: dict[str, Any]) -> dict[str, Any]:
    """Pick the identifying audit fields from ``extra_data`` or its arguments."""
    arguments = extra.get("arguments")
    if not isinstance(arguments, dict):
        arguments = {}
    fields = {}
    for key in INDEXED_FIELDS:
        value = extra.get(key, arguments.get(key))
        if value is not None:
            fields[key] = value
    return fields


class JSONFormatter(logging.Formatter):
    """One JSON object per record.

    The operation and transaction of an audit record sit next to the
    message so a log pipeline can filter on them without parsing ``extra``.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            log_data["correlation_id"] = correlation_id

        extra = getattr(record, "extra_data", None)
        if isinstance(extra, dict):
            log_data.update(indexed_fields(extra))
            log_data["extra"] = extra

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
            log_data["source"] = f"{record.module}:{record.lineno}"

        return json.dumps(log_data, default=str)


class StandardFormatter(logging.Formatter):
    """Terminal lines: ``time level logger [cid] [transaction] message``."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)-8s %(name)s %(tags)s%(message)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        # Copy so other handlers see the untouched record
        record = logging.makeLogRecord(record.__dict__)

        tags = []
        correlation_id = get_correlation_id()
        if correlation_id:
            tags.append(correlation_id[:8])
        extra = getattr(record, "extra_data", None)
        if isinstance(extra, dict):
            transaction_id = indexed_fields(extra).get("transaction_id")
            if transaction_id:
                tags.append(transaction_id)
        record.tags = "".join(f"[{tag}] " for tag in tags)

        return super().format(record)


def configure_logging(
    level: str | int | None = None,
    json_format: bool | None = None,
    log_file: str | None = None,
) -> None:
    """Configure root logging from arguments, falling back to settings.

    Args:
        level: Log level; defaults to TWOCHECK_LOG_LEVEL
        json_format: Use JSON output; defaults to TWOCHECK_LOG_FORMAT, then
            auto-detects (JSON when stderr is not a terminal)
        log_file: Optional file that always receives JSON records
    """
    from .config import get_settings

    settings = get_settings()

    if level is None:
        level = settings.log_level
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    if json_format is None:
        format_env = settings.log_format.lower()
        if format_env == "json":
            json_format = True
        elif format_env == "text":
            json_format = False
        else:
            json_format = not sys.stderr.isatty()

    log_file = settings.log_file if log_file is None else log_file

    formatter: logging.Formatter = JSONFormatter() if json_format else StandardFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class OperationLogger:
    """Audit logger for orchestrator operations.

    Arguments are logged with signature material and credentials masked,
    and long payload strings (base64 images, certificates) truncated.
    """

    SENSITIVE_KEYS = {
        "signature",
        "public_key",
        "private_key",
        "certificate",
        "token",
        "secret",
        "password",
    }
    MAX_STRING = 200

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger("twocheck.audit")

    def log_operation(
        self,
        operation: str,
        arguments: dict[str, Any],
        level: int = logging.INFO,
    ) -> None:
        self.logger.log(
            level,
            f"Operation: {operation}",
            extra={"extra_data": {"operation": operation, "arguments": self.sanitize(arguments)}},
        )

    def log_outcome(
        self,
        operation: str,
        success: bool,
        detail: str | None = None,
        level: int = logging.INFO,
    ) -> None:
        status = "ok" if success else "failed"
        msg = f"Operation {operation} -> {status}"
        if detail:
            msg += f" ({detail})"
        self.logger.log(
            level,
            msg,
            extra={"extra_data": {"operation": operation, "success": success, "detail": detail}},
        )

    def sanitize(self, data: Any) -> Any:
        if isinstance(data, dict):
            result = {}
            for key, value in data.items():
                if any(s in str(key).lower() for s in self.SENSITIVE_KEYS):
                    result[key] = "[REDACTED]"
                else:
                    result[key] = self.sanitize(value)
            return result
        if isinstance(data, list | tuple):
            return [self.sanitize(item) for item in data]
        if isinstance(data, str) and len(data) > self.MAX_STRING:
            return data[: self.MAX_STRING] + "..."
        return data


audit_logger = OperationLogger()
