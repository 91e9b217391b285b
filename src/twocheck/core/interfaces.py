"""Collaborator interfaces: ledger, notifications and the clock.

The engines never talk to a transport directly. They receive objects that
satisfy these protocols through their constructors.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from .types import Priority

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Ledger
# =============================================================================


@dataclass
class LedgerResult:
    """Outcome of a ledger call. Transport failures arrive as ``success=False``."""

    success: bool
    transaction_id: str | None = None
    result: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "transaction_id": self.transaction_id,
            "result": self.result,
            "error": self.error,
        }


@runtime_checkable
class LedgerClient(Protocol):
    def submit_transaction(self, name: str, args: list[str]) -> LedgerResult: ...

    def evaluate_transaction(self, name: str, args: list[str]) -> LedgerResult: ...


class InMemoryLedgerClient:
    """Ledger stand-in that records every call.

    Submitted ``CreateTransaction`` calls are kept by their first argument
    so ``ReadTransaction`` evaluations can return them.
    """

    def __init__(self, fail_with: str | None = None):
        self.fail_with = fail_with
        self.calls: list[tuple[str, str, list[str]]] = []
        self._records: dict[str, list[str]] = {}
        self._lock = threading.Lock()

    def submit_transaction(self, name: str, args: list[str]) -> LedgerResult:
        with self._lock:
            self.calls.append(("submit", name, list(args)))
            if self.fail_with:
                return LedgerResult(success=False, error=self.fail_with)
            if args:
                self._records[args[0]] = list(args)
        return LedgerResult(success=True, transaction_id=str(uuid.uuid4()), result={"function": name})

    def evaluate_transaction(self, name: str, args: list[str]) -> LedgerResult:
        with self._lock:
            self.calls.append(("evaluate", name, list(args)))
            if self.fail_with:
                return LedgerResult(success=False, error=self.fail_with)
            record = self._records.get(args[0]) if args else None
        if record is None:
            return LedgerResult(success=False, error="not found")
        return LedgerResult(success=True, result=record)


# =============================================================================
# Notifications
# =============================================================================


@dataclass
class Notification:
    """A message to one recipient. Delivery is someone else's job."""

    recipient: str
    subject: str
    body: str = ""
    priority: Priority = Priority.NORMAL
    channel: str = "email"
    transaction_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    created: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipient": self.recipient,
            "subject": self.subject,
            "body": self.body,
            "priority": self.priority.value,
            "channel": self.channel,
            "transaction_id": self.transaction_id,
            "data": self.data,
            "created": self.created.isoformat(),
        }


@runtime_checkable
class NotificationSender(Protocol):
    def send(self, notification: Notification) -> None: ...


class LoggingNotificationSender:
    """Writes notifications to the log instead of delivering them."""

    def __init__(self, logger_name: str = "twocheck.notifications"):
        self._logger = logging.getLogger(logger_name)

    def send(self, notification: Notification) -> None:
        self._logger.info(
            f"[{notification.priority}] {notification.channel} -> {notification.recipient}: {notification.subject}",
            extra={"extra_data": notification.to_dict()},
        )


class RecordingNotificationSender:
    """Keeps every notification in memory. Used by tests and the simulator."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []
        self._lock = threading.Lock()

    def send(self, notification: Notification) -> None:
        with self._lock:
            self.sent.append(notification)

    def for_recipient(self, recipient: str) -> list[Notification]:
        with self._lock:
            return [n for n in self.sent if n.recipient == recipient]

    def clear(self) -> None:
        with self._lock:
            self.sent.clear()
