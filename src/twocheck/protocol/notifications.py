"""Notification requests and their dispatch to a NotificationSender.

Engines never hold a sender. They publish ``notification.requested``
events through the outbox; :class:`NotificationDispatcher` resolves the
``brand_owner`` token and hands one :class:`Notification` per recipient
to the injected sender.
"""

from __future__ import annotations

import logging
from typing import Any

from ..core.interfaces import Notification, NotificationSender
from ..core.outbox import Event, Outbox
from ..core.protocol_config import NotificationSettings
from ..core.types import Priority

logger = logging.getLogger(__name__)

BRAND_OWNER = "brand_owner"
TOPIC = "notification.requested"


def unique(items: list[str]) -> list[str]:
    """Drop duplicates and empties, keeping first-seen order."""
    seen: set[str] = set()
    result = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            result.append(item)
    return result


def request_notification(
    outbox: Outbox,
    recipients: list[str],
    subject: str,
    *,
    priority: Priority = Priority.NORMAL,
    transaction_id: str | None = None,
    brand: str | None = None,
    channel: str | None = None,
    body: str = "",
    data: dict[str, Any] | None = None,
) -> None:
    outbox.publish(
        TOPIC,
        {
            "recipients": unique(recipients),
            "subject": subject,
            "priority": str(priority),
            "transaction_id": transaction_id,
            "brand": brand,
            "channel": channel,
            "body": body,
            "data": data or {},
        },
    )


class NotificationDispatcher:
    """Delivers ``notification.requested`` events to a sender."""

    def __init__(self, sender: NotificationSender, settings: NotificationSettings, outbox: Outbox):
        self.sender = sender
        self.settings = settings
        outbox.subscribe(TOPIC, self.handle)

    def brand_owner(self, brand: str | None) -> str:
        return f"{self.settings.brand_owner_prefix}@{brand or self.settings.default_brand}"

    def resolve(self, recipients: list[str], brand: str | None) -> list[str]:
        return unique([self.brand_owner(brand) if r == BRAND_OWNER else r for r in recipients])

    def handle(self, event: Event) -> None:
        if not self.settings.enabled:
            logger.debug(f"Notifications disabled, dropping: {event.payload.get('subject')}")
            return
        payload = event.payload
        for recipient in self.resolve(payload.get("recipients", []), payload.get("brand")):
            self.sender.send(
                Notification(
                    recipient=recipient,
                    subject=payload["subject"],
                    body=payload.get("body", ""),
                    priority=Priority(payload.get("priority", Priority.NORMAL)),
                    channel=payload.get("channel") or self.settings.default_channel,
                    transaction_id=payload.get("transaction_id"),
                    data=payload.get("data", {}),
                )
            )
