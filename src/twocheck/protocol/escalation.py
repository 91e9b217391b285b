# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Threshold-driven escalation of unconfirmed transactions.

Each transaction type configures escalation levels that fire on the
elapsed percentage of the transaction's timeout window. A level fires at
most once per transaction, and never after a higher level has fired.

Level actions:
- send_reminder / urgent_notification: notify the configured parties
- auto_escalate / create_dispute: request dispute evidence, move the
  transaction to DISPUTED (or ESCALATED) and open a system dispute
- support_ticket / halt_production: publish an operations event
- security_alert: notify the security team and penalise both parties

Repeated timeouts by the same party inside the auto-escalation window
flag the party through the trust system.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..core.exceptions import ConfigMissingError, InvalidTransitionError
from ..core.interfaces import Clock, utc_now
from ..core.locks import KeyedLock
from ..core.outbox import Outbox
from ..core.protocol_config import EscalationLevel, TimeoutRulesConfig, TransactionTypeRules
from ..core.types import EscalationAction, Priority, TransactionState, TrustAction
from .disputes import Dispute, DisputeResolutionEngine
from .evidence import EvidenceStore
from .notifications import request_notification, unique
from .state_machine import SYSTEM_ACTOR, Transaction, TransactionStateMachine
from .trust import TrustScoringSystem

logger = logging.getLogger(__name__)

SECURITY_TEAM = "security_team"
TIMEOUT_DISPUTE_TYPE = "not_received"
BUSINESS_DAY_START = time(8, 0)
BUSINESS_DAY_END = time(18, 0)
DEFAULT_PATTERN_WINDOW = timedelta(days=7)

# Actions that only notify and may wait for business hours
DEFERRABLE_ACTIONS = {EscalationAction.SEND_REMINDER}


@dataclass(frozen=True)
class EscalationEvent:
    """One fired escalation level."""

    transaction_id: str
    level: int
    action: EscalationAction
    timestamp: datetime
    reason: str
    notified_parties: tuple[str, ...] = ()
    dispute_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "level": self.level,
            "action": self.action.value,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
            "notified_parties": list(self.notified_parties),
            "dispute_id": self.dispute_id,
        }


@dataclass
class _TimeoutRecord:
    timestamps: list[tuple[datetime, str]] = field(default_factory=list)
    flagged_at: datetime | None = None


class EscalationEngine:
    """Fires configured escalation levels and tracks repeat offenders."""

    def __init__(
        self,
        rules: TimeoutRulesConfig,
        outbox: Outbox,
        state_machine: TransactionStateMachine | None = None,
        disputes: DisputeResolutionEngine | None = None,
        evidence_store: EvidenceStore | None = None,
        trust: TrustScoringSystem | None = None,
        clock: Clock = utc_now,
        locks: KeyedLock | None = None,
        default_brand: str = "luxury-brand.com",
    ):
        self.rules = rules
        self.outbox = outbox
        self.state_machine = state_machine
        self.disputes = disputes
        self.evidence_store = evidence_store or (disputes.evidence_store if disputes else None)
        self.trust = trust
        self.clock = clock
        self.locks = locks or KeyedLock()
        self.default_brand = default_brand
        self._fired: dict[str, set[int]] = {}
        self._history: dict[str, list[EscalationEvent]] = {}
        self._timeouts: dict[str, _TimeoutRecord] = {}
        self._timeouts_lock = threading.Lock()

    @staticmethod
    def _key(transaction_id: str) -> str:
        return f"escalation:{transaction_id}"

    # -------------------------------------------------------------------------
    # Level selection
    # -------------------------------------------------------------------------

    def rules_for(self, transaction_type: str | None) -> TransactionTypeRules | None:
        if transaction_type is None:
            return None
        return self.rules.transaction_types.get(transaction_type)

    @staticmethod
    def select_level(rules: TransactionTypeRules, timeout_percent: float) -> EscalationLevel | None:
        """Highest level whose threshold is at or below ``timeout_percent``."""
        reached = [lvl for lvl in rules.escalation_levels if lvl.at_percent <= timeout_percent]
        return reached[-1] if reached else None

    def within_business_hours(self, rules: TransactionTypeRules, now: datetime) -> bool:
        if not rules.business_hours_only:
            return True
        try:
            zone = UTC if rules.timezone in ("UTC", "local") else ZoneInfo(rules.timezone)
        except ZoneInfoNotFoundError:
            logger.warning(f"Unknown timezone {rules.timezone!r}; using UTC")
            zone = UTC
        local = now.astimezone(zone)
        return local.weekday() < 5 and BUSINESS_DAY_START <= local.time() < BUSINESS_DAY_END

    def handle_escalation(
        self,
        transaction: Transaction,
        timeout_percent: float,
        transaction_type: str | None = None,
    ) -> EscalationEvent | None:
        """Fire the level reached at ``timeout_percent`` if nothing at or above it has fired.

        Args:
            transaction: Snapshot of the transaction
            timeout_percent: Elapsed share of the timeout window, in percent
            transaction_type: Key into the configured transaction types;
                defaults to the transaction's own ``transaction_type``

        Returns:
            The fired event, or None when no level is due
        """
        transaction_type = transaction_type or transaction.transaction_type
        rules = self.rules_for(transaction_type)
        if rules is None:
            missing = ConfigMissingError("transaction type", str(transaction_type))
            logger.warning(f"{missing.message}; no escalation for {transaction.id}")
            return None

        level = self.select_level(rules, timeout_percent)
        if level is None:
            return None

        now = self.clock()
        if level.action in DEFERRABLE_ACTIONS and not self.within_business_hours(rules, now):
            logger.debug(f"Deferring level {level.level} for {transaction.id} to business hours")
            return None

        with self.locks.hold(self._key(transaction.id)):
            fired = self._fired.setdefault(transaction.id, set())
            if any(n >= level.level for n in fired):
                return None
            fired.add(level.level)

        reason = f"{timeout_percent:.0f}% of timeout elapsed ({transaction_type} level {level.level})"
        logger.info(f"Escalating {transaction.id}: {level.action} - {reason}")
        notified, dispute = self._execute(transaction, level, reason)
        event = EscalationEvent(
            transaction_id=transaction.id,
            level=level.level,
            action=level.action,
            timestamp=now,
            reason=reason,
            notified_parties=tuple(notified),
            dispute_id=dispute.id if dispute else None,
        )
        with self.locks.hold(self._key(transaction.id)):
            self._history.setdefault(transaction.id, []).append(event)
        self.outbox.publish("escalation.triggered", event.to_dict())
        return event

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    def _execute(
        self, transaction: Transaction, level: EscalationLevel, reason: str
    ) -> tuple[list[str], Dispute | None]:
        recipients = self.resolve_parties(level.notify, transaction)
        action = level.action
        dispute = None

        if action == EscalationAction.SEND_REMINDER:
            self._notify(transaction, recipients, "reminder", channel=level.channel, level=level)

        elif action == EscalationAction.URGENT_NOTIFICATION:
            self._notify(transaction, recipients, "urgent", channel="all", level=level)

        elif action == EscalationAction.AUTO_ESCALATE:
            if self._timeout_disputes_enabled():
                dispute = self.open_dispute(transaction, reason="auto_escalation")
            self._notify(transaction, recipients, "escalation", channel="all", level=level)
            self._penalise(transaction, self.rules.trust_impact.escalation, TrustAction.ESCALATION_PENALTY, reason)

        elif action == EscalationAction.CREATE_DISPUTE:
            dispute = self.open_dispute(transaction, reason="timeout_exceeded")
            self._notify(transaction, recipients, "escalation", channel=level.channel, level=level)
            self._penalise(transaction, self.rules.trust_impact.dispute, TrustAction.ESCALATION_PENALTY, reason)

        elif action == EscalationAction.SUPPORT_TICKET:
            self.outbox.publish(
                "escalation.support_ticket_required",
                {"transaction_id": transaction.id, "level": level.level, "reason": reason},
            )
            self._notify(transaction, recipients, "urgent", channel="system", level=level, priority=Priority.HIGH)

        elif action == EscalationAction.HALT_PRODUCTION:
            self.outbox.publish(
                "escalation.production_halt_required",
                {"transaction_id": transaction.id, "item_id": transaction.item_id, "reason": reason},
            )
            self._notify(transaction, recipients, "escalation", channel="all", level=level, priority=Priority.CRITICAL)

        elif action == EscalationAction.SECURITY_ALERT:
            recipients = self.security_alert(transaction, reason, recipients)

        return recipients, dispute

    def security_alert(self, transaction: Transaction, reason: str, recipients: list[str] | None = None) -> list[str]:
        """Notify the security team and apply the security penalty to both parties."""
        recipients = unique([*(recipients or []), SECURITY_TEAM])
        request_notification(
            self.outbox,
            recipients,
            f"SECURITY ALERT: transaction {transaction.id}",
            priority=Priority.CRITICAL,
            transaction_id=transaction.id,
            brand=transaction.brand,
            channel="all",
            body=reason,
        )
        self._penalise(transaction, self.rules.trust_impact.security_alert, TrustAction.SECURITY_ALERT_PENALTY, reason)
        self.outbox.publish("escalation.security_alert", {"transaction_id": transaction.id, "reason": reason})
        return recipients

    def handle_pattern(self, transaction: Transaction, pattern: str) -> list[str] | None:
        """Run the auto-escalation action configured for a detected pattern, if any."""
        if not self.rules.auto_escalation.enabled:
            return None
        condition = self.rules.auto_escalation.get_condition("pattern_detected")
        if condition is None or condition.pattern != pattern:
            return None
        if condition.action != EscalationAction.SECURITY_ALERT:
            logger.warning(f"Unsupported pattern action {condition.action!r} for {pattern}")
            return None
        return self.security_alert(transaction, f"pattern detected: {pattern}")

    def _timeout_disputes_enabled(self) -> bool:
        if not self.rules.auto_escalation.enabled:
            return False
        condition = self.rules.auto_escalation.get_condition("timeout_exceeded")
        return condition is not None and condition.action == EscalationAction.CREATE_DISPUTE

    def _notify(
        self,
        transaction: Transaction,
        recipients: list[str],
        template_name: str,
        *,
        channel: str | None,
        level: EscalationLevel,
        priority: Priority | None = None,
    ) -> None:
        template = self.rules.notification_templates[template_name]
        subject = template.subject.format(item_type=transaction.item_type, transaction_id=transaction.id)
        request_notification(
            self.outbox,
            recipients,
            subject,
            priority=priority or template.priority,
            transaction_id=transaction.id,
            brand=transaction.brand,
            channel=channel,
            data={"level": level.level, "action": level.action.value},
        )

    def _penalise(self, transaction: Transaction, delta: float, action: TrustAction, reason: str) -> None:
        if self.trust is None or not delta:
            return
        factor = self.rules.trust_impact.receiver_factor
        self.trust.apply_delta(transaction.sender, delta, action, reason, transaction.id)
        self.trust.apply_delta(transaction.receiver, delta * factor, action, reason, transaction.id)

    def open_dispute(self, transaction: Transaction, reason: str) -> Dispute | None:
        """Open a system dispute for an unconfirmed transaction, once."""
        if self.disputes is None:
            logger.warning(f"No dispute engine; cannot open dispute for {transaction.id}")
            return None
        existing = [d for d in self.disputes.list_for_transaction(transaction.id) if not d.is_resolved]
        if existing:
            return existing[0]

        requirements = self.rules.evidence_requirements.dispute
        if self.evidence_store is not None and requirements:
            self.evidence_store.request_evidence(
                transaction.id, requirements, [transaction.sender, transaction.receiver], reason
            )

        current = transaction
        if self.state_machine is not None:
            current = self._move_to_dispute(transaction, reason)
        return self.disputes.create_dispute(current, TIMEOUT_DISPUTE_TYPE, SYSTEM_ACTOR, reason=reason)

    def _move_to_dispute(self, transaction: Transaction, reason: str) -> Transaction:
        current = self.state_machine.get_transaction(transaction.id)
        graph = self.state_machine.config.states
        for target in (TransactionState.DISPUTED, TransactionState.ESCALATED):
            if graph.can_transition(current.state, target):
                try:
                    return self.state_machine.transition_state(current.id, target, SYSTEM_ACTOR, reason)
                except InvalidTransitionError as e:
                    logger.warning(f"Could not move {current.id} to {target}: {e.message}")
                    return self.state_machine.get_transaction(current.id)
        return current

    # -------------------------------------------------------------------------
    # Party resolution
    # -------------------------------------------------------------------------

    def resolve_parties(self, tokens: list[str], transaction: Transaction) -> list[str]:
        brand = transaction.brand or self.default_brand
        parties: list[str] = []
        for token in tokens:
            if token == "sender":
                parties.append(transaction.sender)
            elif token in ("receiver", "customer"):
                parties.append(transaction.receiver)
            elif token == "all_stakeholders":
                parties.extend([transaction.sender, transaction.receiver, *transaction.stakeholders])
            elif token == "brand_admin":
                parties.append(f"admin@{brand}")
            elif token == "customer_service":
                parties.append(f"support@{brand}")
            else:
                parties.append(token)
        return unique(parties)

    # -------------------------------------------------------------------------
    # Repeat timeouts
    # -------------------------------------------------------------------------

    def record_timeout(self, party: str, transaction_id: str, at: datetime | None = None) -> None:
        with self._timeouts_lock:
            record = self._timeouts.setdefault(party, _TimeoutRecord())
            record.timestamps.append((at or self.clock(), transaction_id))

    def check_auto_escalation_patterns(self, party: str, now: datetime | None = None) -> bool:
        """Flag ``party`` when its timeouts inside the window reach the configured count.

        A party is flagged at most once per window.
        """
        settings = self.rules.auto_escalation
        condition = settings.get_condition("multiple_timeouts")
        if not settings.enabled or condition is None:
            return False

        now = now or self.clock()
        window = timedelta(seconds=condition.window) if condition.window else DEFAULT_PATTERN_WINDOW
        threshold = condition.count or 3
        with self._timeouts_lock:
            record = self._timeouts.get(party)
            if record is None:
                return False
            record.timestamps = [(at, tx) for at, tx in record.timestamps if now - at < window]
            if len(record.timestamps) < threshold:
                return False
            if record.flagged_at is not None and now - record.flagged_at < window:
                return False
            record.flagged_at = now
            transaction_ids = [tx for _, tx in record.timestamps]

        reason = f"{len(transaction_ids)} timeouts within {window}"
        logger.warning(f"Repeated timeouts by {party}: {reason}")
        if self.trust is not None:
            self.trust.flag_party(party, reason)
        self.outbox.publish(
            "escalation.relationship_flagged",
            {
                "party": party,
                "timeout_count": len(transaction_ids),
                "transaction_ids": transaction_ids,
                "action": condition.action,
                "severity": condition.severity.value,
            },
        )
        return True

    def timeout_count(self, party: str) -> int:
        with self._timeouts_lock:
            record = self._timeouts.get(party)
            return len(record.timestamps) if record else 0

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_escalation_history(self, transaction_id: str) -> list[EscalationEvent]:
        with self.locks.hold(self._key(transaction_id)):
            return list(self._history.get(transaction_id, []))

    def fired_levels(self, transaction_id: str) -> set[int]:
        with self.locks.hold(self._key(transaction_id)):
            return set(self._fired.get(transaction_id, set()))
