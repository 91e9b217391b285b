# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Emergency stop: halt transactions immediately and resume them on approval.

A stop is triggered manually by an authorized party or automatically when
a submission is too valuable, too risky, or involves a party that is
already part of a halted transaction. Halted transactions move to
ESCALATED where the state graph allows it; confirmations on them are
refused until an approval party resumes them.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any

from ..core.exceptions import InvalidTransitionError, NotFoundError, UnauthorizedError
from ..core.interfaces import Clock, utc_now
from ..core.outbox import Event, Outbox
from ..core.protocol_config import EmergencyStopSettings
from ..core.types import Priority, Severity, TransactionState
from .anomaly import AnomalyResult
from .notifications import request_notification
from .state_machine import SYSTEM_ACTOR, TransactionStateMachine

logger = logging.getLogger(__name__)

HALT_ACTOR = "emergency_stop_system"
AI_TRIGGER = "ai_system"
SECURITY_TRIGGER = "security_system"


class StopType(StrEnum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    AI_TRIGGERED = "ai_triggered"


@dataclass
class EmergencyStop:
    id: str
    type: StopType
    reason: str
    triggered_by: str
    severity: Severity
    created: datetime
    affected_transactions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "reason": self.reason,
            "triggered_by": self.triggered_by,
            "severity": self.severity.value,
            "created": self.created.isoformat(),
            "affected_transactions": list(self.affected_transactions),
        }


class EmergencyStopSystem:
    """Tracks active stops and the transactions they halt."""

    def __init__(
        self,
        settings: EmergencyStopSettings,
        state_machine: TransactionStateMachine,
        outbox: Outbox,
        clock: Clock = utc_now,
    ):
        self.settings = settings
        self.state_machine = state_machine
        self.outbox = outbox
        self.clock = clock
        self._lock = threading.RLock()
        self._stops: dict[str, EmergencyStop] = {}
        self._halted: dict[str, str] = {}

    # -------------------------------------------------------------------------
    # Triggering
    # -------------------------------------------------------------------------

    def trigger(
        self,
        triggered_by: str,
        reason: str,
        transaction_ids: list[str] | None = None,
    ) -> EmergencyStop:
        """Stop the given transactions on behalf of an authorized party.

        Raises:
            UnauthorizedError: If ``triggered_by`` may not trigger stops
        """
        if triggered_by not in self.settings.authorized_parties:
            raise UnauthorizedError("Unauthorized to trigger emergency stop", actor=triggered_by)
        stop_type = StopType.AI_TRIGGERED if triggered_by == AI_TRIGGER else StopType.MANUAL
        return self._execute(stop_type, triggered_by, reason, Severity.CRITICAL, transaction_ids or [])

    def _auto_stop(self, transaction_id: str, reason: str) -> EmergencyStop:
        return self._execute(StopType.AUTOMATIC, SYSTEM_ACTOR, reason, Severity.HIGH, [transaction_id])

    def _execute(
        self,
        stop_type: StopType,
        triggered_by: str,
        reason: str,
        severity: Severity,
        transaction_ids: list[str],
    ) -> EmergencyStop:
        stop = EmergencyStop(
            id=f"STOP-{uuid.uuid4().hex[:12]}",
            type=stop_type,
            reason=reason,
            triggered_by=triggered_by,
            severity=severity,
            created=self.clock(),
            affected_transactions=list(dict.fromkeys(transaction_ids)),
        )
        with self._lock:
            self._stops[stop.id] = stop
        for transaction_id in stop.affected_transactions:
            self._halt(transaction_id, stop)

        logger.critical(f"EMERGENCY STOP {stop.id} by {triggered_by}: {reason}")
        self.outbox.publish("emergency_stop.triggered", stop.to_dict())
        request_notification(
            self.outbox,
            list(self.settings.approval_parties),
            f"Emergency stop {stop.id}: {reason}",
            priority=Priority.URGENT,
            channel="all",
            data={"stop_id": stop.id, "affected_count": len(stop.affected_transactions)},
        )
        return replace(stop, affected_transactions=list(stop.affected_transactions))

    def _halt(self, transaction_id: str, stop: EmergencyStop) -> None:
        graph = self.state_machine.config.states
        # Same key as confirmations: one in flight either finishes first or sees the halt
        with self.state_machine.locks.hold(transaction_id):
            try:
                transaction = self.state_machine.get_transaction(transaction_id)
            except NotFoundError:
                logger.warning(f"Emergency stop {stop.id}: unknown transaction {transaction_id}")
                return
            if graph.is_terminal(transaction.state):
                return
            with self._lock:
                self._halted[transaction_id] = stop.id
        if graph.can_transition(transaction.state, TransactionState.ESCALATED):
            try:
                self.state_machine.transition_state(
                    transaction_id,
                    TransactionState.ESCALATED,
                    HALT_ACTOR,
                    reason=stop.reason,
                    evidence={"emergency_stop": stop.id},
                )
            except InvalidTransitionError as e:
                logger.warning(f"Halted {transaction_id} without state change: {e.message}")
        self.outbox.publish("emergency_stop.transaction_halted", {"transaction_id": transaction_id, "stop_id": stop.id})

    # -------------------------------------------------------------------------
    # Automatic checks
    # -------------------------------------------------------------------------

    def check_transaction(self, transaction: Any, anomaly_result: AnomalyResult | None = None) -> bool:
        """Halt ``transaction`` if it breaches a stop condition. Returns True when halted."""
        if not self.settings.enabled:
            return False
        if self.is_halted(transaction.id):
            return True

        if transaction.value > self.settings.max_transaction_value:
            reason = "Transaction exceeds maximum allowed value"
        elif anomaly_result is not None and anomaly_result.risk_score >= self.settings.risk_score_threshold:
            reason = f"High risk score: {anomaly_result.risk_score:.1f}"
        elif self.is_party_halted(transaction.sender, exclude=transaction.id) or self.is_party_halted(
            transaction.receiver, exclude=transaction.id
        ):
            reason = "Party involved in active emergency stop"
        else:
            return False

        self._auto_stop(transaction.id, reason)
        return True

    def on_party_blacklisted(self, event: Event) -> None:
        """Halt every open transaction of a newly blacklisted party."""
        party = event.payload["party"]
        affected = [t.id for t in self.state_machine.list_pending(party)]
        if affected:
            self.trigger(SECURITY_TRIGGER, f"Party blacklisted: {event.payload.get('reason')}", affected)

    # -------------------------------------------------------------------------
    # Resuming
    # -------------------------------------------------------------------------

    def resume(self, stop_id: str, approved_by: str, transaction_ids: list[str] | None = None) -> list[str]:
        """Release halted transactions of a stop; the stop clears once none remain.

        Raises:
            NotFoundError: Unknown or already cleared stop
            UnauthorizedError: If ``approved_by`` may not resume
        """
        with self._lock:
            stop = self._stops.get(stop_id)
            if stop is None:
                raise NotFoundError("EmergencyStop", stop_id)
            if self.settings.require_approval_to_resume and approved_by not in self.settings.approval_parties:
                raise UnauthorizedError("Unauthorized to resume transactions", actor=approved_by)

            targets = transaction_ids if transaction_ids is not None else stop.affected_transactions
            resumed = [t for t in targets if self._halted.get(t) == stop_id]
            for transaction_id in resumed:
                del self._halted[transaction_id]
            remaining = [t for t in stop.affected_transactions if self._halted.get(t) == stop_id]
            cleared = not remaining
            if cleared:
                del self._stops[stop_id]

        for transaction_id in resumed:
            logger.info(f"Resumed {transaction_id} from stop {stop_id} (approved by {approved_by})")
            self.outbox.publish(
                "emergency_stop.transaction_resumed",
                {"transaction_id": transaction_id, "stop_id": stop_id, "approved_by": approved_by},
            )
        if cleared:
            logger.info(f"Emergency stop {stop_id} cleared by {approved_by}")
            self.outbox.publish("emergency_stop.cleared", {"stop_id": stop_id, "cleared_by": approved_by})
        return resumed

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def is_halted(self, transaction_id: str) -> bool:
        with self._lock:
            return transaction_id in self._halted

    def is_party_halted(self, party: str, exclude: str | None = None) -> bool:
        with self._lock:
            halted = [t for t in self._halted if t != exclude]
        for transaction_id in halted:
            try:
                transaction = self.state_machine.get_transaction(transaction_id)
            except NotFoundError:
                continue
            if transaction.is_participant(party):
                return True
        return False

    def halted_transactions(self) -> list[str]:
        with self._lock:
            return list(self._halted)

    def get_active_stops(self) -> list[EmergencyStop]:
        with self._lock:
            return [replace(s, affected_transactions=list(s.affected_transactions)) for s in self._stops.values()]

    def get_statistics(self) -> dict[str, Any]:
        stops = self.get_active_stops()
        by_type: dict[str, int] = {}
        for stop in stops:
            by_type[stop.type.value] = by_type.get(stop.type.value, 0) + 1
        return {
            "active_stops": len(stops),
            "halted_transactions": len(self.halted_transactions()),
            "stops_by_type": by_type,
            "auto_trigger_enabled": self.settings.enabled,
            "risk_threshold": self.settings.risk_score_threshold,
        }
