# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Orchestrator - composes the 2-Check engines into one service.

The orchestrator owns one instance of every engine and wires them through
the shared outbox:

    trust.update_required        -> TrustScoringSystem.update_trust_score
    transaction.update_required  -> TransactionStateMachine.transition_state
    notification.requested       -> NotificationDispatcher -> NotificationSender
    transaction.state_changed    -> timeout bookkeeping and compensation
    dispute.resolved             -> compensation for the winning creator
    anomaly.party_blacklisted    -> emergency stop of the party's open work

Submissions pass the anomaly detector before anything is created. Ledger
writes happen after the local state change; a failed write is logged and
never rolls local state back.

Example:
    orchestrator = Orchestrator()
    orchestrator.submit_transaction("TX-1", "acme", "globex", "SKU-9", 1000)
    orchestrator.confirm_sent("TX-1", "acme")
    orchestrator.confirm_received("TX-1", "globex")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..core.config import CoreSettings, get_settings
from ..core.exceptions import (
    AlreadyExistsError,
    LedgerError,
    NotFoundError,
    TransactionBlockedError,
)
from ..core.interfaces import (
    Clock,
    InMemoryLedgerClient,
    LedgerClient,
    LedgerResult,
    LoggingNotificationSender,
    NotificationSender,
    utc_now,
)
from ..core.locks import KeyedLock
from ..core.logging import audit_logger, correlation_context
from ..core.outbox import Event, Outbox
from ..core.protocol_config import ProtocolConfig, get_protocol_config
from ..core.scheduler import DeadlineScheduler, PeriodicTask
from ..core.types import (
    Capability,
    DisputeDecision,
    RecommendedAction,
    ResolutionAction,
    TransactionState,
    TrustAction,
)
from .anomaly import SUSPICIOUS_ROUTING, AnomalyDetector, AnomalyResult, TransactionRecord
from .compensation import CompensationRuleEngine, CompensationTrigger
from .disputes import Compensation, Dispute, DisputeResolutionEngine
from .emergency_stop import AI_TRIGGER, EmergencyStopSystem
from .escalation import EscalationEngine, EscalationEvent
from .evidence import Evidence, EvidenceStore
from .notifications import NotificationDispatcher
from .state_machine import SYSTEM_ACTOR, Transaction, TransactionStateMachine
from .trust import TrustScore, TrustScoringSystem, TrustUpdate

logger = logging.getLogger(__name__)

# States in which configured escalation levels still apply
ESCALATION_STATES = {TransactionState.CREATED, TransactionState.SENT, TransactionState.TIMEOUT}
SECONDS_PER_DAY = 86400


@dataclass
class MaintenanceReport:
    """What one ``tick`` did."""

    timed_out: list[str] = field(default_factory=list)
    reminders: list[tuple[str, str]] = field(default_factory=list)
    escalations: list[EscalationEvent] = field(default_factory=list)
    escalated_disputes: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timed_out": list(self.timed_out),
            "reminders": [{"transaction_id": t, "threshold": r} for t, r in self.reminders],
            "escalations": [e.to_dict() for e in self.escalations],
            "escalated_disputes": list(self.escalated_disputes),
            "errors": list(self.errors),
        }


class Orchestrator:
    """Entry point for the 2-Check protocol.

    All collaborators are injected; anything omitted gets an in-process
    default (packaged config, in-memory ledger, logging notifier).
    """

    def __init__(
        self,
        config: ProtocolConfig | None = None,
        ledger: LedgerClient | None = None,
        notifier: NotificationSender | None = None,
        outbox: Outbox | None = None,
        clock: Clock = utc_now,
        settings: CoreSettings | None = None,
        scheduler: DeadlineScheduler | None = None,
    ):
        self.config = config or get_protocol_config()
        self.settings = settings or get_settings()
        self.ledger = ledger or InMemoryLedgerClient()
        self.notifier = notifier or LoggingNotificationSender()
        self.outbox = outbox or Outbox()
        self.clock = clock
        self.locks = KeyedLock()

        consensus = self.config.consensus
        self.state_machine = TransactionStateMachine(consensus, self.outbox, clock, self.locks)
        self.trust = TrustScoringSystem(self.config.trust, self.outbox, clock, self.locks)
        self.evidence = EvidenceStore(self.outbox, clock, self.locks)
        self.disputes = DisputeResolutionEngine(
            consensus.disputes, self.outbox, self.evidence, self.trust, scheduler, clock, self.locks
        )
        self.escalation = EscalationEngine(
            self.config.timeout_rules,
            self.outbox,
            state_machine=self.state_machine,
            disputes=self.disputes,
            evidence_store=self.evidence,
            trust=self.trust,
            clock=clock,
            locks=self.locks,
            default_brand=consensus.notifications.default_brand,
        )
        self.anomaly = AnomalyDetector(self.outbox, self.trust, clock)
        self.compensation = CompensationRuleEngine(consensus.compensation, self.outbox, clock)
        self.emergency = EmergencyStopSystem(consensus.emergency_stop, self.state_machine, self.outbox, clock)
        self.state_machine.is_halted = self.emergency.is_halted
        self.dispatcher = NotificationDispatcher(self.notifier, consensus.notifications, self.outbox)

        self._anomaly_results: dict[str, AnomalyResult] = {}
        self._tasks: list[PeriodicTask] = []
        self._wire()

    def _wire(self) -> None:
        self.outbox.subscribe("trust.update_required", self._on_trust_update)
        self.outbox.subscribe("transaction.update_required", self._on_transaction_update)
        self.outbox.subscribe("transaction.state_changed", self._on_state_changed)
        self.outbox.subscribe("dispute.resolved", self._on_dispute_resolved)
        self.outbox.subscribe("anomaly.party_blacklisted", self.emergency.on_party_blacklisted)

    # -------------------------------------------------------------------------
    # Event handlers
    # -------------------------------------------------------------------------

    def _on_trust_update(self, event: Event) -> None:
        payload = event.payload
        if payload["participant"] == SYSTEM_ACTOR:
            return
        self.trust.update_trust_score(
            TrustUpdate(
                participant=payload["participant"],
                action=TrustAction(payload["action"]),
                value=payload.get("value"),
                transaction_id=payload.get("transaction_id"),
                context=payload.get("context") or {},
                reason=payload.get("reason"),
            )
        )

    def _on_transaction_update(self, event: Event) -> None:
        payload = event.payload
        transaction_id = payload["transaction_id"]
        target = TransactionState(payload["new_state"])
        if not self.state_machine.exists(transaction_id):
            logger.warning(f"Update for unknown transaction {transaction_id}")
            return
        current = self.state_machine.get_transaction(transaction_id)
        if not self.state_machine.config.states.can_transition(current.state, target):
            logger.info(f"Transaction {transaction_id} stays {current.state}; {target} not reachable")
            return
        self.state_machine.transition_state(transaction_id, target, SYSTEM_ACTOR, payload.get("reason"))

    def _on_state_changed(self, event: Event) -> None:
        if event.payload["to"] != TransactionState.TIMEOUT:
            return
        transaction = self.state_machine.get_transaction(event.payload["transaction_id"])
        party = transaction.overdue_party()
        self.escalation.record_timeout(party, transaction.id)
        self.escalation.check_auto_escalation_patterns(party)
        self.compensation.calculate_compensation(transaction, CompensationTrigger.TIMEOUT)

    def _on_dispute_resolved(self, event: Event) -> None:
        dispute = event.payload["dispute"]
        resolution = dispute.get("resolution") or {}
        if resolution.get("decision") != DisputeDecision.FAVOR_CREATOR:
            return
        try:
            transaction = self.state_machine.get_transaction(dispute["transaction_id"])
        except NotFoundError:
            logger.warning(f"Resolved dispute {dispute['id']} refers to unknown transaction")
            return
        self.compensation.calculate_compensation(
            transaction,
            CompensationTrigger.DISPUTE_RESOLVED,
            {"dispute_id": dispute["id"], "decision": resolution["decision"]},
        )

    # -------------------------------------------------------------------------
    # Ledger
    # -------------------------------------------------------------------------

    def _record_on_ledger(self, function: str, args: list[str]) -> LedgerResult:
        try:
            result = self.ledger.submit_transaction(function, args)
        except LedgerError as e:
            result = LedgerResult(success=False, error=e.message)
        if not result.success:
            logger.warning(f"Ledger {function} failed for {args[0] if args else '?'}: {result.error}")
        return result

    # -------------------------------------------------------------------------
    # Protocol operations
    # -------------------------------------------------------------------------

    def submit_transaction(
        self,
        transaction_id: str,
        sender: str,
        receiver: str,
        item_id: str,
        value: float,
        metadata: dict[str, Any] | None = None,
        *,
        item_type: str = "item",
        brand: str | None = None,
        batch_id: str | None = None,
        stakeholders: list[str] | None = None,
    ) -> Transaction:
        """Screen, create and record a transaction.

        Raises:
            TransactionBlockedError: If the anomaly detector recommends blocking
            AlreadyExistsError: If the id is taken
        """
        with correlation_context():
            audit_logger.log_operation(
                "submit_transaction",
                {"transaction_id": transaction_id, "sender": sender, "receiver": receiver, "value": value},
            )
            if self.state_machine.exists(transaction_id):
                raise AlreadyExistsError("Transaction", transaction_id)
            record = TransactionRecord(transaction_id, sender, receiver, float(value), self.clock(), item_id)
            result = self.anomaly.analyze_transaction(record)
            if result.recommended_action == RecommendedAction.BLOCK:
                audit_logger.log_outcome("submit_transaction", False, f"blocked at risk {result.risk_score:.1f}")
                raise TransactionBlockedError(transaction_id, result.risk_score, result.reasons, result)

            context = {
                "relationship": {
                    "trust_score": min(self.trust.get_score_value(sender), self.trust.get_score_value(receiver))
                }
            }
            transaction = self.state_machine.create_transaction(
                transaction_id,
                sender,
                receiver,
                item_id,
                value,
                metadata,
                item_type=item_type,
                brand=brand,
                batch_id=batch_id,
                stakeholders=stakeholders,
                context=context,
                timeout_extension=self._timeout_extension(sender, receiver),
            )
            self._record_on_ledger("CreateTransaction", [transaction_id, sender, receiver, item_id, str(value)])

            if result.has_anomalies:
                self._anomaly_results[transaction_id] = result
            if result.recommended_action in (RecommendedAction.FLAG, RecommendedAction.REVIEW):
                self.outbox.publish(
                    "anomaly.review_required",
                    {"transaction_id": transaction_id, "result": result.to_dict()},
                )
            if result.has_pattern(SUSPICIOUS_ROUTING):
                self.escalation.handle_pattern(transaction, SUSPICIOUS_ROUTING)

            halted = self.emergency.check_transaction(transaction, result)
            if not halted and self.anomaly.should_trigger_emergency_stop(transaction, result):
                self.emergency.trigger(
                    AI_TRIGGER, f"AI detected critical anomaly: {', '.join(result.reasons)}", [transaction_id]
                )

            audit_logger.log_outcome("submit_transaction", True, result.recommended_action.value)
            return self.state_machine.get_transaction(transaction_id)

    def _timeout_extension(self, sender: str, receiver: str) -> float:
        if self.trust.can_perform_action(sender, Capability.EXTENDED_TIMEOUT) and self.trust.can_perform_action(
            receiver, Capability.EXTENDED_TIMEOUT
        ):
            return self.config.consensus.timeouts.trusted_extension_multiplier
        return 1.0

    def confirm_sent(self, transaction_id: str, sender_id: str, evidence: Any = None) -> Transaction:
        with correlation_context():
            audit_logger.log_operation("confirm_sent", {"transaction_id": transaction_id, "sender": sender_id})
            transaction = self.state_machine.confirm_sent(transaction_id, sender_id, evidence)
            self._record_on_ledger("ConfirmSent", [transaction_id, sender_id])
            return transaction

    def confirm_received(self, transaction_id: str, receiver_id: str, evidence: Any = None) -> Transaction:
        with correlation_context():
            audit_logger.log_operation("confirm_received", {"transaction_id": transaction_id, "receiver": receiver_id})
            self.state_machine.confirm_received(transaction_id, receiver_id, evidence)
            self._record_on_ledger("ConfirmReceived", [transaction_id, receiver_id])
            return self.state_machine.get_transaction(transaction_id)

    def raise_dispute(
        self,
        transaction_id: str,
        creator: str,
        dispute_type: str,
        reason: str | None = None,
        evidence: Any = None,
    ) -> Dispute:
        """Move the transaction to DISPUTED, then open the dispute record."""
        with correlation_context():
            audit_logger.log_operation(
                "raise_dispute", {"transaction_id": transaction_id, "creator": creator, "type": dispute_type}
            )
            transaction = self.state_machine.create_dispute(transaction_id, creator, dispute_type, evidence)
            dispute = self.disputes.create_dispute(transaction, dispute_type, creator, evidence, reason)
            self._record_on_ledger("RaiseDispute", [transaction_id, dispute.id, dispute_type])
            return self.disputes.get_dispute(dispute.id)

    def submit_evidence(
        self,
        transaction_id: str,
        evidence_type: str,
        data: dict[str, Any],
        submitted_by: str,
        description: str = "",
    ) -> Evidence:
        """Store evidence once and attach it to every open dispute on the transaction."""
        with correlation_context():
            audit_logger.log_operation(
                "submit_evidence",
                {"transaction_id": transaction_id, "type": evidence_type, "submitted_by": submitted_by, "data": data},
            )
            if not self.state_machine.exists(transaction_id):
                raise NotFoundError("Transaction", transaction_id)
            evidence = self.evidence.submit_evidence(transaction_id, evidence_type, data, submitted_by)
            for dispute in self.disputes.list_for_transaction(transaction_id):
                if not dispute.is_resolved:
                    self.disputes.attach_evidence(dispute.id, evidence, description)
            return evidence

    def resolve_dispute(
        self,
        dispute_id: str,
        decided_by: str,
        decision: DisputeDecision,
        reasoning: str,
        actions: list[ResolutionAction] | None = None,
        compensation: Compensation | None = None,
    ) -> Dispute:
        with correlation_context():
            audit_logger.log_operation(
                "resolve_dispute", {"dispute_id": dispute_id, "decided_by": decided_by, "decision": str(decision)}
            )
            dispute = self.disputes.resolve_dispute(dispute_id, decided_by, decision, reasoning, actions, compensation)
            self._record_on_ledger("ResolveDispute", [dispute.transaction_id, dispute_id, str(decision)])
            return dispute

    def cancel_transaction(self, transaction_id: str, actor: str, reason: str | None = None) -> Transaction:
        with correlation_context():
            audit_logger.log_operation("cancel_transaction", {"transaction_id": transaction_id, "actor": actor})
            transaction = self.state_machine.cancel_transaction(transaction_id, actor, reason)
            self._record_on_ledger("CancelTransaction", [transaction_id, actor])
            return transaction

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def tick(self, now: datetime | None = None) -> MaintenanceReport:
        """One maintenance pass: timeouts, then escalation levels, then dispute deadlines."""
        now = now or self.clock()
        report = MaintenanceReport()
        with correlation_context():
            sweep = self.state_machine.sweep_timeouts(now)
            report.timed_out.extend(sweep.timed_out)
            report.reminders.extend(sweep.reminders)
            report.errors.extend(sweep.errors)

            for transaction in self.state_machine.list_active():
                if transaction.state not in ESCALATION_STATES or self.emergency.is_halted(transaction.id):
                    continue
                if self.escalation.rules_for(transaction.transaction_type) is None:
                    continue
                try:
                    event = self.escalation.handle_escalation(
                        transaction, transaction.elapsed_percent(now), transaction.transaction_type
                    )
                except Exception:
                    logger.exception(f"Escalation failed for transaction {transaction.id}")
                    report.errors.append(transaction.id)
                    continue
                if event is not None:
                    report.escalations.append(event)

            report.escalated_disputes.extend(self.disputes.check_deadlines(now))
        return report

    def run_trust_maintenance(self, now: datetime | None = None) -> dict[str, Any]:
        """Apply inactivity decay and grant due recovery bonuses."""
        now = now or self.clock()
        with correlation_context():
            decayed = self.trust.apply_decay(now)
            bonuses: dict[str, list[str]] = {}
            for participant in self.trust.participants():
                granted = self.trust.check_recovery_bonus(participant, now)
                if granted:
                    bonuses[participant] = granted
        return {"decayed": decayed, "bonuses": bonuses}

    def start(self) -> None:
        """Start the periodic timeout and trust sweeps."""
        if self._tasks:
            return
        decay_seconds = self.settings.decay_sweep_seconds or self.config.trust.decay.check_interval * SECONDS_PER_DAY
        self._tasks = [
            PeriodicTask("timeout-sweep", self.settings.timeout_sweep_seconds, self.tick),
            PeriodicTask("trust-decay", decay_seconds, self.run_trust_maintenance),
        ]
        for task in self._tasks:
            task.start()

    def stop(self) -> None:
        for task in self._tasks:
            task.stop()
        self._tasks = []

    def shutdown(self) -> None:
        self.stop()
        self.disputes.shutdown()

    def recover_timers(self) -> int:
        """Re-arm dispute deadlines after the engines were re-hydrated."""
        return self.disputes.recover_timers()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_transaction(self, transaction_id: str) -> Transaction:
        return self.state_machine.get_transaction(transaction_id)

    def list_by_state(self, state: TransactionState) -> list[Transaction]:
        return self.state_machine.list_by_state(state)

    def list_pending(self, participant: str) -> list[Transaction]:
        return self.state_machine.list_pending(participant)

    def list_open_disputes(self, participant: str | None = None) -> list[Dispute]:
        return self.disputes.list_open(participant)

    def get_trust_score(self, participant: str) -> TrustScore:
        return self.trust.get_trust_score(participant)

    def get_leaderboard(self, limit: int = 10) -> list[dict[str, Any]]:
        return self.trust.get_leaderboard(limit)

    def get_escalation_history(self, transaction_id: str) -> list[EscalationEvent]:
        return self.escalation.get_escalation_history(transaction_id)

    def get_anomaly_result(self, transaction_id: str) -> AnomalyResult | None:
        return self._anomaly_results.get(transaction_id)

    def transaction_report(self, transaction_id: str) -> dict[str, Any]:
        transaction = self.state_machine.get_transaction(transaction_id)
        anomaly = self._anomaly_results.get(transaction_id)
        ledger = self.ledger.evaluate_transaction("ReadTransaction", [transaction_id])
        return {
            "transaction": transaction.to_dict(),
            "current_state": transaction.state.value,
            "age_seconds": (self.clock() - transaction.created).total_seconds(),
            "history": [t.to_dict() for t in transaction.state_history],
            "evidence": self.evidence.generate_report(transaction_id),
            "disputes": [d.to_dict() for d in self.disputes.list_for_transaction(transaction_id)],
            "escalations": [e.to_dict() for e in self.escalation.get_escalation_history(transaction_id)],
            "compensation": [c.to_dict() for c in self.compensation.get_for_transaction(transaction_id)],
            "halted": self.emergency.is_halted(transaction_id),
            "anomaly": anomaly.to_dict() if anomaly else None,
            "ledger": ledger.to_dict(),
        }

    def system_metrics(self) -> dict[str, Any]:
        transactions = self.state_machine.list_all()
        by_state = {state.value: 0 for state in TransactionState}
        confirmation_times = []
        for t in transactions:
            by_state[t.state.value] += 1
            if t.state == TransactionState.VALIDATED:
                confirmation_times.append((t.state_history[-1].timestamp - t.created).total_seconds())
        graph = self.config.consensus.states
        return {
            "consensus": {
                "total_transactions": len(transactions),
                "pending_transactions": sum(1 for t in transactions if not graph.is_terminal(t.state)),
                "disputed_transactions": by_state[TransactionState.DISPUTED.value],
                "by_state": by_state,
                "average_confirmation_seconds": (
                    sum(confirmation_times) / len(confirmation_times) if confirmation_times else None
                ),
            },
            "trust": {
                **self.trust.export_summary(),
                "flagged_parties": [s.participant_id for s in self.trust.get_flagged_parties()],
            },
            "disputes": {"open": len(self.disputes.list_open()), "total": len(self.disputes.list_all())},
            "emergency_stop": self.emergency.get_statistics(),
            "compensation": self.compensation.get_statistics(),
            "anomaly": self.anomaly.summary(),
            "events_recorded": len(self.outbox.events()),
            "timestamp": self.clock().isoformat(),
        }
