# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Dispute resolution for contested 2-Check transactions.

Lifecycle:
    OPEN -> UNDER_REVIEW (evidence arrives) -> RESOLVED
                \\-> AWAITING_EVIDENCE / ESCALATED (deadline or operator)

Evidence is validated by the evidence store. Once every evidence type the
dispute type requires is present and verified, auto-resolvable types run
an analysis; only a confidence above 0.9 is applied automatically.

A resolution is set exactly once. It emits trust updates, one event per
resolution action, an optional compensation request, and a request to
move the transaction to RESOLVED.
"""

from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from ..core.exceptions import ConfigMissingError, InvalidTransitionError, NotFoundError, UnauthorizedError
from ..core.interfaces import Clock, utc_now
from ..core.locks import KeyedLock
from ..core.outbox import Outbox
from ..core.protocol_config import DisputeEscalationRule, DisputeSettings, DisputeTypeConfig
from ..core.scheduler import DeadlineScheduler
from ..core.types import DisputeDecision, DisputeEvidenceType, DisputeStatus, Priority, ResolutionAction, TrustAction
from .evidence import Evidence, EvidenceStore
from .notifications import BRAND_OWNER, request_notification
from .state_machine import SYSTEM_ACTOR, Transaction
from .trust import TrustScoringSystem

logger = logging.getLogger(__name__)

AUTO_RESOLUTION_THRESHOLD = 0.9
AUTO_RESOLVER = "system_auto_resolution"

# Allowed status moves; RESOLVED is terminal
DISPUTE_TRANSITIONS: dict[DisputeStatus, set[DisputeStatus]] = {
    DisputeStatus.OPEN: {
        DisputeStatus.INVESTIGATING,
        DisputeStatus.AWAITING_EVIDENCE,
        DisputeStatus.UNDER_REVIEW,
        DisputeStatus.ESCALATED,
        DisputeStatus.RESOLVED,
    },
    DisputeStatus.INVESTIGATING: {
        DisputeStatus.AWAITING_EVIDENCE,
        DisputeStatus.UNDER_REVIEW,
        DisputeStatus.ESCALATED,
        DisputeStatus.RESOLVED,
    },
    DisputeStatus.AWAITING_EVIDENCE: {
        DisputeStatus.UNDER_REVIEW,
        DisputeStatus.ESCALATED,
        DisputeStatus.RESOLVED,
    },
    DisputeStatus.UNDER_REVIEW: {
        DisputeStatus.AWAITING_EVIDENCE,
        DisputeStatus.UNDER_REVIEW,
        DisputeStatus.ESCALATED,
        DisputeStatus.RESOLVED,
    },
    DisputeStatus.ESCALATED: {
        DisputeStatus.ESCALATED,
        DisputeStatus.UNDER_REVIEW,
        DisputeStatus.RESOLVED,
    },
    DisputeStatus.RESOLVED: set(),
}


@dataclass(frozen=True)
class DisputeEvidence:
    """Evidence attached to a dispute, pointing at the stored record."""

    id: str
    evidence_id: str
    submitted_by: str
    submitted_at: datetime
    type: str
    description: str
    verified: bool
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "evidence_id": self.evidence_id,
            "submitted_by": self.submitted_by,
            "submitted_at": self.submitted_at.isoformat(),
            "type": self.type,
            "description": self.description,
            "verified": self.verified,
            "confidence": round(self.confidence, 4),
        }


@dataclass(frozen=True)
class Compensation:
    amount: float
    recipient: str
    currency: str = "USD"
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"amount": self.amount, "recipient": self.recipient, "currency": self.currency, "reason": self.reason}


@dataclass(frozen=True)
class Resolution:
    decided_by: str
    decided_at: datetime
    decision: DisputeDecision
    reasoning: str
    actions: tuple[ResolutionAction, ...] = ()
    compensation: Compensation | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "decided_by": self.decided_by,
            "decided_at": self.decided_at.isoformat(),
            "decision": self.decision.value,
            "reasoning": self.reasoning,
            "actions": [a.value for a in self.actions],
            "compensation": self.compensation.to_dict() if self.compensation else None,
        }


@dataclass(frozen=True)
class DisputeAnalysis:
    confidence: float
    decision: DisputeDecision
    reasoning: str
    actions: tuple[ResolutionAction, ...] = ()


@dataclass
class Dispute:
    id: str
    transaction_id: str
    type: str
    status: DisputeStatus
    creator: str
    respondent: str
    created: datetime
    updated: datetime
    deadline: datetime
    reason: str | None = None
    evidence: list[DisputeEvidence] = field(default_factory=list)
    resolution: Resolution | None = None
    escalation_level: int = 0
    transaction_value: float = 0.0
    brand: str | None = None
    deadline_handled: bool = False

    @property
    def is_resolved(self) -> bool:
        return self.status == DisputeStatus.RESOLVED

    def involves(self, participant: str) -> bool:
        return participant in (self.creator, self.respondent)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "type": self.type,
            "status": self.status.value,
            "creator": self.creator,
            "respondent": self.respondent,
            "reason": self.reason,
            "created": self.created.isoformat(),
            "updated": self.updated.isoformat(),
            "deadline": self.deadline.isoformat(),
            "escalation_level": self.escalation_level,
            "evidence": [e.to_dict() for e in self.evidence],
            "resolution": self.resolution.to_dict() if self.resolution else None,
        }


class DisputeResolutionEngine:
    """Creates, evidences, escalates and resolves disputes."""

    def __init__(
        self,
        config: DisputeSettings,
        outbox: Outbox,
        evidence_store: EvidenceStore | None = None,
        trust: TrustScoringSystem | None = None,
        scheduler: DeadlineScheduler | None = None,
        clock: Clock = utc_now,
        locks: KeyedLock | None = None,
    ):
        self.config = config
        self.outbox = outbox
        self.clock = clock
        self.evidence_store = evidence_store or EvidenceStore(outbox, clock)
        self.trust = trust
        self.scheduler = scheduler or DeadlineScheduler()
        self.locks = locks or KeyedLock()
        self._disputes: dict[str, Dispute] = {}

    @staticmethod
    def _key(dispute_id: str) -> str:
        return f"dispute:{dispute_id}"

    def _type_config(self, dispute_type: str) -> DisputeTypeConfig:
        config = self.config.get_type(dispute_type)
        if config is None:
            missing = ConfigMissingError("dispute type", dispute_type)
            logger.warning(f"{missing.message}; using defaults")
            return DisputeTypeConfig(id=dispute_type)
        return config

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_dispute(
        self,
        transaction: Transaction,
        dispute_type: str,
        creator: str,
        initial_evidence: Any = None,
        reason: str | None = None,
    ) -> Dispute:
        """Open a dispute against the other party of ``transaction``.

        The ``system`` creator opens disputes for escalated timeouts; the
        respondent is then whoever owed the missing confirmation.

        Raises:
            UnauthorizedError: If ``creator`` is neither a participant nor ``system``
        """
        if creator == SYSTEM_ACTOR:
            respondent = transaction.overdue_party()
        elif transaction.is_participant(creator):
            respondent = transaction.other_party(creator)
        else:
            raise UnauthorizedError(f"Only participants can dispute {transaction.id}", actor=creator)

        type_config = self._type_config(dispute_type)
        hours = type_config.escalation_timeout or self.config.default_deadline_hours
        now = self.clock()
        dispute = Dispute(
            id=f"DSP-{uuid.uuid4().hex[:12]}",
            transaction_id=transaction.id,
            type=dispute_type,
            status=DisputeStatus.OPEN,
            creator=creator,
            respondent=respondent,
            created=now,
            updated=now,
            deadline=now + timedelta(hours=hours),
            reason=reason,
            transaction_value=transaction.value,
            brand=transaction.brand,
        )
        with self.locks.hold(self._key(dispute.id)):
            self._disputes[dispute.id] = dispute

        logger.info(f"Opened dispute {dispute.id} ({dispute_type}) on {transaction.id} by {creator}")
        self.outbox.publish("dispute.created", {"dispute": dispute.to_dict()})
        request_notification(
            self.outbox,
            [dispute.respondent, BRAND_OWNER],
            f"Dispute opened on transaction {transaction.id}: {type_config.name or dispute_type}",
            priority=Priority.HIGH,
            transaction_id=transaction.id,
            brand=transaction.brand,
            data={"dispute_id": dispute.id, "creator": creator, "deadline": dispute.deadline.isoformat()},
        )
        self._schedule_deadline(dispute)

        if initial_evidence:
            data = initial_evidence if isinstance(initial_evidence, dict) else {"statement": str(initial_evidence)}
            self.add_evidence(dispute.id, creator, DisputeEvidenceType.TESTIMONY, "Initial dispute claim", data)

        return self.get_dispute(dispute.id)

    def _schedule_deadline(self, dispute: Dispute) -> None:
        delay = (dispute.deadline - self.clock()).total_seconds()
        self.scheduler.schedule(dispute.id, delay, lambda: self.check_deadline(dispute.id))

    # -------------------------------------------------------------------------
    # Evidence
    # -------------------------------------------------------------------------

    def add_evidence(
        self,
        dispute_id: str,
        submitted_by: str,
        evidence_type: str,
        description: str,
        data: dict[str, Any],
    ) -> DisputeEvidence:
        """Validate evidence through the store and attach it to the dispute."""
        dispute = self._get(dispute_id)
        if dispute.is_resolved:
            raise InvalidTransitionError(f"Dispute {dispute_id} is already resolved", current=dispute.status.value)
        stored = self.evidence_store.submit_evidence(dispute.transaction_id, str(evidence_type), data, submitted_by)
        return self.attach_evidence(dispute_id, stored, description)

    def attach_evidence(self, dispute_id: str, evidence: Evidence, description: str = "") -> DisputeEvidence:
        """Attach already-validated evidence, then re-check sufficiency."""
        with self.locks.hold(self._key(dispute_id)):
            dispute = self._get(dispute_id)
            if dispute.is_resolved:
                raise InvalidTransitionError(f"Dispute {dispute_id} is already resolved", current=dispute.status.value)
            record = DisputeEvidence(
                id=uuid.uuid4().hex,
                evidence_id=evidence.id,
                submitted_by=evidence.submitted_by,
                submitted_at=evidence.timestamp,
                type=evidence.type,
                description=description,
                verified=evidence.verified,
                confidence=evidence.confidence,
            )
            dispute.evidence.append(record)
            self._set_status(dispute, DisputeStatus.UNDER_REVIEW)
            self.outbox.publish(
                "dispute.evidence_added",
                {"dispute_id": dispute_id, "evidence": record.to_dict()},
            )
            self._check_sufficiency(dispute)
        return record

    def missing_evidence(self, dispute: Dispute) -> list[str]:
        required = self._type_config(dispute.type).evidence_required
        verified = {e.type for e in dispute.evidence if e.verified}
        return [str(t) for t in required if str(t) not in verified]

    def _check_sufficiency(self, dispute: Dispute) -> None:
        missing = self.missing_evidence(dispute)
        if missing:
            self.outbox.publish("dispute.evidence_pending", {"dispute_id": dispute.id, "missing": missing})
            return
        self.outbox.publish("dispute.evidence_complete", {"dispute_id": dispute.id, "ready_for_decision": True})
        if self._type_config(dispute.type).auto_resolution_possible:
            self.attempt_auto_resolution(dispute.id)

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def analyze(self, dispute: Dispute) -> DisputeAnalysis:
        if dispute.type == "not_received" and any(
            e.type == DisputeEvidenceType.TRACKING and e.verified for e in dispute.evidence
        ):
            return DisputeAnalysis(0.95, DisputeDecision.FAVOR_CREATOR, "Verified tracking evidence supports the claim")
        return DisputeAnalysis(0.5, DisputeDecision.SPLIT, "Insufficient evidence for automatic resolution")

    def attempt_auto_resolution(self, dispute_id: str) -> Resolution | None:
        """Resolve automatically when the analysis is confident enough.

        Returns the resolution, or None when the dispute needs manual review.
        """
        with self.locks.hold(self._key(dispute_id)):
            dispute = self._get(dispute_id)
            if dispute.is_resolved:
                raise InvalidTransitionError(f"Dispute {dispute_id} is already resolved", current=dispute.status.value)
            analysis = self.analyze(dispute)
            if analysis.confidence > AUTO_RESOLUTION_THRESHOLD:
                resolved = self.resolve_dispute(
                    dispute_id,
                    AUTO_RESOLVER,
                    analysis.decision,
                    analysis.reasoning,
                    list(analysis.actions),
                )
                return resolved.resolution

            waiting = DisputeStatus.AWAITING_EVIDENCE if self.missing_evidence(dispute) else DisputeStatus.UNDER_REVIEW
            if dispute.status != DisputeStatus.ESCALATED and dispute.status != waiting:
                self._set_status(dispute, waiting)
            logger.info(f"Dispute {dispute_id} needs manual review (confidence {analysis.confidence:.2f})")
            self.outbox.publish(
                "dispute.manual_review_required",
                {
                    "dispute_id": dispute_id,
                    "confidence": analysis.confidence,
                    "recommended_decision": analysis.decision.value,
                    "reasoning": analysis.reasoning,
                },
            )
        return None

    def resolve_dispute(
        self,
        dispute_id: str,
        decided_by: str,
        decision: DisputeDecision,
        reasoning: str,
        actions: list[ResolutionAction] | None = None,
        compensation: Compensation | None = None,
    ) -> Dispute:
        """Set the resolution. A dispute can be resolved only once.

        Raises:
            NotFoundError: Unknown dispute
            InvalidTransitionError: Already resolved
        """
        with self.locks.hold(self._key(dispute_id)):
            dispute = self._get(dispute_id)
            if dispute.resolution is not None or dispute.is_resolved:
                raise InvalidTransitionError(f"Dispute {dispute_id} is already resolved", current=dispute.status.value)
            resolution = Resolution(
                decided_by=decided_by,
                decided_at=self.clock(),
                decision=DisputeDecision(decision),
                reasoning=reasoning,
                actions=tuple(ResolutionAction(a) for a in actions or []),
                compensation=compensation,
            )
            dispute.resolution = resolution
            self._set_status(dispute, DisputeStatus.RESOLVED)
            snapshot = copy.deepcopy(dispute)

        self.scheduler.cancel(dispute_id)
        logger.info(f"Resolved dispute {dispute_id}: {resolution.decision} by {decided_by}")
        self.outbox.publish(
            "dispute.resolved",
            {"dispute_id": dispute_id, "transaction_id": snapshot.transaction_id, "dispute": snapshot.to_dict()},
        )
        self._emit_trust_updates(snapshot)
        self._execute_actions(snapshot)
        self.outbox.publish(
            "transaction.update_required",
            {
                "transaction_id": snapshot.transaction_id,
                "new_state": "RESOLVED",
                "reason": f"Dispute resolved: {resolution.decision.value}",
                "dispute_id": dispute_id,
            },
        )
        return snapshot

    def _emit_trust_updates(self, dispute: Dispute) -> None:
        decision = dispute.resolution.decision
        if decision == DisputeDecision.FAVOR_CREATOR:
            updates = [(dispute.creator, TrustAction.DISPUTE_WON), (dispute.respondent, TrustAction.DISPUTE_LOST)]
        elif decision == DisputeDecision.FAVOR_RESPONDENT:
            updates = [(dispute.respondent, TrustAction.DISPUTE_WON), (dispute.creator, TrustAction.FALSE_CLAIM)]
        else:
            return
        for participant, action in updates:
            if participant == SYSTEM_ACTOR:
                continue
            self.outbox.publish(
                "trust.update_required",
                {
                    "participant": participant,
                    "action": action.value,
                    "transaction_id": dispute.transaction_id,
                    "reason": f"dispute {dispute.id}",
                },
            )

    def _execute_actions(self, dispute: Dispute) -> None:
        resolution = dispute.resolution
        for action in resolution.actions:
            self.outbox.publish(
                "dispute.action_execute",
                {"dispute_id": dispute.id, "transaction_id": dispute.transaction_id, "action": action.value},
            )
        if resolution.compensation is not None:
            self.outbox.publish(
                "dispute.compensation_required",
                {
                    "dispute_id": dispute.id,
                    "transaction_id": dispute.transaction_id,
                    "compensation": resolution.compensation.to_dict(),
                },
            )

    # -------------------------------------------------------------------------
    # Status and escalation
    # -------------------------------------------------------------------------

    def update_status(
        self,
        dispute_id: str,
        status: DisputeStatus,
        actor: str,
        reason: str | None = None,
    ) -> Dispute:
        """Move a dispute along the status graph.

        ``RESOLVED`` records a void resolution by ``actor``; use
        :meth:`resolve_dispute` to decide in favor of a party.
        """
        status = DisputeStatus(status)
        if status == DisputeStatus.RESOLVED:
            return self.resolve_dispute(dispute_id, actor, DisputeDecision.VOID, reason or "Closed without decision")

        with self.locks.hold(self._key(dispute_id)):
            dispute = self._get(dispute_id)
            old_status = dispute.status
            self._set_status(dispute, status)
            self.outbox.publish(
                "dispute.status_changed",
                {
                    "dispute_id": dispute_id,
                    "old_status": old_status.value,
                    "new_status": status.value,
                    "actor": actor,
                    "reason": reason,
                },
            )
            if status == DisputeStatus.ESCALATED:
                self._escalate(dispute, actor, reason)
            return copy.deepcopy(dispute)

    def _set_status(self, dispute: Dispute, status: DisputeStatus) -> None:
        if status not in DISPUTE_TRANSITIONS[dispute.status]:
            raise InvalidTransitionError(
                f"Invalid dispute transition {dispute.status} -> {status} for {dispute.id}",
                current=dispute.status.value,
                target=status.value,
            )
        dispute.status = status
        dispute.updated = self.clock()

    def _escalate(self, dispute: Dispute, actor: str, reason: str | None) -> None:
        dispute.escalation_level += 1
        rule = self.find_escalation_rule(dispute)
        handler = rule.handler if rule else self.config.escalation.default_handler
        priority = rule.priority if rule else Priority.HIGH

        logger.warning(f"Dispute {dispute.id} escalated to level {dispute.escalation_level} -> {handler}")
        self.outbox.publish(
            "dispute.escalated",
            {
                "dispute_id": dispute.id,
                "transaction_id": dispute.transaction_id,
                "escalation_level": dispute.escalation_level,
                "handler": handler,
                "priority": str(priority),
                "actor": actor,
                "reason": reason,
            },
        )
        request_notification(
            self.outbox,
            [handler],
            f"Dispute {dispute.id} escalated (level {dispute.escalation_level})",
            priority=priority,
            transaction_id=dispute.transaction_id,
            brand=dispute.brand,
            data={"dispute_id": dispute.id, "reason": reason},
        )
        if rule is not None and rule.require_additional_evidence:
            self.evidence_store.request_evidence(
                dispute.transaction_id,
                [str(t) for t in self._type_config(dispute.type).evidence_required],
                [dispute.creator, dispute.respondent],
                f"Escalated dispute {dispute.id}",
            )

    def find_escalation_rule(self, dispute: Dispute) -> DisputeEscalationRule | None:
        """First configured rule whose condition matches the dispute."""
        view = self._escalation_view(dispute)
        for rule in self.config.escalation.rules:
            if rule.dispute_type is not None and rule.dispute_type != dispute.type:
                continue
            if rule.condition.matches(view):
                return rule
        return None

    def _escalation_view(self, dispute: Dispute) -> dict[str, Any]:
        view: dict[str, Any] = {
            "elapsed_hours": (self.clock() - dispute.created).total_seconds() / 3600,
            "dispute_type": dispute.type,
            "escalation_level": dispute.escalation_level,
            "transaction": {"id": dispute.transaction_id, "value": dispute.transaction_value},
        }
        if self.trust is not None:
            view["participant"] = {
                "trust_score": min(
                    self.trust.get_score_value(dispute.creator),
                    self.trust.get_score_value(dispute.respondent),
                )
            }
        return view

    # -------------------------------------------------------------------------
    # Deadlines
    # -------------------------------------------------------------------------

    def check_deadline(self, dispute_id: str, now: datetime | None = None) -> bool:
        """Escalate the dispute if it is unresolved past its deadline."""
        now = now or self.clock()
        with self.locks.hold(self._key(dispute_id)):
            dispute = self._disputes.get(dispute_id)
            if dispute is None or dispute.is_resolved or dispute.deadline_handled or now < dispute.deadline:
                return False
            dispute.deadline_handled = True
        self.scheduler.cancel(dispute_id)
        self.update_status(dispute_id, DisputeStatus.ESCALATED, SYSTEM_ACTOR, "Deadline exceeded")
        return True

    def check_deadlines(self, now: datetime | None = None) -> list[str]:
        """Sweep every open dispute's deadline. Returns the escalated ids."""
        escalated = []
        for dispute_id in list(self._disputes):
            try:
                if self.check_deadline(dispute_id, now):
                    escalated.append(dispute_id)
            except Exception:
                logger.exception(f"Deadline check failed for dispute {dispute_id}")
        return escalated

    def recover_timers(self) -> int:
        """Re-arm deadline timers for open disputes. Returns how many were armed."""
        armed = 0
        for dispute in list(self._disputes.values()):
            if dispute.is_resolved or dispute.deadline_handled:
                continue
            self._schedule_deadline(dispute)
            armed += 1
        if armed:
            logger.info(f"Re-armed {armed} dispute deadline timers")
        return armed

    def shutdown(self) -> None:
        self.scheduler.shutdown()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _get(self, dispute_id: str) -> Dispute:
        dispute = self._disputes.get(dispute_id)
        if dispute is None:
            raise NotFoundError("Dispute", dispute_id)
        return dispute

    def get_dispute(self, dispute_id: str) -> Dispute:
        with self.locks.hold(self._key(dispute_id)):
            return copy.deepcopy(self._get(dispute_id))

    def list_for_transaction(self, transaction_id: str) -> list[Dispute]:
        return [copy.deepcopy(d) for d in list(self._disputes.values()) if d.transaction_id == transaction_id]

    def list_open(self, participant: str | None = None) -> list[Dispute]:
        return [
            copy.deepcopy(d)
            for d in list(self._disputes.values())
            if not d.is_resolved and (participant is None or d.involves(participant))
        ]

    def list_all(self) -> list[Dispute]:
        return [copy.deepcopy(d) for d in list(self._disputes.values())]
