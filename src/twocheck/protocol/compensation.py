"""Compensation for timeouts, late or wrong deliveries and lost disputes.

A trigger (``timeout``, ``delivery_delay``, ``wrong_item``,
``quality_issue``, ``dispute_resolved``) selects the first rule that
applies to the transaction. The amount is a percentage of the
transaction value, a fixed sum, or a severity-based share, capped at the
rule maximum and rounded to cents.

Auto-approvable amounts up to the configured limit are paid out at once;
everything else waits in the approval queue. Each calculation is
approved or rejected exactly once.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from ..core.exceptions import InvalidTransitionError, NotFoundError
from ..core.interfaces import Clock, utc_now
from ..core.outbox import Outbox
from ..core.protocol_config import CompensationSettings
from ..core.types import TransactionState
from .notifications import request_notification
from .state_machine import SYSTEM_ACTOR, Transaction

logger = logging.getLogger(__name__)

QUALITY_SEVERITY_SHARES = {"low": 0.1, "medium": 0.3, "high": 0.5}


class CompensationTrigger(StrEnum):
    TIMEOUT = "timeout"
    DELIVERY_DELAY = "delivery_delay"
    WRONG_ITEM = "wrong_item"
    QUALITY_ISSUE = "quality_issue"
    DISPUTE_RESOLVED = "dispute_resolved"


class CalculationMethod(StrEnum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    SEVERITY = "severity"


class CompensationStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CompensationRule(BaseModel):
    id: str
    name: str
    trigger: CompensationTrigger
    method: CalculationMethod
    value: float = Field(default=0, ge=0)
    max_compensation: float | None = Field(default=None, gt=0)
    auto_approve: bool = False
    requires_evidence: bool = False
    required_state: TransactionState | None = None

    def applies_to(self, transaction: Transaction) -> bool:
        return self.required_state is None or transaction.state == self.required_state


DEFAULT_RULES = [
    CompensationRule(
        id="timeout_compensation",
        name="Transaction Timeout Compensation",
        trigger=CompensationTrigger.TIMEOUT,
        method=CalculationMethod.PERCENTAGE,
        value=0.02,
        max_compensation=1000,
        auto_approve=True,
        required_state=TransactionState.TIMEOUT,
    ),
    CompensationRule(
        id="late_delivery",
        name="Late Delivery Compensation",
        trigger=CompensationTrigger.DELIVERY_DELAY,
        method=CalculationMethod.PERCENTAGE,
        value=0.05,
        max_compensation=5000,
        auto_approve=True,
        requires_evidence=True,
    ),
    CompensationRule(
        id="wrong_item",
        name="Wrong Item Compensation",
        trigger=CompensationTrigger.WRONG_ITEM,
        method=CalculationMethod.FIXED,
        value=500,
        requires_evidence=True,
    ),
    CompensationRule(
        id="quality_issue",
        name="Quality Issue Compensation",
        trigger=CompensationTrigger.QUALITY_ISSUE,
        method=CalculationMethod.SEVERITY,
        requires_evidence=True,
    ),
    CompensationRule(
        id="dispute_compensation",
        name="Dispute Resolution Compensation",
        trigger=CompensationTrigger.DISPUTE_RESOLVED,
        method=CalculationMethod.PERCENTAGE,
        value=1.0,
        requires_evidence=True,
    ),
]


@dataclass
class CompensationCalculation:
    id: str
    transaction_id: str
    base_amount: float
    compensation_amount: float
    rule_id: str
    rule_name: str
    reason: str
    created: datetime
    status: CompensationStatus = CompensationStatus.PENDING
    approved_by: str | None = None
    decided_at: datetime | None = None
    rejection_reason: str | None = None
    recipients: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "base_amount": self.base_amount,
            "compensation_amount": self.compensation_amount,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "reason": self.reason,
            "status": self.status.value,
            "approved_by": self.approved_by,
            "created": self.created.isoformat(),
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
            "rejection_reason": self.rejection_reason,
        }


class CompensationRuleEngine:
    """Calculates, queues and settles compensation payments."""

    def __init__(
        self,
        settings: CompensationSettings,
        outbox: Outbox,
        clock: Clock = utc_now,
        rules: list[CompensationRule] | None = None,
    ):
        self.settings = settings
        self.outbox = outbox
        self.clock = clock
        self._lock = threading.Lock()
        self._rules: dict[str, CompensationRule] = {}
        self._calculations: dict[str, CompensationCalculation] = {}
        for rule in DEFAULT_RULES if rules is None else rules:
            self.add_rule(rule)

    def add_rule(self, rule: CompensationRule) -> None:
        with self._lock:
            self._rules[rule.id] = rule
        logger.debug(f"Compensation rule {rule.id} registered for {rule.trigger}")

    def rules(self) -> list[CompensationRule]:
        with self._lock:
            return list(self._rules.values())

    def find_rule(self, transaction: Transaction, trigger: CompensationTrigger) -> CompensationRule | None:
        for rule in self.rules():
            if rule.trigger == trigger and rule.applies_to(transaction):
                return rule
        return None

    # -------------------------------------------------------------------------
    # Calculation
    # -------------------------------------------------------------------------

    def calculate_compensation(
        self,
        transaction: Transaction,
        trigger: CompensationTrigger | str,
        evidence: dict[str, Any] | None = None,
    ) -> CompensationCalculation | None:
        """Work out compensation for ``transaction``.

        Returns:
            The calculation, or None when compensation is disabled, no rule
            applies, or the rule needs evidence that was not supplied
        """
        if not self.settings.enabled:
            return None
        trigger = CompensationTrigger(trigger)
        rule = self.find_rule(transaction, trigger)
        if rule is None:
            logger.debug(f"No compensation rule for {trigger} on {transaction.id}")
            return None

        if rule.requires_evidence and not evidence:
            self.outbox.publish(
                "compensation.evidence_required",
                {"transaction_id": transaction.id, "rule": rule.id, "reason": "Evidence required for compensation"},
            )
            return None

        calculation = CompensationCalculation(
            id=f"CMP-{uuid.uuid4().hex[:12]}",
            transaction_id=transaction.id,
            base_amount=transaction.value,
            compensation_amount=self.calculate_amount(transaction, rule, evidence),
            rule_id=rule.id,
            rule_name=rule.name,
            reason=f"{rule.name}: {trigger.value}",
            created=self.clock(),
            recipients=(transaction.sender, transaction.receiver),
        )
        with self._lock:
            self._calculations[calculation.id] = calculation

        logger.info(f"Compensation {calculation.id} for {transaction.id}: {calculation.compensation_amount} ({rule.id})")
        self.outbox.publish("compensation.calculated", calculation.to_dict())

        if rule.auto_approve and calculation.compensation_amount <= self.settings.max_auto_approval_amount:
            self._settle(calculation.id, CompensationStatus.APPROVED, SYSTEM_ACTOR)
        else:
            self.outbox.publish(
                "compensation.approval_required",
                {
                    "calculation": calculation.to_dict(),
                    "reason": "Exceeds auto-approval limit or requires manual review",
                },
            )
        return self.get_calculation(calculation.id)

    @staticmethod
    def calculate_amount(
        transaction: Transaction, rule: CompensationRule, evidence: dict[str, Any] | None = None
    ) -> float:
        if rule.method == CalculationMethod.PERCENTAGE:
            amount = transaction.value * rule.value
        elif rule.method == CalculationMethod.FIXED:
            amount = rule.value
        else:
            severity = (evidence or {}).get("severity", "medium")
            amount = transaction.value * QUALITY_SEVERITY_SHARES.get(severity, QUALITY_SEVERITY_SHARES["medium"])
        if rule.max_compensation is not None:
            amount = min(amount, rule.max_compensation)
        return round(amount, 2)

    # -------------------------------------------------------------------------
    # Approval
    # -------------------------------------------------------------------------

    def approve(self, calculation_id: str, approved_by: str) -> CompensationCalculation:
        """Approve and pay out a queued calculation.

        Raises:
            NotFoundError: Unknown calculation
            InvalidTransitionError: Already approved or rejected
        """
        return self._settle(calculation_id, CompensationStatus.APPROVED, approved_by)

    def reject(self, calculation_id: str, rejected_by: str, reason: str) -> CompensationCalculation:
        return self._settle(calculation_id, CompensationStatus.REJECTED, rejected_by, reason)

    def _settle(
        self,
        calculation_id: str,
        status: CompensationStatus,
        actor: str,
        reason: str | None = None,
    ) -> CompensationCalculation:
        with self._lock:
            calculation = self._calculations.get(calculation_id)
            if calculation is None:
                raise NotFoundError("Compensation", calculation_id)
            if calculation.status != CompensationStatus.PENDING:
                raise InvalidTransitionError(
                    f"Compensation {calculation_id} is already {calculation.status}",
                    current=calculation.status.value,
                    target=status.value,
                )
            calculation.status = status
            calculation.approved_by = actor if status == CompensationStatus.APPROVED else None
            calculation.decided_at = self.clock()
            calculation.rejection_reason = reason
            snapshot = replace(calculation)

        if status == CompensationStatus.REJECTED:
            logger.info(f"Compensation {calculation_id} rejected by {actor}: {reason}")
            self.outbox.publish(
                "compensation.rejected", {"calculation": snapshot.to_dict(), "rejected_by": actor, "reason": reason}
            )
            return snapshot

        logger.info(
            f"Compensation {calculation_id} approved by {actor}: "
            f"{snapshot.compensation_amount} from {self.settings.compensation_account}"
        )
        self.outbox.publish(
            "compensation.processed",
            {"calculation": snapshot.to_dict(), "account": self.settings.compensation_account},
        )
        request_notification(
            self.outbox,
            list(snapshot.recipients),
            f"Compensation processed for transaction {snapshot.transaction_id}",
            transaction_id=snapshot.transaction_id,
            data={"calculation_id": snapshot.id, "amount": snapshot.compensation_amount},
        )
        return snapshot

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_calculation(self, calculation_id: str) -> CompensationCalculation:
        with self._lock:
            calculation = self._calculations.get(calculation_id)
            if calculation is None:
                raise NotFoundError("Compensation", calculation_id)
            return replace(calculation)

    def get_for_transaction(self, transaction_id: str) -> list[CompensationCalculation]:
        with self._lock:
            return [
                replace(c) for c in self._calculations.values() if c.transaction_id == transaction_id
            ]

    def get_pending(self) -> list[CompensationCalculation]:
        with self._lock:
            return [
                replace(c)
                for c in self._calculations.values()
                if c.status == CompensationStatus.PENDING
            ]

    def get_statistics(self) -> dict[str, Any]:
        with self._lock:
            calculations = list(self._calculations.values())
        approved = [c for c in calculations if c.status == CompensationStatus.APPROVED]
        by_rule: dict[str, int] = {}
        for c in calculations:
            by_rule[c.rule_id] = by_rule.get(c.rule_id, 0) + 1
        approved_amount = round(sum(c.compensation_amount for c in approved), 2)
        return {
            "total": len(calculations),
            "pending": sum(1 for c in calculations if c.status == CompensationStatus.PENDING),
            "approved": len(approved),
            "rejected": sum(1 for c in calculations if c.status == CompensationStatus.REJECTED),
            "approved_amount": approved_amount,
            "average_approved": round(approved_amount / len(approved), 2) if approved else 0.0,
            "by_rule": by_rule,
        }
