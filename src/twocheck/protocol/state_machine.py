# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Transaction state machine for 2-Check custody transfers.

A transaction moves CREATED -> SENT -> RECEIVED -> VALIDATED on the happy
path. Every move is validated against the configured state graph and
appended to the transaction's history, which is never rewritten.

Side effects are published to the outbox after the state change:
- SENT notifies the receiver
- DISPUTED and TIMEOUT notify both parties and the brand owner
- VALIDATED requests a trust update for both parties, weighted by value

The timeout sweep moves overdue transactions to TIMEOUT and sends
reminders to whichever party owes the next confirmation.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from collections.abc import Callable
from typing import Any

from ..core.exceptions import (
    AlreadyExistsError,
    InvalidTransitionError,
    NotFoundError,
    TransactionHaltedError,
    UnauthorizedError,
    ValidationException,
)
from ..core.interfaces import Clock, utc_now
from ..core.locks import KeyedLock
from ..core.outbox import Outbox
from ..core.protocol_config import ConsensusConfig
from ..core.types import Priority, TransactionState, TrustAction
from .notifications import BRAND_OWNER, request_notification

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class StateTransition:
    """One recorded edge in a transaction's history."""

    from_state: TransactionState
    to_state: TransactionState
    timestamp: datetime
    actor: str
    reason: str | None = None
    evidence: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.from_state.value,
            "to": self.to_state.value,
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
            "reason": self.reason,
            "evidence": self.evidence,
        }


@dataclass
class Transaction:
    """A custody transfer attempt between two parties."""

    id: str
    sender: str
    receiver: str
    item_id: str
    value: float
    created: datetime
    updated: datetime
    timeout_at: datetime
    state: TransactionState = TransactionState.CREATED
    state_history: list[StateTransition] = field(default_factory=list)
    item_type: str = "item"
    brand: str | None = None
    batch_id: str | None = None
    stakeholders: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    sender_confirmed: datetime | None = None
    receiver_confirmed: datetime | None = None
    reminders_sent: list[str] = field(default_factory=list)
    timeout_category: str | None = None

    @property
    def transaction_type(self) -> str | None:
        return self.metadata.get("transaction_type")

    def other_party(self, participant: str) -> str:
        return self.receiver if participant == self.sender else self.sender

    def is_participant(self, participant: str) -> bool:
        return participant in (self.sender, self.receiver)

    def responsible_party(self) -> str | None:
        """The party that owes the next confirmation, if any."""
        if self.state == TransactionState.CREATED:
            return self.sender
        if self.state == TransactionState.SENT:
            return self.receiver
        return None

    def overdue_party(self) -> str:
        """The party whose confirmation is missing, also after a timeout or escalation."""
        pending = self.responsible_party()
        if pending is not None:
            return pending
        for transition in reversed(self.state_history):
            if transition.from_state == TransactionState.CREATED:
                return self.sender
            if transition.from_state == TransactionState.SENT:
                return self.receiver
        return self.sender

    def elapsed_percent(self, now: datetime) -> float:
        window = (self.timeout_at - self.created).total_seconds()
        if window <= 0:
            return 100.0
        return max(0.0, (now - self.created).total_seconds() / window * 100)

    def view(self) -> dict[str, Any]:
        """Flat mapping used to evaluate configured conditions."""
        return {
            **self.metadata,
            "id": self.id,
            "sender": self.sender,
            "receiver": self.receiver,
            "item_id": self.item_id,
            "item_type": self.item_type,
            "brand": self.brand,
            "value": self.value,
            "state": self.state.value,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sender": self.sender,
            "receiver": self.receiver,
            "item_id": self.item_id,
            "item_type": self.item_type,
            "value": self.value,
            "brand": self.brand,
            "batch_id": self.batch_id,
            "stakeholders": list(self.stakeholders),
            "metadata": dict(self.metadata),
            "state": self.state.value,
            "created": self.created.isoformat(),
            "updated": self.updated.isoformat(),
            "timeout_at": self.timeout_at.isoformat(),
            "timeout_category": self.timeout_category,
            "sender_confirmed": self.sender_confirmed.isoformat() if self.sender_confirmed else None,
            "receiver_confirmed": self.receiver_confirmed.isoformat() if self.receiver_confirmed else None,
            "state_history": [t.to_dict() for t in self.state_history],
        }


@dataclass
class SweepResult:
    """What one timeout sweep did."""

    timed_out: list[str] = field(default_factory=list)
    reminders: list[tuple[str, str]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timed_out": list(self.timed_out),
            "reminders": [{"transaction_id": t, "threshold": r} for t, r in self.reminders],
            "errors": list(self.errors),
        }


class TransactionStateMachine:
    """Owns transactions and every change to their state.

    Each mutation runs under the transaction's key in ``locks``. Queries
    return copies, so callers cannot rewrite history.

    ``is_halted`` is consulted inside that critical section: a halted
    transaction refuses confirmations and is skipped by the timeout sweep.
    """

    def __init__(
        self,
        config: ConsensusConfig,
        outbox: Outbox,
        clock: Clock = utc_now,
        locks: KeyedLock | None = None,
        is_halted: Callable[[str], bool] | None = None,
    ):
        self.config = config
        self.outbox = outbox
        self.clock = clock
        self.locks = locks or KeyedLock()
        self.is_halted = is_halted or (lambda transaction_id: False)
        self._transactions: dict[str, Transaction] = {}

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_transaction(
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
        context: dict[str, Any] | None = None,
        timeout_extension: float = 1.0,
    ) -> Transaction:
        """Create a transaction in CREATED.

        Args:
            context: Extra values visible to timeout category conditions
                but not stored (``relationship.trust_score``)
            timeout_extension: Multiplier applied to the computed timeout

        Raises:
            AlreadyExistsError: If the id is taken
            ValidationException: On empty parties or a negative value
        """
        if not transaction_id:
            raise ValidationException("Transaction id is required", "id")
        if not sender or not receiver:
            raise ValidationException("Sender and receiver are required", "sender")
        if sender == receiver:
            raise ValidationException("Sender and receiver must differ", "receiver", receiver)
        if value < 0:
            raise ValidationException("Transaction value cannot be negative", "value", value)

        with self.locks.hold(transaction_id):
            if transaction_id in self._transactions:
                raise AlreadyExistsError("Transaction", transaction_id)

            now = self.clock()
            transaction = Transaction(
                id=transaction_id,
                sender=sender,
                receiver=receiver,
                item_id=item_id,
                value=value,
                created=now,
                updated=now,
                timeout_at=now,
                item_type=item_type,
                brand=brand,
                batch_id=batch_id,
                stakeholders=list(stakeholders or []),
                metadata=dict(metadata or {}),
            )
            hours, category = self._timeout_hours(transaction, context or {})
            transaction.timeout_at = now + timedelta(hours=hours * timeout_extension)
            transaction.timeout_category = category
            initial = self.config.states.initial
            transaction.state = initial
            transaction.state_history.append(
                StateTransition(initial, initial, now, sender, reason="created")
            )
            self._transactions[transaction_id] = transaction

        logger.info(
            f"Created transaction {transaction_id} {sender} -> {receiver} "
            f"(value={value}, timeout={transaction.timeout_at.isoformat()})"
        )
        self.outbox.publish("transaction.created", {"transaction": transaction.to_dict()})
        return copy.deepcopy(transaction)

    def _timeout_hours(self, transaction: Transaction, context: dict[str, Any]) -> tuple[float, str | None]:
        view = {**transaction.view(), **context}
        for category in self.config.timeouts.categories:
            if category.condition.matches(view):
                return category.timeout, category.name
        return self.config.timeouts.default, None

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def transition_state(
        self,
        transaction_id: str,
        new_state: TransactionState,
        actor: str,
        reason: str | None = None,
        evidence: Any = None,
    ) -> Transaction:
        """Move a transaction along one edge of the state graph.

        Raises:
            NotFoundError: Unknown transaction
            InvalidTransitionError: Terminal state or non-adjacent target
        """
        with self.locks.hold(transaction_id):
            transaction = self._get(transaction_id)
            previous = self._apply(transaction, TransactionState(new_state), actor, reason, evidence)
            snapshot = copy.deepcopy(transaction)
        self._on_state_entered(snapshot, previous)
        return snapshot

    def _apply(
        self,
        transaction: Transaction,
        new_state: TransactionState,
        actor: str,
        reason: str | None,
        evidence: Any,
    ) -> TransactionState:
        current = transaction.state
        graph = self.config.states
        if graph.is_terminal(current):
            raise InvalidTransitionError(
                f"Transaction {transaction.id} is in terminal state {current}",
                current=current.value,
                target=new_state.value,
            )
        if not graph.can_transition(current, new_state):
            raise InvalidTransitionError(
                f"Invalid transition {current} -> {new_state} for transaction {transaction.id}",
                current=current.value,
                target=new_state.value,
            )
        now = self.clock()
        transaction.state_history.append(StateTransition(current, new_state, now, actor, reason, evidence))
        transaction.state = new_state
        transaction.updated = now
        logger.info(f"Transaction {transaction.id}: {current} -> {new_state} by {actor}")
        return current

    def _on_state_entered(self, transaction: Transaction, previous: TransactionState) -> None:
        state = transaction.state
        parties = [transaction.sender, transaction.receiver]

        if state == TransactionState.SENT:
            request_notification(
                self.outbox,
                [transaction.receiver],
                f"Incoming {transaction.item_type}: please confirm receipt",
                transaction_id=transaction.id,
                brand=transaction.brand,
                data={"sender": transaction.sender, "item_id": transaction.item_id},
            )
        elif state == TransactionState.DISPUTED:
            request_notification(
                self.outbox,
                [*parties, BRAND_OWNER],
                f"Transaction {transaction.id} disputed",
                priority=Priority.HIGH,
                transaction_id=transaction.id,
                brand=transaction.brand,
            )
        elif state == TransactionState.TIMEOUT:
            request_notification(
                self.outbox,
                [*parties, BRAND_OWNER],
                f"Transaction {transaction.id} timed out",
                priority=Priority.HIGH,
                transaction_id=transaction.id,
                brand=transaction.brand,
            )
            self._request_trust_update(transaction.overdue_party(), TrustAction.CAUSED_TIMEOUT, transaction)
        elif state == TransactionState.VALIDATED:
            for participant in parties:
                self._request_trust_update(participant, TrustAction.SUCCESSFUL_TRANSACTION, transaction)

        self.outbox.publish(
            "transaction.state_changed",
            {
                "transaction_id": transaction.id,
                "from": previous.value,
                "to": state.value,
                "actor": transaction.state_history[-1].actor,
                "transaction": transaction.to_dict(),
            },
        )

    def _request_trust_update(
        self,
        participant: str,
        action: TrustAction,
        transaction: Transaction,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.outbox.publish(
            "trust.update_required",
            {
                "participant": participant,
                "action": action.value,
                "value": transaction.value,
                "transaction_id": transaction.id,
                "context": context or {},
            },
        )

    # -------------------------------------------------------------------------
    # Protocol actions
    # -------------------------------------------------------------------------

    def confirm_sent(self, transaction_id: str, sender_id: str, evidence: Any = None) -> Transaction:
        """Sender confirms dispatch. Requires CREATED."""
        with self.locks.hold(transaction_id):
            transaction = self._get(transaction_id)
            if transaction.sender != sender_id:
                raise UnauthorizedError(f"Only the sender can confirm sending {transaction_id}", actor=sender_id)
            self._ensure_not_halted(transaction_id)
            if transaction.state != TransactionState.CREATED:
                raise InvalidTransitionError(
                    f"Cannot confirm sending from state {transaction.state}",
                    current=transaction.state.value,
                    target=TransactionState.SENT.value,
                )
            previous = self._apply(transaction, TransactionState.SENT, sender_id, "sender confirmed", evidence)
            transaction.sender_confirmed = transaction.updated
            context = self._confirmation_context(transaction)
            snapshot = copy.deepcopy(transaction)

        self._request_confirmation_score(sender_id, snapshot, context)
        self._on_state_entered(snapshot, previous)
        return snapshot

    def confirm_received(self, transaction_id: str, receiver_id: str, evidence: Any = None) -> Transaction:
        """Receiver confirms receipt. Requires SENT; may cascade to VALIDATED."""
        with self.locks.hold(transaction_id):
            transaction = self._get(transaction_id)
            if transaction.receiver != receiver_id:
                raise UnauthorizedError(f"Only the receiver can confirm receipt of {transaction_id}", actor=receiver_id)
            self._ensure_not_halted(transaction_id)
            if transaction.state != TransactionState.SENT:
                raise InvalidTransitionError(
                    f"Cannot confirm receipt from state {transaction.state}",
                    current=transaction.state.value,
                    target=TransactionState.RECEIVED.value,
                )
            previous = self._apply(transaction, TransactionState.RECEIVED, receiver_id, "receiver confirmed", evidence)
            transaction.receiver_confirmed = transaction.updated
            context = self._confirmation_context(transaction)
            received = copy.deepcopy(transaction)

            validated = None
            validation = self.config.validation
            if validation.auto_validate_on_both_confirmations and transaction.sender_confirmed:
                self._apply(transaction, TransactionState.VALIDATED, SYSTEM_ACTOR, "both parties confirmed", None)
                validated = copy.deepcopy(transaction)

        self._request_confirmation_score(receiver_id, received, context)
        self._on_state_entered(received, previous)
        if validated is not None:
            self._on_state_entered(validated, TransactionState.RECEIVED)
            return validated
        return received

    def _ensure_not_halted(self, transaction_id: str) -> None:
        if self.is_halted(transaction_id):
            raise TransactionHaltedError(transaction_id)

    def _confirmation_context(self, transaction: Transaction) -> dict[str, Any]:
        return {
            "elapsed_ratio": transaction.elapsed_percent(transaction.updated) / 100,
            "reminders_sent": len(transaction.reminders_sent),
        }

    def _request_confirmation_score(self, participant: str, transaction: Transaction, context: dict[str, Any]) -> None:
        action = TrustAction.LATE_CONFIRMATION if context["reminders_sent"] else TrustAction.ON_TIME_CONFIRMATION
        self._request_trust_update(participant, action, transaction, context)

    def create_dispute(
        self,
        transaction_id: str,
        creator: str,
        dispute_type: str,
        evidence: Any = None,
    ) -> Transaction:
        """A participant disputes the transfer. Requires SENT or RECEIVED."""
        with self.locks.hold(transaction_id):
            transaction = self._get(transaction_id)
            if not transaction.is_participant(creator):
                raise UnauthorizedError(f"Only participants can dispute {transaction_id}", actor=creator)
            if transaction.state not in (TransactionState.SENT, TransactionState.RECEIVED):
                raise InvalidTransitionError(
                    f"Cannot dispute from state {transaction.state}",
                    current=transaction.state.value,
                    target=TransactionState.DISPUTED.value,
                )
            previous = self._apply(transaction, TransactionState.DISPUTED, creator, f"dispute: {dispute_type}", evidence)
            snapshot = copy.deepcopy(transaction)
        self._on_state_entered(snapshot, previous)
        return snapshot

    def cancel_transaction(self, transaction_id: str, actor: str, reason: str | None = None) -> Transaction:
        """Either party withdraws a transaction that has not been sent."""
        with self.locks.hold(transaction_id):
            transaction = self._get(transaction_id)
            if not transaction.is_participant(actor):
                raise UnauthorizedError(f"Only participants can cancel {transaction_id}", actor=actor)
            previous = self._apply(transaction, TransactionState.CANCELLED, actor, reason or "cancelled", None)
            snapshot = copy.deepcopy(transaction)
        self._on_state_entered(snapshot, previous)
        return snapshot

    # -------------------------------------------------------------------------
    # Timeout sweep
    # -------------------------------------------------------------------------

    def sweep_timeouts(self, now: datetime | None = None) -> SweepResult:
        """Time out overdue transactions and send due reminders.

        Each transaction is handled in its own critical section. A failure
        on one is logged and the sweep moves on. Halted transactions are
        left untouched until resumed.
        """
        now = now or self.clock()
        result = SweepResult()
        for transaction_id in list(self._transactions):
            try:
                self._sweep_one(transaction_id, now, result)
            except Exception:
                logger.exception(f"Timeout sweep failed for transaction {transaction_id}")
                result.errors.append(transaction_id)
        if result.timed_out or result.reminders:
            logger.info(f"Timeout sweep: {len(result.timed_out)} timed out, {len(result.reminders)} reminders")
        return result

    def _sweep_one(self, transaction_id: str, now: datetime, result: SweepResult) -> None:
        with self.locks.hold(transaction_id):
            transaction = self._transactions[transaction_id]
            graph = self.config.states
            if graph.is_terminal(transaction.state) or self.is_halted(transaction_id):
                return

            if now >= transaction.timeout_at:
                if not graph.can_transition(transaction.state, TransactionState.TIMEOUT):
                    return
                previous = self._apply(transaction, TransactionState.TIMEOUT, SYSTEM_ACTOR, "confirmation deadline passed", None)
                snapshot = copy.deepcopy(transaction)
                result.timed_out.append(transaction_id)
                reminder = None
            else:
                reminder = self._due_reminder(transaction, now)
                if reminder is None:
                    return
                snapshot = copy.deepcopy(transaction)

        if reminder is None:
            self._on_state_entered(snapshot, previous)
            return

        result.reminders.append((transaction_id, reminder))
        hours_left = (snapshot.timeout_at - now).total_seconds() / 3600
        request_notification(
            self.outbox,
            [snapshot.responsible_party() or snapshot.receiver],
            f"Reminder: confirm {snapshot.item_type} for transaction {snapshot.id}",
            priority=Priority.HIGH if reminder == "final" else Priority.NORMAL,
            transaction_id=snapshot.id,
            brand=snapshot.brand,
            data={"threshold": reminder, "hours_left": round(hours_left, 2)},
        )

    def _due_reminder(self, transaction: Transaction, now: datetime) -> str | None:
        """Mark and return the tightest newly crossed reminder threshold.

        Only thresholds shorter than the transaction's full window count, and
        a sweep that crosses several at once sends a single reminder.
        """
        if transaction.responsible_party() is None:
            return None
        window_hours = (transaction.timeout_at - transaction.created).total_seconds() / 3600
        hours_left = (transaction.timeout_at - now).total_seconds() / 3600
        crossed = [
            name
            for name, hours in self.config.timeouts.reminders.thresholds()
            if hours < window_hours and hours_left <= hours
        ]
        fresh = [name for name in crossed if name not in transaction.reminders_sent]
        if not fresh:
            return None
        transaction.reminders_sent.extend(fresh)
        return fresh[-1]

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _get(self, transaction_id: str) -> Transaction:
        transaction = self._transactions.get(transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction", transaction_id)
        return transaction

    def get_transaction(self, transaction_id: str) -> Transaction:
        with self.locks.hold(transaction_id):
            return copy.deepcopy(self._get(transaction_id))

    def exists(self, transaction_id: str) -> bool:
        return transaction_id in self._transactions

    def is_terminal(self, transaction_id: str) -> bool:
        return self.config.states.is_terminal(self._get(transaction_id).state)

    def list_by_state(self, state: TransactionState) -> list[Transaction]:
        return [copy.deepcopy(t) for t in list(self._transactions.values()) if t.state == state]

    def list_pending(self, participant: str) -> list[Transaction]:
        """Non-terminal transactions the participant is part of."""
        graph = self.config.states
        return [
            copy.deepcopy(t)
            for t in list(self._transactions.values())
            if t.is_participant(participant) and not graph.is_terminal(t.state)
        ]

    def list_all(self) -> list[Transaction]:
        return [copy.deepcopy(t) for t in list(self._transactions.values())]

    def list_active(self) -> list[Transaction]:
        graph = self.config.states
        return [copy.deepcopy(t) for t in list(self._transactions.values()) if not graph.is_terminal(t.state)]
