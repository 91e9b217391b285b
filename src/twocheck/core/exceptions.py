# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Custom exception hierarchy for the 2-Check engine.

Every synchronous engine call raises one of these typed errors. Background
sweeps catch and log them instead of propagating.
"""

from __future__ import annotations

from typing import Any


class TwoCheckException(Exception):  # noqa: N818
    """Base exception for all 2-Check errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationException(TwoCheckException):
    """Exception for malformed input.

    Raised when:
    - A required field is empty
    - A value is out of range (negative transaction value)
    - Sender and receiver are the same party
    """

    def __init__(self, message: str, field: str | None = None, value: Any = None):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, details)
        self.field = field
        self.value = value


class NotFoundError(TwoCheckException):
    """Exception for unknown transaction, dispute, participant or stop ids."""

    def __init__(self, resource_type: str, resource_id: str):
        message = f"{resource_type} not found: {resource_id}"
        details = {
            "resource_type": resource_type,
            "resource_id": resource_id,
        }
        super().__init__(message, details)
        self.resource_type = resource_type
        self.resource_id = resource_id


class AlreadyExistsError(TwoCheckException):
    """Exception raised when an id is reused on creation."""

    def __init__(self, resource_type: str, resource_id: str):
        message = f"{resource_type} already exists: {resource_id}"
        super().__init__(message, {"resource_type": resource_type, "existing_id": resource_id})
        self.resource_type = resource_type
        self.existing_id = resource_id


class InvalidTransitionError(TwoCheckException):
    """Exception for state graph violations.

    Raised when:
    - The target state is not adjacent to the current state
    - The entity is already in a terminal state
    - A once-only action (resolution, compensation approval) is repeated
    """

    def __init__(self, message: str, current: str | None = None, target: str | None = None):
        details = {}
        if current is not None:
            details["current"] = current
        if target is not None:
            details["target"] = target
        super().__init__(message, details)
        self.current = current
        self.target = target


class UnauthorizedError(TwoCheckException):
    """Exception raised when the actor is not the party the action requires."""

    def __init__(self, message: str, actor: str | None = None):
        super().__init__(message, {"actor": actor} if actor else {})
        self.actor = actor


class ConfigException(TwoCheckException):
    """Exception for invalid configuration, raised at load time."""

    def __init__(self, message: str, errors: list[str] | None = None):
        details = {}
        if errors:
            details["errors"] = errors
        super().__init__(message, details)
        self.errors = errors or []


class ConfigMissingError(TwoCheckException):
    """Exception for a lookup with no configured entry.

    Escalation and dispute engines log this and treat it as a no-op;
    the trust system raises it for an action with no scoring rule.
    """

    def __init__(self, section: str, key: str):
        super().__init__(f"No {section} configuration for: {key}", {"section": section, "key": key})
        self.section = section
        self.key = key


class EvidenceValidationError(TwoCheckException):
    """Exception raised inside an evidence validator.

    Never escapes the evidence store; it is converted into an invalid,
    zero-confidence validation result.
    """

    def __init__(self, message: str, evidence_type: str | None = None):
        super().__init__(message, {"evidence_type": evidence_type} if evidence_type else {})
        self.evidence_type = evidence_type


class TransactionBlockedError(TwoCheckException):
    """Exception raised when anomaly analysis recommends blocking a submission."""

    def __init__(self, transaction_id: str, risk_score: float, reasons: list[str], result: Any = None):
        super().__init__(
            f"Transaction {transaction_id} blocked (risk {risk_score:.1f})",
            {"transaction_id": transaction_id, "risk_score": risk_score, "reasons": reasons},
        )
        self.transaction_id = transaction_id
        self.risk_score = risk_score
        self.reasons = reasons
        self.result = result


class TransactionHaltedError(TwoCheckException):
    """Exception raised when acting on a transaction held by an emergency stop."""

    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction {transaction_id} is halted by an emergency stop", {"transaction_id": transaction_id})
        self.transaction_id = transaction_id


class LedgerError(TwoCheckException):
    """Exception for ledger client transport failures."""

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message, {"operation": operation} if operation else {})
        self.operation = operation
