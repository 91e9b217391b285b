"""Shared enumerations for the 2-Check engines."""

from __future__ import annotations

from enum import StrEnum


class TransactionState(StrEnum):
    """State of a custody transfer."""

    CREATED = "CREATED"
    SENT = "SENT"
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    DISPUTED = "DISPUTED"
    TIMEOUT = "TIMEOUT"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"
    CANCELLED = "CANCELLED"


class TrustAction(StrEnum):
    """Every action that can move a trust score.

    Rule-scored actions must have an entry in the positive or negative
    rule tables. The remaining actions are applied as raw deltas.
    """

    # Rule-scored
    SUCCESSFUL_TRANSACTION = "successful_transaction"
    ON_TIME_CONFIRMATION = "on_time_confirmation"
    DISPUTE_RESOLVED_FAVORABLY = "dispute_resolved_favorably"
    DISPUTE_WON = "dispute_won"
    ACCURATE_REPORTING = "accurate_reporting"
    BATCH_SUCCESS = "batch_success"
    LATE_CONFIRMATION = "late_confirmation"
    CAUSED_TIMEOUT = "caused_timeout"
    DISPUTED_TRANSACTION = "disputed_transaction"
    DISPUTE_LOST = "dispute_lost"
    FALSE_CLAIM = "false_claim"
    EMERGENCY_STOP_UNJUSTIFIED = "emergency_stop_unjustified"

    # Raw deltas and bookkeeping
    ACCOUNT_CREATED = "account_created"
    INACTIVITY_DECAY = "inactivity_decay"
    CLEAN_RECORD_BONUS = "clean_record_bonus"
    VOLUME_BONUS = "volume_bonus"
    ESCALATION_PENALTY = "escalation_penalty"
    SECURITY_ALERT_PENALTY = "security_alert_penalty"
    FLAGGED = "flagged"


class Capability(StrEnum):
    """Capabilities gated by trust level benefits."""

    BATCH_OPERATIONS = "batch_operations"
    AUTO_APPROVAL = "auto_approval"
    EXTENDED_TIMEOUT = "extended_timeout"
    API_ACCESS = "api_access"


class EscalationAction(StrEnum):
    """Actions an escalation level can take."""

    SEND_REMINDER = "send_reminder"
    URGENT_NOTIFICATION = "urgent_notification"
    AUTO_ESCALATE = "auto_escalate"
    SUPPORT_TICKET = "support_ticket"
    HALT_PRODUCTION = "halt_production"
    CREATE_DISPUTE = "create_dispute"
    SECURITY_ALERT = "security_alert"


class DisputeStatus(StrEnum):
    """Status of a dispute."""

    OPEN = "OPEN"
    INVESTIGATING = "INVESTIGATING"
    AWAITING_EVIDENCE = "AWAITING_EVIDENCE"
    UNDER_REVIEW = "UNDER_REVIEW"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"


class DisputeDecision(StrEnum):
    """Outcome of a dispute."""

    FAVOR_CREATOR = "favor_creator"
    FAVOR_RESPONDENT = "favor_respondent"
    SPLIT = "split"
    VOID = "void"


class ResolutionAction(StrEnum):
    """Follow-up action attached to a resolution."""

    REFUND = "refund"
    REPLACEMENT = "replacement"
    CREDIT = "credit"
    PENALTY = "penalty"
    WARNING = "warning"


class DisputeEvidenceType(StrEnum):
    """Kinds of evidence attached to a dispute."""

    PHOTO = "photo"
    DOCUMENT = "document"
    TRACKING = "tracking"
    TESTIMONY = "testimony"
    SYSTEM_LOG = "system_log"


class Severity(StrEnum):
    """Severity of an anomaly pattern."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecommendedAction(StrEnum):
    """What the anomaly detector recommends for a submission."""

    PROCEED = "proceed"
    REVIEW = "review"
    FLAG = "flag"
    BLOCK = "block"


class Priority(StrEnum):
    """Notification priority."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"
    CRITICAL = "critical"
