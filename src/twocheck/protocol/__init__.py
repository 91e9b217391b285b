"""The 2-Check protocol engines and the orchestrator that composes them."""

from .anomaly import AnomalyDetector, AnomalyPattern, AnomalyResult, TransactionRecord
from .compensation import (
    CompensationCalculation,
    CompensationRule,
    CompensationRuleEngine,
    CompensationStatus,
    CompensationTrigger,
)
from .disputes import Compensation, Dispute, DisputeEvidence, DisputeResolutionEngine, Resolution
from .emergency_stop import EmergencyStop, EmergencyStopSystem, StopType
from .escalation import EscalationEngine, EscalationEvent
from .evidence import Evidence, EvidenceRequest, EvidenceStore, EvidenceType, EvidenceValidation
from .notifications import NotificationDispatcher, request_notification
from .orchestrator import MaintenanceReport, Orchestrator
from .state_machine import SYSTEM_ACTOR, StateTransition, SweepResult, Transaction, TransactionStateMachine
from .trust import TrustScore, TrustScoringSystem, TrustUpdate

__all__ = [
    # State machine
    "SYSTEM_ACTOR",
    "Transaction",
    "StateTransition",
    "SweepResult",
    "TransactionStateMachine",
    # Trust
    "TrustScore",
    "TrustUpdate",
    "TrustScoringSystem",
    # Evidence
    "Evidence",
    "EvidenceType",
    "EvidenceRequest",
    "EvidenceValidation",
    "EvidenceStore",
    # Disputes
    "Dispute",
    "DisputeEvidence",
    "Resolution",
    "Compensation",
    "DisputeResolutionEngine",
    # Escalation
    "EscalationEvent",
    "EscalationEngine",
    # Anomaly
    "TransactionRecord",
    "AnomalyPattern",
    "AnomalyResult",
    "AnomalyDetector",
    # Compensation
    "CompensationTrigger",
    "CompensationStatus",
    "CompensationRule",
    "CompensationCalculation",
    "CompensationRuleEngine",
    # Emergency stop
    "StopType",
    "EmergencyStop",
    "EmergencyStopSystem",
    # Composition
    "NotificationDispatcher",
    "request_notification",
    "MaintenanceReport",
    "Orchestrator",
]
