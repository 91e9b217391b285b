# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""2-Check - dual-confirmation custody protocol engine.

A custody transfer between a sender and a receiver completes only when
both parties confirm it. Around that core the engine keeps per-party
trust scores, collects and validates evidence, resolves disputes,
escalates overdue transfers, screens submissions for anomalies, pays
compensation and can halt suspicious transactions.

Architecture:
  Orchestrator
    -> TransactionStateMachine (CREATED -> SENT -> RECEIVED -> VALIDATED ...)
    -> TrustScoringSystem, EvidenceStore, DisputeResolutionEngine
    -> EscalationEngine, AnomalyDetector
    -> CompensationRuleEngine, EmergencyStopSystem
  Engines talk through an ordered, synchronous Outbox of domain events.

CLI entry point: ``twocheck``
"""

__version__ = "1.0.0"

from . import (
    core as core,
)
from . import (
    protocol as protocol,
)
from .protocol.orchestrator import Orchestrator

__all__ = ["Orchestrator", "__version__", "core", "protocol"]
