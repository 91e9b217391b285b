# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Protocol configuration - the three YAML documents that drive the engines.

``2check-config.yaml`` holds the state graph, timeouts, dispute types and
emergency stop limits. ``timeout-rules.yaml`` holds escalation levels per
transaction type. ``trust-scoring.yaml`` holds trust rules, bands, decay
and recovery.

Documents are parsed with ``yaml.safe_load`` and validated once into
pydantic models. Any structural or cross-field problem raises
:class:`~twocheck.core.exceptions.ConfigException` at load time.

Usage:
    from twocheck.core.protocol_config import get_protocol_config
    config = get_protocol_config()

    hours = config.consensus.timeouts.default
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from .exceptions import ConfigException
from .types import (
    DisputeEvidenceType,
    EscalationAction,
    Priority,
    Severity,
    TransactionState,
    TrustAction,
)

logger = logging.getLogger(__name__)

DEFAULTS_DIR = Path(__file__).parent / "defaults"

CONSENSUS_FILE = "2check-config.yaml"
TIMEOUT_RULES_FILE = "timeout-rules.yaml"
TRUST_SCORING_FILE = "trust-scoring.yaml"


# =============================================================================
# Conditions
# =============================================================================


class Operator(StrEnum):
    """Comparison operators for configured conditions."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_OR_EQUAL = "less_or_equal"


def resolve_path(view: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path (``relationship.trust_score``) against nested mappings."""
    current: Any = view
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


class Condition(BaseModel):
    """A single ``field operator value`` test against a mapping view."""

    field: str
    operator: Operator
    value: Any

    def matches(self, view: Mapping[str, Any]) -> bool:
        actual = resolve_path(view, self.field)
        if actual is None:
            return False
        try:
            if self.operator == Operator.EQUALS:
                return actual == self.value
            if self.operator == Operator.NOT_EQUALS:
                return actual != self.value
            if self.operator == Operator.GREATER_THAN:
                return actual > self.value
            if self.operator == Operator.LESS_THAN:
                return actual < self.value
            if self.operator == Operator.GREATER_OR_EQUAL:
                return actual >= self.value
            return actual <= self.value
        except TypeError:
            # Mismatched types never match
            return False


# =============================================================================
# 2check-config.yaml
# =============================================================================


class ValidationSettings(BaseModel):
    require_sender_confirmation: bool = True
    require_receiver_confirmation: bool = True
    auto_validate_on_both_confirmations: bool = True
    allow_batch_operations: bool = True
    max_batch_size: int = Field(default=100, gt=0)


class StateGraph(BaseModel):
    """Allowed transitions between transaction states."""

    initial: TransactionState = TransactionState.CREATED
    terminal: list[TransactionState] = Field(
        default_factory=lambda: [TransactionState.VALIDATED, TransactionState.CANCELLED, TransactionState.RESOLVED]
    )
    transitions: dict[TransactionState, list[TransactionState]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_graph(self) -> StateGraph:
        if not self.terminal:
            raise ValueError("state graph needs at least one terminal state")
        if self.initial in self.terminal:
            raise ValueError(f"initial state {self.initial} cannot be terminal")
        for state in self.terminal:
            if self.transitions.get(state):
                raise ValueError(f"terminal state {state} must not have outgoing transitions")
        return self

    def is_terminal(self, state: TransactionState) -> bool:
        return state in self.terminal

    def can_transition(self, current: TransactionState, target: TransactionState) -> bool:
        return target in self.transitions.get(current, [])


class TimeoutCategory(BaseModel):
    name: str
    condition: Condition
    timeout: float = Field(gt=0, description="Timeout in hours")


class ReminderSettings(BaseModel):
    """Reminder thresholds, in hours before timeout."""

    first: float = 24
    second: float = 12
    final: float = 1

    def thresholds(self) -> list[tuple[str, float]]:
        """Thresholds ordered loosest first."""
        return sorted(
            [("first", self.first), ("second", self.second), ("final", self.final)],
            key=lambda item: -item[1],
        )


class TimeoutSettings(BaseModel):
    default: float = Field(default=72, gt=0, description="Default timeout in hours")
    trusted_extension_multiplier: float = Field(default=1.0, ge=1.0)
    reminders: ReminderSettings = Field(default_factory=ReminderSettings)
    categories: list[TimeoutCategory] = Field(default_factory=list)


class NotificationSettings(BaseModel):
    enabled: bool = True
    brand_owner_prefix: str = "owner"
    default_brand: str = "luxury-brand.com"
    default_channel: str = "email"


class DisputeTypeConfig(BaseModel):
    id: str
    name: str = ""
    evidence_required: list[DisputeEvidenceType] = Field(default_factory=list)
    auto_resolution_possible: bool = False
    requires_expert_review: bool = False
    escalation_timeout: float | None = Field(default=None, gt=0, description="Deadline in hours")


class DisputeEscalationRule(BaseModel):
    condition: Condition
    dispute_type: str | None = None
    handler: str
    priority: Priority = Priority.NORMAL
    auto_notify: bool = False
    require_additional_evidence: bool = False


class DisputeEscalationSettings(BaseModel):
    default_handler: str = "brand_owner"
    rules: list[DisputeEscalationRule] = Field(default_factory=list)


class DisputeSettings(BaseModel):
    default_deadline_hours: float = Field(default=72, gt=0)
    types: list[DisputeTypeConfig] = Field(default_factory=list)
    escalation: DisputeEscalationSettings = Field(default_factory=DisputeEscalationSettings)

    @model_validator(mode="after")
    def validate_types(self) -> DisputeSettings:
        ids = [t.id for t in self.types]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"duplicate dispute types: {', '.join(duplicates)}")
        for rule in self.escalation.rules:
            if rule.dispute_type is not None and rule.dispute_type not in ids:
                raise ValueError(f"escalation rule references unknown dispute type: {rule.dispute_type}")
        return self

    def get_type(self, dispute_type: str) -> DisputeTypeConfig | None:
        for config in self.types:
            if config.id == dispute_type:
                return config
        return None


class EmergencyStopSettings(BaseModel):
    enabled: bool = True
    authorized_parties: list[str] = Field(
        default_factory=lambda: ["brand_owner", "security_team", "ai_system", "security_system", "system"]
    )
    approval_parties: list[str] = Field(default_factory=lambda: ["brand_owner", "security_team", "system"])
    risk_score_threshold: float = 85
    max_transaction_value: float = 100000
    require_approval_to_resume: bool = True


class CompensationSettings(BaseModel):
    enabled: bool = True
    max_auto_approval_amount: float = Field(default=5000, ge=0)
    compensation_account: str = "brand_compensation_pool"


class ConsensusConfig(BaseModel):
    """Root of ``2check-config.yaml``."""

    type: str = "2-check"
    version: str = "1.0"
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    states: StateGraph = Field(default_factory=StateGraph)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    disputes: DisputeSettings = Field(default_factory=DisputeSettings)
    emergency_stop: EmergencyStopSettings = Field(default_factory=EmergencyStopSettings)
    compensation: CompensationSettings = Field(default_factory=CompensationSettings)


# =============================================================================
# timeout-rules.yaml
# =============================================================================


class EscalationLevel(BaseModel):
    level: int = Field(ge=1)
    at_percent: float = Field(ge=0)
    action: EscalationAction
    notify: list[str] = Field(default_factory=list)
    channel: str | None = None


class TransactionTypeRules(BaseModel):
    escalation_levels: list[EscalationLevel] = Field(default_factory=list)
    business_hours_only: bool = False
    timezone: str = "UTC"

    @model_validator(mode="after")
    def validate_levels(self) -> TransactionTypeRules:
        levels = [lvl.level for lvl in self.escalation_levels]
        if len(levels) != len(set(levels)):
            raise ValueError("escalation levels must be unique")
        ordered = sorted(self.escalation_levels, key=lambda lvl: lvl.level)
        percents = [lvl.at_percent for lvl in ordered]
        if percents != sorted(percents):
            raise ValueError("escalation level thresholds must increase with the level")
        self.escalation_levels = ordered
        return self


class NotificationTemplate(BaseModel):
    subject: str
    priority: Priority = Priority.NORMAL


class AutoEscalationCondition(BaseModel):
    type: str
    action: str
    severity: Severity = Severity.MEDIUM
    count: int | None = Field(default=None, gt=0)
    window: float | None = Field(default=None, gt=0, description="Window in seconds")
    pattern: str | None = None


class AutoEscalationSettings(BaseModel):
    enabled: bool = True
    conditions: list[AutoEscalationCondition] = Field(default_factory=list)

    def get_condition(self, condition_type: str) -> AutoEscalationCondition | None:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None


class TrustImpactSettings(BaseModel):
    """Raw point deltas applied to the sender; the receiver gets ``receiver_factor`` of it."""

    escalation: float = -0.05
    security_alert: float = -0.20
    dispute: float = -0.10
    receiver_factor: float = Field(default=0.5, ge=0)


class HighValueEvidence(BaseModel):
    threshold: float = 10000
    required: list[str] = Field(default_factory=list)


class EvidenceRequirements(BaseModel):
    low_trust: list[str] = Field(default_factory=list)
    dispute: list[str] = Field(default_factory=list)
    high_value: HighValueEvidence = Field(default_factory=HighValueEvidence)


class TimeoutRulesConfig(BaseModel):
    """Root of ``timeout-rules.yaml``."""

    transaction_types: dict[str, TransactionTypeRules] = Field(default_factory=dict)
    notification_templates: dict[str, NotificationTemplate] = Field(default_factory=dict)
    auto_escalation: AutoEscalationSettings = Field(default_factory=AutoEscalationSettings)
    trust_impact: TrustImpactSettings = Field(default_factory=TrustImpactSettings)
    evidence_requirements: EvidenceRequirements = Field(default_factory=EvidenceRequirements)


# =============================================================================
# trust-scoring.yaml
# =============================================================================


class RuleMultiplier(BaseModel):
    condition: Condition
    value: float = Field(gt=0)


class ScoreRule(BaseModel):
    base_points: float
    description: str = ""
    multiplier: list[RuleMultiplier] = Field(default_factory=list)


class ScoreChanges(BaseModel):
    positive: dict[TrustAction, ScoreRule] = Field(default_factory=dict)
    negative: dict[TrustAction, ScoreRule] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_signs(self) -> ScoreChanges:
        overlap = set(self.positive) & set(self.negative)
        if overlap:
            raise ValueError(f"actions listed as both positive and negative: {sorted(overlap)}")
        for action, rule in self.positive.items():
            if rule.base_points < 0:
                raise ValueError(f"positive rule {action} has negative base_points")
        for action, rule in self.negative.items():
            if rule.base_points > 0:
                raise ValueError(f"negative rule {action} has positive base_points")
        return self


class ValueMultiplier(BaseModel):
    min_value: float = 0
    max_value: float | None = None
    multiplier: float = Field(default=1.0, gt=0)


class TrustLevel(BaseModel):
    name: str
    min_score: float
    max_score: float
    color: str = ""
    benefits: list[str] = Field(default_factory=list)


class AutomationRule(BaseModel):
    name: str
    min_trust_score: float
    max_transaction_value: float | None = None
    repeat_transaction: bool = False
    action: str


class DecaySettings(BaseModel):
    """Decay settings, in days."""

    enabled: bool = True
    check_interval: float = Field(default=30, gt=0)
    inactivity_threshold: float = Field(default=90, gt=0)
    decay_rate: float = Field(default=0.95, gt=0, le=1)
    min_score_after_decay: float = 50


class DisputeRecoverySettings(BaseModel):
    enabled: bool = True
    clean_record_period: float = Field(default=180, gt=0, description="Days")
    bonus_points: float = 5


class VolumeRecoverySettings(BaseModel):
    enabled: bool = True
    threshold: int = Field(default=20, gt=0)
    window: float = Field(default=30, gt=0, description="Days")
    bonus_points: float = 10


class RecoverySettings(BaseModel):
    dispute_recovery: DisputeRecoverySettings = Field(default_factory=DisputeRecoverySettings)
    volume_recovery: VolumeRecoverySettings = Field(default_factory=VolumeRecoverySettings)


class TrustScoringConfig(BaseModel):
    """Root of ``trust-scoring.yaml``."""

    enabled: bool = True
    initial_score: float = 50
    max_score: float = 200
    min_score: float = 0
    flag_threshold: float = 30
    score_changes: ScoreChanges = Field(default_factory=ScoreChanges)
    transaction_value_multipliers: list[ValueMultiplier] = Field(default_factory=list)
    trust_levels: list[TrustLevel] = Field(default_factory=list)
    automation_rules: list[AutomationRule] = Field(default_factory=list)
    decay: DecaySettings = Field(default_factory=DecaySettings)
    recovery: RecoverySettings = Field(default_factory=RecoverySettings)

    @model_validator(mode="after")
    def validate_bands(self) -> TrustScoringConfig:
        if not self.min_score <= self.initial_score <= self.max_score:
            raise ValueError("initial_score must lie within [min_score, max_score]")
        if not self.trust_levels:
            raise ValueError("at least one trust level is required")
        levels = sorted(self.trust_levels, key=lambda lvl: lvl.min_score)
        if levels[0].min_score != self.min_score or levels[-1].max_score != self.max_score:
            raise ValueError("trust levels must cover [min_score, max_score]")
        for lower, upper in zip(levels, levels[1:]):
            if lower.max_score != upper.min_score:
                raise ValueError(f"trust levels {lower.name} and {upper.name} are not contiguous")
        self.trust_levels = levels
        return self

    def rule_for(self, action: TrustAction) -> ScoreRule | None:
        return self.score_changes.positive.get(action) or self.score_changes.negative.get(action)

    def level_for(self, score: float) -> TrustLevel:
        """Return the band containing ``score``; the top band includes its max."""
        for level in self.trust_levels:
            if level.min_score <= score < level.max_score:
                return level
        return self.trust_levels[-1] if score >= self.trust_levels[-1].min_score else self.trust_levels[0]

    def value_multiplier(self, value: float | None) -> float:
        if value is None:
            return 1.0
        for tier in self.transaction_value_multipliers:
            if value >= tier.min_value and (tier.max_value is None or value < tier.max_value):
                return tier.multiplier
        return 1.0


# =============================================================================
# Combined configuration
# =============================================================================


class ProtocolConfig(BaseModel):
    """All three documents, validated together."""

    consensus: ConsensusConfig = Field(default_factory=ConsensusConfig)
    timeout_rules: TimeoutRulesConfig = Field(default_factory=TimeoutRulesConfig)
    trust: TrustScoringConfig

    @model_validator(mode="after")
    def validate_templates(self) -> ProtocolConfig:
        for name in ("reminder", "urgent", "escalation"):
            if name not in self.timeout_rules.notification_templates:
                raise ValueError(f"missing notification template: {name}")
        return self


def _read_document(config_dir: Path | None, filename: str) -> dict[str, Any]:
    path = DEFAULTS_DIR / filename
    if config_dir is not None and (config_dir / filename).exists():
        path = config_dir / filename
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigException(f"Cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigException(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigException(f"{path} must contain a mapping at the top level")
    logger.debug(f"Loaded protocol document {path}")
    return data


def load_protocol_config(config_dir: str | Path | None = None) -> ProtocolConfig:
    """Load and validate the protocol documents.

    Files missing from ``config_dir`` fall back to the packaged defaults.

    Raises:
        ConfigException: If a document is unreadable or fails validation.
    """
    directory = Path(config_dir) if config_dir is not None else None
    if directory is not None and not directory.is_dir():
        raise ConfigException(f"Config directory does not exist: {directory}")

    consensus_doc = _read_document(directory, CONSENSUS_FILE)
    rules_doc = _read_document(directory, TIMEOUT_RULES_FILE)
    trust_doc = _read_document(directory, TRUST_SCORING_FILE)

    try:
        return ProtocolConfig(
            consensus=consensus_doc.get("consensus", {}),
            timeout_rules=rules_doc,
            trust=trust_doc.get("trust_scoring", {}),
        )
    except ValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ConfigException("Invalid protocol configuration", errors=errors) from e


# =============================================================================
# GLOBAL PROTOCOL CONFIG (lazy loaded)
# =============================================================================

_protocol_config: ProtocolConfig | None = None


def get_protocol_config() -> ProtocolConfig:
    """Get the process-wide protocol configuration.

    Loaded from ``TWOCHECK_CONFIG_DIR`` when set, else the packaged defaults.
    """
    global _protocol_config
    if _protocol_config is None:
        from .config import get_settings

        _protocol_config = load_protocol_config(get_settings().config_dir)
    return _protocol_config


def clear_protocol_config_cache() -> None:
    """Clear the protocol config cache. Useful for testing."""
    global _protocol_config
    _protocol_config = None
