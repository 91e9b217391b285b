"""Tests for twocheck.core.protocol_config module."""

from __future__ import annotations

import pytest
import yaml

from twocheck.core.exceptions import ConfigException
from twocheck.core.protocol_config import (
    Condition,
    ReminderSettings,
    clear_protocol_config_cache,
    get_protocol_config,
    load_protocol_config,
    resolve_path,
)
from twocheck.core.types import DisputeEvidenceType, EscalationAction, TransactionState, TrustAction


def write_yaml(directory, name, data):
    path = directory / name
    path.write_text(yaml.safe_dump(data))
    return path


# ============================================================================
# Packaged defaults
# ============================================================================


class TestDefaultConsensusConfig:
    """Tests for the packaged 2check-config.yaml."""

    def test_state_graph(self, protocol_config):
        states = protocol_config.consensus.states
        assert states.initial == TransactionState.CREATED
        assert set(states.terminal) == {
            TransactionState.VALIDATED,
            TransactionState.CANCELLED,
            TransactionState.RESOLVED,
        }
        assert states.transitions[TransactionState.CREATED] == [
            TransactionState.SENT,
            TransactionState.TIMEOUT,
            TransactionState.CANCELLED,
        ]

    def test_can_transition(self, protocol_config):
        states = protocol_config.consensus.states
        assert states.can_transition(TransactionState.SENT, TransactionState.RECEIVED)
        assert states.can_transition(TransactionState.TIMEOUT, TransactionState.ESCALATED)
        assert not states.can_transition(TransactionState.CREATED, TransactionState.VALIDATED)
        assert not states.can_transition(TransactionState.VALIDATED, TransactionState.SENT)

    def test_timeouts(self, protocol_config):
        timeouts = protocol_config.consensus.timeouts
        assert timeouts.default == 72
        assert timeouts.trusted_extension_multiplier == 1.5
        assert [c.name for c in timeouts.categories] == ["high_value", "perishable", "trusted_partner"]
        assert [c.timeout for c in timeouts.categories] == [24, 6, 168]

    def test_dispute_types(self, protocol_config):
        disputes = protocol_config.consensus.disputes
        not_received = disputes.get_type("not_received")
        assert not_received.evidence_required == [DisputeEvidenceType.TRACKING]
        assert not_received.auto_resolution_possible is True
        assert not_received.escalation_timeout == 48
        assert disputes.get_type("missing") is None
        assert {t.id for t in disputes.types} >= {"wrong_item", "damaged", "counterfeit_suspected"}

    def test_emergency_and_compensation(self, protocol_config):
        consensus = protocol_config.consensus
        assert consensus.emergency_stop.risk_score_threshold == 85
        assert consensus.emergency_stop.max_transaction_value == 100000
        assert consensus.compensation.max_auto_approval_amount == 5000


class TestDefaultTimeoutRules:
    """Tests for the packaged timeout-rules.yaml."""

    def test_levels_sorted(self, protocol_config):
        levels = protocol_config.timeout_rules.transaction_types["supplier_to_manufacturer"].escalation_levels
        assert [lvl.at_percent for lvl in levels] == [50, 80, 100]
        assert levels[-1].action == EscalationAction.AUTO_ESCALATE

    def test_auto_escalation_conditions(self, protocol_config):
        settings = protocol_config.timeout_rules.auto_escalation
        multiple = settings.get_condition("multiple_timeouts")
        assert multiple.count == 3
        assert multiple.window == 604800
        assert settings.get_condition("pattern_detected").pattern == "suspicious_routing"
        assert settings.get_condition("unknown") is None

    def test_trust_impact(self, protocol_config):
        impact = protocol_config.timeout_rules.trust_impact
        assert impact.escalation == -0.05
        assert impact.security_alert == -0.20
        assert impact.receiver_factor == 0.5


class TestDefaultTrustScoring:
    """Tests for the packaged trust-scoring.yaml."""

    def test_bounds(self, protocol_config):
        trust = protocol_config.trust
        assert (trust.min_score, trust.initial_score, trust.max_score) == (0, 50, 200)

    @pytest.mark.parametrize(
        "score,level",
        [(0, "new"), (49.9, "new"), (50, "basic"), (99.99, "basic"), (100, "trusted"), (150, "premium"), (200, "premium")],
    )
    def test_level_for(self, protocol_config, score, level):
        """Bands are half-open except the top one."""
        assert protocol_config.trust.level_for(score).name == level

    @pytest.mark.parametrize(
        "value,multiplier",
        [(None, 1.0), (0, 1.0), (999.99, 1.0), (1000, 1.2), (10000, 1.5), (49999, 1.5), (50000, 2.0), (10**7, 2.0)],
    )
    def test_value_multiplier(self, protocol_config, value, multiplier):
        assert protocol_config.trust.value_multiplier(value) == multiplier

    def test_rule_for(self, protocol_config):
        trust = protocol_config.trust
        assert trust.rule_for(TrustAction.SUCCESSFUL_TRANSACTION).base_points == 1
        assert trust.rule_for(TrustAction.FALSE_CLAIM).base_points == -10
        assert trust.rule_for(TrustAction.INACTIVITY_DECAY) is None


# ============================================================================
# Conditions
# ============================================================================


class TestCondition:
    """Tests for configured condition evaluation."""

    def test_resolve_nested_path(self):
        view = {"relationship": {"trust_score": 120}}
        assert resolve_path(view, "relationship.trust_score") == 120
        assert resolve_path(view, "relationship.missing") is None
        assert resolve_path(view, "relationship.trust_score.deeper") is None

    def test_operators(self):
        view = {"value": 10}
        assert Condition(field="value", operator="greater_than", value=5).matches(view)
        assert Condition(field="value", operator="less_or_equal", value=10).matches(view)
        assert Condition(field="value", operator="not_equals", value=11).matches(view)
        assert not Condition(field="value", operator="less_than", value=10).matches(view)

    def test_missing_field_never_matches(self):
        assert not Condition(field="value", operator="not_equals", value=1).matches({})

    def test_type_mismatch_never_matches(self):
        """Comparing a string with a number is a non-match, not an error."""
        assert not Condition(field="value", operator="greater_than", value=5).matches({"value": "abc"})

    def test_reminder_thresholds_loosest_first(self):
        reminders = ReminderSettings(first=12, second=24, final=1)
        assert reminders.thresholds() == [("second", 24), ("first", 12), ("final", 1)]


# ============================================================================
# Loading and validation
# ============================================================================


class TestLoadProtocolConfig:
    """Tests for loading override documents."""

    def test_override_directory(self, tmp_path):
        """A file in the override directory replaces the packaged one; others stay default."""
        write_yaml(tmp_path, "2check-config.yaml", {"consensus": {"timeouts": {"default": 48}}})
        config = load_protocol_config(tmp_path)
        assert config.consensus.timeouts.default == 48
        assert config.trust.initial_score == 50
        assert "retailer_to_customer" in config.timeout_rules.transaction_types

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ConfigException, match="does not exist"):
            load_protocol_config(tmp_path / "nope")

    def test_invalid_yaml(self, tmp_path):
        (tmp_path / "timeout-rules.yaml").write_text("transaction_types: [unclosed")
        with pytest.raises(ConfigException, match="Invalid YAML"):
            load_protocol_config(tmp_path)

    def test_top_level_must_be_mapping(self, tmp_path):
        (tmp_path / "trust-scoring.yaml").write_text("- a\n- b\n")
        with pytest.raises(ConfigException, match="mapping"):
            load_protocol_config(tmp_path)

    def test_terminal_state_with_transitions(self, tmp_path):
        """Terminal states must not have outgoing edges."""
        write_yaml(
            tmp_path,
            "2check-config.yaml",
            {"consensus": {"states": {"transitions": {"VALIDATED": ["SENT"]}}}},
        )
        with pytest.raises(ConfigException) as exc_info:
            load_protocol_config(tmp_path)
        assert exc_info.value.errors
        assert any("terminal" in e for e in exc_info.value.errors)

    def test_unknown_state_rejected(self, tmp_path):
        write_yaml(
            tmp_path,
            "2check-config.yaml",
            {"consensus": {"states": {"transitions": {"CREATED": ["SHIPPED"]}}}},
        )
        with pytest.raises(ConfigException):
            load_protocol_config(tmp_path)

    def test_duplicate_dispute_types(self, tmp_path):
        write_yaml(
            tmp_path,
            "2check-config.yaml",
            {"consensus": {"disputes": {"types": [{"id": "damaged"}, {"id": "damaged"}]}}},
        )
        with pytest.raises(ConfigException):
            load_protocol_config(tmp_path)

    def test_unknown_escalation_action(self, tmp_path):
        write_yaml(
            tmp_path,
            "timeout-rules.yaml",
            {
                "transaction_types": {
                    "custom": {"escalation_levels": [{"level": 1, "at_percent": 50, "action": "launch_rocket"}]}
                },
                "notification_templates": {
                    "reminder": {"subject": "r"},
                    "urgent": {"subject": "u"},
                    "escalation": {"subject": "e"},
                },
            },
        )
        with pytest.raises(ConfigException):
            load_protocol_config(tmp_path)

    def test_levels_must_increase(self, tmp_path):
        write_yaml(
            tmp_path,
            "timeout-rules.yaml",
            {
                "transaction_types": {
                    "custom": {
                        "escalation_levels": [
                            {"level": 1, "at_percent": 80, "action": "send_reminder"},
                            {"level": 2, "at_percent": 50, "action": "urgent_notification"},
                        ]
                    }
                },
                "notification_templates": {
                    "reminder": {"subject": "r"},
                    "urgent": {"subject": "u"},
                    "escalation": {"subject": "e"},
                },
            },
        )
        with pytest.raises(ConfigException):
            load_protocol_config(tmp_path)

    def test_missing_notification_template(self, tmp_path):
        write_yaml(tmp_path, "timeout-rules.yaml", {"notification_templates": {"reminder": {"subject": "r"}}})
        with pytest.raises(ConfigException):
            load_protocol_config(tmp_path)

    def test_trust_bands_must_be_contiguous(self, tmp_path):
        write_yaml(
            tmp_path,
            "trust-scoring.yaml",
            {
                "trust_scoring": {
                    "trust_levels": [
                        {"name": "low", "min_score": 0, "max_score": 90},
                        {"name": "high", "min_score": 100, "max_score": 200},
                    ]
                }
            },
        )
        with pytest.raises(ConfigException):
            load_protocol_config(tmp_path)

    def test_unknown_trust_action(self, tmp_path):
        """Rule keys must be known actions."""
        write_yaml(
            tmp_path,
            "trust-scoring.yaml",
            {
                "trust_scoring": {
                    "score_changes": {"positive": {"good_vibes": {"base_points": 1}}},
                    "trust_levels": [{"name": "all", "min_score": 0, "max_score": 200}],
                }
            },
        )
        with pytest.raises(ConfigException):
            load_protocol_config(tmp_path)

    def test_negative_points_in_positive_rule(self, tmp_path):
        write_yaml(
            tmp_path,
            "trust-scoring.yaml",
            {
                "trust_scoring": {
                    "score_changes": {"positive": {"successful_transaction": {"base_points": -1}}},
                    "trust_levels": [{"name": "all", "min_score": 0, "max_score": 200}],
                }
            },
        )
        with pytest.raises(ConfigException):
            load_protocol_config(tmp_path)


class TestGetProtocolConfig:
    """Tests for the lazy protocol config accessor."""

    def test_cached(self):
        assert get_protocol_config() is get_protocol_config()

    def test_reads_config_dir_setting(self, tmp_path, monkeypatch):
        write_yaml(tmp_path, "2check-config.yaml", {"consensus": {"timeouts": {"default": 12}}})
        monkeypatch.setenv("TWOCHECK_CONFIG_DIR", str(tmp_path))
        from twocheck.core.config import clear_settings_cache

        clear_settings_cache()
        clear_protocol_config_cache()
        assert get_protocol_config().consensus.timeouts.default == 12
