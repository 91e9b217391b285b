"""Tests for twocheck.protocol.disputes module."""

from __future__ import annotations

import logging
import threading
from datetime import timedelta

import pytest

from twocheck.core.exceptions import InvalidTransitionError, NotFoundError, UnauthorizedError
from twocheck.core.protocol_config import DisputeSettings, DisputeTypeConfig
from twocheck.core.types import DisputeDecision, DisputeStatus, ResolutionAction, TrustAction
from twocheck.protocol.disputes import Compensation, DisputeResolutionEngine
from twocheck.protocol.evidence import EvidenceStore
from twocheck.protocol.state_machine import TransactionStateMachine
from twocheck.protocol.trust import TrustScoringSystem

UPS_TRACKING = {"tracking_number": "1Z999AA10123456784", "carrier": "UPS"}
PHOTO_DOC = {"document_id": "DOC-1"}


@pytest.fixture
def machine(protocol_config, outbox, clock, locks):
    return TransactionStateMachine(protocol_config.consensus, outbox, clock, locks)


@pytest.fixture
def trust(protocol_config, outbox, clock, locks):
    return TrustScoringSystem(protocol_config.trust, outbox, clock, locks)


@pytest.fixture
def engine(protocol_config, outbox, clock, locks, trust, scheduler):
    store = EvidenceStore(outbox, clock, locks, require_photo_location=False)
    return DisputeResolutionEngine(
        protocol_config.consensus.disputes,
        outbox,
        evidence_store=store,
        trust=trust,
        scheduler=scheduler,
        clock=clock,
        locks=locks,
    )


@pytest.fixture
def sent(machine):
    """A transaction acme -> globex that has been sent."""
    machine.create_transaction("TX-1", "acme", "globex", "SKU-1", 1000)
    return machine.confirm_sent("TX-1", "acme")


def topics(outbox, prefix=""):
    return [e.topic for e in outbox.events(prefix)]


def valid_photo():
    from twocheck.protocol.evidence import content_hash

    return {"image_data": "img", "hash": content_hash("img"), "metadata": {"timestamp": "2026-10-13T09:00:00+00:00"}}


# ============================================================================
# Creation
# ============================================================================


class TestCreateDispute:
    """Tests for opening disputes."""

    def test_opens_against_other_party(self, engine, sent, clock, outbox):
        dispute = engine.create_dispute(sent, "not_received", "globex", reason="nothing arrived")
        assert dispute.status == DisputeStatus.OPEN
        assert dispute.creator == "globex"
        assert dispute.respondent == "acme"
        assert dispute.deadline == clock.now + timedelta(hours=48)
        assert dispute.id.startswith("DSP-")
        assert outbox.events("dispute.created")[-1].payload["dispute"]["id"] == dispute.id

    def test_notifies_respondent_and_brand_owner(self, engine, sent, outbox):
        engine.create_dispute(sent, "not_received", "globex")
        note = outbox.events("notification.requested")[-1].payload
        assert note["recipients"] == ["acme", "brand_owner"]
        assert note["priority"] == "high"

    def test_schedules_deadline_timer(self, engine, sent, scheduler):
        dispute = engine.create_dispute(sent, "damaged", "globex")
        assert scheduler.is_scheduled(dispute.id)

    @pytest.mark.parametrize("dispute_type,hours", [("damaged", 24), ("wrong_item", 72), ("quality_issue", 48)])
    def test_deadline_per_type(self, engine, sent, clock, dispute_type, hours):
        dispute = engine.create_dispute(sent, dispute_type, "globex")
        assert dispute.deadline == clock.now + timedelta(hours=hours)

    def test_unknown_type_uses_defaults(self, engine, sent, clock, caplog):
        with caplog.at_level(logging.WARNING, logger="twocheck.protocol.disputes"):
            dispute = engine.create_dispute(sent, "mystery", "globex")
        assert dispute.deadline == clock.now + timedelta(hours=72)
        assert any("No dispute type configuration for: mystery" in r.message for r in caplog.records)

    def test_outsider_rejected(self, engine, sent):
        with pytest.raises(UnauthorizedError):
            engine.create_dispute(sent, "not_received", "mallory")

    def test_system_dispute_targets_overdue_party(self, engine, machine, clock):
        """A system-opened dispute names whoever owed the missing confirmation."""
        machine.create_transaction("TX-2", "acme", "globex", "SKU-1", 1000)
        machine.confirm_sent("TX-2", "acme")
        clock.advance(hours=72)
        machine.sweep_timeouts()
        dispute = engine.create_dispute(machine.get_transaction("TX-2"), "not_received", "system")
        assert dispute.creator == "system"
        assert dispute.respondent == "globex"

    def test_initial_evidence_is_testimony(self, engine, sent, outbox):
        dispute = engine.create_dispute(sent, "not_received", "globex", initial_evidence="It never came")
        assert dispute.status == DisputeStatus.UNDER_REVIEW
        assert [e.type for e in dispute.evidence] == ["testimony"]
        assert dispute.evidence[0].description == "Initial dispute claim"
        assert outbox.events("dispute.evidence_pending")[-1].payload["missing"] == ["tracking"]


# ============================================================================
# Evidence and auto-resolution
# ============================================================================


class TestEvidence:
    """Tests for evidence sufficiency and auto-resolution."""

    def test_verified_tracking_auto_resolves(self, engine, sent, outbox):
        dispute = engine.create_dispute(sent, "not_received", "globex")
        engine.add_evidence(dispute.id, "globex", "tracking", "carrier record", UPS_TRACKING)

        resolved = engine.get_dispute(dispute.id)
        assert resolved.status == DisputeStatus.RESOLVED
        assert resolved.resolution.decided_by == "system_auto_resolution"
        assert resolved.resolution.decision == DisputeDecision.FAVOR_CREATOR
        assert "dispute.evidence_complete" in topics(outbox)
        update = outbox.events("transaction.update_required")[-1].payload
        assert update == {
            "transaction_id": "TX-1",
            "new_state": "RESOLVED",
            "reason": "Dispute resolved: favor_creator",
            "dispute_id": dispute.id,
        }

    def test_unverified_tracking_stays_pending(self, engine, sent, outbox):
        dispute = engine.create_dispute(sent, "not_received", "globex")
        record = engine.add_evidence(
            dispute.id, "globex", "tracking", "bad", {"tracking_number": "XYZ", "carrier": "UPS"}
        )
        assert record.verified is False
        assert engine.get_dispute(dispute.id).status == DisputeStatus.UNDER_REVIEW
        assert outbox.events("dispute.evidence_pending")[-1].payload["missing"] == ["tracking"]

    def test_complete_but_not_auto_resolvable(self, engine, sent, outbox):
        dispute = engine.create_dispute(sent, "wrong_item", "globex")
        engine.add_evidence(dispute.id, "globex", "photo", "photo", valid_photo())
        engine.add_evidence(dispute.id, "globex", "document", "invoice", PHOTO_DOC)
        assert engine.get_dispute(dispute.id).status == DisputeStatus.UNDER_REVIEW
        assert "dispute.evidence_complete" in topics(outbox)
        assert "dispute.manual_review_required" not in topics(outbox)

    def test_low_confidence_goes_to_manual_review(self, engine, sent, outbox):
        dispute = engine.create_dispute(sent, "quantity_mismatch", "globex")
        engine.add_evidence(dispute.id, "globex", "document", "packing list", PHOTO_DOC)
        engine.add_evidence(dispute.id, "globex", "photo", "photo", valid_photo())
        review = outbox.events("dispute.manual_review_required")
        assert len(review) == 1
        assert review[0].payload["recommended_decision"] == "split"
        assert engine.get_dispute(dispute.id).status == DisputeStatus.UNDER_REVIEW

    def test_auto_resolution_without_evidence_awaits(self, engine, sent):
        dispute = engine.create_dispute(sent, "not_received", "globex")
        assert engine.attempt_auto_resolution(dispute.id) is None
        assert engine.get_dispute(dispute.id).status == DisputeStatus.AWAITING_EVIDENCE

    def test_evidence_on_resolved_dispute(self, engine, sent):
        dispute = engine.create_dispute(sent, "damaged", "globex")
        engine.resolve_dispute(dispute.id, "brand_owner", DisputeDecision.SPLIT, "shared fault")
        with pytest.raises(InvalidTransitionError):
            engine.add_evidence(dispute.id, "globex", "photo", "late", valid_photo())


# ============================================================================
# Resolution
# ============================================================================


class TestResolveDispute:
    """Tests for manual resolution."""

    def test_event_order(self, engine, sent, outbox):
        dispute = engine.create_dispute(sent, "damaged", "globex")
        outbox.clear()
        engine.resolve_dispute(
            dispute.id,
            "brand_owner",
            DisputeDecision.FAVOR_CREATOR,
            "photos show damage",
            [ResolutionAction.REFUND],
            Compensation(250.0, "globex", reason="damaged"),
        )
        assert topics(outbox) == [
            "dispute.resolved",
            "trust.update_required",
            "trust.update_required",
            "dispute.action_execute",
            "dispute.compensation_required",
            "transaction.update_required",
        ]
        compensation = outbox.events("dispute.compensation_required")[0].payload["compensation"]
        assert compensation["amount"] == 250.0

    @pytest.mark.parametrize(
        "decision,expected",
        [
            (DisputeDecision.FAVOR_CREATOR, {("globex", "dispute_won"), ("acme", "dispute_lost")}),
            (DisputeDecision.FAVOR_RESPONDENT, {("acme", "dispute_won"), ("globex", "false_claim")}),
            (DisputeDecision.SPLIT, set()),
            (DisputeDecision.VOID, set()),
        ],
    )
    def test_trust_updates(self, engine, sent, outbox, decision, expected):
        dispute = engine.create_dispute(sent, "damaged", "globex")
        engine.resolve_dispute(dispute.id, "brand_owner", decision, "decided")
        updates = {(e.payload["participant"], e.payload["action"]) for e in outbox.events("trust.update_required")}
        assert updates == expected

    def test_system_creator_skipped(self, engine, machine, outbox, clock):
        machine.create_transaction("TX-3", "acme", "globex", "SKU-1", 10)
        clock.advance(hours=72)
        machine.sweep_timeouts()
        outbox.clear()
        dispute = engine.create_dispute(machine.get_transaction("TX-3"), "not_received", "system")
        engine.resolve_dispute(dispute.id, "brand_owner", DisputeDecision.FAVOR_CREATOR, "sender never shipped")
        updates = [(e.payload["participant"], e.payload["action"]) for e in outbox.events("trust.update_required")]
        assert updates == [("acme", TrustAction.DISPUTE_LOST.value)]

    def test_resolve_once(self, engine, sent, scheduler):
        dispute = engine.create_dispute(sent, "damaged", "globex")
        engine.resolve_dispute(dispute.id, "brand_owner", DisputeDecision.SPLIT, "shared")
        assert not scheduler.is_scheduled(dispute.id)
        with pytest.raises(InvalidTransitionError):
            engine.resolve_dispute(dispute.id, "brand_owner", DisputeDecision.FAVOR_CREATOR, "again")

    def test_unknown_dispute(self, engine):
        with pytest.raises(NotFoundError):
            engine.resolve_dispute("DSP-none", "x", DisputeDecision.VOID, "n/a")


# ============================================================================
# Status and escalation
# ============================================================================


class TestStatus:
    """Tests for status moves and escalation routing."""

    def test_resolved_status_records_void(self, engine, sent):
        dispute = engine.create_dispute(sent, "damaged", "globex")
        closed = engine.update_status(dispute.id, DisputeStatus.RESOLVED, "brand_owner", "withdrawn")
        assert closed.resolution.decision == DisputeDecision.VOID
        assert closed.resolution.decided_by == "brand_owner"

    def test_same_status_rejected(self, engine, sent):
        dispute = engine.create_dispute(sent, "damaged", "globex")
        with pytest.raises(InvalidTransitionError):
            engine.update_status(dispute.id, DisputeStatus.OPEN, "brand_owner")

    def test_status_changed_event(self, engine, sent, outbox):
        dispute = engine.create_dispute(sent, "damaged", "globex")
        engine.update_status(dispute.id, DisputeStatus.INVESTIGATING, "brand_owner", "looking")
        payload = outbox.events("dispute.status_changed")[-1].payload
        assert payload["old_status"] == "OPEN"
        assert payload["new_status"] == "INVESTIGATING"

    def test_repeated_escalation_raises_level(self, engine, sent):
        dispute = engine.create_dispute(sent, "damaged", "globex")
        engine.update_status(dispute.id, DisputeStatus.ESCALATED, "brand_owner")
        escalated = engine.update_status(dispute.id, DisputeStatus.ESCALATED, "brand_owner")
        assert escalated.escalation_level == 2

    def test_default_handler(self, engine, sent, outbox):
        dispute = engine.create_dispute(sent, "damaged", "globex")
        engine.update_status(dispute.id, DisputeStatus.ESCALATED, "brand_owner")
        payload = outbox.events("dispute.escalated")[-1].payload
        assert payload["handler"] == "brand_owner"
        assert payload["priority"] == "high"

    def test_not_received_after_48_hours(self, engine, sent, clock):
        dispute = engine.create_dispute(sent, "not_received", "globex")
        clock.advance(hours=49)
        rule = engine.find_escalation_rule(engine.get_dispute(dispute.id))
        assert rule.handler == "brand_owner"
        assert rule.priority == "high"

    def test_high_value_is_urgent(self, engine, machine, outbox):
        machine.create_transaction("TX-4", "acme", "globex", "SKU-1", 60000)
        tx = machine.confirm_sent("TX-4", "acme")
        dispute = engine.create_dispute(tx, "damaged", "globex")
        engine.update_status(dispute.id, DisputeStatus.ESCALATED, "brand_owner")
        assert outbox.events("dispute.escalated")[-1].payload["priority"] == "urgent"

    def test_low_trust_requests_evidence(self, engine, sent, trust, outbox):
        """The lower of the two parties' scores decides the low-trust rule."""
        trust.apply_delta("acme", -20, TrustAction.ESCALATION_PENALTY)
        dispute = engine.create_dispute(sent, "damaged", "globex")
        engine.update_status(dispute.id, DisputeStatus.ESCALATED, "brand_owner")
        assert outbox.events("dispute.escalated")[-1].payload["handler"] == "brand_compliance"
        request = outbox.events("evidence.requested")[-1].payload
        assert request["required_types"] == ["photo", "document"]
        assert request["parties"] == ["globex", "acme"]


class TestDeadlines:
    """Tests for deadline checks and timers."""

    def test_check_deadline(self, engine, sent, clock):
        dispute = engine.create_dispute(sent, "damaged", "globex")
        assert engine.check_deadline(dispute.id) is False
        clock.advance(hours=24)
        assert engine.check_deadline(dispute.id) is True
        escalated = engine.get_dispute(dispute.id)
        assert escalated.status == DisputeStatus.ESCALATED
        assert escalated.escalation_level == 1
        assert engine.check_deadline(dispute.id) is False

    def test_check_deadlines_sweep(self, engine, sent, clock):
        first = engine.create_dispute(sent, "damaged", "globex")
        engine.create_dispute(sent, "wrong_item", "globex")
        clock.advance(hours=30)
        assert engine.check_deadlines() == [first.id]

    def test_resolved_dispute_not_escalated(self, engine, sent, clock):
        dispute = engine.create_dispute(sent, "damaged", "globex")
        engine.resolve_dispute(dispute.id, "brand_owner", DisputeDecision.SPLIT, "shared")
        clock.advance(days=5)
        assert engine.check_deadline(dispute.id) is False

    def test_recover_timers(self, engine, sent, clock, scheduler):
        a = engine.create_dispute(sent, "damaged", "globex")
        b = engine.create_dispute(sent, "wrong_item", "globex")
        c = engine.create_dispute(sent, "quality_issue", "globex")
        engine.resolve_dispute(c.id, "brand_owner", DisputeDecision.VOID, "dup")
        scheduler.shutdown()
        assert engine.recover_timers() == 2
        assert scheduler.is_scheduled(a.id) and scheduler.is_scheduled(b.id)
        assert not scheduler.is_scheduled(c.id)

    def test_timer_escalates(self, protocol_config, outbox, clock, scheduler, sent):
        """The armed timer runs the deadline check."""
        settings = DisputeSettings(types=[DisputeTypeConfig(id="fast", escalation_timeout=0.0002)])
        engine = DisputeResolutionEngine(settings, outbox, scheduler=scheduler, clock=clock)
        escalated = threading.Event()
        outbox.subscribe("dispute.escalated", lambda e: escalated.set())

        dispute = engine.create_dispute(sent, "fast", "globex")
        clock.advance(hours=1)
        assert escalated.wait(timeout=5)
        assert engine.get_dispute(dispute.id).status == DisputeStatus.ESCALATED


class TestQueries:
    """Tests for dispute listings."""

    def test_lists(self, engine, sent):
        a = engine.create_dispute(sent, "damaged", "globex")
        b = engine.create_dispute(sent, "wrong_item", "globex")
        engine.resolve_dispute(b.id, "brand_owner", DisputeDecision.VOID, "dup")
        assert [d.id for d in engine.list_open("acme")] == [a.id]
        assert engine.list_open("mallory") == []
        assert len(engine.list_for_transaction("TX-1")) == 2
        assert len(engine.list_all()) == 2

    def test_to_dict(self, engine, sent):
        data = engine.create_dispute(sent, "damaged", "globex").to_dict()
        assert data["status"] == "OPEN"
        assert data["resolution"] is None
