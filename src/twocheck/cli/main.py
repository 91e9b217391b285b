# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""
2-Check CLI - validate protocol configuration and run local simulations.

Commands:
  twocheck check-config              Validate and summarize the protocol documents
  twocheck simulate                  Run a transaction through an in-memory engine
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timedelta
from typing import Any

from ..core.exceptions import ConfigException, TwoCheckException
from ..core.interfaces import InMemoryLedgerClient, RecordingNotificationSender, utc_now
from ..core.logging import configure_logging
from ..core.protocol_config import ProtocolConfig, load_protocol_config
from ..core.types import DisputeDecision
from ..protocol.orchestrator import Orchestrator
from .output import output_error, output_result

logger = logging.getLogger(__name__)

SCENARIOS = ("happy", "dispute", "timeout")


class SimulationClock:
    """Manually advanced clock so a simulation can cross deadlines instantly."""

    def __init__(self, start: datetime | None = None):
        self.now = start or utc_now()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> datetime:
        self.now += delta
        return self.now


# ============================================================================
# check-config
# ============================================================================


def summarize_config(config: ProtocolConfig) -> dict[str, Any]:
    consensus = config.consensus
    trust = config.trust
    return {
        "states": {
            "initial": consensus.states.initial.value,
            "terminal": [s.value for s in consensus.states.terminal],
            "transitions": {s.value: [t.value for t in targets] for s, targets in consensus.states.transitions.items()},
        },
        "timeouts": {
            "default_hours": consensus.timeouts.default,
            "categories": [c.name for c in consensus.timeouts.categories],
            "reminders": dict(consensus.timeouts.reminders.thresholds()),
        },
        "dispute_types": [t.id for t in consensus.disputes.types],
        "transaction_types": {
            name: [f"{lvl.at_percent:g}% {lvl.action.value}" for lvl in rules.escalation_levels]
            for name, rules in config.timeout_rules.transaction_types.items()
        },
        "trust": {
            "initial_score": trust.initial_score,
            "range": [trust.min_score, trust.max_score],
            "levels": [lvl.name for lvl in trust.trust_levels],
        },
        "emergency_stop": {
            "enabled": consensus.emergency_stop.enabled,
            "risk_score_threshold": consensus.emergency_stop.risk_score_threshold,
            "max_transaction_value": consensus.emergency_stop.max_transaction_value,
        },
    }


def cmd_check_config(args: argparse.Namespace) -> int:
    """Validate the protocol documents and print a summary."""
    try:
        config = load_protocol_config(args.config_dir)
    except ConfigException as e:
        output_error(e.message, e.details)
        return 1
    output_result({"valid": True, "config_dir": args.config_dir, "summary": summarize_config(config)})
    return 0


# ============================================================================
# simulate
# ============================================================================


def run_simulation(
    scenario: str,
    sender: str,
    receiver: str,
    value: float,
    item_id: str = "ITEM-001",
    transaction_type: str | None = None,
    config_dir: str | None = None,
) -> dict[str, Any]:
    """Drive one transaction through a fresh in-memory orchestrator."""
    clock = SimulationClock()
    notifier = RecordingNotificationSender()
    ledger = InMemoryLedgerClient()
    config = load_protocol_config(config_dir) if config_dir else None
    orchestrator = Orchestrator(config=config, ledger=ledger, notifier=notifier, clock=clock)
    transaction_id = f"SIM-{scenario.upper()}-001"
    metadata = {"transaction_type": transaction_type} if transaction_type else None

    try:
        orchestrator.submit_transaction(transaction_id, sender, receiver, item_id, value, metadata)
        if scenario == "happy":
            clock.advance(timedelta(hours=2))
            orchestrator.confirm_sent(transaction_id, sender)
            clock.advance(timedelta(hours=6))
            orchestrator.confirm_received(transaction_id, receiver)
        elif scenario == "dispute":
            orchestrator.confirm_sent(transaction_id, sender)
            clock.advance(timedelta(hours=4))
            dispute = orchestrator.raise_dispute(transaction_id, receiver, "not_received", "Package never arrived")
            orchestrator.submit_evidence(
                transaction_id,
                "tracking",
                {"tracking_number": "1Z999AA10123456784", "carrier": "UPS", "status": "lost"},
                receiver,
            )
            if not orchestrator.disputes.get_dispute(dispute.id).is_resolved:
                orchestrator.resolve_dispute(
                    dispute.id, "brand_owner", DisputeDecision.FAVOR_CREATOR, "Carrier confirmed the loss"
                )
        else:
            orchestrator.confirm_sent(transaction_id, sender)
            timeout_at = orchestrator.get_transaction(transaction_id).timeout_at
            clock.now = timeout_at + timedelta(seconds=1)
            orchestrator.tick(clock.now)

        return {
            "scenario": scenario,
            "report": orchestrator.transaction_report(transaction_id),
            "trust": {
                party: orchestrator.get_trust_score(party).to_dict() for party in (sender, receiver)
            },
            "notifications": [n.to_dict() for n in notifier.sent],
            "ledger_calls": [{"kind": kind, "function": name, "args": a} for kind, name, a in ledger.calls],
            "metrics": orchestrator.system_metrics(),
        }
    finally:
        orchestrator.shutdown()


def cmd_simulate(args: argparse.Namespace) -> int:
    """Run a simulated transaction and print the outcome as JSON."""
    try:
        result = run_simulation(
            args.scenario,
            args.sender,
            args.receiver,
            args.value,
            item_id=args.item,
            transaction_type=args.transaction_type,
            config_dir=args.config_dir,
        )
    except TwoCheckException as e:
        output_error(e.message, e.details)
        return 1
    output_result(result)
    return 0


# ============================================================================
# Main Entry Point
# ============================================================================


def app() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="twocheck",
        description="2-Check dual-confirmation protocol engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  twocheck check-config                         Validate the packaged defaults
  twocheck check-config --config-dir ./config   Validate overrides
  twocheck simulate                             Happy path in memory
  twocheck simulate --scenario dispute          Dispute raised and resolved
  twocheck simulate --scenario timeout          Receiver never confirms
        """,
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: TWOCHECK_LOG_LEVEL)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    check_parser = subparsers.add_parser("check-config", help="Validate and summarize protocol configuration")
    check_parser.add_argument("--config-dir", default=None, help="Directory with override YAML documents")
    check_parser.set_defaults(func=cmd_check_config)

    sim_parser = subparsers.add_parser("simulate", help="Run a transaction through an in-memory engine")
    sim_parser.add_argument("--scenario", choices=SCENARIOS, default="happy", help="Which path to simulate")
    sim_parser.add_argument("--sender", default="supplier-a", help="Sending party")
    sim_parser.add_argument("--receiver", default="manufacturer-b", help="Receiving party")
    sim_parser.add_argument("--value", type=float, default=1000.0, help="Transaction value")
    sim_parser.add_argument("--item", default="ITEM-001", help="Item id")
    sim_parser.add_argument("--transaction-type", default=None, help="Escalation rule set, e.g. supplier_to_manufacturer")
    sim_parser.add_argument("--config-dir", default=None, help="Directory with override YAML documents")
    sim_parser.set_defaults(func=cmd_simulate)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = app()
    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, json_format=False)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
