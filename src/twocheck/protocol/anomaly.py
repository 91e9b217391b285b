"""Rule-based anomaly detection for 2-Check submissions.

Five checks run against every submission, each contributing at most one
pattern:

    routing       blacklisted party, new route with a low-trust party,
                  circular routing back to an upstream party
    timing        high value outside business hours, sender velocity
    value         deviation from the route's typical value, large round
                  amounts, smurfing (increasing amounts that add up)
    frequency     many transfers between one pair, bursty senders
    relationship  high value with no prior history, large trust gap

The risk score is the confidence-weighted sum of severity weights, capped
at 100. The detector keeps its own sliding history of analysed
submissions and a per-party risk ledger.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from ..core.interfaces import Clock, utc_now
from ..core.outbox import Outbox
from ..core.types import RecommendedAction, Severity
from .trust import TrustScoringSystem

logger = logging.getLogger(__name__)

SEVERITY_WEIGHTS: dict[Severity, float] = {
    Severity.LOW: 10,
    Severity.MEDIUM: 25,
    Severity.HIGH: 50,
    Severity.CRITICAL: 100,
}

# Pattern codes
BLACKLISTED_PARTY = "blacklisted_party"
LOW_TRUST_ROUTE = "low_trust_route"
SUSPICIOUS_ROUTING = "suspicious_routing"
OFF_HOURS = "off_hours"
VELOCITY = "velocity"
VALUE_DEVIATION = "value_deviation"
ROUND_AMOUNT = "round_amount"
SMURFING = "smurfing"
PAIR_FREQUENCY = "pair_frequency"
BURST = "burst"
NEW_RELATIONSHIP = "new_relationship"
TRUST_GAP = "trust_gap"

HISTORY_WINDOW = timedelta(hours=24)


@dataclass
class DetectorThresholds:
    """Tunable thresholds for the anomaly checks."""

    min_trust_score: float = 30
    velocity_per_hour: int = 10
    business_hours: tuple[int, int] = (8, 18)
    off_hours_value: float = 10000
    value_deviation: float = 3.0
    round_amount_unit: float = 1000
    round_amount_value: float = 50000
    smurfing_min_count: int = 4
    smurfing_total: float = 10000
    pair_count_24h: int = 20
    burst_factor: float = 5.0
    burst_min_transactions: int = 10
    new_relationship_value: float = 25000
    trust_gap: float = 100
    emergency_risk_score: float = 90
    cumulative_risk: float = 200
    rapid_fire_interval_seconds: float = 60


@dataclass(frozen=True)
class TransactionRecord:
    """What the detector needs to know about a submission."""

    id: str
    sender: str
    receiver: str
    value: float
    timestamp: datetime
    item_id: str | None = None

    @classmethod
    def of(cls, transaction: Any, timestamp: datetime | None = None) -> TransactionRecord:
        if isinstance(transaction, TransactionRecord):
            return transaction
        return cls(
            id=transaction.id,
            sender=transaction.sender,
            receiver=transaction.receiver,
            value=float(transaction.value),
            timestamp=timestamp or getattr(transaction, "created", None) or utc_now(),
            item_id=getattr(transaction, "item_id", None),
        )


@dataclass(frozen=True)
class AnomalyPattern:
    type: str
    code: str
    severity: Severity
    confidence: float
    description: str

    @property
    def weight(self) -> float:
        return SEVERITY_WEIGHTS[self.severity] * self.confidence

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "code": self.code,
            "severity": self.severity.value,
            "confidence": self.confidence,
            "description": self.description,
        }


@dataclass
class AnomalyResult:
    transaction_id: str
    patterns: list[AnomalyPattern] = field(default_factory=list)
    risk_score: float = 0.0
    recommended_action: RecommendedAction = RecommendedAction.PROCEED
    analyzed_at: datetime | None = None

    @property
    def has_anomalies(self) -> bool:
        return bool(self.patterns)

    @property
    def reasons(self) -> list[str]:
        return [p.description for p in self.patterns]

    def has_pattern(self, code: str) -> bool:
        return any(p.code == code for p in self.patterns)

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "has_anomalies": self.has_anomalies,
            "patterns": [p.to_dict() for p in self.patterns],
            "risk_score": self.risk_score,
            "recommended_action": self.recommended_action.value,
            "reasons": self.reasons,
            "analyzed_at": self.analyzed_at.isoformat() if self.analyzed_at else None,
        }


@dataclass
class RouteStats:
    count: int = 0
    total_value: float = 0.0

    @property
    def typical_value(self) -> float:
        return self.total_value / self.count if self.count else 0.0


def risk_score(patterns: list[AnomalyPattern]) -> float:
    return min(100.0, sum(p.weight for p in patterns))


def recommend(score: float, patterns: list[AnomalyPattern]) -> RecommendedAction:
    if any(p.severity == Severity.CRITICAL for p in patterns) or score >= 80:
        return RecommendedAction.BLOCK
    if score >= 50:
        return RecommendedAction.FLAG
    if score >= 25:
        return RecommendedAction.REVIEW
    return RecommendedAction.PROCEED


class AnomalyDetector:
    """Scores submissions for fraud and routing anomalies.

    Usage:
        detector = AnomalyDetector(outbox, trust=trust)
        detector.blacklist_party("mallory", "chargeback fraud")
        result = detector.analyze_transaction(record)
        if result.recommended_action == RecommendedAction.BLOCK:
            ...
    """

    def __init__(
        self,
        outbox: Outbox,
        trust: TrustScoringSystem | None = None,
        clock: Clock = utc_now,
        thresholds: DetectorThresholds | None = None,
    ):
        self.outbox = outbox
        self.trust = trust
        self.clock = clock
        self.thresholds = thresholds or DetectorThresholds()
        self._lock = threading.Lock()
        self._blacklist: dict[str, str] = {}
        self._history: list[TransactionRecord] = []
        self._routes: dict[tuple[str, str], RouteStats] = {}
        self._risk_ledger: dict[str, list[tuple[datetime, float]]] = {}

    # -------------------------------------------------------------------------
    # Blacklist and history
    # -------------------------------------------------------------------------

    def blacklist_party(self, party: str, reason: str) -> None:
        with self._lock:
            self._blacklist[party] = reason
        logger.warning(f"Blacklisted party {party}: {reason}")
        self.outbox.publish("anomaly.party_blacklisted", {"party": party, "reason": reason})

    def remove_from_blacklist(self, party: str) -> bool:
        with self._lock:
            removed = self._blacklist.pop(party, None) is not None
        if removed:
            logger.info(f"Removed {party} from blacklist")
            self.outbox.publish("anomaly.party_unblacklisted", {"party": party})
        return removed

    def is_blacklisted(self, party: str) -> bool:
        with self._lock:
            return party in self._blacklist

    def seed_route_history(self, sender: str, receiver: str, typical_value: float, count: int = 1) -> None:
        """Preload route statistics, e.g. from an external store."""
        if count <= 0:
            raise ValueError("count must be positive")
        with self._lock:
            stats = self._routes.setdefault((sender, receiver), RouteStats())
            stats.count += count
            stats.total_value += typical_value * count

    def route_stats(self, sender: str, receiver: str) -> RouteStats | None:
        with self._lock:
            stats = self._routes.get((sender, receiver))
            return RouteStats(stats.count, stats.total_value) if stats else None

    def _record(self, record: TransactionRecord, score: float) -> None:
        cutoff = record.timestamp - HISTORY_WINDOW
        self._history = [r for r in self._history if r.timestamp > cutoff]
        self._history.append(record)
        stats = self._routes.setdefault((record.sender, record.receiver), RouteStats())
        stats.count += 1
        stats.total_value += record.value
        ledger = self._risk_ledger.setdefault(record.sender, [])
        ledger[:] = [(at, s) for at, s in ledger if at > cutoff]
        ledger.append((record.timestamp, score))

    def cumulative_risk(self, party: str, now: datetime | None = None) -> float:
        now = now or self.clock()
        with self._lock:
            return sum(s for at, s in self._risk_ledger.get(party, []) if now - at < HISTORY_WINDOW)

    # -------------------------------------------------------------------------
    # Analysis
    # -------------------------------------------------------------------------

    def analyze_transaction(self, transaction: Any) -> AnomalyResult:
        """Run every check against a submission and record it in the history."""
        record = TransactionRecord.of(transaction, getattr(transaction, "timestamp", None) or self.clock())
        with self._lock:
            checks = (
                self._check_routing,
                self._check_timing,
                self._check_value,
                self._check_frequency,
                self._check_relationship,
            )
            patterns = [p for p in (check(record) for check in checks) if p is not None]
            score = risk_score(patterns)
            self._record(record, score)

        result = AnomalyResult(
            transaction_id=record.id,
            patterns=patterns,
            risk_score=score,
            recommended_action=recommend(score, patterns),
            analyzed_at=self.clock(),
        )
        if result.has_anomalies:
            logger.warning(
                f"Anomalies on {record.id}: risk={score:.1f} action={result.recommended_action} "
                f"patterns={[p.code for p in patterns]}"
            )
            self.outbox.publish("anomaly.detected", result.to_dict())
        return result

    def _trust(self, party: str) -> float | None:
        if self.trust is None:
            return None
        if self.trust.has_participant(party):
            return self.trust.get_score_value(party)
        return self.trust.config.initial_score

    def _recent(self, record: TransactionRecord, window: timedelta) -> list[TransactionRecord]:
        return [r for r in self._history if timedelta(0) <= record.timestamp - r.timestamp < window]

    def _check_routing(self, record: TransactionRecord) -> AnomalyPattern | None:
        t = self.thresholds
        if record.sender in self._blacklist or record.receiver in self._blacklist:
            return AnomalyPattern("routing", BLACKLISTED_PARTY, Severity.CRITICAL, 1.0, "Transaction involves blacklisted party")

        if (record.sender, record.receiver) not in self._routes:
            scores = [s for s in (self._trust(record.sender), self._trust(record.receiver)) if s is not None]
            if any(s < t.min_trust_score for s in scores):
                return AnomalyPattern("routing", LOW_TRUST_ROUTE, Severity.HIGH, 0.8, "Unusual route with low trust parties")

        if record.receiver in self._upstream(record):
            return AnomalyPattern("routing", SUSPICIOUS_ROUTING, Severity.HIGH, 0.9, "Potential circular routing detected")
        return None

    def _upstream(self, record: TransactionRecord) -> set[str]:
        """Parties that passed goods toward the sender within the last day."""
        recent = self._recent(record, HISTORY_WINDOW)
        upstream: set[str] = set()
        frontier = {record.sender}
        while frontier:
            feeders = {r.sender for r in recent if r.receiver in frontier} - upstream - {record.sender}
            upstream |= feeders
            frontier = feeders
        return upstream

    def _check_timing(self, record: TransactionRecord) -> AnomalyPattern | None:
        t = self.thresholds
        start, end = t.business_hours
        known_route = (record.sender, record.receiver) in self._routes
        if known_route and not start <= record.timestamp.hour <= end and record.value > t.off_hours_value:
            return AnomalyPattern("timing", OFF_HOURS, Severity.MEDIUM, 0.7, "High-value transaction outside business hours")

        last_hour = [r for r in self._recent(record, timedelta(hours=1)) if r.sender == record.sender]
        if len(last_hour) > t.velocity_per_hour:
            return AnomalyPattern("timing", VELOCITY, Severity.HIGH, 0.85, "Unusual transaction velocity detected")
        return None

    def _check_value(self, record: TransactionRecord) -> AnomalyPattern | None:
        t = self.thresholds
        stats = self._routes.get((record.sender, record.receiver))
        if stats and stats.typical_value > 0:
            deviation = abs(record.value - stats.typical_value) / stats.typical_value
            if deviation > t.value_deviation:
                return AnomalyPattern(
                    "value", VALUE_DEVIATION, Severity.HIGH, 0.9, f"Transaction value deviates {deviation * 100:.0f}% from typical"
                )

        if record.value > t.round_amount_value and record.value % t.round_amount_unit == 0:
            return AnomalyPattern("value", ROUND_AMOUNT, Severity.MEDIUM, 0.6, "Large round number transaction")

        if self._is_smurfing(record):
            return AnomalyPattern("value", SMURFING, Severity.CRITICAL, 0.95, "Potential smurfing pattern detected")
        return None

    def _is_smurfing(self, record: TransactionRecord) -> bool:
        t = self.thresholds
        values = [r.value for r in self._recent(record, HISTORY_WINDOW) if r.sender == record.sender]
        values.append(record.value)
        run = [values[-1]]
        for value in reversed(values[:-1]):
            if value >= run[0]:
                break
            run.insert(0, value)
        return len(run) >= t.smurfing_min_count and sum(run) > t.smurfing_total

    def _check_frequency(self, record: TransactionRecord) -> AnomalyPattern | None:
        t = self.thresholds
        day = self._recent(record, HISTORY_WINDOW)
        pair = [r for r in day if {r.sender, r.receiver} == {record.sender, record.receiver}]
        if len(pair) > t.pair_count_24h:
            return AnomalyPattern(
                "frequency", PAIR_FREQUENCY, Severity.HIGH, 0.8, f"{len(pair)} transactions in 24 hours between same parties"
            )

        sent = [r for r in day if r.sender == record.sender]
        if len(sent) >= t.burst_min_transactions:
            hourly = [0] * 24
            for r in sent:
                hourly[min(23, int((record.timestamp - r.timestamp).total_seconds() // 3600))] += 1
            mean = sum(hourly) / len(hourly)
            if max(hourly) > mean * t.burst_factor:
                return AnomalyPattern("frequency", BURST, Severity.MEDIUM, 0.75, "Burst transaction pattern detected")
        return None

    def _check_relationship(self, record: TransactionRecord) -> AnomalyPattern | None:
        t = self.thresholds
        has_history = (record.sender, record.receiver) in self._routes or (record.receiver, record.sender) in self._routes
        if not has_history and record.value > t.new_relationship_value:
            return AnomalyPattern(
                "relationship", NEW_RELATIONSHIP, Severity.MEDIUM, 0.7, "High-value transaction with no prior relationship"
            )

        sender_trust, receiver_trust = self._trust(record.sender), self._trust(record.receiver)
        if sender_trust is not None and receiver_trust is not None and abs(sender_trust - receiver_trust) > t.trust_gap:
            return AnomalyPattern(
                "relationship", TRUST_GAP, Severity.MEDIUM, 0.65, "Large trust score disparity between parties"
            )
        return None

    # -------------------------------------------------------------------------
    # Decisions
    # -------------------------------------------------------------------------

    def should_trigger_emergency_stop(self, transaction: Any, result: AnomalyResult) -> bool:
        if result.risk_score >= self.thresholds.emergency_risk_score:
            return True
        if result.recommended_action == RecommendedAction.BLOCK:
            return True
        if self.is_blacklisted(transaction.sender) or self.is_blacklisted(transaction.receiver):
            return True
        return self.cumulative_risk(transaction.sender) > self.thresholds.cumulative_risk

    def detect_fraud_pattern(self, transactions: list[Any]) -> bool:
        """Rapid-fire timing or strictly increasing values across a sequence."""
        records = [TransactionRecord.of(t, getattr(t, "timestamp", None)) for t in transactions]
        if len(records) >= 2:
            intervals = [
                (b.timestamp - a.timestamp).total_seconds() for a, b in zip(records, records[1:])
            ]
            if sum(intervals) / len(intervals) < self.thresholds.rapid_fire_interval_seconds:
                return True
        values = [r.value for r in records]
        return len(values) > 3 and all(b > a for a, b in zip(values, values[1:]))

    def summary(self) -> dict[str, Any]:
        with self._lock:
            return {
                "blacklisted": sorted(self._blacklist),
                "tracked_transactions": len(self._history),
                "known_routes": len(self._routes),
            }
