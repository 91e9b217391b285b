# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Trust scoring for 2-Check participants.

Every participant has one bounded score (default 0-200). Protocol actions
move it through configured rules; the resulting level decides which
automation the participant may use.

Scoring:
    points = rule.base_points
             * first matching rule multiplier (context conditions)
             * transaction value tier multiplier
    score  = clamp(score + points, min_score, max_score)

Decay:
    Participants inactive past the threshold lose ``1 - decay_rate`` of their
    score per check interval, never going below the post-decay floor.

Recovery:
    A clean dispute record over the recovery period and a run of successful
    transactions each grant a one-off bonus per qualifying period.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from ..core.exceptions import ConfigMissingError, NotFoundError
from ..core.interfaces import Clock, utc_now
from ..core.locks import KeyedLock
from ..core.outbox import Outbox
from ..core.protocol_config import AutomationRule, TrustLevel, TrustScoringConfig
from ..core.types import Capability, TrustAction

logger = logging.getLogger(__name__)

# Capability -> benefit string on the level
CAPABILITY_BENEFITS: dict[Capability, str] = {
    Capability.BATCH_OPERATIONS: "batch_operations_allowed",
    Capability.AUTO_APPROVAL: "transactions_auto_approved",
    Capability.EXTENDED_TIMEOUT: "extended_timeouts",
    Capability.API_ACCESS: "api_access_granted",
}

DISPUTE_ACTIONS = {
    TrustAction.DISPUTE_WON,
    TrustAction.DISPUTE_LOST,
    TrustAction.FALSE_CLAIM,
    TrustAction.DISPUTE_RESOLVED_FAVORABLY,
    TrustAction.DISPUTED_TRANSACTION,
}
DISPUTE_LOSSES = {TrustAction.DISPUTE_LOST, TrustAction.FALSE_CLAIM}

CLEAN_RECORD = "clean_record"
VOLUME = "volume"


@dataclass(frozen=True)
class TrustEvent:
    """One entry in a participant's scoring history."""

    timestamp: datetime
    action: TrustAction
    delta: float
    score_before: float
    score_after: float
    transaction_id: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "delta": self.delta,
            "score_before": self.score_before,
            "score_after": self.score_after,
            "transaction_id": self.transaction_id,
            "reason": self.reason,
        }


@dataclass
class TrustStatistics:
    total_transactions: int = 0
    successful_transactions: int = 0
    disputes: int = 0
    disputes_won: int = 0
    disputes_lost: int = 0
    last_activity: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_transactions": self.total_transactions,
            "successful_transactions": self.successful_transactions,
            "disputes": self.disputes,
            "disputes_won": self.disputes_won,
            "disputes_lost": self.disputes_lost,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
        }


@dataclass
class TrustScore:
    """A participant's score, level, history and statistics."""

    participant_id: str
    score: float
    level: TrustLevel
    created: datetime
    history: list[TrustEvent] = field(default_factory=list)
    statistics: TrustStatistics = field(default_factory=TrustStatistics)
    flagged: bool = False
    flag_reasons: list[str] = field(default_factory=list)
    last_decay: datetime | None = None
    bonuses_granted: dict[str, datetime] = field(default_factory=dict)

    def to_dict(self, include_history: bool = False) -> dict[str, Any]:
        result: dict[str, Any] = {
            "participant_id": self.participant_id,
            "score": round(self.score, 4),
            "level": self.level.name,
            "benefits": list(self.level.benefits),
            "statistics": self.statistics.to_dict(),
            "flagged": self.flagged,
            "flag_reasons": list(self.flag_reasons),
            "created": self.created.isoformat(),
        }
        if include_history:
            result["history"] = [e.to_dict() for e in self.history]
        return result


@dataclass
class TrustUpdate:
    """A request to score one action for one participant."""

    participant: str
    action: TrustAction
    value: float | None = None
    transaction_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None


class TrustScoringSystem:
    """Owns every participant's trust score."""

    def __init__(
        self,
        config: TrustScoringConfig,
        outbox: Outbox,
        clock: Clock = utc_now,
        locks: KeyedLock | None = None,
    ):
        self.config = config
        self.outbox = outbox
        self.clock = clock
        self.locks = locks or KeyedLock()
        self._scores: dict[str, TrustScore] = {}

    @staticmethod
    def _key(participant: str) -> str:
        return f"trust:{participant}"

    # -------------------------------------------------------------------------
    # Scores
    # -------------------------------------------------------------------------

    def _get_or_create(self, participant: str) -> TrustScore:
        score = self._scores.get(participant)
        if score is None:
            now = self.clock()
            initial = self.config.initial_score
            score = TrustScore(
                participant_id=participant,
                score=initial,
                level=self.config.level_for(initial),
                created=now,
            )
            score.history.append(TrustEvent(now, TrustAction.ACCOUNT_CREATED, 0.0, initial, initial))
            self._scores[participant] = score
            logger.debug(f"Initialized trust score for {participant} at {initial}")
        return score

    def get_trust_score(self, participant: str) -> TrustScore:
        """Return the participant's score, creating it at the initial score if new."""
        with self.locks.hold(self._key(participant)):
            return copy.deepcopy(self._get_or_create(participant))

    def get_score_value(self, participant: str) -> float:
        with self.locks.hold(self._key(participant)):
            return self._get_or_create(participant).score

    def has_participant(self, participant: str) -> bool:
        return participant in self._scores

    def participants(self) -> list[str]:
        return list(self._scores)

    def update_trust_score(self, update: TrustUpdate) -> TrustScore:
        """Score one protocol action.

        Raises:
            ConfigMissingError: If the action has no positive or negative rule
        """
        action = TrustAction(update.action)
        rule = self.config.rule_for(action)
        if rule is None:
            raise ConfigMissingError("trust rule", action.value)

        points = rule.base_points
        for multiplier in rule.multiplier:
            if multiplier.condition.matches(update.context):
                points *= multiplier.value
                break
        points *= self.config.value_multiplier(update.value)

        with self.locks.hold(self._key(update.participant)):
            score = self._get_or_create(update.participant)
            self._record_statistics(score, action)
            self._apply(score, points, action, update.transaction_id, update.reason or rule.description)
            return copy.deepcopy(score)

    def apply_delta(
        self,
        participant: str,
        delta: float,
        action: TrustAction,
        reason: str | None = None,
        transaction_id: str | None = None,
    ) -> TrustScore:
        """Apply a raw signed point change (penalties, bonuses, decay)."""
        with self.locks.hold(self._key(participant)):
            score = self._get_or_create(participant)
            self._apply(score, delta, TrustAction(action), transaction_id, reason)
            return copy.deepcopy(score)

    def _record_statistics(self, score: TrustScore, action: TrustAction) -> None:
        stats = score.statistics
        stats.last_activity = self.clock()
        if action == TrustAction.SUCCESSFUL_TRANSACTION:
            stats.total_transactions += 1
            stats.successful_transactions += 1
        elif action == TrustAction.CAUSED_TIMEOUT:
            stats.total_transactions += 1
        if action in DISPUTE_ACTIONS:
            stats.disputes += 1
        if action in (TrustAction.DISPUTE_WON, TrustAction.DISPUTE_RESOLVED_FAVORABLY):
            stats.disputes_won += 1
        elif action in DISPUTE_LOSSES:
            stats.disputes_lost += 1

    def _apply(
        self,
        score: TrustScore,
        delta: float,
        action: TrustAction,
        transaction_id: str | None,
        reason: str | None,
    ) -> None:
        before = score.score
        after = min(self.config.max_score, max(self.config.min_score, before + delta))
        previous_level = score.level
        score.score = after
        score.level = self.config.level_for(after)
        score.history.append(TrustEvent(self.clock(), action, after - before, before, after, transaction_id, reason))

        logger.debug(f"Trust {score.participant_id}: {before:.2f} -> {after:.2f} ({action})")
        self.outbox.publish(
            "trust.score_updated",
            {
                "participant": score.participant_id,
                "action": action.value,
                "delta": after - before,
                "score": after,
                "transaction_id": transaction_id,
            },
        )
        if score.level.name != previous_level.name:
            logger.info(f"Trust level for {score.participant_id}: {previous_level.name} -> {score.level.name}")
            self.outbox.publish(
                "trust.level_changed",
                {
                    "participant": score.participant_id,
                    "old_level": previous_level.name,
                    "new_level": score.level.name,
                    "score": after,
                },
            )

    # -------------------------------------------------------------------------
    # Capabilities
    # -------------------------------------------------------------------------

    def can_perform_action(self, participant: str, capability: Capability) -> bool:
        """Check whether the participant's level grants a capability."""
        benefit = CAPABILITY_BENEFITS[Capability(capability)]
        with self.locks.hold(self._key(participant)):
            benefits = self._get_or_create(participant).level.benefits
        if capability == Capability.AUTO_APPROVAL:
            return any(b.endswith(benefit) for b in benefits)
        return benefit in benefits

    def get_automation_rules(self, participant: str) -> list[AutomationRule]:
        """Automation rules the participant's current score qualifies for."""
        score = self.get_score_value(participant)
        return [rule for rule in self.config.automation_rules if score >= rule.min_trust_score]

    # -------------------------------------------------------------------------
    # Decay and recovery
    # -------------------------------------------------------------------------

    def apply_decay(self, now: datetime | None = None) -> list[str]:
        """Decay inactive participants. Returns the ids that decayed."""
        decay = self.config.decay
        if not decay.enabled:
            return []
        now = now or self.clock()
        inactivity = timedelta(days=decay.inactivity_threshold)
        interval = timedelta(days=decay.check_interval)
        decayed = []

        for participant in list(self._scores):
            try:
                with self.locks.hold(self._key(participant)):
                    score = self._scores[participant]
                    last_active = score.statistics.last_activity or score.created
                    if now - last_active < inactivity:
                        continue
                    if score.last_decay is not None and now - score.last_decay < interval:
                        continue
                    if score.score <= decay.min_score_after_decay:
                        continue
                    target = max(score.score * decay.decay_rate, decay.min_score_after_decay)
                    score.last_decay = now
                    self._apply(
                        score,
                        target - score.score,
                        TrustAction.INACTIVITY_DECAY,
                        None,
                        f"inactive since {last_active.date().isoformat()}",
                    )
                    decayed.append(participant)
            except Exception:
                logger.exception(f"Trust decay failed for {participant}")

        if decayed:
            logger.info(f"Applied trust decay to {len(decayed)} participants")
        return decayed

    def check_recovery_bonus(self, participant: str, now: datetime | None = None) -> list[str]:
        """Grant any recovery bonuses the participant has earned. Returns their names."""
        now = now or self.clock()
        recovery = self.config.recovery
        granted = []

        with self.locks.hold(self._key(participant)):
            score = self._get_or_create(participant)

            clean = recovery.dispute_recovery
            if clean.enabled and score.statistics.disputes > 0:
                period = timedelta(days=clean.clean_record_period)
                since = now - period
                recent_losses = [e for e in score.history if e.action in DISPUTE_LOSSES and e.timestamp >= since]
                if score.created <= since and not recent_losses and self._bonus_due(score, CLEAN_RECORD, now, period):
                    score.bonuses_granted[CLEAN_RECORD] = now
                    self._apply(score, clean.bonus_points, TrustAction.CLEAN_RECORD_BONUS, None, "clean dispute record")
                    granted.append(CLEAN_RECORD)

            volume = recovery.volume_recovery
            if volume.enabled:
                window = timedelta(days=volume.window)
                since = now - window
                successes = sum(
                    1 for e in score.history if e.action == TrustAction.SUCCESSFUL_TRANSACTION and e.timestamp >= since
                )
                if successes >= volume.threshold and self._bonus_due(score, VOLUME, now, window):
                    score.bonuses_granted[VOLUME] = now
                    self._apply(
                        score, volume.bonus_points, TrustAction.VOLUME_BONUS, None, f"{successes} successful transactions"
                    )
                    granted.append(VOLUME)

        return granted

    @staticmethod
    def _bonus_due(score: TrustScore, bonus: str, now: datetime, period: timedelta) -> bool:
        last = score.bonuses_granted.get(bonus)
        return last is None or now - last >= period

    # -------------------------------------------------------------------------
    # Flags
    # -------------------------------------------------------------------------

    def flag_party(self, participant: str, reason: str) -> TrustScore:
        with self.locks.hold(self._key(participant)):
            score = self._get_or_create(participant)
            score.flagged = True
            score.flag_reasons.append(reason)
            score.history.append(
                TrustEvent(self.clock(), TrustAction.FLAGGED, 0.0, score.score, score.score, reason=reason)
            )
            snapshot = copy.deepcopy(score)
        logger.warning(f"Flagged participant {participant}: {reason}")
        self.outbox.publish("trust.party_flagged", {"participant": participant, "reason": reason})
        return snapshot

    def get_flagged_parties(self, threshold: float | None = None) -> list[TrustScore]:
        """Explicitly flagged participants and those below the flag threshold."""
        limit = self.config.flag_threshold if threshold is None else threshold
        return [
            copy.deepcopy(s) for s in list(self._scores.values()) if s.flagged or s.score < limit
        ]

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_history(
        self,
        participant: str,
        limit: int | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[TrustEvent]:
        """Scoring history, oldest first, optionally windowed and limited to the latest ``limit``."""
        score = self._scores.get(participant)
        if score is None:
            raise NotFoundError("Participant", participant)
        with self.locks.hold(self._key(participant)):
            events = [
                e
                for e in score.history
                if (start is None or e.timestamp >= start) and (end is None or e.timestamp <= end)
            ]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def get_leaderboard(self, limit: int = 10) -> list[dict[str, Any]]:
        ranked = sorted(list(self._scores.values()), key=lambda s: (-s.score, s.participant_id))
        return [
            {"rank": i + 1, "participant_id": s.participant_id, "score": round(s.score, 4), "level": s.level.name}
            for i, s in enumerate(ranked[:limit])
        ]

    def export_summary(self) -> dict[str, Any]:
        scores = list(self._scores.values())
        by_level: dict[str, int] = {level.name: 0 for level in self.config.trust_levels}
        for s in scores:
            by_level[s.level.name] = by_level.get(s.level.name, 0) + 1
        average = sum(s.score for s in scores) / len(scores) if scores else 0.0
        return {
            "participants": len(scores),
            "average_score": round(average, 4),
            "by_level": by_level,
            "flagged": sum(1 for s in scores if s.flagged),
        }
