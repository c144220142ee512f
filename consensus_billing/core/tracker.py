"""
Usage tracking.

Records messages, debates, exports and API calls, and keeps a cache of the
current daily and monthly aggregates for each user.

Every write for a user runs under that user's lock: validation, the append
to the log and the aggregate update happen as one step, so two concurrent
requests for the same user can never lose an update. Requests for
different users do not contend.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple, Union

from consensus_billing.config.logger import get_logger
from consensus_billing.storage.models import EventType, SubscriptionTier, UsageEvent

from .aggregates import (
    Period,
    UsageAggregate,
    UsageStats,
    add_event,
    compute_stats,
    fold_events,
    period_key,
)
from .alerts import AlertThresholds, BudgetAlert, check_budget_alerts
from .errors import QuotaExceededError
from .limits import LimitCheck, UsageViolation, check_action_limit
from .recorder import EventRecorder
from .tiers import DEFAULT_TIER_TABLE, TierLimits, TierTable, parse_tier

LOGGER = get_logger("consensus_billing.tracker")

# Most recent blocked actions kept across all users
MAX_VIOLATIONS = 1000

TierLike = Union[SubscriptionTier, str]
PeriodLike = Union[Period, str]

TOPIC_CATEGORIES = {
    "Technology": ("tech", "software", "ai", "digital", "innovation", "platform"),
    "Finance": ("budget", "cost", "revenue", "profit", "investment", "pricing"),
    "Marketing": ("marketing", "brand", "customer", "campaign", "promotion", "advertising"),
    "Strategy": ("strategy", "growth", "expansion", "competition", "market", "planning"),
    "Operations": ("operations", "process", "efficiency", "workflow", "logistics", "supply"),
    "HR": ("hiring", "employee", "team", "culture", "talent", "training"),
}


def categorize_topic(topic: str) -> str:
    """First category whose keyword appears in the topic, else General."""
    lowered = topic.lower()
    for category, keywords in TOPIC_CATEGORIES.items():
        if any(keyword in lowered for keyword in keywords):
            return category
    return "General"


@dataclass(frozen=True)
class UsageReport:
    """Everything a usage dashboard needs for one user."""
    daily: UsageAggregate
    monthly: UsageAggregate
    limits: TierLimits
    alerts: List[BudgetAlert] = field(default_factory=list)


class UsageTracker:
    """Records billable actions and serves per-period usage aggregates.

    One lock and one cached aggregate per period are kept for every user
    seen, for the life of the tracker. Only the latest ``MAX_VIOLATIONS``
    violations are kept.
    """

    def __init__(
        self,
        recorder: EventRecorder,
        tiers: TierTable = DEFAULT_TIER_TABLE,
        alert_thresholds: Optional[AlertThresholds] = None,
    ):
        self.recorder = recorder
        self.tiers = tiers
        self.alert_thresholds = alert_thresholds or AlertThresholds()
        self.clock = recorder.clock
        self._cache: Dict[Tuple[str, Period], UsageAggregate] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._violations: Deque[UsageViolation] = deque(maxlen=MAX_VIOLATIONS)

    def record_message(
        self,
        user_id: str,
        model: str,
        tokens_used: int,
        actual_cost: float,
        *,
        tier: TierLike = SubscriptionTier.STARTER,
        estimated_cost: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UsageEvent:
        """Record one chat message and update the user's aggregates.

        Args:
            user_id: User who sent the message
            model: Model identifier that answered
            tokens_used: Total tokens consumed
            actual_cost: Cost charged for the message
            tier: Tier the message is billed under
            estimated_cost: Pre-call estimate; defaults to actual_cost
            metadata: Extra details stored with the event

        Returns:
            The stored event

        Raises:
            InvalidEventError: If any field fails validation
        """
        return self._record(UsageEvent(
            user_id=user_id,
            event_type=EventType.MESSAGE,
            model=model,
            tokens_used=tokens_used,
            estimated_cost=actual_cost if estimated_cost is None else estimated_cost,
            actual_cost=actual_cost,
            tier=parse_tier(tier),
            metadata=dict(metadata or {}),
        ))

    def record_debate(
        self,
        user_id: str,
        model: str,
        tokens_used: int,
        actual_cost: float,
        *,
        tier: TierLike = SubscriptionTier.STARTER,
        rounds: int = 2,
        personas: int = 3,
        topic: Optional[str] = None,
        estimated_cost: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UsageEvent:
        """Record one completed debate and update the user's aggregates.

        The debate's shape (rounds, personas) and its topic category are
        stored in the event metadata.
        """
        details = dict(metadata or {})
        details.update({"rounds": rounds, "personas": personas})
        if topic:
            details["topic"] = topic
            details["category"] = categorize_topic(topic)
        return self._record(UsageEvent(
            user_id=user_id,
            event_type=EventType.DEBATE,
            model=model,
            tokens_used=tokens_used,
            estimated_cost=actual_cost if estimated_cost is None else estimated_cost,
            actual_cost=actual_cost,
            tier=parse_tier(tier),
            metadata=details,
        ))

    def record_export(
        self,
        user_id: str,
        *,
        tier: TierLike = SubscriptionTier.STARTER,
        export_format: str = "pdf",
    ) -> UsageEvent:
        return self._record(UsageEvent(
            user_id=user_id,
            event_type=EventType.EXPORT,
            model="none",
            tokens_used=0,
            estimated_cost=0.0,
            actual_cost=0.0,
            tier=parse_tier(tier),
            metadata={"format": export_format},
        ))

    def record_api_call(
        self,
        user_id: str,
        model: str,
        tokens_used: int = 0,
        actual_cost: float = 0.0,
        *,
        tier: TierLike = SubscriptionTier.STARTER,
    ) -> UsageEvent:
        return self._record(UsageEvent(
            user_id=user_id,
            event_type=EventType.API_CALL,
            model=model,
            tokens_used=tokens_used,
            estimated_cost=actual_cost,
            actual_cost=actual_cost,
            tier=parse_tier(tier),
        ))

    def get_usage_summary(
        self,
        user_id: str,
        period: PeriodLike = Period.MONTHLY,
    ) -> UsageAggregate:
        """Return the user's aggregate for the current day or month."""
        period = Period(period)
        with self._lock_for(user_id):
            return self._current(user_id, period)

    def rebuild(self, user_id: str) -> Dict[Period, UsageAggregate]:
        """Drop the user's cached aggregates and recompute them from the log."""
        with self._lock_for(user_id):
            for period in Period:
                self._cache.pop((user_id, period), None)
            rebuilt = {period: self._current(user_id, period) for period in Period}
        LOGGER.info("Usage aggregates rebuilt", extra={"userId": user_id})
        return rebuilt

    def get_usage_stats(
        self,
        user_id: str,
        period: PeriodLike = Period.MONTHLY,
    ) -> UsageStats:
        """Model and daily breakdown of the current period, read from the log."""
        period = Period(period)
        key = period_key(self.clock(), period)
        return compute_stats(self.recorder.events_for(user_id), user_id, period, key)

    def check_action(
        self,
        user_id: str,
        tier: TierLike,
        event_type: EventType,
        rounds: int = 2,
        personas: int = 3,
    ) -> LimitCheck:
        """Check whether the user may take one more action of this type."""
        config = self.tiers.get(tier)
        with self._lock_for(user_id):
            daily = self._current(user_id, Period.DAILY)
            monthly = self._current(user_id, Period.MONTHLY)
        return check_action_limit(
            config, event_type, daily, monthly, self.clock(), rounds, personas
        )

    def enforce_limit(
        self,
        user_id: str,
        tier: TierLike,
        event_type: EventType,
        rounds: int = 2,
        personas: int = 3,
    ) -> LimitCheck:
        """Like ``check_action`` but blocked actions raise.

        Raises:
            QuotaExceededError: If the action is not allowed; the violation
                is kept and available from ``get_violations``
        """
        check = self.check_action(user_id, tier, event_type, rounds, personas)
        if check.allowed:
            return check
        violation = UsageViolation(
            user_id=user_id,
            feature=check.feature,
            limit=check.limit,
            attempted=check.current + 1,
            tier=parse_tier(tier),
            timestamp=self.clock(),
        )
        with self._locks_guard:
            self._violations.append(violation)
        LOGGER.warning(
            "Usage limit blocked action",
            extra={"userId": user_id, "feature": check.feature, "limit": check.limit},
        )
        raise QuotaExceededError(check.message, check)

    def get_violations(self, user_id: str) -> List[UsageViolation]:
        with self._locks_guard:
            return [v for v in self._violations if v.user_id == user_id]

    def get_usage_report(
        self,
        user_id: str,
        tier: TierLike,
        monthly_budget: Optional[float] = None,
    ) -> UsageReport:
        """Daily and monthly usage, tier limits and budget alerts."""
        config = self.tiers.get(tier)
        daily = self.get_usage_summary(user_id, Period.DAILY)
        monthly = self.get_usage_summary(user_id, Period.MONTHLY)
        alerts = check_budget_alerts(
            monthly,
            config,
            now=self.clock(),
            monthly_budget=monthly_budget,
            thresholds=self.alert_thresholds,
        )
        return UsageReport(daily=daily, monthly=monthly, limits=config.limits, alerts=alerts)

    def _record(self, event: UsageEvent) -> UsageEvent:
        with self._lock_for(event.user_id):
            stored = self.recorder.record_event(event)
            for period in Period:
                self._apply(stored, period)
        return stored

    def _apply(self, stored: UsageEvent, period: Period) -> None:
        key = period_key(stored.timestamp, period)
        cached = self._cache.get((stored.user_id, period))
        if cached is None or cached.period != key:
            # The log already holds ``stored``, so the fold includes it
            self._cache[(stored.user_id, period)] = fold_events(
                self.recorder.events_for(stored.user_id), stored.user_id, period, key
            )
        else:
            self._cache[(stored.user_id, period)] = add_event(cached, stored)

    def _current(self, user_id: str, period: Period) -> UsageAggregate:
        key = period_key(self.clock(), period)
        cached = self._cache.get((user_id, period))
        if cached is None or cached.period != key:
            cached = fold_events(self.recorder.events_for(user_id), user_id, period, key)
            self._cache[(user_id, period)] = cached
        return cached

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.Lock()
            return lock
