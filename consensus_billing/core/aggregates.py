"""
Usage aggregation.

Per-user, per-period rollups of the usage event log. Every aggregate is a
fold over the log; ``add_event`` applies the same step incrementally.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional

from consensus_billing.storage.models import EventType, SubscriptionTier, UsageEvent

from .pricing import to_decimal


class Period(Enum):
    """Aggregation windows."""
    DAILY = "daily"
    MONTHLY = "monthly"


def period_key(moment: datetime, period: Period) -> str:
    """Calendar key of ``moment`` in UTC: ``YYYY-MM-DD`` or ``YYYY-MM``."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    if period == Period.DAILY:
        return moment.strftime("%Y-%m-%d")
    return moment.strftime("%Y-%m")


@dataclass(frozen=True)
class UsageAggregate:
    """Rollup of one user's usage over one period."""
    user_id: str
    tier: SubscriptionTier
    period: str
    message_count: int = 0
    debate_count: int = 0
    export_count: int = 0
    api_call_count: int = 0
    total_tokens: int = 0
    total_cost: Decimal = Decimal("0")
    debate_rounds: int = 0
    max_personas: int = 0
    last_event_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "userId": self.user_id,
            "tier": self.tier.value,
            "period": self.period,
            "messageCount": self.message_count,
            "debateCount": self.debate_count,
            "exportCount": self.export_count,
            "apiCallCount": self.api_call_count,
            "totalTokens": self.total_tokens,
            "totalCost": float(self.total_cost),
            "debateRounds": self.debate_rounds,
            "maxPersonas": self.max_personas,
        }


def empty_aggregate(
    user_id: str,
    period: str,
    tier: SubscriptionTier = SubscriptionTier.STARTER,
) -> UsageAggregate:
    return UsageAggregate(user_id=user_id, tier=tier, period=period)


def add_event(aggregate: UsageAggregate, event: UsageEvent) -> UsageAggregate:
    """Return ``aggregate`` with ``event`` folded in.

    Raises:
        ValueError: If the event belongs to another user
    """
    if event.user_id != aggregate.user_id:
        raise ValueError(
            f"Event for {event.user_id} cannot be added to aggregate of {aggregate.user_id}"
        )
    counts = {
        EventType.MESSAGE: "message_count",
        EventType.DEBATE: "debate_count",
        EventType.EXPORT: "export_count",
        EventType.API_CALL: "api_call_count",
    }
    counter = counts[event.event_type]
    changes = {
        counter: getattr(aggregate, counter) + 1,
        "tier": event.tier,
        "total_tokens": aggregate.total_tokens + event.tokens_used,
        "total_cost": aggregate.total_cost + to_decimal(event.actual_cost),
        "last_event_at": event.timestamp,
    }
    if event.event_type == EventType.DEBATE:
        changes["debate_rounds"] = aggregate.debate_rounds + int(event.metadata.get("rounds", 0))
        changes["max_personas"] = max(
            aggregate.max_personas, int(event.metadata.get("personas", 0))
        )
    return replace(aggregate, **changes)


def fold_events(
    events: Iterable[UsageEvent],
    user_id: str,
    period: Period,
    key: str,
) -> UsageAggregate:
    """Aggregate the user's events that fall inside the period ``key``."""
    aggregate = empty_aggregate(user_id, key)
    for event in events:
        if event.user_id != user_id or event.timestamp is None:
            continue
        if period_key(event.timestamp, period) != key:
            continue
        aggregate = add_event(aggregate, event)
    return aggregate


@dataclass
class ModelUsage:
    """Per-model slice of a usage breakdown."""
    events: int = 0
    tokens: int = 0
    cost: Decimal = Decimal("0")


@dataclass
class UsageStats:
    """Detailed usage for a period, with model and daily breakdowns."""
    user_id: str
    period: str
    total_messages: int
    total_debates: int
    total_tokens: int
    total_cost: Decimal
    model_breakdown: Dict[str, ModelUsage] = field(default_factory=dict)
    daily_breakdown: Dict[date, ModelUsage] = field(default_factory=dict)


def compute_stats(
    events: List[UsageEvent],
    user_id: str,
    period: Period,
    key: str,
) -> UsageStats:
    """Fold events into model and daily breakdowns for one period."""
    selected = [
        event for event in events
        if event.user_id == user_id
        and event.timestamp is not None
        and period_key(event.timestamp, period) == key
    ]
    models: Dict[str, ModelUsage] = {}
    days: Dict[date, ModelUsage] = {}
    for event in selected:
        cost = to_decimal(event.actual_cost)
        day = _utc_date(event.timestamp)
        for bucket in (models.setdefault(event.model, ModelUsage()), days.setdefault(day, ModelUsage())):
            bucket.events += 1
            bucket.tokens += event.tokens_used
            bucket.cost += cost
    return UsageStats(
        user_id=user_id,
        period=key,
        total_messages=sum(1 for e in selected if e.event_type == EventType.MESSAGE),
        total_debates=sum(1 for e in selected if e.event_type == EventType.DEBATE),
        total_tokens=sum(e.tokens_used for e in selected),
        total_cost=sum((to_decimal(e.actual_cost) for e in selected), Decimal("0")),
        model_breakdown=models,
        daily_breakdown=dict(sorted(days.items())),
    )


def _utc_date(moment: datetime) -> date:
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.date()
