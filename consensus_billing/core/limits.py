"""
Pre-action tier limit checks.

Decides whether a user may send a message, start a debate, export or call
the API, given the usage already recorded.

Check order for a debate:
1. Debate rounds against the tier maximum
2. Personas against the tier maximum
3. Message limits, since every debate turn consumes messages
"""

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Optional

from consensus_billing.storage.models import EventType, SubscriptionTier

from .aggregates import UsageAggregate
from .tiers import UNLIMITED, TierConfig, check_usage_limit


@dataclass(frozen=True)
class LimitCheck:
    """Result of checking one action against the tier limits."""
    feature: str
    allowed: bool
    limit: int
    current: int
    remaining: int
    upgrade_required: bool
    message: str
    reset_at: Optional[datetime] = None


@dataclass(frozen=True)
class UsageViolation:
    """An action that was blocked by a tier limit."""
    user_id: str
    feature: str
    limit: int
    attempted: int
    tier: SubscriptionTier
    timestamp: datetime
    action: str = "blocked"


def next_daily_reset(now: datetime) -> datetime:
    """Midnight UTC following ``now``."""
    now = now.astimezone(timezone.utc) if now.tzinfo else now.replace(tzinfo=timezone.utc)
    return datetime.combine(now.date() + timedelta(days=1), time.min, tzinfo=timezone.utc)


def check_action_limit(
    config: TierConfig,
    event_type: EventType,
    daily: UsageAggregate,
    monthly: UsageAggregate,
    now: datetime,
    rounds: int = 2,
    personas: int = 3,
) -> LimitCheck:
    """Check whether one more action of ``event_type`` is allowed.

    Args:
        config: Tier configuration of the user
        event_type: Action about to be taken
        daily: Usage so far today
        monthly: Usage so far this month
        now: Current time, used for the reset timestamp
        rounds: Debate rounds requested (debates only)
        personas: Personas requested (debates only)

    Returns:
        LimitCheck describing the decision
    """
    limits = config.limits
    enterprise = config.tier == SubscriptionTier.ENTERPRISE

    if event_type == EventType.MESSAGE:
        day = check_usage_limit(limits.messages_per_day, daily.message_count)
        month = check_usage_limit(limits.messages_per_month, monthly.message_count)
        allowed = day.allowed and month.allowed
        bounded = [r for r in (day, month) if r.limit != UNLIMITED]
        return LimitCheck(
            feature="messages",
            allowed=allowed,
            limit=min((r.limit for r in bounded), default=UNLIMITED),
            current=daily.message_count,
            remaining=min((r.remaining for r in bounded), default=UNLIMITED),
            upgrade_required=not allowed and not enterprise,
            message=(
                "Message allowed" if allowed else
                f"Daily limit: {day.remaining} remaining, "
                f"Monthly limit: {month.remaining} remaining"
            ),
            reset_at=next_daily_reset(now),
        )

    if event_type == EventType.DEBATE:
        max_rounds = limits.max_debate_rounds
        max_personas = limits.max_personas_per_debate
        rounds_allowed = max_rounds == UNLIMITED or rounds <= max_rounds
        personas_allowed = max_personas == UNLIMITED or personas <= max_personas
        message_check = check_action_limit(
            config, EventType.MESSAGE, daily, monthly, now
        )
        allowed = rounds_allowed and personas_allowed and message_check.allowed
        return LimitCheck(
            feature="debate",
            allowed=allowed,
            limit=max_rounds,
            current=rounds,
            remaining=UNLIMITED if max_rounds == UNLIMITED else max(0, max_rounds - rounds),
            upgrade_required=not allowed and not enterprise,
            message=(
                "Debate allowed" if allowed else
                f"Max {max_rounds} rounds, {max_personas} personas per debate. "
                f"{message_check.message}"
            ),
        )

    if event_type == EventType.EXPORT:
        allowed = limits.can_export_debates
        return LimitCheck(
            feature="export",
            allowed=allowed,
            limit=UNLIMITED if allowed else 0,
            current=daily.export_count,
            remaining=UNLIMITED if allowed else 0,
            upgrade_required=not allowed,
            message=(
                "Export allowed" if allowed else
                "Export feature requires Professional tier or higher"
            ),
        )

    allowed = limits.api_access
    return LimitCheck(
        feature="api_access",
        allowed=allowed,
        limit=UNLIMITED if allowed else 0,
        current=daily.api_call_count,
        remaining=UNLIMITED if allowed else 0,
        upgrade_required=not allowed,
        message=(
            "API access allowed" if allowed else
            "API access requires Boardroom tier or higher"
        ),
    )
