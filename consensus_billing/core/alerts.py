"""
Budget alerts and cost optimization hints.

Flags users who are close to their tier's message limit or their own
monthly budget, and suggests cheaper ways to get the same work done.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from consensus_billing.storage.models import SubscriptionTier

from .aggregates import UsageAggregate, UsageStats
from .pricing import to_decimal
from .tiers import UNLIMITED, TierConfig


class AlertSeverity(Enum):
    """Severity levels for budget alerts."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertType(Enum):
    USAGE_LIMIT = "usage_limit"
    COST_THRESHOLD = "cost_threshold"
    TIER_UPGRADE = "tier_upgrade"


@dataclass(frozen=True)
class AlertThresholds:
    """Percent thresholds for alerts, and the Starter upgrade nudge."""
    warning_percent: float = 75.0
    critical_percent: float = 90.0
    upgrade_message_count: int = 50

    def __post_init__(self):
        """Validate thresholds are ordered percentages."""
        if not 0 < self.warning_percent <= 100:
            raise ValueError("warning_percent must be in (0, 100]")
        if not 0 < self.critical_percent <= 100:
            raise ValueError("critical_percent must be in (0, 100]")
        if self.warning_percent > self.critical_percent:
            raise ValueError("warning_percent cannot exceed critical_percent")
        if self.upgrade_message_count < 0:
            raise ValueError("upgrade_message_count must be >= 0")


@dataclass(frozen=True)
class BudgetAlert:
    """Alert raised for a user's monthly usage."""
    user_id: str
    alert_type: AlertType
    severity: AlertSeverity
    threshold: float
    current_value: float
    percentage: float
    message: str
    timestamp: datetime
    action_required: bool


@dataclass(frozen=True)
class CostSuggestion:
    """A way to spend less, with a rough saving."""
    kind: str
    suggestion: str
    potential_savings: Decimal


def _severity(percentage: float, thresholds: AlertThresholds) -> Optional[AlertSeverity]:
    if percentage >= thresholds.critical_percent:
        return AlertSeverity.CRITICAL
    if percentage >= thresholds.warning_percent:
        return AlertSeverity.WARNING
    return None


def check_budget_alerts(
    aggregate: UsageAggregate,
    config: TierConfig,
    now: datetime,
    monthly_budget: Optional[float] = None,
    thresholds: Optional[AlertThresholds] = None,
) -> List[BudgetAlert]:
    """Build alerts from a user's monthly aggregate.

    Rules:
    - Message limit: warning at 75%, critical at 90% of messages_per_month
      (skipped for unlimited tiers)
    - Custom budget: same thresholds against ``monthly_budget``
    - Starter users past 50 messages get an upgrade suggestion

    Args:
        aggregate: The user's aggregate for the current month
        config: Tier configuration the user is on
        now: Timestamp for the alerts
        monthly_budget: Optional spending cap set by the user
        thresholds: Alert thresholds; defaults to 75/90/50

    Returns:
        List of alerts (empty if none)
    """
    thresholds = thresholds or AlertThresholds()
    alerts = []
    limit = config.limits.messages_per_month

    if limit != UNLIMITED and limit > 0:
        percentage = aggregate.message_count / limit * 100
        severity = _severity(percentage, thresholds)
        if severity is not None:
            alerts.append(BudgetAlert(
                user_id=aggregate.user_id,
                alert_type=AlertType.USAGE_LIMIT,
                severity=severity,
                threshold=limit,
                current_value=aggregate.message_count,
                percentage=percentage,
                message=f"You've used {percentage:.1f}% of your monthly message limit",
                timestamp=now,
                action_required=severity == AlertSeverity.CRITICAL,
            ))

    if monthly_budget and monthly_budget > 0:
        spent = float(aggregate.total_cost)
        percentage = spent / monthly_budget * 100
        severity = _severity(percentage, thresholds)
        if severity is not None:
            alerts.append(BudgetAlert(
                user_id=aggregate.user_id,
                alert_type=AlertType.COST_THRESHOLD,
                severity=severity,
                threshold=monthly_budget,
                current_value=spent,
                percentage=percentage,
                message=(
                    f"You've spent {percentage:.1f}% of your monthly budget "
                    f"(${spent:.2f}/${monthly_budget:.2f})"
                ),
                timestamp=now,
                action_required=severity == AlertSeverity.CRITICAL,
            ))

    nudge = thresholds.upgrade_message_count
    if config.tier == SubscriptionTier.STARTER and aggregate.message_count > nudge:
        alerts.append(BudgetAlert(
            user_id=aggregate.user_id,
            alert_type=AlertType.TIER_UPGRADE,
            severity=AlertSeverity.INFO,
            threshold=nudge,
            current_value=aggregate.message_count,
            percentage=aggregate.message_count / nudge * 100 if nudge else 100.0,
            message="Consider upgrading to Professional for more messages and advanced features",
            timestamp=now,
            action_required=False,
        ))

    return alerts


def suggest_cost_optimizations(
    stats: UsageStats,
    tier: SubscriptionTier,
) -> List[CostSuggestion]:
    """Suggest cheaper models, tiers or debate shapes.

    Rules:
    - Most expensive model is gpt-4 with more than $10 spent: Claude 3
      Sonnet would save about 60%
    - Starter users spending more than $15: Professional saves about 30%
    - Average of more than 2000 tokens per debate: trim rounds or personas
    """
    suggestions = []
    by_cost = sorted(stats.model_breakdown.items(), key=lambda item: item[1].cost, reverse=True)

    if by_cost:
        model, usage = by_cost[0]
        if model.split("/", 1)[-1] == "gpt-4" and usage.cost > 10:
            suggestions.append(CostSuggestion(
                kind="model_optimization",
                suggestion="Consider using Claude 3 Sonnet for some debates to reduce costs by ~60%",
                potential_savings=usage.cost * Decimal("0.6"),
            ))

    if tier == SubscriptionTier.STARTER and stats.total_cost > 15:
        suggestions.append(CostSuggestion(
            kind="tier_upgrade",
            suggestion="Upgrade to Professional tier for better pricing and more messages",
            potential_savings=to_decimal(stats.total_cost) * Decimal("0.3"),
        ))

    tokens_per_debate = stats.total_tokens / max(stats.total_debates, 1)
    if tokens_per_debate > 2000:
        suggestions.append(CostSuggestion(
            kind="debate_optimization",
            suggestion="Consider reducing debate rounds or personas for less complex topics",
            potential_savings=to_decimal(stats.total_cost) * Decimal("0.25"),
        ))

    return suggestions
