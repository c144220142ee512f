"""
Unit tests for budget alerts and cost optimization suggestions.
"""

from decimal import Decimal

import pytest

from consensus_billing.core.aggregates import ModelUsage, UsageAggregate, UsageStats
from consensus_billing.core.alerts import (
    AlertSeverity,
    AlertThresholds,
    AlertType,
    check_budget_alerts,
    suggest_cost_optimizations,
)
from consensus_billing.core.tiers import DEFAULT_TIER_TABLE
from consensus_billing.storage.models import SubscriptionTier

from conftest import START


def _aggregate(messages=0, cost="0", tier=SubscriptionTier.STARTER):
    return UsageAggregate(
        user_id="u1",
        tier=tier,
        period="2024-03",
        message_count=messages,
        total_cost=Decimal(cost),
    )


class TestBudgetAlerts:
    """Test alert rules against monthly aggregates."""

    def test_no_alerts_under_thresholds(self):
        """Light usage produces no alerts."""
        config = DEFAULT_TIER_TABLE.get("starter")
        assert check_budget_alerts(_aggregate(messages=40), config, START) == []

    def test_warning_at_75_percent(self):
        """75% of the message limit is a warning."""
        config = DEFAULT_TIER_TABLE.get("professional")
        alerts = check_budget_alerts(
            _aggregate(messages=7500, tier=SubscriptionTier.PROFESSIONAL), config, START
        )

        assert len(alerts) == 1
        assert alerts[0].alert_type == AlertType.USAGE_LIMIT
        assert alerts[0].severity == AlertSeverity.WARNING
        assert alerts[0].percentage == pytest.approx(75.0)
        assert not alerts[0].action_required

    def test_critical_at_90_percent(self):
        """90% of the message limit is critical and needs action."""
        config = DEFAULT_TIER_TABLE.get("starter")
        alerts = check_budget_alerts(_aggregate(messages=90), config, START)

        usage = [a for a in alerts if a.alert_type == AlertType.USAGE_LIMIT]
        assert usage[0].severity == AlertSeverity.CRITICAL
        assert usage[0].action_required
        assert "90.0%" in usage[0].message

    def test_starter_upgrade_suggestion(self):
        """Starter users past 50 messages are nudged to upgrade."""
        config = DEFAULT_TIER_TABLE.get("starter")
        alerts = check_budget_alerts(_aggregate(messages=51), config, START)

        assert [a.alert_type for a in alerts] == [AlertType.TIER_UPGRADE]
        assert alerts[0].severity == AlertSeverity.INFO

    def test_unlimited_tier_has_no_usage_alert(self):
        """Enterprise has no message limit to alert on."""
        config = DEFAULT_TIER_TABLE.get("enterprise")
        alerts = check_budget_alerts(
            _aggregate(messages=10 ** 6, tier=SubscriptionTier.ENTERPRISE), config, START
        )
        assert alerts == []

    def test_custom_budget_threshold(self):
        """Spending against a custom budget raises cost alerts."""
        config = DEFAULT_TIER_TABLE.get("professional")
        alerts = check_budget_alerts(
            _aggregate(cost="8", tier=SubscriptionTier.PROFESSIONAL),
            config,
            START,
            monthly_budget=10.0,
        )

        assert len(alerts) == 1
        assert alerts[0].alert_type == AlertType.COST_THRESHOLD
        assert alerts[0].severity == AlertSeverity.WARNING
        assert alerts[0].current_value == 8.0
        assert "$8.00/$10.00" in alerts[0].message

    def test_custom_thresholds(self):
        """Configured thresholds replace the defaults."""
        config = DEFAULT_TIER_TABLE.get("starter")
        thresholds = AlertThresholds(
            warning_percent=20, critical_percent=30, upgrade_message_count=1000
        )

        alerts = check_budget_alerts(_aggregate(messages=25), config, START, thresholds=thresholds)

        assert [a.severity for a in alerts] == [AlertSeverity.WARNING]


class TestAlertThresholds:
    """Test threshold validation."""

    def test_warning_above_critical_rejected(self):
        with pytest.raises(ValueError, match="warning_percent cannot exceed"):
            AlertThresholds(warning_percent=95, critical_percent=90)

    def test_out_of_range_rejected(self):
        with pytest.raises(ValueError):
            AlertThresholds(critical_percent=150)


class TestCostOptimizations:
    """Test cost optimization suggestions."""

    def test_expensive_gpt4_usage(self):
        """Heavy gpt-4 spend on Starter suggests a cheaper model and an upgrade."""
        stats = UsageStats(
            user_id="u1",
            period="2024-03",
            total_messages=100,
            total_debates=0,
            total_tokens=1000,
            total_cost=Decimal("20"),
            model_breakdown={
                "gpt-4": ModelUsage(events=90, tokens=900, cost=Decimal("19")),
                "gemini-pro": ModelUsage(events=10, tokens=100, cost=Decimal("1")),
            },
        )

        suggestions = suggest_cost_optimizations(stats, SubscriptionTier.STARTER)

        assert [s.kind for s in suggestions] == ["model_optimization", "tier_upgrade"]
        assert suggestions[0].potential_savings == Decimal("11.4")
        assert suggestions[1].potential_savings == Decimal("6")

    def test_large_debates(self):
        """Debates averaging over 2000 tokens suggest trimming them."""
        stats = UsageStats(
            user_id="u1",
            period="2024-03",
            total_messages=0,
            total_debates=2,
            total_tokens=6000,
            total_cost=Decimal("4"),
        )

        suggestions = suggest_cost_optimizations(stats, SubscriptionTier.PROFESSIONAL)

        assert [s.kind for s in suggestions] == ["debate_optimization"]
        assert suggestions[0].potential_savings == Decimal("1")

    def test_no_suggestions_for_light_usage(self):
        stats = UsageStats(
            user_id="u1",
            period="2024-03",
            total_messages=5,
            total_debates=0,
            total_tokens=500,
            total_cost=Decimal("0.5"),
        )
        assert suggest_cost_optimizations(stats, SubscriptionTier.STARTER) == []
