"""
Unit tests for subscription tier configuration.
"""

from decimal import Decimal

import pytest

from consensus_billing.core.tiers import (
    ALL_MODELS,
    DEFAULT_TIER_TABLE,
    UNLIMITED,
    TierLimits,
    TierPricing,
    calculate_yearly_savings,
    check_usage_limit,
    get_models_by_tier,
    get_tier,
    is_feature_allowed,
    parse_tier,
    popular_tiers,
)
from consensus_billing.storage.models import BillingCycle, SubscriptionTier


class TestTierTable:
    """Test the default tier table."""

    def test_all_tiers_present(self):
        tiers = [config.tier for config in DEFAULT_TIER_TABLE.all()]
        assert tiers == list(SubscriptionTier)

    def test_starter_limits(self):
        """Starter is the free, tightly limited plan."""
        starter = get_tier("starter")
        assert starter.limits.messages_per_day == 10
        assert starter.limits.messages_per_month == 100
        assert starter.pricing.monthly_price == Decimal("0")
        assert starter.pricing.free_trial_days == 0

    def test_professional_pricing(self):
        professional = get_tier(SubscriptionTier.PROFESSIONAL)
        assert professional.pricing.monthly_price == Decimal("29")
        assert professional.pricing.price_for(BillingCycle.ANNUAL) == Decimal("290")
        assert professional.pricing.free_trial_days == 14
        assert professional.popular

    def test_enterprise_is_unlimited(self):
        enterprise = get_tier("enterprise")
        assert enterprise.limits.messages_per_month == UNLIMITED
        assert enterprise.limits.max_debate_rounds == UNLIMITED

    def test_lookup_is_case_insensitive(self):
        assert DEFAULT_TIER_TABLE.get(" Boardroom ").tier == SubscriptionTier.BOARDROOM

    def test_unknown_tier_raises(self):
        with pytest.raises(ValueError, match="Unknown tier 'platinum'"):
            DEFAULT_TIER_TABLE.get("platinum")

    def test_parse_tier_passes_enums_through(self):
        assert parse_tier(SubscriptionTier.STARTER) is SubscriptionTier.STARTER

    def test_with_overrides(self):
        """Overrides replace only the named fields of the named tier."""
        table = DEFAULT_TIER_TABLE.with_overrides(
            {SubscriptionTier.STARTER: {"messages_per_month": 3}},
            {SubscriptionTier.STARTER: {"price_per_extra_message": Decimal("0.10")}},
        )
        assert table.get("starter").limits.messages_per_month == 3
        assert table.get("starter").limits.messages_per_day == 10
        assert table.get("starter").pricing.price_per_extra_message == Decimal("0.10")
        assert table.get("professional") == DEFAULT_TIER_TABLE.get("professional")
        assert DEFAULT_TIER_TABLE.get("starter").limits.messages_per_month == 100


class TestTierValidation:
    """Test validation of tier definitions."""

    def test_negative_limit_rejected(self):
        with pytest.raises(ValueError, match="messages_per_day must be >= 0"):
            TierLimits(
                messages_per_day=-2,
                messages_per_month=10,
                max_debate_rounds=1,
                max_personas_per_debate=1,
                available_models=(),
                can_use_custom_personas=False,
                can_export_debates=False,
                can_access_analytics=False,
                api_access=False,
                concurrent_debates=1,
                storage_gb=1,
            )

    def test_negative_price_rejected(self):
        with pytest.raises(ValueError, match="prices cannot be negative"):
            TierPricing(
                monthly_price=Decimal("-1"),
                annual_price=Decimal("0"),
                price_per_extra_message=Decimal("0"),
                free_trial_days=0,
            )


class TestTierHelpers:
    """Test helper functions over tier configurations."""

    def test_check_usage_limit(self):
        result = check_usage_limit(10, 7)
        assert result.allowed
        assert result.remaining == 3

    def test_check_usage_limit_reached(self):
        result = check_usage_limit(10, 10)
        assert not result.allowed
        assert result.remaining == 0

    def test_check_usage_limit_unlimited(self):
        result = check_usage_limit(UNLIMITED, 10 ** 9)
        assert result.allowed
        assert result.limit == UNLIMITED
        assert result.remaining == UNLIMITED

    def test_is_feature_allowed(self):
        starter = get_tier("starter")
        boardroom = get_tier("boardroom")
        assert not is_feature_allowed(starter, "can_export_debates")
        assert is_feature_allowed(boardroom, "api_access")
        assert is_feature_allowed(get_tier("enterprise"), "storage_gb")
        assert is_feature_allowed(starter, "available_models")

    def test_is_feature_allowed_unknown_feature(self):
        with pytest.raises(ValueError, match="Unknown feature"):
            is_feature_allowed(get_tier("starter"), "teleportation")

    def test_models_by_tier(self):
        assert get_models_by_tier(get_tier("starter")) == ["gemini-pro", "mixtral-8x7b"]
        assert get_models_by_tier(get_tier("enterprise")) == list(ALL_MODELS)

    def test_yearly_savings(self):
        """Annual billing saves two months on paid tiers."""
        assert calculate_yearly_savings(get_tier("professional")) == Decimal("58")
        assert calculate_yearly_savings(get_tier("boardroom")) == Decimal("198")
        assert calculate_yearly_savings(get_tier("starter")) == Decimal("0")

    def test_popular_tiers(self):
        popular = popular_tiers(DEFAULT_TIER_TABLE.all())
        assert [config.tier for config in popular] == [SubscriptionTier.PROFESSIONAL]
