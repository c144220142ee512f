"""
Subscription tier configuration.

Static limits and pricing for each plan. A limit of -1 means unlimited.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple, Union

from consensus_billing.storage.models import BillingCycle, SubscriptionTier

UNLIMITED = -1

ALL_MODELS = (
    "gpt-4",
    "gpt-4-turbo",
    "claude-3-opus",
    "claude-3-sonnet",
    "claude-3-haiku",
    "gemini-pro",
    "gemini-ultra",
    "mixtral-8x7b",
    "llama-70b",
)


@dataclass(frozen=True)
class TierLimits:
    """Usage limits for a tier."""
    messages_per_day: int
    messages_per_month: int
    max_debate_rounds: int
    max_personas_per_debate: int
    available_models: Tuple[str, ...]
    can_use_custom_personas: bool
    can_export_debates: bool
    can_access_analytics: bool
    api_access: bool
    concurrent_debates: int
    storage_gb: int

    def __post_init__(self):
        """Validate numeric limits are positive or unlimited."""
        for name in (
            "messages_per_day",
            "messages_per_month",
            "max_debate_rounds",
            "max_personas_per_debate",
            "concurrent_debates",
            "storage_gb",
        ):
            value = getattr(self, name)
            if value != UNLIMITED and value < 0:
                raise ValueError(f"{name} must be >= 0 or -1 for unlimited")


@dataclass(frozen=True)
class TierPricing:
    """Prices for a tier, in USD."""
    monthly_price: Decimal
    annual_price: Decimal
    price_per_extra_message: Decimal
    free_trial_days: int
    currency: str = "USD"

    def __post_init__(self):
        """Validate prices are non-negative."""
        if self.monthly_price < 0 or self.annual_price < 0:
            raise ValueError("subscription prices cannot be negative")
        if self.price_per_extra_message < 0:
            raise ValueError("price_per_extra_message cannot be negative")
        if self.free_trial_days < 0:
            raise ValueError("free_trial_days cannot be negative")

    def price_for(self, cycle: BillingCycle) -> Decimal:
        return self.annual_price if cycle == BillingCycle.ANNUAL else self.monthly_price


@dataclass(frozen=True)
class TierConfig:
    """Complete definition of a subscription tier."""
    tier: SubscriptionTier
    name: str
    description: str
    pricing: TierPricing
    limits: TierLimits
    popular: bool = False
    features: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class TierTable:
    """Fixed lookup from tier to its configuration."""
    tiers: Dict[SubscriptionTier, TierConfig]

    def get(self, tier: Union[SubscriptionTier, str]) -> TierConfig:
        """Get configuration for a tier.

        Args:
            tier: Tier enum member or its string value

        Returns:
            TierConfig for the tier

        Raises:
            ValueError: If the tier is unknown
        """
        resolved = parse_tier(tier)
        if resolved not in self.tiers:
            raise ValueError(f"Unsupported tier: {resolved.value}")
        return self.tiers[resolved]

    def all(self) -> List[TierConfig]:
        return list(self.tiers.values())

    def with_overrides(
        self,
        limit_overrides: Dict[SubscriptionTier, Dict[str, object]],
        pricing_overrides: Optional[Dict[SubscriptionTier, Dict[str, object]]] = None,
    ) -> "TierTable":
        """Return a copy with selected limit and pricing fields replaced."""
        pricing_overrides = pricing_overrides or {}
        updated = {}
        for tier, config in self.tiers.items():
            limits = replace(config.limits, **limit_overrides.get(tier, {}))
            pricing = replace(config.pricing, **pricing_overrides.get(tier, {}))
            updated[tier] = replace(config, limits=limits, pricing=pricing)
        return TierTable(updated)


def parse_tier(value: Union[SubscriptionTier, str]) -> SubscriptionTier:
    """Accept a tier enum or its case-insensitive string value."""
    if isinstance(value, SubscriptionTier):
        return value
    try:
        return SubscriptionTier(str(value).strip().lower())
    except ValueError:
        valid = [tier.value for tier in SubscriptionTier]
        raise ValueError(f"Unknown tier '{value}'; expected one of: {valid}")


DEFAULT_TIER_TABLE = TierTable({
    SubscriptionTier.STARTER: TierConfig(
        tier=SubscriptionTier.STARTER,
        name="Starter",
        description="Perfect for trying out AI-powered business decisions",
        pricing=TierPricing(
            monthly_price=Decimal("0"),
            annual_price=Decimal("0"),
            price_per_extra_message=Decimal("0.05"),
            free_trial_days=0,
        ),
        limits=TierLimits(
            messages_per_day=10,
            messages_per_month=100,
            max_debate_rounds=2,
            max_personas_per_debate=2,
            available_models=("gemini-pro", "mixtral-8x7b"),
            can_use_custom_personas=False,
            can_export_debates=False,
            can_access_analytics=False,
            api_access=False,
            concurrent_debates=1,
            storage_gb=1,
        ),
        features=(
            "10 messages per day",
            "Basic AI models (Gemini Pro, Mixtral)",
            "Up to 2 debate rounds",
        ),
    ),
    SubscriptionTier.PROFESSIONAL: TierConfig(
        tier=SubscriptionTier.PROFESSIONAL,
        name="Professional",
        description="For professionals who need regular AI business advisory",
        popular=True,
        pricing=TierPricing(
            monthly_price=Decimal("29"),
            annual_price=Decimal("290"),
            price_per_extra_message=Decimal("0.03"),
            free_trial_days=14,
        ),
        limits=TierLimits(
            messages_per_day=500,
            messages_per_month=10000,
            max_debate_rounds=5,
            max_personas_per_debate=5,
            available_models=("gpt-4", "claude-3-sonnet", "gemini-pro", "mixtral-8x7b"),
            can_use_custom_personas=True,
            can_export_debates=True,
            can_access_analytics=True,
            api_access=False,
            concurrent_debates=3,
            storage_gb=10,
        ),
        features=(
            "All AI models (GPT-4, Claude, Gemini)",
            "Up to 5 debate rounds",
            "Export to PDF, Word, Markdown",
            "14-day free trial",
        ),
    ),
    SubscriptionTier.BOARDROOM: TierConfig(
        tier=SubscriptionTier.BOARDROOM,
        name="Boardroom",
        description="For teams and organizations making critical decisions",
        pricing=TierPricing(
            monthly_price=Decimal("99"),
            annual_price=Decimal("990"),
            price_per_extra_message=Decimal("0.02"),
            free_trial_days=30,
        ),
        limits=TierLimits(
            messages_per_day=2000,
            messages_per_month=50000,
            max_debate_rounds=10,
            max_personas_per_debate=10,
            available_models=(
                "gpt-4", "claude-3-sonnet", "claude-3-opus", "gemini-pro", "mixtral-8x7b",
            ),
            can_use_custom_personas=True,
            can_export_debates=True,
            can_access_analytics=True,
            api_access=True,
            concurrent_debates=10,
            storage_gb=100,
        ),
        features=(
            "Premium AI models (GPT-4, Claude Opus)",
            "Extended debate rounds (up to 10)",
            "API access for integrations",
            "30-day free trial",
        ),
    ),
    SubscriptionTier.ENTERPRISE: TierConfig(
        tier=SubscriptionTier.ENTERPRISE,
        name="Enterprise",
        description="Custom solutions for large organizations",
        pricing=TierPricing(
            monthly_price=Decimal("299"),
            annual_price=Decimal("2990"),
            price_per_extra_message=Decimal("0.01"),
            free_trial_days=30,
        ),
        limits=TierLimits(
            messages_per_day=UNLIMITED,
            messages_per_month=UNLIMITED,
            max_debate_rounds=UNLIMITED,
            max_personas_per_debate=UNLIMITED,
            available_models=("*",),
            can_use_custom_personas=True,
            can_export_debates=True,
            can_access_analytics=True,
            api_access=True,
            concurrent_debates=UNLIMITED,
            storage_gb=UNLIMITED,
        ),
        features=(
            "Unlimited usage across all features",
            "White-label deployment options",
            "Dedicated account manager",
        ),
    ),
})


@dataclass(frozen=True)
class UsageLimitResult:
    """Outcome of comparing a counter against one tier limit."""
    allowed: bool
    limit: int
    remaining: int


def check_usage_limit(limit: int, current_usage: int) -> UsageLimitResult:
    """Check whether one more unit fits under ``limit``.

    Args:
        limit: Configured limit, -1 for unlimited
        current_usage: Units already consumed

    Returns:
        UsageLimitResult; ``remaining`` is -1 when unlimited
    """
    if limit == UNLIMITED:
        return UsageLimitResult(allowed=True, limit=UNLIMITED, remaining=UNLIMITED)
    return UsageLimitResult(
        allowed=current_usage < limit,
        limit=limit,
        remaining=max(0, limit - current_usage),
    )


def is_feature_allowed(config: TierConfig, feature: str) -> bool:
    """Whether a tier grants a boolean, numeric or list feature at all."""
    if not hasattr(config.limits, feature):
        raise ValueError(f"Unknown feature: {feature}")
    value = getattr(config.limits, feature)
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value > 0 or value == UNLIMITED
    if isinstance(value, (tuple, list)):
        return len(value) > 0
    return False


def get_models_by_tier(config: TierConfig) -> List[str]:
    """Models usable on a tier, with the wildcard expanded."""
    if "*" in config.limits.available_models:
        return list(ALL_MODELS)
    return list(config.limits.available_models)


def calculate_yearly_savings(config: TierConfig) -> Decimal:
    """Savings of annual billing over twelve monthly payments."""
    return config.pricing.monthly_price * 12 - config.pricing.annual_price


def popular_tiers(table: Iterable[TierConfig]) -> List[TierConfig]:
    return [config for config in table if config.popular]


def get_tier(
    tier: Union[SubscriptionTier, str],
    table: TierTable = DEFAULT_TIER_TABLE,
) -> TierConfig:
    return table.get(tier)
