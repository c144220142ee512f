"""
Pricing calculations and rate management.

Handles per-model token rates, tier discounts and cost estimates for
messages and debates.
"""

import math
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, ROUND_UP, Decimal
from typing import Any, Dict, Optional, Union

from consensus_billing.config.logger import get_logger
from consensus_billing.storage.models import EventType, SubscriptionTier

LOGGER = get_logger("consensus_billing.pricing")

# Cost precision for individual events; invoices round to cents
COST_QUANTUM = Decimal("0.000001")
CENT = Decimal("0.01")

DEFAULT_RATE_PER_1K = Decimal("0.001")
DEFAULT_MESSAGE_TOKENS = 200
RESPONSE_TOKENS_PER_TURN = 150
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported by the LLM gateway for one call."""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class PricingTable:
    """Per-1K-token rates and tier discount multipliers."""
    rates_per_1k: Dict[str, Decimal]
    tier_multipliers: Dict[SubscriptionTier, Decimal]
    default_rate_per_1k: Decimal = DEFAULT_RATE_PER_1K

    def get_rate(self, model: str) -> Decimal:
        """Rate for a model, falling back to the default for unknown models."""
        normalized = model.split("/", 1)[-1] if "/" in model else model
        if normalized not in self.rates_per_1k:
            LOGGER.warning(
                "Pricing model missing; using default rate",
                extra={"model": model, "defaultRate": str(self.default_rate_per_1k)},
            )
            return self.default_rate_per_1k
        return self.rates_per_1k[normalized]

    def get_multiplier(self, tier: SubscriptionTier) -> Decimal:
        return self.tier_multipliers.get(tier, Decimal("1"))


PRICING_TABLE = PricingTable(
    rates_per_1k={
        "gpt-4": Decimal("0.03"),
        "gpt-4-turbo": Decimal("0.01"),
        "claude-3-opus": Decimal("0.015"),
        "claude-3-sonnet": Decimal("0.003"),
        "claude-3-haiku": Decimal("0.00025"),
        "gemini-pro": Decimal("0.001"),
        "gemini-ultra": Decimal("0.001"),
        "mixtral-8x7b": Decimal("0.0005"),
        "llama-70b": Decimal("0.0007"),
    },
    tier_multipliers={
        SubscriptionTier.STARTER: Decimal("1"),
        SubscriptionTier.PROFESSIONAL: Decimal("0.9"),
        SubscriptionTier.BOARDROOM: Decimal("0.8"),
        SubscriptionTier.ENTERPRISE: Decimal("0.7"),
    },
)


def to_decimal(value: Union[int, float, str, Decimal]) -> Decimal:
    """Convert a stored amount to Decimal without binary float noise."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def to_cents(value: Union[int, float, str, Decimal]) -> Decimal:
    """Round an amount to cents, half up."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_message_cost(
    tier: SubscriptionTier,
    model: str,
    token_count: int,
    table: PricingTable = PRICING_TABLE,
) -> float:
    """Calculate the cost of ``token_count`` tokens on ``model``.

    The tier's discount multiplier is applied, and the result is rounded UP
    to six decimal places so no fraction of a cost is dropped.

    Args:
        tier: Subscription tier of the user
        model: Model identifier (an OpenRouter "vendor/model" id is accepted)
        token_count: Total tokens consumed

    Returns:
        Cost in USD

    Raises:
        ValueError: If token_count is negative
    """
    if token_count < 0:
        raise ValueError("token_count cannot be negative")
    rate = table.get_rate(model)
    cost = (Decimal(token_count) / Decimal("1000")) * rate * table.get_multiplier(tier)
    return float(cost.quantize(COST_QUANTUM, rounding=ROUND_UP))


def calculate_cost(
    tier: SubscriptionTier,
    model: str,
    usage: TokenUsage,
    table: PricingTable = PRICING_TABLE,
) -> float:
    """Calculate the cost of a gateway call from its token usage."""
    return calculate_message_cost(tier, model, usage.total_tokens, table)


@dataclass(frozen=True)
class CostEstimate:
    """Predicted token use and cost of an upcoming operation."""
    estimated_tokens: int
    estimated_cost: float
    breakdown: Dict[str, Any] = field(default_factory=dict)


def estimate_debate_cost(
    tier: SubscriptionTier,
    model: str,
    topic: str,
    rounds: int,
    personas: int,
    table: PricingTable = PRICING_TABLE,
) -> CostEstimate:
    """Rough estimate of a debate's size from its topic and shape.

    Each persona re-reads the topic every round and answers with roughly
    150 tokens; the topic is sized at four characters per token.
    """
    if rounds < 1 or personas < 1:
        raise ValueError("rounds and personas must be >= 1")
    topic_tokens = math.ceil(len(topic) / CHARS_PER_TOKEN)
    context_tokens = topic_tokens * rounds * personas
    response_tokens = RESPONSE_TOKENS_PER_TURN * rounds * personas
    total_tokens = context_tokens + response_tokens
    return CostEstimate(
        estimated_tokens=total_tokens,
        estimated_cost=calculate_message_cost(tier, model, total_tokens, table),
        breakdown={
            "rounds": rounds,
            "personas": personas,
            "tokensPerPersona": math.ceil(total_tokens / personas),
        },
    )


def estimate_operation_cost(
    tier: SubscriptionTier,
    event_type: EventType,
    model: str,
    topic: Optional[str] = None,
    rounds: int = 2,
    personas: int = 3,
    estimated_tokens: Optional[int] = None,
    table: PricingTable = PRICING_TABLE,
) -> CostEstimate:
    """Estimate the cost of a message or debate before running it."""
    if event_type == EventType.DEBATE and topic:
        return estimate_debate_cost(tier, model, topic, rounds, personas, table)
    tokens = estimated_tokens or DEFAULT_MESSAGE_TOKENS
    return CostEstimate(
        estimated_tokens=tokens,
        estimated_cost=calculate_message_cost(tier, model, tokens, table),
        breakdown={"tokensPerMessage": tokens},
    )
