"""
Metered OpenRouter client wrapper.

Calls models through OpenRouter's OpenAI-compatible API and records a
usage event for every successful completion.
"""

import os
from typing import Any, Dict, List, Optional, Union

from openai import OpenAI

from ..config.logger import get_logger
from ..core.pricing import TokenUsage, calculate_cost, estimate_operation_cost
from ..core.tracker import UsageTracker
from ..storage.models import EventType, SubscriptionTier

LOGGER = get_logger("consensus_billing.sdk")

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
API_KEY_ENV_VAR = "OPENROUTER_API_KEY"


class MeteredOpenRouter:
    """OpenRouter client wrapper that records usage events.

    Each completion is priced with the user's tier discount and recorded
    through the tracker. All failures are loud so no call goes unbilled.
    """

    def __init__(
        self,
        tracker: UsageTracker,
        user_id: str,
        model: str,
        tier: Union[SubscriptionTier, str] = SubscriptionTier.STARTER,
        api_key: Optional[str] = None,
        client: Optional[Any] = None,
    ):
        """Initialize the metered client.

        Args:
            tracker: Usage tracker that records the calls
            user_id: User the calls are billed to (required)
            model: OpenRouter model id, e.g. "openai/gpt-4" (required)
            tier: Tier the calls are priced under
            api_key: OpenRouter key; defaults to OPENROUTER_API_KEY
            client: Pre-built OpenAI-compatible client

        Raises:
            ValueError: If user_id or model is missing/empty
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required and cannot be empty")
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.tracker = tracker
        self.user_id = user_id
        self.model = model
        self.tier = tracker.tiers.get(tier).tier
        self.client = client or OpenAI(
            base_url=OPENROUTER_BASE_URL,
            api_key=api_key or os.environ.get(API_KEY_ENV_VAR),
        )

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> Any:
        """Create a chat completion and record it as a message event.

        Args:
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            **kwargs: Additional completion parameters

        Returns:
            The gateway's chat completion response, unchanged

        Raises:
            ValueError: If messages is empty or the response has no usage
            OpenAI API errors: Propagated without modification
            Storage errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        estimate = estimate_operation_cost(self.tier, EventType.MESSAGE, self.model)
        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs
        )

        usage = response.usage
        if not usage:
            raise ValueError("OpenRouter response missing usage information")

        token_usage = TokenUsage(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
        )
        self.tracker.record_message(
            self.user_id,
            self.model,
            token_usage.total_tokens,
            calculate_cost(self.tier, self.model, token_usage),
            tier=self.tier,
            estimated_cost=estimate.estimated_cost,
            metadata={
                "requestId": response.id,
                "promptTokens": usage.prompt_tokens,
                "completionTokens": usage.completion_tokens,
            },
        )
        LOGGER.debug(
            "Gateway call metered",
            extra={"userId": self.user_id, "model": self.model, "requestId": response.id},
        )
        return response
