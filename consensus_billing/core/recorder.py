"""
Usage event recording.

Validates billable events and appends them to the store's append-only log.
"""

import json
import math
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from numbers import Real
from typing import Callable, List

from consensus_billing.config.logger import get_logger
from consensus_billing.storage.base import AccountingStore
from consensus_billing.storage.models import EventType, SubscriptionTier, UsageEvent

from .errors import InvalidEventError

LOGGER = get_logger("consensus_billing.recorder")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EventRecorder:
    """Single entry point for writing usage events.

    Events are validated before anything touches the store, so a rejected
    event leaves the log exactly as it was.
    """

    def __init__(self, store: AccountingStore, clock: Clock = utc_now):
        self.store = store
        self.clock = clock

    def record_event(self, event: UsageEvent) -> UsageEvent:
        """Validate and append a usage event.

        Args:
            event: Event to record; ``event_id`` and ``timestamp`` are
                assigned here and any caller-supplied values are replaced

        Returns:
            The stored event with its identifier and timestamp

        Raises:
            InvalidEventError: If a field is missing, negative or not a number
        """
        validate_event(event)
        stored = replace(
            event,
            event_id=f"evt_{uuid.uuid4().hex}",
            timestamp=self.clock(),
            estimated_cost=float(event.estimated_cost),
            actual_cost=float(event.actual_cost),
            metadata=dict(event.metadata),
        )
        self.store.append_event(stored)
        LOGGER.info(
            "Usage event recorded",
            extra={
                "eventId": stored.event_id,
                "userId": stored.user_id,
                "type": stored.event_type.value,
                "tokens": stored.tokens_used,
                "actualCost": stored.actual_cost,
            },
        )
        return stored

    def events_for(self, user_id: str) -> List[UsageEvent]:
        """Return the user's recorded events in append order."""
        return self.store.read_events(user_id)


def validate_event(event: UsageEvent) -> None:
    """Reject events that would corrupt aggregates.

    Raises:
        InvalidEventError: Naming the offending field
    """
    if not isinstance(event.user_id, str) or not event.user_id.strip():
        raise InvalidEventError("user_id is required and cannot be empty", "user_id")
    if not isinstance(event.model, str) or not event.model.strip():
        raise InvalidEventError("model is required and cannot be empty", "model")
    if not isinstance(event.event_type, EventType):
        raise InvalidEventError(f"Unknown event type: {event.event_type!r}", "event_type")
    if not isinstance(event.tier, SubscriptionTier):
        raise InvalidEventError(f"Unknown tier: {event.tier!r}", "tier")
    if not isinstance(event.metadata, dict):
        raise InvalidEventError("metadata must be a dictionary", "metadata")
    try:
        json.dumps(event.metadata)
    except (TypeError, ValueError):
        raise InvalidEventError("metadata must be JSON serialisable", "metadata")

    if isinstance(event.tokens_used, bool) or not isinstance(event.tokens_used, int):
        raise InvalidEventError("tokens_used must be an integer", "tokens_used")
    if event.tokens_used < 0:
        raise InvalidEventError("tokens_used cannot be negative", "tokens_used")

    for name in ("estimated_cost", "actual_cost"):
        value = getattr(event, name)
        if isinstance(value, bool) or not isinstance(value, (Real, Decimal)):
            raise InvalidEventError(f"{name} must be a number", name)
        if isinstance(value, Decimal) and not value.is_finite():
            raise InvalidEventError(f"{name} must be finite", name)
        if not math.isfinite(value):
            raise InvalidEventError(f"{name} must be finite", name)
        if value < 0:
            raise InvalidEventError(f"{name} cannot be negative", name)

    if event.event_type == EventType.DEBATE:
        for name in ("rounds", "personas"):
            value = event.metadata.get(name, 0)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidEventError(f"{name} must be an integer", name)
            if value < 0:
                raise InvalidEventError(f"{name} cannot be negative", name)
