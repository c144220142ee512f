"""
Data models for storage layer.

Defines the usage, subscription and billing records kept by the store.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class SubscriptionTier(Enum):
    """Named subscription plans."""
    STARTER = "starter"
    PROFESSIONAL = "professional"
    BOARDROOM = "boardroom"
    ENTERPRISE = "enterprise"


class EventType(Enum):
    """Kinds of billable action."""
    MESSAGE = "message"
    DEBATE = "debate"
    EXPORT = "export"
    API_CALL = "api_call"


class BillingCycle(Enum):
    """How often a subscription renews."""
    MONTHLY = "monthly"
    ANNUAL = "annual"


class SubscriptionStatus(Enum):
    """Lifecycle of a subscription. CANCELED is terminal."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of a single billable action.

    ``event_id`` and ``timestamp`` are left empty by callers and filled in
    by the event recorder. Once stored, an event is never modified.
    """
    user_id: str
    event_type: EventType
    model: str
    tokens_used: int
    estimated_cost: float
    actual_cost: float
    tier: SubscriptionTier = SubscriptionTier.STARTER
    metadata: Dict[str, Any] = field(default_factory=dict)
    event_id: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class Subscription:
    """A user's plan and where it sits in its lifecycle."""
    subscription_id: str
    user_id: str
    tier: SubscriptionTier
    billing_cycle: BillingCycle
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    created_at: datetime
    updated_at: datetime
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def trial_days_remaining(self, now: datetime) -> int:
        """Whole days left in the trial, 0 once it has ended."""
        if self.trial_end is None or now >= self.trial_end:
            return 0
        return math.ceil((self.trial_end - now).total_seconds() / 86400)

    def evolve(self, **changes: Any) -> "Subscription":
        return replace(self, **changes)


@dataclass(frozen=True)
class LineItem:
    """One charge on a billing period or invoice."""
    description: str
    quantity: int
    unit_price: float
    total_price: float
    kind: str  # "subscription", "overage" or "addon"


@dataclass(frozen=True)
class BillingPeriod:
    """Charges accrued by one subscription over one billed window."""
    period_id: str
    user_id: str
    tier: SubscriptionTier
    start: datetime
    end: datetime
    subscription_fee: float
    usage_charges: float
    total_amount: float
    due_date: datetime
    items: List[LineItem] = field(default_factory=list)
    status: str = "pending"


@dataclass(frozen=True)
class Invoice:
    """Invoice issued for a billing period, taxes included."""
    invoice_id: str
    user_id: str
    subscription_id: str
    period_id: str
    subtotal: float
    taxes: float
    total: float
    created_at: datetime
    due_date: datetime
    items: List[LineItem] = field(default_factory=list)
    currency: str = "USD"
    status: str = "draft"
