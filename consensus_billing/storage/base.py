"""
Storage interface for the accounting layer.

The accounting services only talk to an ``AccountingStore``; they never
know whether records live in memory or in SQLite.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from .models import BillingPeriod, Invoice, Subscription, UsageEvent


class AccountingStore(ABC):
    """Capability set required by the recorder, tracker and billing engine.

    Usage events are append-only. Subscriptions are keyed by user, one per
    user, and replaced wholesale on upsert.
    """

    @abstractmethod
    def append_event(self, event: UsageEvent) -> None:
        """Append a recorded event to the user's log."""

    @abstractmethod
    def read_events(self, user_id: str) -> List[UsageEvent]:
        """Return the user's events in the order they were appended."""

    @abstractmethod
    def upsert_subscription(self, subscription: Subscription) -> None:
        """Insert or replace the user's subscription."""

    @abstractmethod
    def read_subscription(self, user_id: str) -> Optional[Subscription]:
        """Return the user's subscription, or None."""

    @abstractmethod
    def list_subscriptions(self) -> List[Subscription]:
        """Return every stored subscription."""

    @abstractmethod
    def append_billing_period(self, period: BillingPeriod) -> None:
        """Store a billing period."""

    @abstractmethod
    def read_billing_periods(self, user_id: str) -> List[BillingPeriod]:
        """Return the user's billing periods in creation order."""

    @abstractmethod
    def find_billing_period(self, period_id: str) -> Optional[BillingPeriod]:
        """Return a billing period by identifier, or None."""

    @abstractmethod
    def append_invoice(self, invoice: Invoice) -> None:
        """Store an invoice."""

    @abstractmethod
    def read_invoices(self, user_id: str) -> List[Invoice]:
        """Return the user's invoices in creation order."""
