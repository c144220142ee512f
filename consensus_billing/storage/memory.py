"""
In-memory accounting store.

Used by tests and by single-process deployments that do not need
durability.
"""

import threading
from collections import defaultdict
from typing import Dict, List, Optional

from .base import AccountingStore
from .models import BillingPeriod, Invoice, Subscription, UsageEvent


class InMemoryStore(AccountingStore):
    """Thread-safe dictionary-backed store."""

    def __init__(self):
        self._lock = threading.Lock()
        self._events: Dict[str, List[UsageEvent]] = defaultdict(list)
        self._subscriptions: Dict[str, Subscription] = {}
        self._periods: Dict[str, List[BillingPeriod]] = defaultdict(list)
        self._invoices: Dict[str, List[Invoice]] = defaultdict(list)

    def append_event(self, event: UsageEvent) -> None:
        with self._lock:
            self._events[event.user_id].append(event)

    def read_events(self, user_id: str) -> List[UsageEvent]:
        with self._lock:
            return list(self._events.get(user_id, []))

    def upsert_subscription(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions[subscription.user_id] = subscription

    def read_subscription(self, user_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._subscriptions.get(user_id)

    def list_subscriptions(self) -> List[Subscription]:
        with self._lock:
            return list(self._subscriptions.values())

    def append_billing_period(self, period: BillingPeriod) -> None:
        with self._lock:
            self._periods[period.user_id].append(period)

    def read_billing_periods(self, user_id: str) -> List[BillingPeriod]:
        with self._lock:
            return list(self._periods.get(user_id, []))

    def find_billing_period(self, period_id: str) -> Optional[BillingPeriod]:
        with self._lock:
            for periods in self._periods.values():
                for period in periods:
                    if period.period_id == period_id:
                        return period
        return None

    def append_invoice(self, invoice: Invoice) -> None:
        with self._lock:
            self._invoices[invoice.user_id].append(invoice)

    def read_invoices(self, user_id: str) -> List[Invoice]:
        with self._lock:
            return list(self._invoices.get(user_id, []))
