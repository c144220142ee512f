"""
Wiring for the accounting services.

Builds a store, recorder, tracker and billing engine that share one clock
and one tier table.
"""

from dataclasses import dataclass
from typing import Optional

from consensus_billing.config.loader import BillingConfig, StorageBackend
from consensus_billing.storage.base import AccountingStore
from consensus_billing.storage.memory import InMemoryStore
from consensus_billing.storage.repository import SqliteStore

from .billing import BillingEngine
from .recorder import Clock, EventRecorder, utc_now
from .tracker import UsageTracker


@dataclass
class Accounting:
    """The accounting services for one process."""
    store: AccountingStore
    recorder: EventRecorder
    tracker: UsageTracker
    billing: BillingEngine


def build_store(config: BillingConfig) -> AccountingStore:
    if config.storage.backend == StorageBackend.MEMORY:
        return InMemoryStore()
    return SqliteStore(config.storage.db_path)


def build_accounting(
    config: Optional[BillingConfig] = None,
    store: Optional[AccountingStore] = None,
    clock: Clock = utc_now,
) -> Accounting:
    """Construct the accounting services.

    Args:
        config: Settings; defaults apply when omitted
        store: Store to use instead of the configured backend
        clock: Time source shared by every service

    Returns:
        Accounting holding the wired services
    """
    config = config or BillingConfig()
    if store is None:
        store = build_store(config)
    tiers = config.tier_table()
    recorder = EventRecorder(store, clock=clock)
    tracker = UsageTracker(recorder, tiers=tiers, alert_thresholds=config.alerts)
    billing = BillingEngine(store, tracker, tiers=tiers, tax_rate=config.billing.tax_rate)
    return Accounting(store=store, recorder=recorder, tracker=tracker, billing=billing)
