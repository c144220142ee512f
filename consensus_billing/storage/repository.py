"""
SQLite-backed accounting store.

Handles database operations and data persistence logic.
"""

import json
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from consensus_billing.config.logger import get_logger

from .base import AccountingStore
from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    BillingCycle,
    BillingPeriod,
    EventType,
    Invoice,
    LineItem,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    UsageEvent,
)

LOGGER = get_logger("consensus_billing.storage")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS usage_event (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_id TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        model TEXT NOT NULL,
        tokens_used INTEGER NOT NULL,
        estimated_cost REAL NOT NULL,
        actual_cost REAL NOT NULL,
        tier TEXT NOT NULL,
        metadata TEXT NOT NULL DEFAULT '{}',
        timestamp TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_usage_event_user ON usage_event (user_id)",
    """
    CREATE TABLE IF NOT EXISTS subscription (
        user_id TEXT PRIMARY KEY,
        subscription_id TEXT NOT NULL UNIQUE,
        tier TEXT NOT NULL,
        billing_cycle TEXT NOT NULL,
        status TEXT NOT NULL,
        current_period_start TEXT NOT NULL,
        current_period_end TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        trial_end TEXT,
        cancel_at_period_end INTEGER NOT NULL DEFAULT 0,
        canceled_at TEXT,
        metadata TEXT NOT NULL DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS billing_period (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        period_id TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL,
        tier TEXT NOT NULL,
        period_start TEXT NOT NULL,
        period_end TEXT NOT NULL,
        subscription_fee REAL NOT NULL,
        usage_charges REAL NOT NULL,
        total_amount REAL NOT NULL,
        due_date TEXT NOT NULL,
        items TEXT NOT NULL DEFAULT '[]',
        status TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS invoice (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        invoice_id TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL,
        subscription_id TEXT NOT NULL,
        period_id TEXT NOT NULL,
        subtotal REAL NOT NULL,
        taxes REAL NOT NULL,
        total REAL NOT NULL,
        created_at TEXT NOT NULL,
        due_date TEXT NOT NULL,
        items TEXT NOT NULL DEFAULT '[]',
        currency TEXT NOT NULL,
        status TEXT NOT NULL
    )
    """,
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the accounting tables if they don't exist.

    ``usage_event`` is an append-only ledger: no UPDATE or DELETE is ever
    issued against it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        for statement in _SCHEMA:
            conn.execute(statement)
        conn.commit()
    finally:
        conn.close()
    LOGGER.debug("Schema initialized", extra={"dbPath": db_path})


class SqliteStore(AccountingStore):
    """Accounting store persisted to a SQLite file.

    A fresh connection is opened per call, so one instance can be shared
    between threads.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, initialize: bool = True):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
            initialize: Create the schema if it is missing
        """
        self.db_path = db_path
        if initialize:
            initialize_schema(db_path)

    def append_event(self, event: UsageEvent) -> None:
        """Insert a single usage event into the append-only ledger."""
        self._execute("""
            INSERT INTO usage_event
            (event_id, user_id, event_type, model, tokens_used,
             estimated_cost, actual_cost, tier, metadata, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            event.event_id,
            event.user_id,
            event.event_type.value,
            event.model,
            event.tokens_used,
            float(event.estimated_cost),
            float(event.actual_cost),
            event.tier.value,
            json.dumps(event.metadata),
            _to_text(event.timestamp),
        ))

    def read_events(self, user_id: str) -> List[UsageEvent]:
        rows = self._query("""
            SELECT event_id, user_id, event_type, model, tokens_used,
                   estimated_cost, actual_cost, tier, metadata, timestamp
            FROM usage_event WHERE user_id = ? ORDER BY id
        """, (user_id,))
        return [
            UsageEvent(
                event_id=row[0],
                user_id=row[1],
                event_type=EventType(row[2]),
                model=row[3],
                tokens_used=row[4],
                estimated_cost=row[5],
                actual_cost=row[6],
                tier=SubscriptionTier(row[7]),
                metadata=json.loads(row[8]),
                timestamp=_from_text(row[9]),
            )
            for row in rows
        ]

    def upsert_subscription(self, subscription: Subscription) -> None:
        self._execute("""
            INSERT OR REPLACE INTO subscription
            (user_id, subscription_id, tier, billing_cycle, status,
             current_period_start, current_period_end, created_at, updated_at,
             trial_end, cancel_at_period_end, canceled_at, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            subscription.user_id,
            subscription.subscription_id,
            subscription.tier.value,
            subscription.billing_cycle.value,
            subscription.status.value,
            _to_text(subscription.current_period_start),
            _to_text(subscription.current_period_end),
            _to_text(subscription.created_at),
            _to_text(subscription.updated_at),
            _to_text(subscription.trial_end),
            int(subscription.cancel_at_period_end),
            _to_text(subscription.canceled_at),
            json.dumps(subscription.metadata),
        ))

    def read_subscription(self, user_id: str) -> Optional[Subscription]:
        rows = self._query(
            _SUBSCRIPTION_SELECT + " WHERE user_id = ?", (user_id,)
        )
        return _row_to_subscription(rows[0]) if rows else None

    def list_subscriptions(self) -> List[Subscription]:
        rows = self._query(_SUBSCRIPTION_SELECT + " ORDER BY created_at", ())
        return [_row_to_subscription(row) for row in rows]

    def append_billing_period(self, period: BillingPeriod) -> None:
        self._execute("""
            INSERT INTO billing_period
            (period_id, user_id, tier, period_start, period_end,
             subscription_fee, usage_charges, total_amount, due_date,
             items, status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            period.period_id,
            period.user_id,
            period.tier.value,
            _to_text(period.start),
            _to_text(period.end),
            period.subscription_fee,
            period.usage_charges,
            period.total_amount,
            _to_text(period.due_date),
            _dump_items(period.items),
            period.status,
        ))

    def read_billing_periods(self, user_id: str) -> List[BillingPeriod]:
        rows = self._query(
            _PERIOD_SELECT + " WHERE user_id = ? ORDER BY id", (user_id,)
        )
        return [_row_to_period(row) for row in rows]

    def find_billing_period(self, period_id: str) -> Optional[BillingPeriod]:
        rows = self._query(_PERIOD_SELECT + " WHERE period_id = ?", (period_id,))
        return _row_to_period(rows[0]) if rows else None

    def append_invoice(self, invoice: Invoice) -> None:
        self._execute("""
            INSERT INTO invoice
            (invoice_id, user_id, subscription_id, period_id, subtotal,
             taxes, total, created_at, due_date, items, currency, status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            invoice.invoice_id,
            invoice.user_id,
            invoice.subscription_id,
            invoice.period_id,
            invoice.subtotal,
            invoice.taxes,
            invoice.total,
            _to_text(invoice.created_at),
            _to_text(invoice.due_date),
            _dump_items(invoice.items),
            invoice.currency,
            invoice.status,
        ))

    def read_invoices(self, user_id: str) -> List[Invoice]:
        rows = self._query("""
            SELECT invoice_id, user_id, subscription_id, period_id, subtotal,
                   taxes, total, created_at, due_date, items, currency, status
            FROM invoice WHERE user_id = ? ORDER BY id
        """, (user_id,))
        return [
            Invoice(
                invoice_id=row[0],
                user_id=row[1],
                subscription_id=row[2],
                period_id=row[3],
                subtotal=row[4],
                taxes=row[5],
                total=row[6],
                created_at=_from_text(row[7]),
                due_date=_from_text(row[8]),
                items=_load_items(row[9]),
                currency=row[10],
                status=row[11],
            )
            for row in rows
        ]

    def _execute(self, sql: str, params: tuple) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(sql, params)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _query(self, sql: str, params: tuple) -> List[tuple]:
        conn = get_connection(self.db_path)
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()


_SUBSCRIPTION_SELECT = """
    SELECT subscription_id, user_id, tier, billing_cycle, status,
           current_period_start, current_period_end, created_at, updated_at,
           trial_end, cancel_at_period_end, canceled_at, metadata
    FROM subscription
"""


def _row_to_subscription(row: tuple) -> Subscription:
    return Subscription(
        subscription_id=row[0],
        user_id=row[1],
        tier=SubscriptionTier(row[2]),
        billing_cycle=BillingCycle(row[3]),
        status=SubscriptionStatus(row[4]),
        current_period_start=_from_text(row[5]),
        current_period_end=_from_text(row[6]),
        created_at=_from_text(row[7]),
        updated_at=_from_text(row[8]),
        trial_end=_from_text(row[9]),
        cancel_at_period_end=bool(row[10]),
        canceled_at=_from_text(row[11]),
        metadata=json.loads(row[12]),
    )


_PERIOD_SELECT = """
    SELECT period_id, user_id, tier, period_start, period_end,
           subscription_fee, usage_charges, total_amount, due_date,
           items, status
    FROM billing_period
"""


def _row_to_period(row: tuple) -> BillingPeriod:
    return BillingPeriod(
        period_id=row[0],
        user_id=row[1],
        tier=SubscriptionTier(row[2]),
        start=_from_text(row[3]),
        end=_from_text(row[4]),
        subscription_fee=row[5],
        usage_charges=row[6],
        total_amount=row[7],
        due_date=_from_text(row[8]),
        items=_load_items(row[9]),
        status=row[10],
    )


def _to_text(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_text(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


def _dump_items(items: List[LineItem]) -> str:
    return json.dumps([asdict(item) for item in items])


def _load_items(raw: str) -> List[LineItem]:
    data: List[Dict[str, Any]] = json.loads(raw)
    return [LineItem(**item) for item in data]
