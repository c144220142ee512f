"""
Storage layer for usage events, subscriptions and billing records.
"""

from .base import AccountingStore
from .memory import InMemoryStore
from .repository import SqliteStore, initialize_schema

__all__ = ["AccountingStore", "InMemoryStore", "SqliteStore", "initialize_schema"]
