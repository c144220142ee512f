"""
Shared fixtures for the accounting tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from consensus_billing.core.accounting import build_accounting
from consensus_billing.storage.memory import InMemoryStore

START = datetime(2024, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, moment: datetime = START):
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment

    def advance(self, **kwargs) -> None:
        self.moment += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def accounting(store, clock):
    return build_accounting(store=store, clock=clock)
