"""
Shared fixtures for the ledger test suite
"""

import pytest
from datetime import datetime, timedelta, timezone

from retail_ledger.config import LedgerConfig
from retail_ledger.ledger import Ledger
from retail_ledger.storage import InMemoryStorage


class FakeClock:
    """Settable clock injected into the ledger components"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 6, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def ledger_config():
    return LedgerConfig(_env_file=None, lock_timeout_seconds=5.0)


@pytest.fixture
def ledger(ledger_config):
    system = Ledger(storage=InMemoryStorage(), config=ledger_config, enable_notifications=False)
    yield system
    system.close()
