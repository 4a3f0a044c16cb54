"""Pytest configuration and shared fixtures for all tests."""

import os

# Minimal environment before app.core.config builds its settings
os.environ.setdefault("DATABASE_URL", "sqlite://:memory:")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("REQUIRE_WALLET_SIGNATURE", "true")
os.environ.setdefault("PRESALE_CONTRACT_ADDRESS", "0x5FbDB2315678afecb367f032d93F642f64180aa3")
os.environ.setdefault("SETTLEMENT_TIMEOUT_SECONDS", "0.5")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from tortoise import Tortoise, connections

from app.core.constants import DEFAULT_TOKENS
from app.services.ledger import LedgerStore
from app.services.purchase_limit import PurchaseLimitGuard

WALLET = "0x742d35cc6634c0532925a3b844bc9e7595f0beb0"
OTHER_WALLET = "0x8ba1f109551bd432803012645ac136ddd64dba72"
REFERRER = "0x1cbd3b2770909d4e10f157cabc84c7264073c9ec"

START = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, now: datetime = START):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory SQLite schema per test."""
    await Tortoise.init(db_url="sqlite://:memory:", modules={"models": ["app.models.presale"]})
    await Tortoise.generate_schemas()
    yield
    await connections.close_all()


@pytest_asyncio.fixture
async def ledger(db) -> LedgerStore:
    store = LedgerStore()
    await store.seed_token_configs(DEFAULT_TOKENS)
    return store


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def limit_guard(ledger) -> PurchaseLimitGuard:
    return PurchaseLimitGuard(ledger)


@pytest.fixture
def oracle():
    """Settlement oracle double that confirms everything."""
    mock = AsyncMock()
    mock.simulate = AsyncMock(return_value=None)
    mock.submit_payment = AsyncMock(return_value="0x" + "ab" * 32)
    mock.transfer = AsyncMock(return_value="0x" + "cd" * 32)
    mock.payment_processed = AsyncMock(return_value=True)
    mock.is_connected = AsyncMock(return_value=True)
    return mock


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


def usd(value: str) -> Decimal:
    return Decimal(value)
