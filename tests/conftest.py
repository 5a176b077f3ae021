"""Pytest configuration and shared fixtures for all tests."""

import os
import sys
from pathlib import Path

# Minimal environment for settings validation
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("BITCOIN_ADDRESS_SEED", "test_seed_for_deterministic_addresses_only")
os.environ.setdefault("BITCOIN_NETWORK", "testnet")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("MONITOR_STARTUP_DELAY_SECONDS", "0")

# Add project root to PYTHONPATH
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from btc_deposits.config.settings import Settings
from btc_deposits.models import Base
from btc_deposits.services.confirmation_tracker import ConfirmationTracker
from btc_deposits.services.payment_intake_service import PaymentIntakeService
from btc_deposits.utils.datetime_utils import utc_now
from tests.helpers import FakeChainClient, FakeMintTrigger


@pytest.fixture
def test_settings():
    """Settings tuned for fast deterministic tests."""
    return Settings(
        required_confirmations=2,
        monitor_interval_seconds=0.01,
        monitor_item_delay_seconds=0,
        monitor_max_concurrency=1,
        monitor_item_timeout_seconds=5,
        monitor_startup_delay_seconds=0,
        mint_max_attempts=3,
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """File-backed SQLite engine with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'deposits.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def chain_client():
    return FakeChainClient()


@pytest.fixture
def tracker(chain_client, test_settings):
    return ConfirmationTracker(chain_client, test_settings.required_confirmations)


@pytest.fixture
def mint_trigger():
    return FakeMintTrigger()


@pytest.fixture
def create_payment(session_maker, test_settings):
    """Factory creating a payment in awaiting_deposit; returns its record."""

    async def _create(
        payment_id: str = "pay-1",
        merchant_id: str = "merchant-1",
        requested_amount: int = 50_000,
        expires_in: timedelta = timedelta(hours=1),
    ):
        async with session_maker() as session:
            intake = PaymentIntakeService.from_settings(session, test_settings)
            return await intake.create_payment(
                payment_id, merchant_id, requested_amount, utc_now() + expires_in
            )

    return _create
