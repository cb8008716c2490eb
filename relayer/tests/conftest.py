"""Pytest configuration and fixtures."""

import pytest
import pytest_asyncio

from swap_relayer.coordinator import Coordinator
from swap_relayer.db import EscrowEventStore
from swap_relayer.models import ChainSide
from swap_relayer.notifications import Notifier
from swap_relayer.scheduler import Scheduler

from helpers import FakeAdapter, FakeClock


@pytest_asyncio.fixture
async def store():
    """In-memory event store."""
    store = EscrowEventStore("sqlite+aiosqlite:///:memory:")
    await store.init()
    yield store
    await store.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def adapters():
    return {side: FakeAdapter(side) for side in ChainSide}


@pytest.fixture
def notifier():
    return Notifier()


@pytest_asyncio.fixture
async def coordinator(adapters, store, clock, notifier):
    return Coordinator(
        adapters,
        store,
        scheduler=Scheduler(base_delay=2, max_delay=60),
        notifier=notifier,
        max_rejections=3,
        confirmation_timeout=600,
        clock=clock,
    )
