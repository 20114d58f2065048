"""
Pytest configuration and shared fixtures for the host analytics test suite.

Provides document factories for the four store collections, an in-memory
store pinned to a fixed clock, a gated store for holding fallback fan-outs
in flight, and settings isolated from the developer's environment.
"""

import asyncio
import os
import tempfile
import uuid as _uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
import pytest_asyncio

# Set testing environment BEFORE importing the app
os.environ["TESTING"] = "true"
os.environ["SNAPSHOT_CACHE_PATH"] = os.path.join(
    tempfile.gettempdir(), f"hostmetrics_test_{_uuid.uuid4().hex[:8]}.duckdb"
)

from hostmetrics.config import Settings
from hostmetrics.engine import HostDashboardPipeline, PublishedMetricsStore
from hostmetrics.models import RawDocument
from hostmetrics.store import InMemoryDocumentStore, RetryPolicy

# Wednesday, 15:00 UTC
NOW = datetime(2026, 3, 18, 15, 0, tzinfo=timezone.utc)
HOST_ID = "host_1"


def fixed_clock() -> datetime:
    return NOW


# ---------------------------------------------------------------------------
# Document factories
# ---------------------------------------------------------------------------


def party_data(
    host_id: str = HOST_ID,
    title: str = "Rooftop Party",
    status: str = "upcoming",
    start: Optional[datetime] = None,
    capacity: int = 50,
    attendees: int = 10,
    tiers: Optional[list[dict[str, Any]]] = None,
    **overrides,
) -> dict[str, Any]:
    """Factory for a party document."""
    data = dict(
        hostId=host_id,
        title=title,
        status=status,
        startDate=start or NOW + timedelta(days=2),
        capacity=capacity,
        currentAttendees=attendees,
        ticketTiers=tiers if tiers is not None else [{"id": "ga", "name": "General", "price": 10.0}],
        createdAt=NOW - timedelta(days=40),
    )
    data.update(overrides)
    return data


def sale_data(
    host_id: str = HOST_ID,
    purchase_date: Optional[datetime] = None,
    ticket_price: float = 10.0,
    quantity: int = 1,
    buyer_id: str = "buyer_1",
    **overrides,
) -> dict[str, Any]:
    """Factory for a ticket sale document."""
    data = dict(
        hostId=host_id,
        purchaseDate=purchase_date or NOW - timedelta(hours=1),
        ticketPrice=ticket_price,
        quantity=quantity,
        buyerId=buyer_id,
        buyerName="Sam Buyer",
        eventName="Rooftop Party",
        ticketType="General",
        status="completed",
    )
    data.update(overrides)
    return data


def rsvp_data(
    host_id: str = HOST_ID,
    rsvp_date: Optional[datetime] = None,
    status: str = "confirmed",
    tier_id: Optional[str] = "ga",
    party_size: int = 1,
    user_id: str = "guest_1",
    **overrides,
) -> dict[str, Any]:
    """Factory for an RSVP document."""
    data = dict(
        hostId=host_id,
        rsvpDate=rsvp_date or NOW - timedelta(hours=2),
        status=status,
        partySize=party_size,
        userId=user_id,
        guestName="Alex Guest",
        eventName="Rooftop Party",
    )
    if tier_id is not None:
        data["ticketTierId"] = tier_id
    data.update(overrides)
    return data


def interaction_data(
    host_id: str = HOST_ID,
    interaction_type: str = "view",
    timestamp: Optional[datetime] = None,
    user_id: str = "viewer_1",
    **overrides,
) -> dict[str, Any]:
    """Factory for an event interaction document."""
    data = dict(
        hostId=host_id,
        type=interaction_type,
        timestamp=timestamp or NOW - timedelta(hours=3),
        userId=user_id,
        eventId="p1",
    )
    data.update(overrides)
    return data


def make_doc(path: str, data: dict[str, Any], fetched_at: datetime = NOW) -> RawDocument:
    """Wrap a field map as a delivered RawDocument."""
    return RawDocument(id=path.rsplit("/", 1)[-1], path=path, data=data, fetched_at=fetched_at)


def seed_host(store: InMemoryDocumentStore, host_id: str = HOST_ID) -> None:
    """
    Seed two parties with sales, RSVPs and interactions.

    Today (UTC): sales 10 + 20, RSVPs 2 seats at $10 (active) + 1 cancelled.
    Five days ago: one $15 sale and one RSVP of 3 seats at $25.
    """
    store.put("parties/p1", party_data(host_id=host_id, title="Rooftop Party"))
    store.put(
        "parties/p2",
        party_data(
            host_id=host_id,
            title="Garden Social",
            status="live",
            capacity=20,
            attendees=20,
            tiers=[{"id": "vip", "name": "VIP", "price": 25.0}],
        ),
    )

    store.put("parties/p1/ticketSales/s1", sale_data(host_id=host_id, ticket_price=10.0))
    store.put(
        "parties/p1/ticketSales/s2",
        sale_data(host_id=host_id, ticket_price=10.0, quantity=2, buyer_id="buyer_2"),
    )
    store.put(
        "parties/p2/ticketSales/s3",
        sale_data(host_id=host_id, ticket_price=15.0, purchase_date=NOW - timedelta(days=5)),
    )

    store.put("parties/p1/rsvps/r1", rsvp_data(host_id=host_id, party_size=2))
    store.put(
        "parties/p1/rsvps/r2",
        rsvp_data(host_id=host_id, status="cancelled", user_id="guest_2"),
    )
    store.put(
        "parties/p2/rsvps/r3",
        rsvp_data(
            host_id=host_id,
            tier_id="vip",
            party_size=3,
            user_id="guest_3",
            rsvp_date=NOW - timedelta(days=5),
        ),
    )

    store.put("eventInteractions/i1", interaction_data(host_id=host_id))
    store.put("eventInteractions/i2", interaction_data(host_id=host_id, interaction_type="click"))


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class GatedDocumentStore(InMemoryDocumentStore):
    """In-memory store whose one-shot fetches wait until the gate is opened."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.gate = asyncio.Event()
        self.waiting = 0

    async def _fetch(self, query):
        self.waiting += 1
        try:
            await self.gate.wait()
        finally:
            self.waiting -= 1
        return await super()._fetch(query)


async def settle(*subscriptions, rounds: int = 50) -> None:
    """Let scheduled callbacks, fan-outs and zero-delay retries run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
        tasks = [s.pending_task for s in subscriptions if s.pending_task is not None]
        if tasks:
            await asyncio.wait(tasks)
        elif any(s.retry_pending for s in subscriptions):
            await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings():
    """Settings isolated from the environment: UTC, no cache, instant retries."""
    return Settings(
        _env_file=None,
        store_backend="memory",
        reporting_timezone="UTC",
        week_start=0,
        retry_max_attempts=3,
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        snapshot_cache_enabled=False,
        testing=True,
    )


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def memory_store(retry_policy):
    return InMemoryDocumentStore(retry_policy=retry_policy, clock=fixed_clock)


@pytest.fixture
def indexed_store(retry_policy):
    """Store that rejects compound group queries (no composite indexes deployed)."""
    return InMemoryDocumentStore(retry_policy=retry_policy, enforce_indexes=True, clock=fixed_clock)


@pytest.fixture
def seeded_store(memory_store):
    seed_host(memory_store)
    return memory_store


@pytest.fixture
def metrics_store():
    return PublishedMetricsStore()


@pytest_asyncio.fixture
async def pipeline(seeded_store, metrics_store, test_settings):
    """Pipeline over the seeded store, stopped after the test."""
    pipe = HostDashboardPipeline(
        seeded_store, metrics_store, settings=test_settings, clock=fixed_clock
    )
    yield pipe
    await pipe.stop()
