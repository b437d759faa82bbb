"""Pytest configuration and fixtures for engine and API tests."""
import os
import tempfile

# Set test env BEFORE any imports that use config.
# A file database (not :memory:) so concurrent sessions get their own connections.
_db_dir = tempfile.mkdtemp(prefix="auction-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_db_dir}/test.db"
os.environ["INITIAL_MASTER_PASSWORD"] = "testpass123"
os.environ["INITIAL_MASTER_USERNAME"] = "master"
os.environ["JWT_SECRET"] = "test-secret"

import pytest
from httpx import ASGITransport, AsyncClient

from auction.models import Team, Tournament
from auction.models.base import async_session_factory, drop_db, engine, init_db
from auction.services import participation_ledger
from auction.services.authorization import CallerIdentity
from auction.services.notifications import NotificationBus
from auction.services.state_machine import AuctionStateMachine
from web.api.main import app


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
async def _init_db():
    """Start every test from empty tables (ASGI lifespan doesn't run with httpx)."""
    await drop_db()
    await init_db()
    yield
    await engine.dispose()


@pytest.fixture
async def client():
    """Async HTTP client for testing the API."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


async def _login(client, username, password):
    r = await client.post("/api/auth/login", json={"username": username, "password": password})
    assert r.status_code == 200, f"Login failed: {r.text}"
    return {"Authorization": f"Bearer {r.json()['access_token']}"}


@pytest.fixture
async def master_headers(client):
    """Login as the bootstrap master and return Authorization headers."""
    return await _login(client, "master", "testpass123")


@pytest.fixture
def make_user(client, master_headers):
    """Create a user through the API and return its Authorization headers."""

    async def _make(username, role="auctioneer", tournament_id=None, password="secret-pass"):
        r = await client.post(
            "/api/auth/users",
            json={"username": username, "password": password, "role": role, "tournament_id": tournament_id},
            headers=master_headers,
        )
        assert r.status_code == 200, r.text
        return await _login(client, username, password)

    return _make


@pytest.fixture
def master():
    return CallerIdentity(username="master", role="master")


@pytest.fixture
def bus():
    return NotificationBus(queue_size=10)


@pytest.fixture
def machine(bus):
    """State machine with its own bus, so tests see only their own notifications."""
    return AuctionStateMachine(async_session_factory, bus, settlement_retries=1)


@pytest.fixture
def make_tournament():
    async def _make(name="Premier Cup", budget=1000, max_teams=8):
        async with async_session_factory() as session:
            t = Tournament(name=name, budget=budget, max_teams=max_teams)
            session.add(t)
            await session.commit()
            return t.id

    return _make


@pytest.fixture
def make_team():
    async def _make(tournament_id, name="Chennai Kings", budget=1000):
        async with async_session_factory() as session:
            team = Team(tournament_id=tournament_id, name=name, budget=budget, remaining_budget=budget)
            session.add(team)
            await session.commit()
            return team.id

    return _make


@pytest.fixture
def make_player():
    """Register a player in a tournament's pool; returns the player id."""

    async def _make(tournament_id, name="Virat Kohli", base_price=100, category=None):
        async with async_session_factory() as session:
            participation = await participation_ledger.register_player(
                session,
                tournament_id,
                {"name": name},
                {"base_price": base_price, "category": category},
            )
            player_id = participation.player_id
            await session.commit()
            return player_id

    return _make
