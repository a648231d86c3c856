"""Pytest fixtures for the contest voting tests.

Unit and API tests run against the in-process store. The environment is set
before the application modules are imported so that the module-level
settings pick it up.
"""

import os

os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT", "100000/minute")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")

from typing import AsyncGenerator, Dict, List

import httpx
import pytest

from services.contest_api.chat import ChatService
from services.contest_api.memory import MemoryStore
from services.contest_api.teams import TeamService
from services.contest_api.voting import VoteService
from services.shared import Team

ADMIN_TOKEN = os.environ["ADMIN_TOKEN"]


@pytest.fixture
async def store() -> AsyncGenerator[MemoryStore, None]:
    """Fresh in-process store bound to the test's event loop."""
    memory_store = MemoryStore()
    await memory_store.initialize()
    yield memory_store
    await memory_store.close()


@pytest.fixture
def vote_service(store: MemoryStore) -> VoteService:
    return VoteService(store)


@pytest.fixture
def chat_service(store: MemoryStore) -> ChatService:
    return ChatService(store)


@pytest.fixture
def team_service(store: MemoryStore) -> TeamService:
    return TeamService(store)


def make_team(team_id: str, name: str, title: str, **fields) -> Team:
    """Build a Team with the required descriptive fields filled in."""
    fields.setdefault("description", f"{title} by {name}")
    return Team(id=team_id, name=name, title=title, **fields)


@pytest.fixture
def sample_teams() -> List[Team]:
    """Three teams in creation order."""
    return [
        make_team("team-1", "Team Alpha", "Smart Garden", members=["Ana", "Ben"], technologies=["Scratch"]),
        make_team("team-2", "Team Beta", "Ocean Cleaner", members=["Cleo"]),
        make_team("team-3", "Team Gamma", "Bus Tracker", editing_allowed=True),
    ]


@pytest.fixture
async def seeded_store(store: MemoryStore, sample_teams: List[Team]) -> MemoryStore:
    """Store pre-populated with the sample teams."""
    for team in sample_teams:
        await store.create_team(team)
    return store


@pytest.fixture
async def api_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client bound to the app in-process.

    The app's store is reset for every test; lifespan is not run, so no Redis
    or PostgreSQL connection is made.
    """
    from services.contest_api.main import app, database

    await database.initialize()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test", timeout=10.0) as client:
        yield client
    await database.close()


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN}


@pytest.fixture
async def api_teams(api_client: httpx.AsyncClient, admin_headers: Dict[str, str]) -> List[dict]:
    """Create the sample teams through the admin API."""
    payloads = [
        {"id": "team-1", "name": "Team Alpha", "title": "Smart Garden", "description": "Sensors for plants"},
        {"id": "team-2", "name": "Team Beta", "title": "Ocean Cleaner", "description": "Drone that picks up litter"},
        {
            "id": "team-3",
            "name": "Team Gamma",
            "title": "Bus Tracker",
            "description": "Live bus positions",
            "editing_allowed": True
        },
    ]
    created = []
    for payload in payloads:
        response = await api_client.post("/api/v1/admin/teams", json=payload, headers=admin_headers)
        assert response.status_code == 201, response.text
        created.append(response.json())
    return created


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers",
        "postgres: mark test as requiring a reachable PostgreSQL database"
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow running"
    )
