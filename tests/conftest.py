"""Pytest configuration and shared fixtures."""

import pytest
from fastapi.testclient import TestClient

from flow_memory._config import TeamConfig
from flow_memory.memory_manager import MemoryManager
from flow_memory.remote.app import create_app
from flow_memory.remote.auth import create_token
from flow_memory.remote.client import TeamClient
from flow_memory.remote.service import KnowledgeService

JWT_SECRET = "test-flow-memory-secret"

KEYWORDS = ("database", "test", "auth", "frontend", "deploy", "goal")


class StubEmbedder:
    """Deterministic embedder that never downloads a model.

    Exact texts can be pinned to vectors; everything else is embedded as
    keyword counts over KEYWORDS plus a constant bias dimension.
    """

    def __init__(self, vectors: dict[str, list[float]] | None = None):
        self.vectors = vectors or {}
        self.calls = 0

    def embed(self, text: str) -> list[float]:
        self.calls += 1
        if text in self.vectors:
            return list(self.vectors[text])
        lowered = text.lower()
        return [float(lowered.count(word)) for word in KEYWORDS] + [0.1]


class FailingEmbedder:
    """Embedder that always fails."""

    def embed(self, text: str) -> list[float]:
        raise RuntimeError("model unavailable")


@pytest.fixture
def stub_embedder():
    return StubEmbedder()


@pytest.fixture
def temp_mm(tmp_path, stub_embedder):
    """Create a memory manager with no team configured."""
    mm = MemoryManager(project_root=tmp_path, embedder=stub_embedder, team=TeamConfig())
    yield mm
    mm.close()


@pytest.fixture
def jwt_secret(monkeypatch):
    monkeypatch.setenv("FLOW_MEMORY_JWT_SECRET", JWT_SECRET)
    return JWT_SECRET


@pytest.fixture
def service():
    """In-memory knowledge service with one team.

    ``admin-1`` is the team admin; ``member-1`` and ``member-2`` are members.
    """
    svc = KnowledgeService()
    team = svc.create_team("admin-1", "Platform")
    svc.add_member("admin-1", team["id"], "member-1")
    svc.add_member("admin-1", team["id"], "member-2")
    svc.team_id = team["id"]
    yield svc
    svc.close()


@pytest.fixture
def app(service, jwt_secret):
    return create_app(service)


@pytest.fixture
def http(app):
    return TestClient(app)


def auth_headers(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_token(user_id, JWT_SECRET)}"}


@pytest.fixture
def make_client(app, service):
    """Build a TeamClient for a user, talking to the app in-process."""
    clients = []

    def _make(user_id: str, team_id: str | None = None) -> TeamClient:
        client = TeamClient(
            "http://testserver",
            create_token(user_id, JWT_SECRET),
            team_id=team_id or service.team_id,
            http_client=TestClient(app),
            backoff_base=0,
        )
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.close()


@pytest.fixture
def team_config(service):
    return TeamConfig(
        enabled=True,
        team_id=service.team_id,
        api_url="http://testserver",
        token=create_token("member-1", JWT_SECRET),
        user_id="member-1",
    )


@pytest.fixture
def team_mm(tmp_path, stub_embedder, team_config, make_client):
    """Memory manager for ``member-1`` wired to the in-process service."""
    mm = MemoryManager(
        project_root=tmp_path,
        embedder=stub_embedder,
        team=team_config,
        client=make_client("member-1"),
    )
    yield mm
    mm.close()
