"""
Shared fixtures: a throwaway SQLite file per session, recreated per test,
and a scripted model provider in place of the real upstreams.
"""

import asyncio
import json
import os
import tempfile

# Must be set before anything imports app.config
_db_dir = tempfile.mkdtemp(prefix="chatline-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_db_dir}/test.db"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["LOG_JSON"] = "false"

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from app.main import app
from app.config import settings
from app.db import init_db, drop_db, async_session_maker, User
from app.errors import UpstreamError
from app.services.auth_service import create_access_token
from app.services.chat_orchestrator import ChatOrchestrator, get_chat_orchestrator
from app.services.model_gateway import ModelGateway, ModelInfo, ModelRegistry, get_model_gateway
from app.services.providers import ModelProvider

FREE_MODEL = "test/free-model"
PREMIUM_MODEL = "test/premium-model"


class ScriptedProvider(ModelProvider):
    """
    Streams ``fragments`` one by one. ``fail_at`` raises UpstreamError before
    the fragment with that index (len(fragments) = after the last one);
    ``delay`` sleeps before each fragment.
    """

    name = "scripted"

    def __init__(self, fragments=("Hello", ", ", "world!"), fail_at=None, delay=0.0):
        self.fragments = list(fragments)
        self.fail_at = fail_at
        self.delay = delay
        self.calls = []
        self.closed = 0

    async def stream(self, model, messages, system=None):
        self.calls.append({"model": model, "messages": messages, "system": system})
        try:
            for index, fragment in enumerate(self.fragments):
                if self.fail_at == index:
                    raise UpstreamError("scripted failure")
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield fragment
            if self.fail_at is not None and self.fail_at >= len(self.fragments):
                raise UpstreamError("scripted failure")
        finally:
            self.closed += 1


def scripted_registry() -> ModelRegistry:
    return ModelRegistry([
        ModelInfo(id=FREE_MODEL, name="Free", description="free test model",
                  is_premium=False, provider=ScriptedProvider.name, vendor="Test"),
        ModelInfo(id=PREMIUM_MODEL, name="Premium", description="premium test model",
                  is_premium=True, provider=ScriptedProvider.name, vendor="Test"),
    ])


def parse_events(body: str) -> list:
    """SSE body -> list of decoded payloads ("[DONE]" kept as a string)."""
    events = []
    for block in body.split("\n\n"):
        if not block.startswith("data: "):
            continue
        data = block[len("data: "):]
        events.append(data if data == "[DONE]" else json.loads(data))
    return events


@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    """Create a fresh database for each test"""
    await init_db()
    yield
    await drop_db()


@pytest_asyncio.fixture
async def db_session():
    async with async_session_maker() as session:
        yield session


@pytest.fixture
def make_user():
    """Factory inserting a user with an exact balance."""
    counter = {"n": 0}

    async def _make(credits: int = 5, is_premium: bool = False, email: str = None) -> User:
        counter["n"] += 1
        async with async_session_maker() as db:
            user = User(
                email=email or f"user{counter['n']}@example.com",
                credits=credits,
                is_premium=is_premium,
            )
            db.add(user)
            await db.commit()
            return user

    return _make


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def gateway(provider):
    return ModelGateway({ScriptedProvider.name: provider}, registry=scripted_registry(), idle_timeout=2.0)


@pytest.fixture
def orchestrator(gateway):
    return ChatOrchestrator(gateway=gateway, credit_cost=1, history_limit=settings.max_history_messages)


@pytest_asyncio.fixture
async def client(orchestrator, gateway):
    """Create an async test client wired to the scripted provider"""
    app.dependency_overrides[get_chat_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_model_gateway] = lambda: gateway
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def auth_headers_for(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}
