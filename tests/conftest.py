"""
Shared fixtures.

Everything runs against a throwaway SQLite database, the stub protocol
client and an httpx MockTransport standing in for webhook receivers.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("DEBUG", "false")

import asyncio

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from chatrelay.config import settings
from chatrelay.database import get_db
from chatrelay.models.base import Base
from chatrelay.models.message import Message  # noqa: F401
from chatrelay.models.session import SessionRecord  # noqa: F401
from chatrelay.models.snapshot import Chat, Contact, Group  # noqa: F401
from chatrelay.models.user import User  # noqa: F401
from chatrelay.models.webhook import Webhook, WebhookDelivery  # noqa: F401
from chatrelay.protocol.stub import StubClientFactory
from chatrelay.runtime import build_runtime
from chatrelay.services.event_router import EventRouter
from chatrelay.services.notification_hub import NotificationHub
from chatrelay.services.persistence import PersistenceGateway
from chatrelay.services.scheduler import DelayedTaskScheduler
from chatrelay.services.session_registry import SessionRegistry
from chatrelay.services.webhook_service import WebhookDispatcher


class RecordingHub(NotificationHub):
    """Hub that keeps every published frame."""

    def __init__(self):
        super().__init__()
        self.published: list[tuple[str, dict, str | None]] = []

    async def publish(self, event, payload, owner_id=None):
        self.published.append((event, payload, owner_id))
        await super().publish(event, payload, owner_id)

    def events(self, name: str) -> list[dict]:
        return [payload for event, payload, _ in self.published if event == name]

    def statuses(self, session_id: str) -> list[str]:
        return [p["status"] for p in self.events("session.update") if p["sessionId"] == session_id]


class RecordingScheduler(DelayedTaskScheduler):
    """
    Scheduler that records instead of sleeping.

    Tests fire the pending factory for a key explicitly with `fire()`.
    """

    def __init__(self, name: str = "recording"):
        super().__init__(name)
        self.scheduled: list[tuple[str, float]] = []
        self._factories: dict = {}

    def schedule(self, key, delay, factory):
        self.scheduled.append((key, delay))
        self._factories[key] = factory
        return None

    def cancel(self, key):
        return self._factories.pop(key, None) is not None

    def cancel_all(self):
        count = len(self._factories)
        self._factories.clear()
        return count

    def is_pending(self, key):
        return key in self._factories

    @property
    def pending(self):
        return list(self._factories)

    def __len__(self):
        return len(self._factories)

    async def fire(self, key: str) -> None:
        factory = self._factories.pop(key)
        await factory()


class WebhookEndpoint:
    """MockTransport handler recording every request it receives."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.error: Exception | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, text="ok" if self.status_code < 400 else "nope")


async def _wait_for(predicate, timeout: float = 3.0, interval: float = 0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        if predicate():
            return
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
async def engine(tmp_path):
    # file database so concurrent sessions get their own connections
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'chatrelay.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def persistence(session_factory):
    return PersistenceGateway(session_factory)


@pytest.fixture
def hub():
    return RecordingHub()


@pytest.fixture
def client_factory():
    return StubClientFactory()


@pytest.fixture
def webhook_endpoint():
    return WebhookEndpoint()


@pytest.fixture
async def http_client(webhook_endpoint):
    async with httpx.AsyncClient(transport=httpx.MockTransport(webhook_endpoint)) as client:
        yield client


@pytest.fixture
def retry_scheduler():
    return RecordingScheduler("webhook_retry")


@pytest.fixture
async def dispatcher(persistence, http_client, retry_scheduler):
    dispatcher = WebhookDispatcher(
        persistence,
        http_client=http_client,
        scheduler=retry_scheduler,
        timeout=5,
        retry_base_seconds=1,
        retry_max_seconds=300,
    )
    yield dispatcher
    await dispatcher.close()


@pytest.fixture
async def event_router(persistence, hub, dispatcher):
    router = EventRouter(persistence, hub, dispatcher)
    yield router
    await router.close()


@pytest.fixture
async def make_registry(persistence, event_router, hub, client_factory, tmp_path):
    """Build registries with custom reconnect settings; all are shut down afterwards."""
    registries: list[SessionRegistry] = []

    def make(reconnect_delay: float = 0.01, max_reconnect_attempts: int = 10, scheduler=None) -> SessionRegistry:
        registry = SessionRegistry(
            persistence,
            event_router,
            hub,
            client_factory,
            scheduler=scheduler,
            reconnect_delay=reconnect_delay,
            max_reconnect_attempts=max_reconnect_attempts,
            auth_sessions_dir=str(tmp_path / "auth"),
        )
        registries.append(registry)
        return registry

    yield make
    for registry in registries:
        await registry.shutdown(timeout=1)


@pytest.fixture
async def registry(make_registry):
    return make_registry()


@pytest.fixture
async def runtime(session_factory, client_factory, http_client, hub, retry_scheduler):
    runtime = build_runtime(
        session_factory,
        client_factory=client_factory,
        http_client=http_client,
        hub=hub,
        retry_scheduler=retry_scheduler,
        reconnect_delay=0.01,
    )
    yield runtime
    await runtime.shutdown()


@pytest.fixture
def app(runtime, session_factory, monkeypatch):
    from chatrelay.main import create_app

    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", False)
    app = create_app(runtime)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest.fixture
async def api(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def register_user(api: httpx.AsyncClient, email: str, password: str = "secret123") -> dict:
    response = await api.post("/api/auth/register", json={"email": email, "password": password, "name": "Test"})
    assert response.status_code == 201, response.text
    return response.json()["data"]


@pytest.fixture
async def account(api):
    """Registered user; `headers` authenticate with the API key."""
    data = await register_user(api, "owner@example.com")
    user = data["user"]
    return {"user": user, "token": data["token"], "headers": {"X-API-Key": user["apiKey"]}}


@pytest.fixture
async def other_account(api):
    data = await register_user(api, "other@example.com")
    user = data["user"]
    return {"user": user, "token": data["token"], "headers": {"X-API-Key": user["apiKey"]}}
