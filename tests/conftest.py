import asyncio
import os

import fakeredis
import pytest
import pytest_asyncio

TEST_DATABASE = "./test_relaychat.db"

os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{TEST_DATABASE}"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["SESSION_SECRET_KEY"] = "test-secret-key"
os.environ["LOG_LEVEL"] = "WARNING"

from relaychat import crud, schemas, security, services  # noqa: E402
from relaychat.database import AsyncSessionLocal, engine  # noqa: E402
from relaychat.gateway import chat_gateway  # noqa: E402
from relaychat.models import Base  # noqa: E402
from relaychat.storage import file_storage  # noqa: E402


async def _drop_all():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def fake_redis():
    fake = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    services.redis_manager.redis_conn = fake
    yield fake
    services.connection_manager.active_connections.clear()
    services.connection_manager.channels.clear()
    chat_gateway.socket_users.clear()


@pytest.fixture(autouse=True)
def upload_dir(tmp_path, monkeypatch):
    directory = tmp_path / "uploads"
    monkeypatch.setattr(file_storage, "upload_dir", str(directory))
    return directory


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from main import app

    with TestClient(app) as test_client:
        yield test_client
    asyncio.run(_drop_all())


@pytest_asyncio.fixture
async def db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with AsyncSessionLocal() as session:
        yield session
    await _drop_all()


@pytest_asyncio.fixture
async def make_user(db):
    counter = iter(range(1, 1000))

    async def _make_user(name=None):
        n = next(counter)
        name = name or f"user{n}"
        return await crud.create_user(
            db, schemas.UserCreate(name=name, email=f"{name.lower()}{n}@example.com", password="secret123")
        )

    return _make_user


class FakeWebSocket:
    """Stands in for a starlette WebSocket; records every frame sent to it."""

    def __init__(self):
        self.sent = []
        self.accepted = False
        self.close_code = None

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        self.sent.append(data)

    async def close(self, code=1000):
        self.close_code = code

    def events(self, name):
        return [frame["data"] for frame in self.sent if frame["event"] == name]


@pytest.fixture
def fake_socket():
    return FakeWebSocket


def token_for(user):
    return security.create_access_token(user.id)


async def stored_user(user_id):
    """Read a user through a new session, bypassing any cached identity."""
    async with AsyncSessionLocal() as session:
        return await crud.get_user(session, user_id)
