import os
import sys
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

os.environ.setdefault("UPLOAD_ROOT", tempfile.mkdtemp(prefix="freetalk-uploads-"))
os.environ.setdefault("UPLOAD_BASE_URL", "http://testserver/uploads")

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

from freetalk import main
from freetalk.domain.chat import store as chat_store
from freetalk.domain.identity import directory
from freetalk.domain.identity.directory import UserRecord, seed_user
from freetalk.domain.notifications import store as notification_store
from freetalk.infra import jwt as jwt_helper
from freetalk.infra import postgres
from freetalk.infra.redis import redis_client, set_redis_client
from freetalk.settings import settings


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def memory_stores(monkeypatch):
	"""Run every repository on its in-memory store with fresh state."""

	async def _noop():
		return None

	postgres.disable()
	monkeypatch.setattr(postgres, "close_pool", _noop)
	chat_store.reset_memory_state()
	directory.reset_memory_state()
	notification_store.reset_memory_state()
	yield
	chat_store.reset_memory_state()
	directory.reset_memory_state()
	notification_store.reset_memory_state()


@pytest.fixture(autouse=True)
def force_test_settings():
	original_env = settings.environment
	settings.environment = "dev"
	try:
		yield
	finally:
		settings.environment = original_env


@pytest.fixture
def users():
	"""Four users; bob and carol have devices registered for mobile push."""
	return {
		"alice": seed_user(UserRecord(id="alice", name="Alice")),
		"bob": seed_user(UserRecord(id="bob", name="Bob", device_token="device-bob")),
		"carol": seed_user(UserRecord(id="carol", name="Carol", device_token="device-carol")),
		"dave": seed_user(UserRecord(id="dave", name="Dave")),
	}


def bearer(user_id: str) -> dict:
	return {"Authorization": f"Bearer {jwt_helper.encode_access({'sub': user_id})}"}


@pytest.fixture
def auth_headers():
	return bearer


@pytest.fixture
def emitted(monkeypatch):
	"""Capture every push-channel emission made through the application gateway."""
	emit = AsyncMock()
	monkeypatch.setattr(main.namespace, "emit", emit)
	return emit


@pytest_asyncio.fixture
async def online():
	"""Mark users online on the application registry; sessions are dropped afterwards."""
	registered = []

	async def _mark(user_id: str, sid: str | None = None) -> str:
		sid = sid or f"sid-{user_id}-{len(registered)}"
		await main.registry.register(user_id, sid)
		registered.append(sid)
		return sid

	yield _mark
	for sid in registered:
		await main.registry.unregister(sid)


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=main.app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client


class RecordingPushProvider:
	def __init__(self) -> None:
		self.sent: list[dict] = []

	async def send(self, token: str, title: str, body: str, data: dict) -> None:
		self.sent.append({"token": token, "title": title, "body": body, "data": data})


@pytest.fixture
def push_provider(monkeypatch):
	"""Swap the application's mobile-push provider for one that records dispatches."""
	provider = RecordingPushProvider()
	monkeypatch.setattr(main.push, "_provider", provider)
	return provider
