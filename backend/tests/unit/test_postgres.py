import pytest

from freetalk.domain.chat.conversations import ConversationStore
from freetalk.domain.identity.directory import UserDirectory
from freetalk.errors import Unavailable
from freetalk.infra import postgres


@pytest.fixture
def database_down(monkeypatch):
	"""Select the Postgres backend with a server that refuses every connection."""
	attempts = []

	async def refuse(**kwargs):
		attempts.append(kwargs)
		raise OSError("connection refused")

	monkeypatch.setattr(postgres, "_disabled", False)
	monkeypatch.setattr(postgres, "_pool", None)
	monkeypatch.setattr(postgres.asyncpg, "create_pool", refuse)
	return attempts


@pytest.mark.asyncio
async def test_unreachable_database_raises_unavailable_on_every_call(database_down):
	store = ConversationStore()
	with pytest.raises(Unavailable):
		await store.get("c1")
	with pytest.raises(Unavailable):
		await UserDirectory().get("alice")

	assert len(database_down) == 2
	assert postgres._pool is None
	assert not postgres.is_disabled()


@pytest.mark.asyncio
async def test_unreachable_database_answers_503(database_down, api_client, auth_headers):
	response = await api_client.get("/api/messages/conversations", headers=auth_headers("alice"))
	assert response.status_code == 503
	body = response.json()
	assert body["code"] == "unavailable"
	assert body["success"] is False


@pytest.mark.asyncio
async def test_disabled_backend_never_opens_a_pool(monkeypatch, users):
	async def refuse(**kwargs):
		raise AssertionError("pool must not be created")

	monkeypatch.setattr(postgres.asyncpg, "create_pool", refuse)
	assert postgres.is_disabled()
	assert await UserDirectory().get("alice") == users["alice"]
	with pytest.raises(RuntimeError):
		await postgres.get_pool()
