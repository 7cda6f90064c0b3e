import pytest

from freetalk.errors import Throttled
from freetalk.infra import rate_limit
from freetalk.infra.rate_limit import allow
from freetalk.settings import settings


@pytest.mark.asyncio
async def test_rate_limit_allows_within_budget():
	assert await allow("send", "u5", limit=2, window_seconds=60)
	assert await allow("send", "u5", limit=2, window_seconds=60)


@pytest.mark.asyncio
async def test_rate_limit_blocks_when_budget_exhausted():
	await allow("search", "u6", limit=1, window_seconds=60)
	assert not await allow("search", "u6", limit=1, window_seconds=60)


@pytest.mark.asyncio
async def test_rate_limit_window_rolls_over():
	assert await allow("send", "u7", limit=1, window_seconds=60, now=1_000.0)
	assert not await allow("send", "u7", limit=1, window_seconds=60, now=1_010.0)
	assert await allow("send", "u7", limit=1, window_seconds=60, now=1_100.0)


@pytest.mark.asyncio
async def test_enforce_raises_throttled_after_send_budget(monkeypatch):
	monkeypatch.setattr(settings, "message_send_per_minute", 2)
	await rate_limit.enforce("send", "alice")
	await rate_limit.enforce("send", "alice")
	with pytest.raises(Throttled):
		await rate_limit.enforce("send", "alice")
	# budgets are per caller and per kind
	await rate_limit.enforce("send", "bob")
	await rate_limit.enforce("search", "alice")
