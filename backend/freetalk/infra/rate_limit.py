"""Redis-backed fixed-window rate limiting for message operations."""

from __future__ import annotations

import math
import time
from typing import Optional

from freetalk.errors import Throttled
from freetalk.infra.redis import redis_client
from freetalk.obs import metrics as obs_metrics
from freetalk.settings import settings


async def allow(
	kind: str,
	actor_id: str,
	*,
	limit: int,
	window_seconds: int = 60,
	now: Optional[float] = None,
) -> bool:
	"""Return True when the operation is still within the allowed budget."""

	if limit <= 0:
		return False
	now = now or time.time()
	window = max(1, int(window_seconds))
	slot = int(math.floor(now / window))
	key = f"rl:{kind}:{actor_id}:{slot}:{window}"
	async with redis_client.pipeline(transaction=True) as pipe:
		pipe.incr(key)
		pipe.expire(key, window)
		count, _ = await pipe.execute()
	return int(count) <= limit


_BUDGETS = {
	"send": lambda: settings.message_send_per_minute,
	"search": lambda: settings.message_search_per_minute,
	"general": lambda: settings.message_general_per_minute,
}


async def enforce(kind: str, actor_id: str) -> None:
	"""Raise Throttled when the caller exhausted the per-minute budget for `kind`."""
	limit = _BUDGETS[kind]()
	if not await allow(f"msg:{kind}", actor_id, limit=limit, window_seconds=60):
		obs_metrics.rate_limited(kind)
		raise Throttled("Too many requests, please slow down")
