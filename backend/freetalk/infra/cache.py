"""Short-lived Redis cache for conversation-list responses."""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Optional

from freetalk.infra.redis import redis_client
from freetalk.settings import settings


def _cache_key(user_id: str, page: int, limit: int) -> str:
	return f"conv:list:{user_id}:{page}:{limit}"


async def get_conversation_list(user_id: str, page: int, limit: int) -> Optional[Dict[str, Any]]:
	cached = await redis_client.get(_cache_key(user_id, page, limit))
	if not cached:
		return None
	if isinstance(cached, bytes):
		cached = cached.decode("utf-8")
	return json.loads(cached)


async def set_conversation_list(user_id: str, page: int, limit: int, payload: Dict[str, Any]) -> None:
	ttl = settings.conversation_cache_ttl_seconds
	if ttl <= 0:
		return
	await redis_client.set(
		_cache_key(user_id, page, limit),
		json.dumps(payload, separators=(",", ":"), default=str),
		ex=ttl,
	)


async def invalidate_users(user_ids: Iterable[str]) -> int:
	"""Drop every cached listing page of the given users."""
	removed = 0
	for user_id in dict.fromkeys(user_ids):
		removed += await redis_client.delete_matching(f"conv:list:{user_id}:*")
	return removed
