"""Lookups for stories and posts that messages can share or reply to."""

from __future__ import annotations

from typing import Dict, Iterable, Optional

from freetalk.infra.postgres import PoolBacked

from .store import MEMORY


def seed_story(story_id: str, **fields) -> dict:
	story = {"id": story_id, **fields}
	MEMORY.stories[story_id] = story
	return story


def seed_post(post_id: str, **fields) -> dict:
	post = {"id": post_id, **fields}
	MEMORY.posts[post_id] = post
	return post


_STORY_COLUMNS = "id, author_id, media_type, media_url, text_content, caption, background_color, duration"
_POST_COLUMNS = "id, author_id, content, media_url"


class SharedContentLookup(PoolBacked):
	"""Read-only access to stories and posts owned by other subsystems."""

	async def story(self, story_id: str) -> Optional[dict]:
		found = await self.stories([story_id])
		return found.get(story_id)

	async def post(self, post_id: str) -> Optional[dict]:
		found = await self.posts([post_id])
		return found.get(post_id)

	async def stories(self, story_ids: Iterable[str]) -> Dict[str, dict]:
		ids = [sid for sid in dict.fromkeys(story_ids) if sid]
		if not ids:
			return {}
		pool = await self._pool_or_none()
		if pool is None:
			return {sid: dict(MEMORY.stories[sid]) for sid in ids if sid in MEMORY.stories}
		async with pool.acquire() as conn:
			rows = await conn.fetch(f"SELECT {_STORY_COLUMNS} FROM stories WHERE id = ANY($1::text[])", ids)
		return {str(row["id"]): dict(row) for row in rows}

	async def posts(self, post_ids: Iterable[str]) -> Dict[str, dict]:
		ids = [pid for pid in dict.fromkeys(post_ids) if pid]
		if not ids:
			return {}
		pool = await self._pool_or_none()
		if pool is None:
			return {pid: dict(MEMORY.posts[pid]) for pid in ids if pid in MEMORY.posts}
		async with pool.acquire() as conn:
			rows = await conn.fetch(f"SELECT {_POST_COLUMNS} FROM posts WHERE id = ANY($1::text[])", ids)
		return {str(row["id"]): dict(row) for row in rows}
