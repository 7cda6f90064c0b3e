"""Read-side user directory: profiles, push settings, mute rules and blocks.

The identity subsystem owns these records; the messaging core only reads them,
except for clearing a device token the push provider reported as unregistered.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from freetalk.infra.postgres import PoolBacked


@dataclass(slots=True, frozen=True)
class UserRecord:
	id: str
	name: str
	avatar: Optional[str] = None
	is_suspended: bool = False
	push_enabled: bool = True
	device_token: Optional[str] = None
	muted_conversations: FrozenSet[str] = field(default_factory=frozenset)

	def summary(self) -> dict:
		return {"id": self.id, "name": self.name, "avatar": self.avatar}

	def has_muted(self, conversation_id: Optional[str]) -> bool:
		return bool(conversation_id) and conversation_id in self.muted_conversations


class _InMemoryDirectory:
	"""Fallback store used in tests when Postgres is unavailable."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self.users: Dict[str, UserRecord] = {}
		self.blocks: Set[Tuple[str, str]] = set()

	def reset(self) -> None:
		self._lock = asyncio.Lock()
		self.users.clear()
		self.blocks.clear()


_MEMORY = _InMemoryDirectory()


def reset_memory_state() -> None:
	_MEMORY.reset()


def seed_user(record: UserRecord) -> UserRecord:
	"""Register a user in the memory directory (tests and local runs)."""
	_MEMORY.users[record.id] = record
	return record


def seed_block(blocker_id: str, blocked_id: str) -> None:
	_MEMORY.blocks.add((blocker_id, blocked_id))


_USER_COLUMNS = "id, name, avatar, is_suspended, push_enabled, device_token, muted_conversations"


def _row_to_user(row) -> UserRecord:
	return UserRecord(
		id=str(row["id"]),
		name=row["name"] or "",
		avatar=row["avatar"],
		is_suspended=bool(row["is_suspended"]),
		push_enabled=bool(row["push_enabled"]),
		device_token=row["device_token"] or None,
		muted_conversations=frozenset(row["muted_conversations"] or ()),
	)


class UserDirectory(PoolBacked):
	"""Repository backed by asyncpg with an in-memory fallback."""

	async def get(self, user_id: str) -> Optional[UserRecord]:
		pool = await self._pool_or_none()
		if pool is None:
			async with _MEMORY._lock:
				return _MEMORY.users.get(user_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow(f"SELECT {_USER_COLUMNS} FROM users WHERE id = $1", user_id)
		return _row_to_user(row) if row else None

	async def get_many(self, user_ids: Iterable[str]) -> Dict[str, UserRecord]:
		ids = list(dict.fromkeys(user_ids))
		if not ids:
			return {}
		pool = await self._pool_or_none()
		if pool is None:
			async with _MEMORY._lock:
				return {uid: _MEMORY.users[uid] for uid in ids if uid in _MEMORY.users}
		async with pool.acquire() as conn:
			rows = await conn.fetch(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ANY($1::text[])", ids)
		return {str(row["id"]): _row_to_user(row) for row in rows}

	async def is_blocked(self, user_a: str, user_b: str) -> bool:
		"""True when either user blocked the other."""
		pool = await self._pool_or_none()
		if pool is None:
			async with _MEMORY._lock:
				return (user_a, user_b) in _MEMORY.blocks or (user_b, user_a) in _MEMORY.blocks
		async with pool.acquire() as conn:
			found = await conn.fetchval(
				"""
				SELECT 1 FROM blocks
				WHERE (blocker_id = $1 AND blocked_id = $2)
				   OR (blocker_id = $2 AND blocked_id = $1)
				LIMIT 1
				""",
				user_a,
				user_b,
			)
		return found is not None

	async def blocked_ids(self, user_id: str) -> Set[str]:
		"""Every user in a block relationship with `user_id`, in either direction."""
		pool = await self._pool_or_none()
		if pool is None:
			async with _MEMORY._lock:
				result: Set[str] = set()
				for blocker, blocked in _MEMORY.blocks:
					if blocker == user_id:
						result.add(blocked)
					elif blocked == user_id:
						result.add(blocker)
				return result
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT blocked_id AS other FROM blocks WHERE blocker_id = $1
				UNION
				SELECT blocker_id AS other FROM blocks WHERE blocked_id = $1
				""",
				user_id,
			)
		return {str(row["other"]) for row in rows}

	async def clear_device_token(self, user_id: str) -> None:
		pool = await self._pool_or_none()
		if pool is None:
			async with _MEMORY._lock:
				record = _MEMORY.users.get(user_id)
				if record is not None:
					_MEMORY.users[user_id] = replace(record, device_token=None)
			return
		async with pool.acquire() as conn:
			await conn.execute("UPDATE users SET device_token = NULL WHERE id = $1", user_id)


def summaries(records: Dict[str, UserRecord], user_ids: Iterable[str]) -> List[dict]:
	"""Participant summaries in the order given, with placeholders for unknown users."""
	out: List[dict] = []
	for uid in user_ids:
		record = records.get(uid)
		out.append(record.summary() if record else {"id": uid, "name": "Unknown", "avatar": None})
	return out
