"""Connection registry: which users hold live push-channel sessions."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional, Set, Tuple

from freetalk.obs import metrics as obs_metrics


@dataclass(slots=True, frozen=True)
class Registration:
	went_online: bool
	# user that lost its last session because the sid moved to another user
	displaced_offline: Optional[str] = None


class ConnectionRegistry:
	"""Multi-device session map guarded by a single lock.

	A session id belongs to at most one user; a user is online while it owns at
	least one session.
	"""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._by_user: Dict[str, Set[str]] = {}
		self._by_sid: Dict[str, str] = {}

	async def register(self, user_id: str, sid: str) -> Registration:
		async with self._lock:
			displaced: Optional[str] = None
			previous = self._by_sid.get(sid)
			if previous == user_id:
				return Registration(went_online=False)
			if previous is not None and self._drop(previous, sid):
				displaced = previous
			sessions = self._by_user.setdefault(user_id, set())
			went_online = not sessions
			sessions.add(sid)
			self._by_sid[sid] = user_id
			obs_metrics.set_online_users(len(self._by_user))
			return Registration(went_online=went_online, displaced_offline=displaced)

	async def unregister(self, sid: str) -> Tuple[Optional[str], bool]:
		"""Forget a session; returns its user and whether that user went offline."""
		async with self._lock:
			user_id = self._by_sid.pop(sid, None)
			if user_id is None:
				return None, False
			went_offline = self._drop(user_id, sid)
			obs_metrics.set_online_users(len(self._by_user))
			return user_id, went_offline

	def _drop(self, user_id: str, sid: str) -> bool:
		self._by_sid.pop(sid, None)
		sessions = self._by_user.get(user_id)
		if sessions is None:
			return False
		sessions.discard(sid)
		if sessions:
			return False
		del self._by_user[user_id]
		return True

	async def sessions_of(self, user_id: str) -> Set[str]:
		async with self._lock:
			return set(self._by_user.get(user_id, ()))

	async def is_online(self, user_id: str) -> bool:
		async with self._lock:
			return bool(self._by_user.get(user_id))

	async def online_users(self) -> Set[str]:
		async with self._lock:
			return set(self._by_user)

	async def user_of(self, sid: str) -> Optional[str]:
		async with self._lock:
			return self._by_sid.get(sid)
