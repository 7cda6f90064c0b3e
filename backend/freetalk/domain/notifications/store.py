"""Notification store with a 60 second duplicate-suppression window and 30 day expiry."""

from __future__ import annotations

import asyncio
from dataclasses import fields
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import ulid

from freetalk.errors import Forbidden, NotFound, ValidationFailed
from freetalk.infra.postgres import PoolBacked
from freetalk.obs import metrics as obs_metrics
from freetalk.settings import settings

from .models import NOTIFICATION_TYPES, Notification, NotificationDraft, RecordOutcome, clip

_COLUMNS = (
	"id, recipient_id, sender_id, type, created_at, is_read, post_id, story_id, video_id, conversation_id, "
	"message_id, poke_id, report_id, reaction_type, comment_text, poke_type, preview"
)


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def _row_to_notification(row) -> Notification:
	return Notification(**{item.name: row[item.name] for item in fields(Notification)})


class _InMemoryNotifications:
	"""Fallback store used in tests when Postgres is unavailable."""

	def __init__(self) -> None:
		self.lock = asyncio.Lock()
		self.items: Dict[str, Notification] = {}

	def reset(self) -> None:
		self.lock = asyncio.Lock()
		self.items.clear()


_MEMORY = _InMemoryNotifications()


def reset_memory_state() -> None:
	_MEMORY.reset()


def _cutoff(now: datetime) -> datetime:
	return now - timedelta(days=settings.notification_retention_days)


def _clean(draft: NotificationDraft) -> NotificationDraft:
	if draft.type not in NOTIFICATION_TYPES:
		raise ValidationFailed(f"Unknown notification type: {draft.type}")
	draft.comment_text = clip(draft.comment_text)
	draft.preview = clip(draft.preview)
	return draft


def _refresh(existing: Notification, draft: NotificationDraft, now: datetime) -> None:
	existing.is_read = False
	existing.created_at = now
	if draft.reaction_type:
		existing.reaction_type = draft.reaction_type
	if draft.comment_text:
		existing.comment_text = draft.comment_text


class NotificationStore(PoolBacked):
	"""Repository backed by asyncpg with an in-memory fallback.

	Records older than the retention period are invisible to every read and are
	physically removed by `prune`.
	"""

	async def record(self, draft: NotificationDraft, *, now: Optional[datetime] = None) -> Optional[RecordOutcome]:
		"""Insert a notification, or refresh the matching one from the last minute.

		Matching compares recipient, sender, type and post with plain equality,
		so drafts without a post never match anything. Returns None when the
		recipient is the sender.
		"""
		if draft.recipient_id == draft.sender_id:
			return None
		draft = _clean(draft)
		now = now or _utcnow()
		window_start = now - timedelta(seconds=settings.notification_dedupe_seconds)
		pool = await self._pool_or_none()
		if pool is None:
			async with _MEMORY.lock:
				existing = self._memory_match(draft, window_start)
				if existing is not None:
					_refresh(existing, draft, now)
					obs_metrics.notification_persisted("refreshed")
					return RecordOutcome(existing.clone(), refreshed=True)
				notification = Notification(id=str(ulid.new()), created_at=now, **_draft_fields(draft))
				_MEMORY.items[notification.id] = notification
				obs_metrics.notification_persisted("created")
				return RecordOutcome(notification.clone())
		async with pool.acquire() as conn:
			async with conn.transaction():
				row = await conn.fetchrow(
					f"""
					SELECT {_COLUMNS} FROM notifications
					WHERE recipient_id = $1 AND sender_id = $2 AND type = $3 AND post_id = $4
					  AND created_at >= $5
					ORDER BY created_at DESC
					LIMIT 1
					FOR UPDATE
					""",
					draft.recipient_id,
					draft.sender_id,
					draft.type,
					draft.post_id,
					window_start,
				)
				if row is not None:
					existing = _row_to_notification(row)
					_refresh(existing, draft, now)
					await conn.execute(
						"""
						UPDATE notifications
						SET is_read = FALSE, created_at = $2, reaction_type = $3, comment_text = $4
						WHERE id = $1
						""",
						existing.id,
						now,
						existing.reaction_type,
						existing.comment_text,
					)
					obs_metrics.notification_persisted("refreshed")
					return RecordOutcome(existing, refreshed=True)
				notification = Notification(id=str(ulid.new()), created_at=now, **_draft_fields(draft))
				names = [item.name for item in fields(Notification)]
				placeholders = ", ".join(f"${idx}" for idx in range(1, len(names) + 1))
				await conn.execute(
					f"INSERT INTO notifications ({', '.join(names)}) VALUES ({placeholders})",
					*[getattr(notification, name) for name in names],
				)
		obs_metrics.notification_persisted("created")
		return RecordOutcome(notification)

	@staticmethod
	def _memory_match(draft: NotificationDraft, window_start: datetime) -> Optional[Notification]:
		if draft.post_id is None:
			return None
		candidates = [
			item
			for item in _MEMORY.items.values()
			if item.dedupe_key() == (draft.recipient_id, draft.sender_id, draft.type, draft.post_id)
			and item.created_at >= window_start
		]
		if not candidates:
			return None
		return max(candidates, key=lambda item: (item.created_at, item.id))

	async def get(self, notification_id: str, *, now: Optional[datetime] = None) -> Optional[Notification]:
		cutoff = _cutoff(now or _utcnow())
		pool = await self._pool_or_none()
		if pool is None:
			async with _MEMORY.lock:
				item = _MEMORY.items.get(notification_id)
				return item.clone() if item and item.created_at >= cutoff else None
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				f"SELECT {_COLUMNS} FROM notifications WHERE id = $1 AND created_at >= $2",
				notification_id,
				cutoff,
			)
		return _row_to_notification(row) if row else None

	async def unread_count(self, user_id: str, *, now: Optional[datetime] = None) -> int:
		cutoff = _cutoff(now or _utcnow())
		pool = await self._pool_or_none()
		if pool is None:
			async with _MEMORY.lock:
				return sum(
					1
					for item in _MEMORY.items.values()
					if item.recipient_id == user_id and not item.is_read and item.created_at >= cutoff
				)
		async with pool.acquire() as conn:
			value = await conn.fetchval(
				"""
				SELECT COUNT(*) FROM notifications
				WHERE recipient_id = $1 AND is_read = FALSE AND created_at >= $2
				""",
				user_id,
				cutoff,
			)
		return int(value or 0)

	async def list(
		self,
		user_id: str,
		*,
		page: int = 1,
		limit: int = 20,
		unread_only: bool = False,
		now: Optional[datetime] = None,
	) -> Tuple[List[Notification], int]:
		"""Newest first page of the caller's notifications and the matching total."""
		cutoff = _cutoff(now or _utcnow())
		page = max(1, page)
		limit = max(1, limit)
		offset = (page - 1) * limit
		pool = await self._pool_or_none()
		if pool is None:
			async with _MEMORY.lock:
				matching = [
					item
					for item in _MEMORY.items.values()
					if item.recipient_id == user_id
					and item.created_at >= cutoff
					and not (unread_only and item.is_read)
				]
				matching.sort(key=lambda item: (item.created_at, item.id), reverse=True)
				return [item.clone() for item in matching[offset : offset + limit]], len(matching)
		unread_clause = " AND is_read = FALSE" if unread_only else ""
		async with pool.acquire() as conn:
			total = await conn.fetchval(
				f"SELECT COUNT(*) FROM notifications WHERE recipient_id = $1 AND created_at >= $2{unread_clause}",
				user_id,
				cutoff,
			)
			rows = await conn.fetch(
				f"""
				SELECT {_COLUMNS} FROM notifications
				WHERE recipient_id = $1 AND created_at >= $2{unread_clause}
				ORDER BY created_at DESC, id DESC
				LIMIT $3 OFFSET $4
				""",
				user_id,
				cutoff,
				limit,
				offset,
			)
		return [_row_to_notification(row) for row in rows], int(total or 0)

	async def _owned(self, notification_id: str, user_id: str) -> Notification:
		notification = await self.get(notification_id)
		if notification is None:
			raise NotFound("Notification not found")
		if notification.recipient_id != user_id:
			raise Forbidden("Unauthorized")
		return notification

	async def mark_read(self, notification_id: str, user_id: str) -> Notification:
		notification = await self._owned(notification_id, user_id)
		notification.is_read = True
		pool = await self._pool_or_none()
		if pool is None:
			async with _MEMORY.lock:
				stored = _MEMORY.items.get(notification_id)
				if stored is not None:
					stored.is_read = True
			return notification
		async with pool.acquire() as conn:
			await conn.execute("UPDATE notifications SET is_read = TRUE WHERE id = $1", notification_id)
		return notification

	async def mark_all_read(self, user_id: str) -> int:
		pool = await self._pool_or_none()
		if pool is None:
			async with _MEMORY.lock:
				changed = 0
				for item in _MEMORY.items.values():
					if item.recipient_id == user_id and not item.is_read:
						item.is_read = True
						changed += 1
				return changed
		async with pool.acquire() as conn:
			status = await conn.execute(
				"UPDATE notifications SET is_read = TRUE WHERE recipient_id = $1 AND is_read = FALSE",
				user_id,
			)
		return int(status.split()[-1]) if status else 0

	async def delete(self, notification_id: str, user_id: str) -> None:
		await self._owned(notification_id, user_id)
		pool = await self._pool_or_none()
		if pool is None:
			async with _MEMORY.lock:
				_MEMORY.items.pop(notification_id, None)
			return
		async with pool.acquire() as conn:
			await conn.execute("DELETE FROM notifications WHERE id = $1", notification_id)

	async def delete_all(self, user_id: str) -> int:
		pool = await self._pool_or_none()
		if pool is None:
			async with _MEMORY.lock:
				doomed = [nid for nid, item in _MEMORY.items.items() if item.recipient_id == user_id]
				for nid in doomed:
					del _MEMORY.items[nid]
				return len(doomed)
		async with pool.acquire() as conn:
			status = await conn.execute("DELETE FROM notifications WHERE recipient_id = $1", user_id)
		return int(status.split()[-1]) if status else 0

	async def prune(self, *, now: Optional[datetime] = None) -> int:
		"""Physically remove records past the retention period."""
		cutoff = _cutoff(now or _utcnow())
		pool = await self._pool_or_none()
		if pool is None:
			async with _MEMORY.lock:
				expired = [nid for nid, item in _MEMORY.items.items() if item.created_at < cutoff]
				for nid in expired:
					del _MEMORY.items[nid]
				return len(expired)
		async with pool.acquire() as conn:
			status = await conn.execute("DELETE FROM notifications WHERE created_at < $1", cutoff)
		return int(status.split()[-1]) if status else 0


def _draft_fields(draft: NotificationDraft) -> dict:
	return {item.name: getattr(draft, item.name) for item in fields(NotificationDraft)}
