"""Conversation store: direct and group conversations, participants and unread counters."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import ulid

from freetalk.errors import (
	AlreadyAdmin,
	AlreadyParticipant,
	InternalError,
	LastAdmin,
	NotAdmin,
	NotFound,
	NotParticipant,
	ValidationFailed,
)
from freetalk.infra.postgres import PoolBacked

from .models import (
	DIRECT,
	GROUP,
	MAX_GROUP_DESCRIPTION_LENGTH,
	MAX_GROUP_NAME_LENGTH,
	MIN_GROUP_SIZE,
	Conversation,
	Message,
	direct_key,
)
from .store import MEMORY, utcnow

_CONVERSATION_COLUMNS = (
	"id, kind, name, description, avatar, created_by, last_message_id, last_message_at, created_at, updated_at"
)


def _clean_name(name: Optional[str]) -> str:
	value = (name or "").strip()
	if not value:
		raise ValidationFailed("Group name is required")
	if len(value) > MAX_GROUP_NAME_LENGTH:
		raise ValidationFailed(f"Group name must be at most {MAX_GROUP_NAME_LENGTH} characters")
	return value


def _clean_description(description: Optional[str]) -> str:
	value = (description or "").strip()
	if len(value) > MAX_GROUP_DESCRIPTION_LENGTH:
		raise ValidationFailed(f"Group description must be at most {MAX_GROUP_DESCRIPTION_LENGTH} characters")
	return value


def _require_group(conversation: Optional[Conversation]) -> Conversation:
	if conversation is None:
		raise NotFound("Group not found")
	if not conversation.is_group:
		raise ValidationFailed("This is not a group conversation")
	return conversation


def _require_member(conversation: Optional[Conversation], user_id: str) -> Conversation:
	if conversation is None:
		raise NotFound("Conversation not found")
	if not conversation.is_participant(user_id):
		raise NotParticipant()
	return conversation


def _reloaded(conversation: Optional[Conversation]) -> Conversation:
	# Re-read inside the transaction that just wrote the row.
	if conversation is None:
		raise InternalError("Conversation disappeared while being updated")
	return conversation


def _require_admin(conversation: Conversation, actor_id: str) -> None:
	if not conversation.is_admin(actor_id):
		raise NotAdmin()


def _check_removal(conversation: Conversation, actor_id: str, user_id: str) -> None:
	if actor_id != user_id and not conversation.is_admin(actor_id):
		raise NotAdmin("Only admins can remove other participants")
	if not conversation.is_participant(user_id):
		raise NotFound("User is not a participant of this group")
	if conversation.is_admin(user_id) and len(conversation.admins) == 1:
		raise LastAdmin("Cannot remove the last admin. Assign another admin first.")


def _check_promotion(conversation: Conversation, actor_id: str, user_id: str) -> None:
	_require_admin(conversation, actor_id)
	if not conversation.is_participant(user_id):
		raise ValidationFailed("User is not a participant of this group")
	if conversation.is_admin(user_id):
		raise AlreadyAdmin()


def _check_demotion(conversation: Conversation, actor_id: str, user_id: str) -> None:
	_require_admin(conversation, actor_id)
	if not conversation.is_admin(user_id):
		raise ValidationFailed("User is not an admin of this group")
	if len(conversation.admins) == 1:
		raise LastAdmin("Cannot remove the last admin")


def undelete_set(conversation: Conversation, sender_id: str) -> Set[str]:
	"""Users whose hidden conversation re-opens when `sender_id` posts."""
	if conversation.is_group:
		return {sender_id}
	return set(conversation.participants)


def record_send(conversation: Conversation, message: Message) -> None:
	"""Apply a persisted message to a live in-memory conversation."""
	conversation.last_message_id = message.id
	conversation.last_message_at = message.created_at
	conversation.updated_at = message.created_at
	conversation.deleted_by -= undelete_set(conversation, message.sender_id)
	for participant in conversation.others(message.sender_id):
		conversation.unread[participant] = conversation.unread.get(participant, 0) + 1


async def record_send_pg(conn, conversation: Conversation, message: Message) -> Conversation:
	"""Same as `record_send` inside an open transaction holding the conversation row lock."""
	await conn.execute(
		"""
		UPDATE conversations
		SET last_message_id = $2, last_message_at = $3, updated_at = $3
		WHERE id = $1
		""",
		conversation.id,
		message.id,
		message.created_at,
	)
	await conn.execute(
		"""
		UPDATE conversation_participants SET deleted = FALSE
		WHERE conversation_id = $1 AND user_id = ANY($2::text[])
		""",
		conversation.id,
		sorted(undelete_set(conversation, message.sender_id)),
	)
	rows = await conn.fetch(
		"""
		UPDATE conversation_participants SET unread_count = unread_count + 1
		WHERE conversation_id = $1 AND user_id <> $2
		RETURNING user_id, unread_count
		""",
		conversation.id,
		message.sender_id,
	)
	updated = conversation.clone()
	updated.last_message_id = message.id
	updated.last_message_at = message.created_at
	updated.updated_at = message.created_at
	updated.deleted_by -= undelete_set(conversation, message.sender_id)
	for row in rows:
		updated.unread[str(row["user_id"])] = int(row["unread_count"])
	return updated


async def reset_unread_pg(conn, conversation_id: str, user_id: str) -> int:
	"""Zero `user_id`'s counter inside an open transaction; returns the value it had."""
	previous = await conn.fetchval(
		"""
		UPDATE conversation_participants AS cp SET unread_count = 0
		FROM (
			SELECT unread_count FROM conversation_participants
			WHERE conversation_id = $1 AND user_id = $2
			FOR UPDATE
		) AS old
		WHERE cp.conversation_id = $1 AND cp.user_id = $2
		RETURNING old.unread_count
		""",
		conversation_id,
		user_id,
	)
	if previous is None:
		raise NotParticipant()
	return int(previous)


async def load_conversations(conn, conversation_ids: Sequence[str], *, lock: bool = False) -> Dict[str, Conversation]:
	if not conversation_ids:
		return {}
	suffix = " FOR UPDATE" if lock else ""
	rows = await conn.fetch(
		f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ANY($1::text[]){suffix}",
		list(conversation_ids),
	)
	members = await conn.fetch(
		"""
		SELECT conversation_id, user_id, is_admin, unread_count, deleted, archived
		FROM conversation_participants
		WHERE conversation_id = ANY($1::text[])
		ORDER BY joined_at, user_id
		""",
		list(conversation_ids),
	)
	result: Dict[str, Conversation] = {}
	for row in rows:
		result[str(row["id"])] = Conversation(
			id=str(row["id"]),
			kind=row["kind"],
			participants=[],
			created_at=row["created_at"],
			updated_at=row["updated_at"],
			name=row["name"],
			description=row["description"],
			avatar=row["avatar"],
			created_by=row["created_by"],
			last_message_id=row["last_message_id"],
			last_message_at=row["last_message_at"],
		)
	for member in members:
		conversation = result.get(str(member["conversation_id"]))
		if conversation is None:
			continue
		user_id = str(member["user_id"])
		conversation.participants.append(user_id)
		conversation.unread[user_id] = int(member["unread_count"])
		if member["is_admin"]:
			conversation.admins.append(user_id)
		if member["deleted"]:
			conversation.deleted_by.add(user_id)
		if member["archived"]:
			conversation.archived_by.add(user_id)
	return result


async def load_conversation(conn, conversation_id: str, *, lock: bool = False) -> Optional[Conversation]:
	found = await load_conversations(conn, [conversation_id], lock=lock)
	return found.get(conversation_id)


class ConversationStore(PoolBacked):
	"""Repository backed by asyncpg with an in-memory fallback.

	Every mutation is atomic per conversation: memory callers hold the shared
	chat lock, Postgres callers lock the conversation row.
	"""

	# Lookups

	async def get(self, conversation_id: str) -> Optional[Conversation]:
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				conversation = MEMORY.conversations.get(conversation_id)
				return conversation.clone() if conversation else None
		async with pool.acquire() as conn:
			return await load_conversation(conn, conversation_id)

	async def require_member(self, conversation_id: str, user_id: str) -> Conversation:
		return _require_member(await self.get(conversation_id), user_id)

	async def is_participant(self, conversation_id: str, user_id: str) -> bool:
		conversation = await self.get(conversation_id)
		return conversation is not None and conversation.is_participant(user_id)

	async def list_for_user(
		self,
		user_id: str,
		*,
		page: int = 1,
		limit: int = 20,
		hidden: Iterable[str] = (),
	) -> Tuple[List[Conversation], int]:
		"""Conversations visible to `user_id`, newest activity first, and their total.

		Direct conversations with a counterparty in `hidden` (block relationships)
		are left out.
		"""
		hidden_ids = set(hidden)
		page = max(1, page)
		limit = max(1, limit)
		offset = (page - 1) * limit
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				visible = [
					conversation
					for conversation in MEMORY.conversations.values()
					if conversation.is_participant(user_id)
					and user_id not in conversation.deleted_by
					and not (
						not conversation.is_group and conversation.other_participant(user_id) in hidden_ids
					)
				]
				visible.sort(key=lambda conversation: conversation.sort_key(), reverse=True)
				return [conversation.clone() for conversation in visible[offset : offset + limit]], len(visible)
		async with pool.acquire() as conn:
			filters = """
				FROM conversations c
				JOIN conversation_participants me ON me.conversation_id = c.id AND me.user_id = $1
				WHERE me.deleted = FALSE
				  AND NOT (
					c.kind = 'direct' AND EXISTS (
						SELECT 1 FROM conversation_participants other
						WHERE other.conversation_id = c.id
						  AND other.user_id <> $1
						  AND other.user_id = ANY($2::text[])
					)
				  )
			"""
			total = await conn.fetchval(f"SELECT COUNT(*) {filters}", user_id, sorted(hidden_ids))
			rows = await conn.fetch(
				f"""
				SELECT c.id {filters}
				ORDER BY COALESCE(c.last_message_at, c.created_at) DESC, c.id DESC
				LIMIT $3 OFFSET $4
				""",
				user_id,
				sorted(hidden_ids),
				limit,
				offset,
			)
			ids = [str(row["id"]) for row in rows]
			loaded = await load_conversations(conn, ids)
			return [loaded[cid] for cid in ids if cid in loaded], int(total or 0)

	# Creation

	async def find_or_create_direct(self, user_a: str, user_b: str) -> Conversation:
		if user_a == user_b:
			raise ValidationFailed("Cannot create conversation with yourself")
		key = direct_key(user_a, user_b)
		participants = sorted((user_a, user_b))
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				existing_id = MEMORY.direct_index.get(key)
				if existing_id is not None and existing_id in MEMORY.conversations:
					return MEMORY.conversations[existing_id].clone()
				now = utcnow()
				conversation = Conversation(
					id=str(ulid.new()),
					kind=DIRECT,
					participants=participants,
					created_at=now,
					updated_at=now,
					unread={uid: 0 for uid in participants},
				)
				MEMORY.conversations[conversation.id] = conversation
				MEMORY.direct_index[key] = conversation.id
				MEMORY.timeline[conversation.id] = []
				return conversation.clone()
		async with pool.acquire() as conn:
			async with conn.transaction():
				now = utcnow()
				await conn.execute(
					"""
					INSERT INTO conversations (id, kind, direct_key, created_at, updated_at)
					VALUES ($1, 'direct', $2, $3, $3)
					ON CONFLICT (direct_key) DO NOTHING
					""",
					str(ulid.new()),
					key,
					now,
				)
				conversation_id = await conn.fetchval("SELECT id FROM conversations WHERE direct_key = $1", key)
				await conn.executemany(
					"""
					INSERT INTO conversation_participants (conversation_id, user_id, joined_at)
					VALUES ($1, $2, $3)
					ON CONFLICT (conversation_id, user_id) DO NOTHING
					""",
					[(conversation_id, uid, now) for uid in participants],
				)
				conversation = await load_conversation(conn, str(conversation_id))
		return _reloaded(conversation)

	async def create_group(
		self,
		creator_id: str,
		participant_ids: Iterable[str],
		name: Optional[str],
		description: Optional[str] = None,
		avatar: Optional[str] = None,
	) -> Conversation:
		members = list(dict.fromkeys([creator_id, *[str(uid) for uid in participant_ids if uid]]))
		if len(members) < MIN_GROUP_SIZE:
			raise ValidationFailed("Group must have at least 3 participants (including you)")
		clean_name = _clean_name(name)
		clean_description = _clean_description(description)
		now = utcnow()
		conversation = Conversation(
			id=str(ulid.new()),
			kind=GROUP,
			participants=members,
			created_at=now,
			updated_at=now,
			name=clean_name,
			description=clean_description,
			avatar=avatar,
			admins=[creator_id],
			created_by=creator_id,
			unread={uid: 0 for uid in members},
		)
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				MEMORY.conversations[conversation.id] = conversation
				MEMORY.timeline[conversation.id] = []
				return conversation.clone()
		async with pool.acquire() as conn:
			async with conn.transaction():
				await conn.execute(
					"""
					INSERT INTO conversations (id, kind, name, description, avatar, created_by, created_at, updated_at)
					VALUES ($1, 'group', $2, $3, $4, $5, $6, $6)
					""",
					conversation.id,
					clean_name,
					clean_description,
					avatar,
					creator_id,
					now,
				)
				await conn.executemany(
					"""
					INSERT INTO conversation_participants (conversation_id, user_id, is_admin, joined_at)
					VALUES ($1, $2, $3, $4)
					""",
					[(conversation.id, uid, uid == creator_id, now) for uid in members],
				)
		return conversation

	# Group administration

	async def add_participants(
		self, conversation_id: str, actor_id: str, user_ids: Iterable[str]
	) -> Tuple[Conversation, List[str]]:
		requested = list(dict.fromkeys(str(uid) for uid in user_ids if uid))
		if not requested:
			raise ValidationFailed("At least 1 participant ID required")
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				conversation = _require_group(MEMORY.conversations.get(conversation_id))
				_require_admin(conversation, actor_id)
				added = [uid for uid in requested if not conversation.is_participant(uid)]
				if not added:
					raise AlreadyParticipant()
				for uid in added:
					conversation.participants.append(uid)
					conversation.unread[uid] = 0
				conversation.updated_at = utcnow()
				return conversation.clone(), added
		async with pool.acquire() as conn:
			async with conn.transaction():
				conversation = _require_group(await load_conversation(conn, conversation_id, lock=True))
				_require_admin(conversation, actor_id)
				added = [uid for uid in requested if not conversation.is_participant(uid)]
				if not added:
					raise AlreadyParticipant()
				now = utcnow()
				await conn.executemany(
					"""
					INSERT INTO conversation_participants (conversation_id, user_id, joined_at)
					VALUES ($1, $2, $3)
					""",
					[(conversation_id, uid, now) for uid in added],
				)
				await conn.execute("UPDATE conversations SET updated_at = $2 WHERE id = $1", conversation_id, now)
				updated = await load_conversation(conn, conversation_id)
		return _reloaded(updated), added

	async def remove_participant(self, conversation_id: str, actor_id: str, user_id: str) -> Conversation:
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				conversation = _require_group(MEMORY.conversations.get(conversation_id))
				_check_removal(conversation, actor_id, user_id)
				conversation.participants.remove(user_id)
				if user_id in conversation.admins:
					conversation.admins.remove(user_id)
				conversation.unread.pop(user_id, None)
				conversation.deleted_by.discard(user_id)
				conversation.archived_by.discard(user_id)
				conversation.updated_at = utcnow()
				return conversation.clone()
		async with pool.acquire() as conn:
			async with conn.transaction():
				conversation = _require_group(await load_conversation(conn, conversation_id, lock=True))
				_check_removal(conversation, actor_id, user_id)
				await conn.execute(
					"DELETE FROM conversation_participants WHERE conversation_id = $1 AND user_id = $2",
					conversation_id,
					user_id,
				)
				await conn.execute("UPDATE conversations SET updated_at = $2 WHERE id = $1", conversation_id, utcnow())
				updated = await load_conversation(conn, conversation_id)
		return _reloaded(updated)

	async def promote_admin(self, conversation_id: str, actor_id: str, user_id: str) -> Conversation:
		return await self._set_admin(conversation_id, actor_id, user_id, promote=True)

	async def demote_admin(self, conversation_id: str, actor_id: str, user_id: str) -> Conversation:
		return await self._set_admin(conversation_id, actor_id, user_id, promote=False)

	async def _set_admin(self, conversation_id: str, actor_id: str, user_id: str, *, promote: bool) -> Conversation:
		check = _check_promotion if promote else _check_demotion
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				conversation = _require_group(MEMORY.conversations.get(conversation_id))
				check(conversation, actor_id, user_id)
				if promote:
					conversation.admins.append(user_id)
				else:
					conversation.admins.remove(user_id)
				conversation.updated_at = utcnow()
				return conversation.clone()
		async with pool.acquire() as conn:
			async with conn.transaction():
				conversation = _require_group(await load_conversation(conn, conversation_id, lock=True))
				check(conversation, actor_id, user_id)
				await conn.execute(
					"""
					UPDATE conversation_participants SET is_admin = $3
					WHERE conversation_id = $1 AND user_id = $2
					""",
					conversation_id,
					user_id,
					promote,
				)
				await conn.execute("UPDATE conversations SET updated_at = $2 WHERE id = $1", conversation_id, utcnow())
				updated = await load_conversation(conn, conversation_id)
		return _reloaded(updated)

	async def update_group(
		self,
		conversation_id: str,
		actor_id: str,
		*,
		name: Optional[str] = None,
		description: Optional[str] = None,
		avatar: Optional[str] = None,
	) -> Conversation:
		clean_name = _clean_name(name) if name is not None else None
		clean_description = _clean_description(description) if description is not None else None
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				conversation = _require_group(MEMORY.conversations.get(conversation_id))
				_require_admin(conversation, actor_id)
				if clean_name is not None:
					conversation.name = clean_name
				if clean_description is not None:
					conversation.description = clean_description
				if avatar is not None:
					conversation.avatar = avatar
				conversation.updated_at = utcnow()
				return conversation.clone()
		async with pool.acquire() as conn:
			async with conn.transaction():
				conversation = _require_group(await load_conversation(conn, conversation_id, lock=True))
				_require_admin(conversation, actor_id)
				await conn.execute(
					"""
					UPDATE conversations
					SET name = COALESCE($2, name),
					    description = COALESCE($3, description),
					    avatar = COALESCE($4, avatar),
					    updated_at = $5
					WHERE id = $1
					""",
					conversation_id,
					clean_name,
					clean_description,
					avatar,
					utcnow(),
				)
				updated = await load_conversation(conn, conversation_id)
		return _reloaded(updated)

	# Unread bookkeeping

	async def increment_unread(self, conversation_id: str, user_id: str) -> int:
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				conversation = _require_member(MEMORY.conversations.get(conversation_id), user_id)
				conversation.unread[user_id] = conversation.unread.get(user_id, 0) + 1
				return conversation.unread[user_id]
		async with pool.acquire() as conn:
			value = await conn.fetchval(
				"""
				UPDATE conversation_participants SET unread_count = unread_count + 1
				WHERE conversation_id = $1 AND user_id = $2
				RETURNING unread_count
				""",
				conversation_id,
				user_id,
			)
		if value is None:
			raise NotParticipant()
		return int(value)

	async def bulk_increment_unread(self, conversation_id: str, except_user: str) -> Dict[str, int]:
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				conversation = MEMORY.conversations.get(conversation_id)
				if conversation is None:
					raise NotFound("Conversation not found")
				for participant in conversation.others(except_user):
					conversation.unread[participant] = conversation.unread.get(participant, 0) + 1
				return {uid: conversation.unread[uid] for uid in conversation.others(except_user)}
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				UPDATE conversation_participants SET unread_count = unread_count + 1
				WHERE conversation_id = $1 AND user_id <> $2
				RETURNING user_id, unread_count
				""",
				conversation_id,
				except_user,
			)
		return {str(row["user_id"]): int(row["unread_count"]) for row in rows}

	async def reset_unread(self, conversation_id: str, user_id: str) -> int:
		"""Zero the caller's counter and return the value it had."""
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				conversation = _require_member(MEMORY.conversations.get(conversation_id), user_id)
				previous = conversation.unread.get(user_id, 0)
				conversation.unread[user_id] = 0
				return previous
		async with pool.acquire() as conn:
			async with conn.transaction():
				previous = await reset_unread_pg(conn, conversation_id, user_id)
		return previous

	# Per-participant visibility

	async def soft_delete(self, conversation_id: str, user_id: str) -> bool:
		"""Hide the conversation for `user_id`; True when it was physically removed."""
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				conversation = _require_member(MEMORY.conversations.get(conversation_id), user_id)
				conversation.deleted_by.add(user_id)
				if not conversation.is_group and conversation.deleted_by >= set(conversation.participants):
					MEMORY.purge_conversation(conversation_id)
					return True
				return False
		async with pool.acquire() as conn:
			async with conn.transaction():
				conversation = _require_member(await load_conversation(conn, conversation_id, lock=True), user_id)
				if not conversation.is_group and (conversation.deleted_by | {user_id}) >= set(conversation.participants):
					await conn.execute("DELETE FROM messages WHERE conversation_id = $1", conversation_id)
					await conn.execute("DELETE FROM conversations WHERE id = $1", conversation_id)
					return True
				await conn.execute(
					"""
					UPDATE conversation_participants SET deleted = TRUE
					WHERE conversation_id = $1 AND user_id = $2
					""",
					conversation_id,
					user_id,
				)
		return False

	async def set_archived(self, conversation_id: str, user_id: str, archived: bool) -> Conversation:
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				conversation = _require_member(MEMORY.conversations.get(conversation_id), user_id)
				if archived:
					conversation.archived_by.add(user_id)
				else:
					conversation.archived_by.discard(user_id)
				return conversation.clone()
		async with pool.acquire() as conn:
			async with conn.transaction():
				_require_member(await load_conversation(conn, conversation_id, lock=True), user_id)
				await conn.execute(
					"""
					UPDATE conversation_participants SET archived = $3
					WHERE conversation_id = $1 AND user_id = $2
					""",
					conversation_id,
					user_id,
					archived,
				)
				updated = await load_conversation(conn, conversation_id)
		return _reloaded(updated)

	async def clear_for_user(self, conversation_id: str, user_id: str) -> int:
		"""Delete every message of the conversation for `user_id`; returns how many changed."""
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				conversation = _require_member(MEMORY.conversations.get(conversation_id), user_id)
				everyone = set(conversation.participants)
				cleared = 0
				for message in MEMORY.conversation_messages(conversation_id):
					if user_id in message.deleted_by:
						continue
					message.deleted_by.add(user_id)
					cleared += 1
					if message.deleted_by >= everyone:
						MEMORY.purge_message(message.id)
				return cleared
		async with pool.acquire() as conn:
			async with conn.transaction():
				conversation = _require_member(await load_conversation(conn, conversation_id, lock=True), user_id)
				status = await conn.execute(
					"""
					UPDATE messages SET deleted_by = array_append(deleted_by, $2)
					WHERE conversation_id = $1 AND NOT ($2 = ANY(deleted_by))
					""",
					conversation_id,
					user_id,
				)
				await conn.execute(
					"""
					DELETE FROM messages
					WHERE conversation_id = $1 AND deleted_by @> $2::text[]
					""",
					conversation_id,
					conversation.participants,
				)
		return int(status.split()[-1]) if status else 0
