"""Message store: typed payloads, reactions, read state and per-user deletion."""

from __future__ import annotations

import json
import re
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

import ulid

from freetalk.domain.identity.directory import UserDirectory
from freetalk.errors import (
	Blocked,
	DeleteWindowExpired,
	Forbidden,
	NotFound,
	NotParticipant,
	ValidationFailed,
)
from freetalk.infra.postgres import PoolBacked
from freetalk.settings import settings

from .conversations import load_conversation, record_send, record_send_pg, reset_unread_pg
from .models import (
	MAX_CONTENT_LENGTH,
	MAX_WAVEFORM_SAMPLES,
	TOMBSTONE,
	Conversation,
	MediaDescriptor,
	Message,
	MessagePayload,
	Reaction,
	ReadResult,
	SendResult,
)
from .shared import SharedContentLookup
from .store import MEMORY, next_timestamp, utcnow

_WORD_RE = re.compile(r"\w+", re.UNICODE)

_MESSAGE_COLUMNS = (
	"id, conversation_id, sender_id, recipient_id, content, type, media, gif_url, shared_post_id, "
	"shared_story_id, reply_to_id, reactions, is_read, read_at, read_by, deleted_by, "
	"deleted_for_everyone, deleted_at, created_at, updated_at"
)


def _json(value):
	if value is None:
		return None
	if isinstance(value, str):
		return json.loads(value) if value else None
	return value


def _reactions_to_json(reactions: Iterable[Reaction]) -> str:
	return json.dumps(
		[{"user_id": r.user_id, "emoji": r.emoji, "created_at": r.created_at.isoformat()} for r in reactions]
	)


def _row_to_message(row) -> Message:
	reactions = [
		Reaction(user_id=item["user_id"], emoji=item["emoji"], created_at=datetime.fromisoformat(item["created_at"]))
		for item in (_json(row["reactions"]) or [])
	]
	read_by = {user: datetime.fromisoformat(stamp) for user, stamp in (_json(row["read_by"]) or {}).items()}
	return Message(
		id=str(row["id"]),
		conversation_id=str(row["conversation_id"]),
		sender_id=str(row["sender_id"]),
		recipient_id=row["recipient_id"],
		content=row["content"] or "",
		type=row["type"],
		media=MediaDescriptor.from_json(_json(row["media"])),
		gif_url=row["gif_url"],
		shared_post_id=row["shared_post_id"],
		shared_story_id=row["shared_story_id"],
		reply_to_id=row["reply_to_id"],
		reactions=reactions,
		is_read=bool(row["is_read"]),
		read_at=row["read_at"],
		read_by=read_by,
		deleted_by=set(row["deleted_by"] or ()),
		deleted_for_everyone=bool(row["deleted_for_everyone"]),
		deleted_at=row["deleted_at"],
		created_at=row["created_at"],
		updated_at=row["updated_at"],
	)


def _search_terms(query: str) -> List[str]:
	return [term.lower() for term in _WORD_RE.findall(query or "")]


def _score(message: Message, terms: List[str]) -> int:
	haystack = f"{message.content} {message.media.file_name if message.media and message.media.file_name else ''}"
	words = [word.lower() for word in _WORD_RE.findall(haystack)]
	return sum(words.count(term) for term in terms)


def validate_payload(payload: MessagePayload) -> None:
	if payload.is_empty():
		raise ValidationFailed("Message content, media, story, or GIF is required")
	if len(payload.content) > MAX_CONTENT_LENGTH:
		raise ValidationFailed(f"Message content must be at most {MAX_CONTENT_LENGTH} characters")
	media = payload.media
	if media is not None and media.waveform is not None and len(media.waveform) > MAX_WAVEFORM_SAMPLES:
		raise ValidationFailed(f"Waveform data must have at most {MAX_WAVEFORM_SAMPLES} samples")


def _require_member(conversation: Optional[Conversation], user_id: str) -> Conversation:
	if conversation is None:
		raise NotFound("Conversation not found")
	if not conversation.is_participant(user_id):
		raise NotParticipant()
	return conversation


class MessageStore(PoolBacked):
	"""Repository backed by asyncpg with an in-memory fallback."""

	def __init__(
		self,
		directory: Optional[UserDirectory] = None,
		shared: Optional[SharedContentLookup] = None,
	) -> None:
		self._directory = directory or UserDirectory()
		self._shared = shared or SharedContentLookup()

	# Writes

	async def append(self, conversation_id: str, sender_id: str, payload: MessagePayload) -> SendResult:
		"""Persist a message and apply it to its conversation as one atomic unit."""
		validate_payload(payload)
		payload = payload.normalized()
		if payload.shared_story_id and await self._shared.story(payload.shared_story_id) is None:
			raise NotFound("Story not found")
		if payload.shared_post_id and await self._shared.post(payload.shared_post_id) is None:
			raise NotFound("Post not found")
		pool = await self._pool_or_none()
		if pool is None:
			conversation = MEMORY.conversations.get(conversation_id)
			await self._check_sender(_require_member(conversation and conversation.clone(), sender_id), sender_id)
			async with MEMORY.lock:
				conversation = _require_member(MEMORY.conversations.get(conversation_id), sender_id)
				if payload.reply_to_id:
					replied = MEMORY.messages.get(payload.reply_to_id)
					if replied is None or replied.conversation_id != conversation_id:
						raise NotFound("Replied message not found")
				message = self._build(conversation, sender_id, payload)
				MEMORY.messages[message.id] = message
				MEMORY.timeline.setdefault(conversation_id, []).append(message.id)
				record_send(conversation, message)
				return SendResult(message=message.clone(), conversation=conversation.clone())
		async with pool.acquire() as conn:
			snapshot = await load_conversation(conn, conversation_id)
			await self._check_sender(_require_member(snapshot, sender_id), sender_id)
			async with conn.transaction():
				conversation = _require_member(await load_conversation(conn, conversation_id, lock=True), sender_id)
				if payload.reply_to_id:
					found = await conn.fetchval(
						"SELECT 1 FROM messages WHERE id = $1 AND conversation_id = $2",
						payload.reply_to_id,
						conversation_id,
					)
					if found is None:
						raise NotFound("Replied message not found")
				message = self._build(conversation, sender_id, payload)
				await conn.execute(
					"""
					INSERT INTO messages (
						id, conversation_id, sender_id, recipient_id, content, type, media, gif_url,
						shared_post_id, shared_story_id, reply_to_id, created_at, updated_at
					) VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10, $11, $12, $12)
					""",
					message.id,
					message.conversation_id,
					message.sender_id,
					message.recipient_id,
					message.content,
					message.type,
					json.dumps(message.media.to_json()) if message.media else None,
					message.gif_url,
					message.shared_post_id,
					message.shared_story_id,
					message.reply_to_id,
					message.created_at,
				)
				updated = await record_send_pg(conn, conversation, message)
		return SendResult(message=message, conversation=updated)

	async def _check_sender(self, conversation: Conversation, sender_id: str) -> None:
		if conversation.is_group:
			return
		recipient_id = conversation.other_participant(sender_id)
		if recipient_id and await self._directory.is_blocked(sender_id, recipient_id):
			raise Blocked("You cannot send messages to this user")

	@staticmethod
	def _build(conversation: Conversation, sender_id: str, payload: MessagePayload) -> Message:
		created_at = next_timestamp(conversation.last_message_at)
		return Message(
			id=str(ulid.new()),
			conversation_id=conversation.id,
			sender_id=sender_id,
			recipient_id=None if conversation.is_group else conversation.other_participant(sender_id),
			content=payload.content,
			type=payload.message_type(),
			media=payload.media,
			gif_url=payload.gif_url,
			shared_post_id=payload.shared_post_id,
			shared_story_id=payload.shared_story_id,
			reply_to_id=payload.reply_to_id,
			created_at=created_at,
			updated_at=created_at,
		)

	async def delete_for_me(self, message_id: str, user_id: str) -> bool:
		"""Hide a message for `user_id`; True when every participant has now hidden it."""
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				message = MEMORY.messages.get(message_id)
				if message is None:
					raise NotFound("Message not found")
				conversation = _require_member(MEMORY.conversations.get(message.conversation_id), user_id)
				message.deleted_by.add(user_id)
				if message.deleted_by >= set(conversation.participants):
					MEMORY.purge_message(message_id)
					return True
				return False
		async with pool.acquire() as conn:
			async with conn.transaction():
				message = await self._locked(conn, message_id)
				conversation = _require_member(await load_conversation(conn, message.conversation_id), user_id)
				deleted_by = message.deleted_by | {user_id}
				if deleted_by >= set(conversation.participants):
					await conn.execute("DELETE FROM messages WHERE id = $1", message_id)
					return True
				await conn.execute(
					"UPDATE messages SET deleted_by = $2::text[] WHERE id = $1",
					message_id,
					sorted(deleted_by),
				)
		return False

	async def delete_for_everyone(
		self,
		message_id: str,
		actor_id: str,
		*,
		now: Optional[datetime] = None,
	) -> Message:
		"""Replace the payload with the tombstone marker, sender only, within the window."""
		now = now or utcnow()
		window = timedelta(seconds=settings.delete_for_everyone_window_seconds)

		def _check(message: Message) -> None:
			if message.sender_id != actor_id:
				raise Forbidden("Only the sender can delete this message for everyone")
			if now - message.created_at > window:
				raise DeleteWindowExpired()

		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				message = MEMORY.messages.get(message_id)
				if message is None:
					raise NotFound("Message not found")
				_check(message)
				if not message.deleted_for_everyone:
					message.apply_tombstone(now)
				return message.clone()
		async with pool.acquire() as conn:
			async with conn.transaction():
				message = await self._locked(conn, message_id)
				_check(message)
				if message.deleted_for_everyone:
					return message
				message.apply_tombstone(now)
				await conn.execute(
					"""
					UPDATE messages
					SET content = $2, type = 'text', media = NULL, gif_url = NULL,
					    shared_post_id = NULL, shared_story_id = NULL,
					    deleted_for_everyone = TRUE, deleted_at = $3, updated_at = $3
					WHERE id = $1
					""",
					message_id,
					TOMBSTONE,
					now,
				)
		return message

	async def react(self, message_id: str, user_id: str, emoji: str) -> Message:
		"""Upsert the caller's reaction; one reaction per user, latest wins."""
		if not isinstance(emoji, str) or not emoji.strip():
			raise ValidationFailed("Emoji is required")
		emoji = emoji.strip()

		def _apply(message: Message) -> None:
			now = utcnow()
			existing = message.reaction_of(user_id)
			if existing is not None:
				existing.emoji = emoji
				existing.created_at = now
			else:
				message.reactions.append(Reaction(user_id=user_id, emoji=emoji, created_at=now))

		return await self._mutate_reactions(message_id, user_id, _apply)

	async def unreact(self, message_id: str, user_id: str) -> Message:
		def _apply(message: Message) -> None:
			message.reactions = [reaction for reaction in message.reactions if reaction.user_id != user_id]

		return await self._mutate_reactions(message_id, user_id, _apply)

	async def _mutate_reactions(self, message_id: str, user_id: str, apply) -> Message:
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				message = MEMORY.messages.get(message_id)
				if message is None:
					raise NotFound("Message not found")
				_require_member(MEMORY.conversations.get(message.conversation_id), user_id)
				apply(message)
				return message.clone()
		async with pool.acquire() as conn:
			async with conn.transaction():
				message = await self._locked(conn, message_id)
				_require_member(await load_conversation(conn, message.conversation_id), user_id)
				apply(message)
				await conn.execute(
					"UPDATE messages SET reactions = $2::jsonb WHERE id = $1",
					message_id,
					_reactions_to_json(message.reactions),
				)
		return message

	async def mark_read(self, conversation_id: str, user_id: str, *, now: Optional[datetime] = None) -> ReadResult:
		"""Flag every unread message addressed to `user_id` as read and zero their counter.

		Both happen under the conversation lock, so a concurrent append lands
		either before (and is flagged) or after (and is counted).
		"""
		now = now or utcnow()
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				conversation = _require_member(MEMORY.conversations.get(conversation_id), user_id)
				changed = 0
				for message in MEMORY.conversation_messages(conversation_id):
					if message.sender_id == user_id:
						continue
					if conversation.is_group:
						if user_id not in message.read_by:
							message.read_by[user_id] = now
							changed += 1
					elif message.recipient_id == user_id and not message.is_read:
						message.is_read = True
						message.read_at = now
						changed += 1
				previous = conversation.unread.get(user_id, 0)
				conversation.unread[user_id] = 0
				return ReadResult(marked=changed, previous_unread=previous)
		async with pool.acquire() as conn:
			async with conn.transaction():
				conversation = _require_member(await load_conversation(conn, conversation_id, lock=True), user_id)
				if conversation.is_group:
					status = await conn.execute(
						"""
						UPDATE messages
						SET read_by = COALESCE(read_by, '{}'::jsonb) || jsonb_build_object($2::text, $3::text)
						WHERE conversation_id = $1 AND sender_id <> $2
						  AND NOT (COALESCE(read_by, '{}'::jsonb) ? $2)
						""",
						conversation_id,
						user_id,
						now.isoformat(),
					)
				else:
					status = await conn.execute(
						"""
						UPDATE messages SET is_read = TRUE, read_at = $3
						WHERE conversation_id = $1 AND recipient_id = $2 AND is_read = FALSE
						""",
						conversation_id,
						user_id,
						now,
					)
				previous = await reset_unread_pg(conn, conversation_id, user_id)
		return ReadResult(marked=int(status.split()[-1]) if status else 0, previous_unread=previous)

	# Reads

	async def get(self, message_id: str) -> Optional[Message]:
		found = await self.get_many([message_id])
		return found.get(message_id)

	async def get_many(self, message_ids: Iterable[str]) -> Dict[str, Message]:
		ids = [mid for mid in dict.fromkeys(message_ids) if mid]
		if not ids:
			return {}
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				return {mid: MEMORY.messages[mid].clone() for mid in ids if mid in MEMORY.messages}
		async with pool.acquire() as conn:
			rows = await conn.fetch(f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ANY($1::text[])", ids)
		return {str(row["id"]): _row_to_message(row) for row in rows}

	async def fetch(
		self, conversation_id: str, user_id: str, *, page: int = 1, size: int = 50
	) -> Tuple[List[Message], int]:
		"""Newest-first page of messages visible to `user_id`, plus the visible total."""
		page = max(1, page)
		size = max(1, size)
		offset = (page - 1) * size
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				_require_member(MEMORY.conversations.get(conversation_id), user_id)
				visible = [m for m in MEMORY.conversation_messages(conversation_id) if m.visible_to(user_id)]
				visible.sort(key=lambda m: (m.created_at, m.id), reverse=True)
				return [m.clone() for m in visible[offset : offset + size]], len(visible)
		async with pool.acquire() as conn:
			_require_member(await load_conversation(conn, conversation_id), user_id)
			total = await conn.fetchval(
				"SELECT COUNT(*) FROM messages WHERE conversation_id = $1 AND NOT ($2 = ANY(deleted_by))",
				conversation_id,
				user_id,
			)
			rows = await conn.fetch(
				f"""
				SELECT {_MESSAGE_COLUMNS} FROM messages
				WHERE conversation_id = $1 AND NOT ($2 = ANY(deleted_by))
				ORDER BY created_at DESC, id DESC
				LIMIT $3 OFFSET $4
				""",
				conversation_id,
				user_id,
				size,
				offset,
			)
		return [_row_to_message(row) for row in rows], int(total or 0)

	async def history(self, conversation_id: str, user_id: str) -> List[Message]:
		"""Every message visible to `user_id`, oldest first."""
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				_require_member(MEMORY.conversations.get(conversation_id), user_id)
				visible = [m.clone() for m in MEMORY.conversation_messages(conversation_id) if m.visible_to(user_id)]
				visible.sort(key=lambda m: (m.created_at, m.id))
				return visible
		async with pool.acquire() as conn:
			_require_member(await load_conversation(conn, conversation_id), user_id)
			rows = await conn.fetch(
				f"""
				SELECT {_MESSAGE_COLUMNS} FROM messages
				WHERE conversation_id = $1 AND NOT ($2 = ANY(deleted_by))
				ORDER BY created_at, id
				""",
				conversation_id,
				user_id,
			)
		return [_row_to_message(row) for row in rows]

	async def search(
		self, conversation_id: str, user_id: str, query: str, *, page: int = 1, size: int = 20
	) -> Tuple[List[Message], int]:
		"""Full-text search over content and file name, best match first then newest."""
		terms = _search_terms(query)
		if not terms:
			raise ValidationFailed("Search query is required")
		page = max(1, page)
		size = max(1, size)
		offset = (page - 1) * size
		pool = await self._pool_or_none()
		if pool is None:
			async with MEMORY.lock:
				_require_member(MEMORY.conversations.get(conversation_id), user_id)
				scored = []
				for message in MEMORY.conversation_messages(conversation_id):
					if not message.visible_to(user_id) or message.is_deleted:
						continue
					score = _score(message, terms)
					if score:
						scored.append((score, message))
				scored.sort(key=lambda item: (item[0], item[1].created_at, item[1].id), reverse=True)
				return [message.clone() for _, message in scored[offset : offset + size]], len(scored)
		tsquery = " | ".join(dict.fromkeys(terms))
		async with pool.acquire() as conn:
			_require_member(await load_conversation(conn, conversation_id), user_id)
			filters = """
				FROM messages
				WHERE conversation_id = $1 AND NOT ($2 = ANY(deleted_by))
				  AND deleted_for_everyone = FALSE
				  AND search_vector @@ to_tsquery('simple', $3)
			"""
			total = await conn.fetchval(f"SELECT COUNT(*) {filters}", conversation_id, user_id, tsquery)
			rows = await conn.fetch(
				f"""
				SELECT {_MESSAGE_COLUMNS} {filters}
				ORDER BY ts_rank(search_vector, to_tsquery('simple', $3)) DESC, created_at DESC, id DESC
				LIMIT $4 OFFSET $5
				""",
				conversation_id,
				user_id,
				tsquery,
				size,
				offset,
			)
		return [_row_to_message(row) for row in rows], int(total or 0)

	async def _locked(self, conn, message_id: str) -> Message:
		row = await conn.fetchrow(f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = $1 FOR UPDATE", message_id)
		if row is None:
			raise NotFound("Message not found")
		return _row_to_message(row)
