"""Read side of the messaging core: listings, history pages, search and export."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from freetalk.domain.identity.directory import UserDirectory, UserRecord, summaries
from freetalk.errors import ValidationFailed
from freetalk.infra import cache, rate_limit
from freetalk.obs import logging as obs_logging

from .conversations import ConversationStore
from .export import FORMATS, ExportDocument, build_export
from .hydrate import MessageHydrator
from .messages import MessageStore
from .schemas import MessageView, Pagination, UserSummary
from .store import utcnow

_logger = obs_logging.get_logger("freetalk.chat")

DEFAULT_CONVERSATION_LIMIT = 20
DEFAULT_MESSAGE_LIMIT = 50
DEFAULT_SEARCH_LIMIT = 20
MAX_LIMIT = 100


def _bounds(page: Optional[int], limit: Optional[int], default: int) -> Tuple[int, int]:
	page = page if page and page > 0 else 1
	limit = limit if limit and limit > 0 else default
	return page, min(limit, MAX_LIMIT)


class ChatQueries:
	"""Every read a client performs against conversations and messages."""

	def __init__(
		self,
		*,
		conversations: ConversationStore,
		messages: MessageStore,
		directory: UserDirectory,
		hydrator: Optional[MessageHydrator] = None,
	) -> None:
		self._conversations = conversations
		self._messages = messages
		self._directory = directory
		self._hydrator = hydrator or MessageHydrator(directory, messages)

	async def list_conversations(
		self, user: UserRecord, *, page: Optional[int] = None, limit: Optional[int] = None
	) -> Dict[str, Any]:
		page, limit = _bounds(page, limit, DEFAULT_CONVERSATION_LIMIT)
		try:
			cached = await cache.get_conversation_list(user.id, page, limit)
		except Exception:
			_logger.warning("conversation_cache_read_failed", exc_info=True)
			cached = None
		if cached is not None:
			return cached
		hidden = await self._directory.blocked_ids(user.id)
		items, total = await self._conversations.list_for_user(user.id, page=page, limit=limit, hidden=hidden)
		views = await self._hydrator.conversations(items, user.id)
		payload = {
			"conversations": [view.dump() for view in views],
			"totalUnread": sum(view.unread_count for view in views),
			"pagination": Pagination(page=page, limit=limit, total=total).dump(exclude_none=True),
		}
		try:
			await cache.set_conversation_list(user.id, page, limit, payload)
		except Exception:
			_logger.warning("conversation_cache_write_failed", exc_info=True)
		return payload

	async def fetch_messages(
		self,
		user: UserRecord,
		conversation_id: str,
		*,
		page: Optional[int] = None,
		limit: Optional[int] = None,
	) -> Tuple[List[MessageView], Pagination]:
		"""One page of history, newest page first, messages oldest first within the page."""
		page, limit = _bounds(page, limit, DEFAULT_MESSAGE_LIMIT)
		conversation = await self._conversations.require_member(conversation_id, user.id)
		items, total = await self._messages.fetch(conversation_id, user.id, page=page, size=limit)
		views = await self._hydrator.messages(list(reversed(items)), conversation)
		pagination = Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit) if total else 0)
		return views, pagination

	async def search(
		self,
		user: UserRecord,
		conversation_id: str,
		query: Optional[str],
		*,
		page: Optional[int] = None,
		limit: Optional[int] = None,
	) -> Tuple[List[MessageView], Pagination]:
		if not query or not query.strip():
			raise ValidationFailed("Search query is required")
		await rate_limit.enforce("search", user.id)
		page, limit = _bounds(page, limit, DEFAULT_SEARCH_LIMIT)
		conversation = await self._conversations.require_member(conversation_id, user.id)
		items, total = await self._messages.search(conversation_id, user.id, query.strip(), page=page, size=limit)
		views = await self._hydrator.messages(items, conversation)
		pagination = Pagination(
			page=page, limit=limit, total=total, total_pages=math.ceil(total / limit) if total else 0
		)
		return views, pagination

	async def export(
		self, user: UserRecord, conversation_id: str, fmt: str = "json", *, now: Optional[datetime] = None
	) -> ExportDocument:
		fmt = (fmt or "json").lower()
		if fmt not in FORMATS:
			raise ValidationFailed("Export format must be json or txt")
		conversation = await self._conversations.require_member(conversation_id, user.id)
		history = await self._messages.history(conversation_id, user.id)
		views = await self._hydrator.messages(history, conversation)
		users = await self._directory.get_many(conversation.participants)
		participants = [UserSummary(**item) for item in summaries(users, conversation.participants)]
		viewer = UserSummary(id=user.id, name=user.name, avatar=user.avatar)
		return build_export(fmt, conversation, viewer, participants, views, now=now or utcnow())
