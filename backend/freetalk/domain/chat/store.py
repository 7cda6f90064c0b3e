"""In-process state shared by the conversation and message stores.

Conversations and messages live behind one lock so an append and the
conversation update it implies form a single atomic unit, mirroring the
row lock taken on the conversation in Postgres.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from .models import Conversation, Message


class _InMemoryChat:
	"""Fallback store used in tests when Postgres is unavailable."""

	def __init__(self) -> None:
		self.lock = asyncio.Lock()
		self.conversations: Dict[str, Conversation] = {}
		self.direct_index: Dict[str, str] = {}
		self.messages: Dict[str, Message] = {}
		self.timeline: Dict[str, List[str]] = {}
		self.stories: Dict[str, dict] = {}
		self.posts: Dict[str, dict] = {}

	def reset(self) -> None:
		self.lock = asyncio.Lock()
		self.conversations.clear()
		self.direct_index.clear()
		self.messages.clear()
		self.timeline.clear()
		self.stories.clear()
		self.posts.clear()

	def conversation_messages(self, conversation_id: str) -> List[Message]:
		return [self.messages[mid] for mid in self.timeline.get(conversation_id, ()) if mid in self.messages]

	def purge_conversation(self, conversation_id: str) -> None:
		conversation = self.conversations.pop(conversation_id, None)
		for message_id in self.timeline.pop(conversation_id, []):
			self.messages.pop(message_id, None)
		if conversation is not None:
			for key, value in list(self.direct_index.items()):
				if value == conversation_id:
					del self.direct_index[key]

	def purge_message(self, message_id: str) -> None:
		message = self.messages.pop(message_id, None)
		if message is None:
			return
		ids = self.timeline.get(message.conversation_id)
		if ids and message_id in ids:
			ids.remove(message_id)


MEMORY = _InMemoryChat()


def reset_memory_state() -> None:
	MEMORY.reset()


def utcnow() -> datetime:
	return datetime.now(timezone.utc)


def next_timestamp(previous: Optional[datetime], now: Optional[datetime] = None) -> datetime:
	"""A timestamp strictly after `previous`, normally just the wall clock."""
	now = now or utcnow()
	if previous is not None and now <= previous:
		return previous + timedelta(microseconds=1)
	return now
