"""Domain records for conversations and messages."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from typing import Dict, List, Optional, Set

DIRECT = "direct"
GROUP = "group"

TEXT = "text"
IMAGE = "image"
VIDEO = "video"
VOICE = "voice"
DOCUMENT = "document"
GIF = "gif"
SHARED_POST = "shared_post"
SHARED_STORY = "shared_story"

MESSAGE_TYPES = (TEXT, IMAGE, VIDEO, VOICE, DOCUMENT, GIF, SHARED_POST, SHARED_STORY)
MEDIA_TYPES = (IMAGE, VIDEO, VOICE, DOCUMENT)

TOMBSTONE = "This message was deleted"

MAX_CONTENT_LENGTH = 5000
MAX_WAVEFORM_SAMPLES = 512
MAX_GROUP_NAME_LENGTH = 100
MAX_GROUP_DESCRIPTION_LENGTH = 500
MIN_GROUP_SIZE = 3


def direct_key(user_a: str, user_b: str) -> str:
	"""Canonical key of an unordered participant pair."""
	first, second = sorted((str(user_a), str(user_b)))
	return f"{first}:{second}"


def media_type_for_mime(mime_type: str) -> str:
	mime = (mime_type or "").lower()
	if mime.startswith("image/"):
		return IMAGE
	if mime.startswith("video/"):
		return VIDEO
	if mime.startswith("audio/"):
		return VOICE
	return DOCUMENT


@dataclass(slots=True)
class Conversation:
	id: str
	kind: str
	participants: List[str]
	created_at: datetime
	updated_at: datetime
	name: Optional[str] = None
	description: Optional[str] = None
	avatar: Optional[str] = None
	admins: List[str] = field(default_factory=list)
	created_by: Optional[str] = None
	last_message_id: Optional[str] = None
	last_message_at: Optional[datetime] = None
	unread: Dict[str, int] = field(default_factory=dict)
	deleted_by: Set[str] = field(default_factory=set)
	archived_by: Set[str] = field(default_factory=set)

	@property
	def is_group(self) -> bool:
		return self.kind == GROUP

	def is_participant(self, user_id: str) -> bool:
		return user_id in self.participants

	def is_admin(self, user_id: str) -> bool:
		return user_id in self.admins

	def other_participant(self, user_id: str) -> Optional[str]:
		for participant in self.participants:
			if participant != user_id:
				return participant
		return None

	def others(self, user_id: str) -> List[str]:
		return [participant for participant in self.participants if participant != user_id]

	def unread_for(self, user_id: str) -> int:
		return self.unread.get(user_id, 0)

	def sort_key(self) -> tuple:
		# newest activity first, id breaks ties
		stamp = self.last_message_at or self.created_at
		return (stamp, self.id)

	def clone(self) -> "Conversation":
		return replace(
			self,
			participants=list(self.participants),
			admins=list(self.admins),
			unread=dict(self.unread),
			deleted_by=set(self.deleted_by),
			archived_by=set(self.archived_by),
		)


@dataclass(slots=True)
class MediaDescriptor:
	url: str
	file_name: Optional[str] = None
	file_size: Optional[int] = None
	mime_type: Optional[str] = None
	thumbnail: Optional[str] = None
	duration: Optional[float] = None
	waveform: Optional[List[float]] = None

	def to_json(self) -> dict:
		return {
			"url": self.url,
			"file_name": self.file_name,
			"file_size": self.file_size,
			"mime_type": self.mime_type,
			"thumbnail": self.thumbnail,
			"duration": self.duration,
			"waveform": self.waveform,
		}

	@classmethod
	def from_json(cls, data: Optional[dict]) -> Optional["MediaDescriptor"]:
		if not data:
			return None
		return cls(**{item.name: data.get(item.name) for item in fields(cls)})


@dataclass(slots=True)
class Reaction:
	user_id: str
	emoji: str
	created_at: datetime


@dataclass(slots=True)
class MessagePayload:
	"""Validated send payload; type is derived, never supplied."""

	content: str = ""
	media: Optional[MediaDescriptor] = None
	gif_url: Optional[str] = None
	shared_post_id: Optional[str] = None
	shared_story_id: Optional[str] = None
	reply_to_id: Optional[str] = None

	def is_empty(self) -> bool:
		return not (
			self.content.strip()
			or self.media is not None
			or self.gif_url
			or self.shared_post_id
			or self.shared_story_id
		)

	def message_type(self) -> str:
		if self.shared_story_id:
			return SHARED_STORY
		if self.shared_post_id:
			return SHARED_POST
		if self.gif_url:
			return GIF
		if self.media is not None:
			return media_type_for_mime(self.media.mime_type or "")
		return TEXT

	def normalized(self) -> "MessagePayload":
		"""Copy keeping only the attachment that decides the type."""
		kind = self.message_type()
		return replace(
			self,
			media=self.media if kind in MEDIA_TYPES else None,
			gif_url=self.gif_url if kind == GIF else None,
			shared_post_id=self.shared_post_id if kind == SHARED_POST else None,
			shared_story_id=self.shared_story_id if kind == SHARED_STORY else None,
		)



@dataclass(slots=True)
class Message:
	id: str
	conversation_id: str
	sender_id: str
	type: str
	created_at: datetime
	updated_at: datetime
	recipient_id: Optional[str] = None
	content: str = ""
	media: Optional[MediaDescriptor] = None
	gif_url: Optional[str] = None
	shared_post_id: Optional[str] = None
	shared_story_id: Optional[str] = None
	reply_to_id: Optional[str] = None
	reactions: List[Reaction] = field(default_factory=list)
	is_read: bool = False
	read_at: Optional[datetime] = None
	read_by: Dict[str, datetime] = field(default_factory=dict)
	deleted_by: Set[str] = field(default_factory=set)
	deleted_for_everyone: bool = False
	deleted_at: Optional[datetime] = None

	@property
	def is_deleted(self) -> bool:
		return self.deleted_for_everyone

	def visible_to(self, user_id: str) -> bool:
		return user_id not in self.deleted_by

	def reaction_of(self, user_id: str) -> Optional[Reaction]:
		for reaction in self.reactions:
			if reaction.user_id == user_id:
				return reaction
		return None

	def apply_tombstone(self, when: datetime) -> None:
		self.content = TOMBSTONE
		self.type = TEXT
		self.media = None
		self.gif_url = None
		self.shared_post_id = None
		self.shared_story_id = None
		self.deleted_for_everyone = True
		self.deleted_at = when
		self.updated_at = when

	def clone(self) -> "Message":
		return replace(
			self,
			media=replace(self.media, waveform=list(self.media.waveform) if self.media.waveform else self.media.waveform)
			if self.media
			else None,
			reactions=[replace(reaction) for reaction in self.reactions],
			read_by=dict(self.read_by),
			deleted_by=set(self.deleted_by),
		)


@dataclass(slots=True)
class SendResult:
	"""Durable outcome of an append: the message and the conversation after the update."""

	message: Message
	conversation: Conversation


@dataclass(slots=True)
class ReadResult:
	"""Outcome of a mark-read: messages flagged and the unread counter it replaced."""

	marked: int
	previous_unread: int
