"""Notification records and the drafts callers submit to the store."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

REACTION = "reaction"
COMMENT = "comment"
REPLY = "reply"
POST_MENTION = "post_mention"
FOLLOW = "follow"
MESSAGE = "message"
STORY = "story"
MESSAGE_REACTION = "message_reaction"
STORY_REACTION = "story_reaction"
POST_SHARE = "post_share"
TAG = "tag"
POKE = "poke"
REPORT_UPDATE = "report_update"
MODERATION_ACTION = "moderation_action"
VIDEO_LIKE = "video_like"
VIDEO_COMMENT = "video_comment"
VIDEO_TAG = "video_tag"

NOTIFICATION_TYPES = (
	REACTION,
	COMMENT,
	REPLY,
	POST_MENTION,
	FOLLOW,
	MESSAGE,
	STORY,
	MESSAGE_REACTION,
	STORY_REACTION,
	POST_SHARE,
	TAG,
	POKE,
	REPORT_UPDATE,
	MODERATION_ACTION,
	VIDEO_LIKE,
	VIDEO_COMMENT,
	VIDEO_TAG,
)

MAX_PREVIEW_LENGTH = 100


def clip(text: Optional[str], limit: int = MAX_PREVIEW_LENGTH) -> Optional[str]:
	if text is None:
		return None
	return text[:limit]


@dataclass(slots=True)
class NotificationDraft:
	"""What a producer wants recorded; the store assigns id, read flag and timestamp."""

	recipient_id: str
	sender_id: str
	type: str
	post_id: Optional[str] = None
	story_id: Optional[str] = None
	video_id: Optional[str] = None
	conversation_id: Optional[str] = None
	message_id: Optional[str] = None
	poke_id: Optional[str] = None
	report_id: Optional[str] = None
	reaction_type: Optional[str] = None
	comment_text: Optional[str] = None
	poke_type: Optional[str] = None
	preview: Optional[str] = None


@dataclass(slots=True)
class Notification:
	id: str
	recipient_id: str
	sender_id: str
	type: str
	created_at: datetime
	is_read: bool = False
	post_id: Optional[str] = None
	story_id: Optional[str] = None
	video_id: Optional[str] = None
	conversation_id: Optional[str] = None
	message_id: Optional[str] = None
	poke_id: Optional[str] = None
	report_id: Optional[str] = None
	reaction_type: Optional[str] = None
	comment_text: Optional[str] = None
	poke_type: Optional[str] = None
	preview: Optional[str] = None

	def dedupe_key(self) -> tuple:
		return (self.recipient_id, self.sender_id, self.type, self.post_id)

	def clone(self) -> "Notification":
		return replace(self)


@dataclass(slots=True)
class RecordOutcome:
	"""Result of `NotificationStore.record`: the stored record and whether it was refreshed."""

	notification: Notification
	refreshed: bool = False
