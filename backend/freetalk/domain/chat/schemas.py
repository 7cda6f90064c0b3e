"""Pydantic schemas for the messaging API and push-channel payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

	def dump(self, **kwargs: Any) -> Dict[str, Any]:
		return self.model_dump(by_alias=True, mode="json", **kwargs)


class UserSummary(CamelModel):
	id: str
	name: str
	avatar: Optional[str] = None


class MediaView(CamelModel):
	url: str
	file_name: Optional[str] = None
	file_size: Optional[int] = None
	mime_type: Optional[str] = None
	thumbnail: Optional[str] = None
	duration: Optional[float] = None
	waveform: Optional[List[float]] = None


class ReactionView(CamelModel):
	user: UserSummary
	emoji: str
	created_at: datetime


class ReplyPreview(CamelModel):
	id: str
	content: str
	sender: Optional[UserSummary] = None
	created_at: datetime


class SharedStoryView(CamelModel):
	id: str
	media_type: Optional[str] = None
	media_url: Optional[str] = None
	text_content: Optional[str] = None
	caption: Optional[str] = None
	background_color: Optional[str] = None
	duration: Optional[float] = None
	author: Optional[UserSummary] = None


class SharedPostView(CamelModel):
	id: str
	content: Optional[str] = None
	media_url: Optional[str] = None
	author: Optional[UserSummary] = None


class MessageView(CamelModel):
	id: str
	conversation_id: str
	sender: UserSummary
	recipient: Optional[UserSummary] = None
	content: str
	type: str
	media: Optional[MediaView] = None
	gif_url: Optional[str] = None
	shared_post: Optional[SharedPostView] = None
	shared_story: Optional[SharedStoryView] = None
	reply_to: Optional[ReplyPreview] = None
	reactions: List[ReactionView] = Field(default_factory=list)
	is_group: bool = False
	group_name: Optional[str] = None
	is_read: bool = False
	read_at: Optional[datetime] = None
	read_by: Dict[str, datetime] = Field(default_factory=dict)
	is_deleted: bool = False
	deleted_at: Optional[datetime] = None
	created_at: datetime
	updated_at: datetime


class ConversationView(CamelModel):
	id: str
	is_group: bool
	group_name: Optional[str] = None
	group_avatar: Optional[str] = None
	group_description: Optional[str] = None
	participants: List[UserSummary] = Field(default_factory=list)
	admins: List[str] = Field(default_factory=list)
	created_by: Optional[str] = None
	other_user: Optional[UserSummary] = None
	last_message: Optional[MessageView] = None
	last_message_at: Optional[datetime] = None
	unread_count: int = 0
	is_archived: bool = False
	created_at: datetime
	updated_at: datetime


class Pagination(CamelModel):
	page: int
	limit: int
	total: int
	pages: Optional[int] = None
	total_pages: Optional[int] = None


# Requests


class TypingRequest(CamelModel):
	conversation_id: Optional[str] = None
	is_typing: bool = False


class ReactRequest(CamelModel):
	emoji: Optional[str] = None


class CreateGroupRequest(CamelModel):
	group_name: Optional[str] = None
	group_description: Optional[str] = None
	participants: List[str] = Field(default_factory=list)


class AddParticipantsRequest(CamelModel):
	participant_ids: List[str] = Field(default_factory=list)


class ArchiveRequest(CamelModel):
	archived: bool = True


class SendMessageForm(CamelModel):
	"""JSON body of a send without a file; multipart sends carry the same fields as form parts."""

	conversation_id: Optional[str] = None
	recipient: Optional[str] = None
	content: Optional[str] = None
	reply_to: Optional[str] = None
	story_id: Optional[str] = None
	post_id: Optional[str] = None
	gif_url: Optional[str] = None
