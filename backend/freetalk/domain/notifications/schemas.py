"""Pydantic views for notification responses and push-channel payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from freetalk.domain.chat.schemas import CamelModel, UserSummary


class NotificationPostRef(CamelModel):
	id: str
	content: Optional[str] = None
	media_url: Optional[str] = None


class NotificationStoryRef(CamelModel):
	id: str
	media_type: Optional[str] = None
	media_url: Optional[str] = None
	text_content: Optional[str] = None


class NotificationView(CamelModel):
	id: str
	recipient: str
	sender: UserSummary
	type: str
	message: Optional[str] = None
	post: Optional[NotificationPostRef] = None
	story: Optional[NotificationStoryRef] = None
	related_video: Optional[str] = None
	conversation: Optional[str] = None
	message_id: Optional[str] = None
	poke_id: Optional[str] = None
	related_report: Optional[str] = None
	reaction_type: Optional[str] = None
	comment_text: Optional[str] = None
	poke_type: Optional[str] = None
	is_read: bool = False
	created_at: datetime
