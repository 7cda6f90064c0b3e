"""Conversation export as a structured document or a plain text transcript."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from .models import DOCUMENT, GIF, IMAGE, VIDEO, VOICE, Conversation
from .schemas import MessageView, UserSummary

FORMATS = ("json", "txt")

_UNSAFE_NAME = re.compile(r"[^a-zA-Z0-9]")
_RULE = "=" * 31


@dataclass(slots=True)
class ExportDocument:
	file_name: str
	media_type: str
	body: str


def conversation_title(conversation: Conversation, viewer_id: str, participants: Sequence[UserSummary]) -> str:
	if conversation.is_group:
		return conversation.name or "Group Chat"
	for participant in participants:
		if participant.id != viewer_id:
			return participant.name
	return "Unknown"


def file_stem(title: str, now: datetime) -> str:
	return f"FreeTalk_{_UNSAFE_NAME.sub('_', title)}_{now.date().isoformat()}"


def _stamp(value: datetime) -> str:
	return value.strftime("%Y-%m-%d %H:%M:%S")


def _media_line(message: MessageView) -> Optional[str]:
	url = message.media.url if message.media else None
	if message.type == IMAGE:
		return f"[Image: {url}]"
	if message.type == VIDEO:
		return f"[Video: {url}]"
	if message.type == VOICE:
		return f"[Voice message: {url}]"
	if message.type == DOCUMENT:
		name = message.media.file_name if message.media and message.media.file_name else url
		return f"[Document: {name}]"
	if message.type == GIF:
		return f"[GIF: {message.gif_url}]"
	return None


def render_text(
	title: str,
	messages: Sequence[MessageView],
	*,
	now: datetime,
) -> str:
	lines: List[str] = [
		"FreeTalk Conversation Export",
		_RULE,
		"",
		f"Chat with: {title}",
		f"Exported on: {_stamp(now)}",
		f"Total messages: {len(messages)}",
		"",
		_RULE,
		"",
	]
	for message in messages:
		lines.append(f"[{_stamp(message.created_at)}] {message.sender.name or 'Unknown'}:")
		if message.reply_to is not None:
			replied_by = message.reply_to.sender.name if message.reply_to.sender else "Unknown"
			lines.append(f'  ↳ Replying to {replied_by}: "{message.reply_to.content or "[Media]"}"')
		if message.content:
			lines.append(f"  {message.content}")
		media = _media_line(message)
		if media:
			lines.append(f"  {media}")
		if message.reactions:
			summary = ", ".join(f"{r.emoji}({r.user.name})" for r in message.reactions)
			lines.append(f"  Reactions: {summary}")
		lines.append("")
	return "\n".join(lines) + "\n"


def render_json(
	conversation: Conversation,
	title: str,
	participants: Sequence[UserSummary],
	messages: Sequence[MessageView],
	*,
	exported_by: str,
	now: datetime,
) -> Dict[str, Any]:
	return {
		"exportInfo": {
			"exportedBy": exported_by,
			"exportedAt": now.isoformat(),
			"conversationId": conversation.id,
			"totalMessages": len(messages),
		},
		"conversation": {
			"isGroup": conversation.is_group,
			"name": title,
			"participants": [{"id": p.id, "name": p.name} for p in participants],
		},
		"messages": [
			{
				"id": message.id,
				"sender": {"id": message.sender.id, "name": message.sender.name},
				"content": message.content,
				"type": message.type,
				"media": message.media.dump() if message.media else None,
				"gifUrl": message.gif_url,
				"replyTo": {
					"id": message.reply_to.id,
					"content": message.reply_to.content,
					"sender": message.reply_to.sender.name if message.reply_to.sender else None,
				}
				if message.reply_to
				else None,
				"reactions": [reaction.dump() for reaction in message.reactions],
				"isRead": message.is_read,
				"readBy": {uid: stamp.isoformat() for uid, stamp in message.read_by.items()},
				"isDeleted": message.is_deleted,
				"createdAt": message.created_at.isoformat(),
				"updatedAt": message.updated_at.isoformat(),
			}
			for message in messages
		],
	}


def build_export(
	fmt: str,
	conversation: Conversation,
	viewer: UserSummary,
	participants: Sequence[UserSummary],
	messages: Sequence[MessageView],
	*,
	now: datetime,
) -> ExportDocument:
	title = conversation_title(conversation, viewer.id, participants)
	stem = file_stem(title, now)
	if fmt == "txt":
		return ExportDocument(f"{stem}.txt", "text/plain", render_text(title, messages, now=now))
	body = render_json(conversation, title, participants, messages, exported_by=viewer.name, now=now)
	return ExportDocument(f"{stem}.json", "application/json", json.dumps(body, ensure_ascii=False, indent=2))
