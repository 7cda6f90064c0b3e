"""Fetch-time joins: turn stored ids into the views clients render."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence

from freetalk.domain.identity.directory import UserDirectory, UserRecord

from .messages import MessageStore
from .models import Conversation, Message
from .schemas import (
	ConversationView,
	MediaView,
	MessageView,
	ReactionView,
	ReplyPreview,
	SharedPostView,
	SharedStoryView,
	UserSummary,
)
from .shared import SharedContentLookup


def _summary(users: Dict[str, UserRecord], user_id: Optional[str]) -> Optional[UserSummary]:
	if not user_id:
		return None
	record = users.get(user_id)
	if record is None:
		return UserSummary(id=user_id, name="Unknown")
	return UserSummary(id=record.id, name=record.name, avatar=record.avatar)


class MessageHydrator:
	"""Bounded joins over users, replied-to messages, stories and posts."""

	def __init__(
		self,
		directory: UserDirectory,
		messages: MessageStore,
		shared: Optional[SharedContentLookup] = None,
	) -> None:
		self._directory = directory
		self._messages = messages
		self._shared = shared or SharedContentLookup()

	async def message(self, message: Message, conversation: Optional[Conversation] = None) -> MessageView:
		views = await self.messages([message], conversation)
		return views[0]

	async def messages(
		self, items: Sequence[Message], conversation: Optional[Conversation] = None
	) -> List[MessageView]:
		if not items:
			return []
		replies = await self._messages.get_many(m.reply_to_id for m in items if m.reply_to_id)
		stories = await self._shared.stories(m.shared_story_id for m in items if m.shared_story_id)
		posts = await self._shared.posts(m.shared_post_id for m in items if m.shared_post_id)
		user_ids: List[str] = []
		for message in items:
			user_ids.append(message.sender_id)
			if message.recipient_id:
				user_ids.append(message.recipient_id)
			user_ids.extend(reaction.user_id for reaction in message.reactions)
		user_ids.extend(reply.sender_id for reply in replies.values())
		user_ids.extend(str(item["author_id"]) for item in [*stories.values(), *posts.values()] if item.get("author_id"))
		users = await self._directory.get_many(user_ids)
		return [self._view(message, users, replies, stories, posts, conversation) for message in items]

	def _view(
		self,
		message: Message,
		users: Dict[str, UserRecord],
		replies: Dict[str, Message],
		stories: Dict[str, dict],
		posts: Dict[str, dict],
		conversation: Optional[Conversation],
	) -> MessageView:
		reply = replies.get(message.reply_to_id) if message.reply_to_id else None
		story = stories.get(message.shared_story_id) if message.shared_story_id else None
		post = posts.get(message.shared_post_id) if message.shared_post_id else None
		is_group = conversation is not None and conversation.is_group
		return MessageView(
			id=message.id,
			conversation_id=message.conversation_id,
			sender=_summary(users, message.sender_id),
			recipient=_summary(users, message.recipient_id),
			content=message.content,
			type=message.type,
			media=MediaView(**message.media.to_json()) if message.media else None,
			gif_url=message.gif_url,
			shared_post=SharedPostView(
				id=str(post["id"]),
				content=post.get("content"),
				media_url=post.get("media_url"),
				author=_summary(users, post.get("author_id")),
			)
			if post
			else None,
			shared_story=SharedStoryView(
				id=str(story["id"]),
				media_type=story.get("media_type"),
				media_url=story.get("media_url"),
				text_content=story.get("text_content"),
				caption=story.get("caption"),
				background_color=story.get("background_color"),
				duration=story.get("duration"),
				author=_summary(users, story.get("author_id")),
			)
			if story
			else None,
			reply_to=ReplyPreview(
				id=reply.id,
				content=reply.content,
				sender=_summary(users, reply.sender_id),
				created_at=reply.created_at,
			)
			if reply
			else None,
			reactions=[
				ReactionView(user=_summary(users, r.user_id), emoji=r.emoji, created_at=r.created_at)
				for r in message.reactions
			],
			is_group=is_group,
			group_name=conversation.name if is_group else None,
			is_read=message.is_read,
			read_at=message.read_at,
			read_by=dict(message.read_by),
			is_deleted=message.deleted_for_everyone,
			deleted_at=message.deleted_at,
			created_at=message.created_at,
			updated_at=message.updated_at,
		)

	async def reaction_users(self, message: Message) -> List[ReactionView]:
		users = await self._directory.get_many(r.user_id for r in message.reactions)
		return [
			ReactionView(user=_summary(users, r.user_id), emoji=r.emoji, created_at=r.created_at)
			for r in message.reactions
		]

	async def conversation(self, conversation: Conversation, viewer_id: Optional[str] = None) -> ConversationView:
		views = await self.conversations([conversation], viewer_id)
		return views[0]

	async def conversations(
		self, items: Iterable[Conversation], viewer_id: Optional[str] = None
	) -> List[ConversationView]:
		items = list(items)
		if not items:
			return []
		last = await self._messages.get_many(c.last_message_id for c in items if c.last_message_id)
		by_conversation = {c.id: c for c in items}
		last_views = {
			view.id: view
			for view in await self.messages(
				[m for m in last.values() if m.conversation_id in by_conversation],
			)
		}
		users = await self._directory.get_many(uid for c in items for uid in c.participants)
		views: List[ConversationView] = []
		for conversation in items:
			last_view = last_views.get(conversation.last_message_id or "")
			if last_view is not None and conversation.is_group:
				last_view = last_view.model_copy(update={"is_group": True, "group_name": conversation.name})
			other = conversation.other_participant(viewer_id) if viewer_id and not conversation.is_group else None
			views.append(
				ConversationView(
					id=conversation.id,
					is_group=conversation.is_group,
					group_name=conversation.name,
					group_avatar=conversation.avatar,
					group_description=conversation.description,
					participants=[_summary(users, uid) for uid in conversation.participants],
					admins=list(conversation.admins),
					created_by=conversation.created_by,
					other_user=_summary(users, other),
					last_message=last_view,
					last_message_at=conversation.last_message_at,
					unread_count=conversation.unread_for(viewer_id) if viewer_id else 0,
					is_archived=bool(viewer_id) and viewer_id in conversation.archived_by,
					created_at=conversation.created_at,
					updated_at=conversation.updated_at,
				)
			)
		return views
