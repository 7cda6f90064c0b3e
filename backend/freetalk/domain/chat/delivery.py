"""Delivery engine: every durable chat write and the events it fans out.

Routes parse and authorize; everything that emits over the push channel,
records notifications or falls back to mobile push goes through here. Durable
writes happen first, then post-commit hooks (cache invalidation), then
best-effort emission and push whose failures are logged and dropped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from freetalk.domain.identity.directory import UserDirectory, UserRecord, summaries
from freetalk.domain.notifications import models as notification_models
from freetalk.domain.notifications.models import Notification, NotificationDraft
from freetalk.domain.notifications.service import NotificationDispatcher
from freetalk.domain.realtime import events
from freetalk.domain.realtime.gateway import RealtimeGateway
from freetalk.domain.realtime.push import MobilePushFallback
from freetalk.errors import Blocked, NotFound, ValidationFailed
from freetalk.infra import cache, rate_limit
from freetalk.infra.uploads import PendingUpload
from freetalk.obs import logging as obs_logging
from freetalk.obs import metrics as obs_metrics

from .conversations import ConversationStore
from .hydrate import MessageHydrator
from .messages import MessageStore, validate_payload
from .models import GIF, SHARED_POST, SHARED_STORY, TOMBSTONE, VOICE, Conversation, Message, MessagePayload
from .schemas import ConversationView, MessageView, ReactionView, UserSummary

_logger = obs_logging.get_logger("freetalk.delivery")

PostCommitHook = Callable[[Sequence[str]], Awaitable[object]]

PREVIEW_LENGTH = 100


def preview_text(message: Message) -> str:
	"""Notification preview for a freshly sent message."""
	if message.type == SHARED_STORY:
		return "Replied to your story"
	if message.type == SHARED_POST:
		return "Shared a post"
	if message.type == GIF:
		return "Sent a GIF"
	if message.type == VOICE:
		return "Sent a voice message"
	if message.media is not None:
		return f"Sent a {message.type}"
	return message.content[:PREVIEW_LENGTH]


@dataclass(slots=True)
class SendRequest:
	payload: MessagePayload
	conversation_id: Optional[str] = None
	recipient_id: Optional[str] = None
	# written to storage only once the send passed its checks
	attachment: Optional[PendingUpload] = None


@dataclass(slots=True)
class SendOutcome:
	message: MessageView
	conversation_id: str
	recipients: List[str] = field(default_factory=list)


@dataclass(slots=True)
class ReadOutcome:
	conversation_id: str
	marked: int
	previous_unread: int


@dataclass(slots=True)
class ReactionOutcome:
	message_id: str
	conversation_id: str
	reactions: List[ReactionView]


@dataclass(slots=True)
class DeleteOutcome:
	message_id: str
	conversation_id: str
	purged: bool = False
	content: Optional[str] = None


@dataclass(slots=True)
class GroupOutcome:
	conversation: ConversationView
	changed: List[str] = field(default_factory=list)


class DeliveryEngine:
	"""Orchestrates sends, receipts, reactions, deletions and group administration."""

	def __init__(
		self,
		*,
		gateway: RealtimeGateway,
		conversations: ConversationStore,
		messages: MessageStore,
		directory: UserDirectory,
		notifications: NotificationDispatcher,
		push: MobilePushFallback,
		hydrator: Optional[MessageHydrator] = None,
		post_commit: Optional[Sequence[PostCommitHook]] = None,
	) -> None:
		self._gateway = gateway
		self._conversations = conversations
		self._messages = messages
		self._directory = directory
		self._notifications = notifications
		self._push = push
		self._hydrator = hydrator or MessageHydrator(directory, messages)
		self._post_commit: List[PostCommitHook] = (
			list(post_commit) if post_commit is not None else [cache.invalidate_users]
		)

	@property
	def hydrator(self) -> MessageHydrator:
		return self._hydrator

	async def _after_commit(self, user_ids: Iterable[str]) -> None:
		ids = list(dict.fromkeys(user_ids))
		for hook in self._post_commit:
			try:
				await hook(ids)
			except Exception:
				_logger.warning("post_commit_hook_failed", extra={"hook": getattr(hook, "__name__", "hook")}, exc_info=True)

	async def open_direct(self, user: UserRecord, other_id: str) -> ConversationView:
		"""Find or create the direct conversation between `user` and `other_id`."""
		if other_id == user.id:
			raise ValidationFailed("Cannot create conversation with yourself")
		if await self._directory.get(other_id) is None:
			raise NotFound("User not found")
		if await self._directory.is_blocked(user.id, other_id):
			raise Blocked("Cannot start conversation with this user")
		conversation = await self._conversations.find_or_create_direct(user.id, other_id)
		await self._after_commit(conversation.participants)
		return await self._hydrator.conversation(conversation, user.id)

	# Send

	async def send(self, sender: UserRecord, request: SendRequest) -> SendOutcome:
		await rate_limit.enforce("send", sender.id)
		validate_payload(request.payload)
		conversation = await self._resolve_conversation(sender, request)
		attachment = request.attachment if request.payload.normalized().media is not None else None
		if attachment is not None:
			await attachment.save()
		try:
			result = await self._messages.append(conversation.id, sender.id, request.payload)
		except Exception:
			if attachment is not None:
				attachment.discard()
			raise
		message, conversation = result.message, result.conversation
		obs_metrics.inc_message_sent(conversation.kind, message.type)
		await self._after_commit(conversation.participants)

		view = await self._hydrator.message(message, conversation)
		recipients = conversation.others(sender.id)
		await self._fan_out_message(sender, conversation, message, view, recipients)
		return SendOutcome(message=view, conversation_id=conversation.id, recipients=recipients)

	async def _resolve_conversation(self, sender: UserRecord, request: SendRequest) -> Conversation:
		if request.conversation_id:
			conversation = await self._conversations.require_member(request.conversation_id, sender.id)
			if not conversation.is_group:
				other = conversation.other_participant(sender.id)
				if other and await self._directory.is_blocked(sender.id, other):
					raise Blocked("You cannot send messages to this user")
			return conversation
		recipient_id = (request.recipient_id or "").strip()
		if not recipient_id:
			raise ValidationFailed("Recipient or conversation is required")
		if recipient_id == sender.id:
			raise ValidationFailed("Cannot send message to yourself")
		if await self._directory.get(recipient_id) is None:
			raise NotFound("Recipient not found")
		if await self._directory.is_blocked(sender.id, recipient_id):
			raise Blocked("You cannot send messages to this user")
		return await self._conversations.find_or_create_direct(sender.id, recipient_id)

	async def _guarded(self, step: str, awaitable: Awaitable[object], **context: str) -> object:
		"""Await one post-commit fan-out step; failures are logged and dropped."""
		try:
			return await awaitable
		except Exception:
			_logger.warning("message_fan_out_failed", extra={"step": step, **context}, exc_info=True)
			return None

	async def _fan_out_message(
		self,
		sender: UserRecord,
		conversation: Conversation,
		message: Message,
		view: MessageView,
		recipients: List[str],
	) -> None:
		context = {"conversation_id": conversation.id, "message_id": message.id}
		preview = preview_text(message)
		if conversation.is_group:
			preview = f"{sender.name} in {conversation.name}: {preview}"
		recorded: List[Notification] = []
		for recipient_id in recipients:
			notification = await self._notifications.record(
				NotificationDraft(
					recipient_id=recipient_id,
					sender_id=sender.id,
					type=notification_models.MESSAGE,
					conversation_id=conversation.id,
					message_id=message.id,
					preview=preview,
				)
			)
			if notification is not None:
				recorded.append(notification)

		body = {"message": view.dump()}
		await self._guarded(
			"message_new",
			self._gateway.emit_to_users([*recipients, sender.id], events.MESSAGE_NEW, body),
			**context,
		)
		for recipient_id in recipients:
			await self._guarded(
				"unread_count",
				self._gateway.emit_to_user(
					recipient_id,
					events.MESSAGE_UNREAD_COUNT,
					{
						"conversationId": conversation.id,
						"unreadCount": conversation.unread_for(recipient_id),
						"increment": 1,
					},
				),
				recipient=recipient_id,
				**context,
			)
		for notification in recorded:
			await self._guarded(
				"notification",
				self._notifications.announce(notification, push=False),
				recipient=notification.recipient_id,
				**context,
			)
		await self._guarded("push", self._push_offline(sender, conversation, message, recipients), **context)

	async def _push_offline(
		self,
		sender: UserRecord,
		conversation: Conversation,
		message: Message,
		recipients: List[str],
	) -> None:
		offline = [uid for uid in recipients if not await self._gateway.is_online(uid)]
		if not offline:
			return
		users = await self._directory.get_many(offline)
		title = conversation.name if conversation.is_group else sender.name
		text = preview_text(message)
		push_body = f"{sender.name}: {text}" if conversation.is_group else text
		data = {"type": "message", "conversationId": conversation.id, "messageId": message.id, "senderId": sender.id}
		for uid in offline:
			user = users.get(uid)
			if user is not None:
				self._push.notify(user, title or "FreeTalk", push_body, data)

	# Receipts and typing

	async def mark_read(self, user: UserRecord, conversation_id: str) -> ReadOutcome:
		await rate_limit.enforce("general", user.id)
		conversation = await self._conversations.require_member(conversation_id, user.id)
		result = await self._messages.mark_read(conversation_id, user.id)
		marked, previous = result.marked, result.previous_unread
		obs_metrics.inc_mark_read()
		await self._after_commit([user.id])
		await self._gateway.emit_to_users(
			conversation.others(user.id),
			events.MESSAGE_READ,
			{"conversationId": conversation_id, "readBy": user.id},
		)
		await self._gateway.emit_to_user(
			user.id,
			events.MESSAGE_UNREAD_COUNT,
			{"conversationId": conversation_id, "unreadCount": 0, "increment": -previous},
		)
		return ReadOutcome(conversation_id=conversation_id, marked=marked, previous_unread=previous)

	async def typing(self, user: UserRecord, conversation_id: str, is_typing: bool) -> List[str]:
		"""Relay a typing indicator; returns the users it was addressed to."""
		conversation = await self._conversations.require_member(conversation_id, user.id)
		blocked = await self._directory.blocked_ids(user.id)
		targets = [uid for uid in conversation.others(user.id) if uid not in blocked]
		event = events.TYPING_START if is_typing else events.TYPING_STOP
		await self._gateway.emit_to_users(
			targets,
			event,
			{"conversationId": conversation_id, "userId": user.id, "userName": user.name},
		)
		return targets

	# Reactions

	async def react(self, user: UserRecord, message_id: str, emoji: str) -> ReactionOutcome:
		await rate_limit.enforce("general", user.id)
		message = await self._messages.react(message_id, user.id, emoji)
		conversation = await self._conversations.get(message.conversation_id)
		reactions = await self._hydrator.reaction_users(message)
		mine = next((r for r in reactions if r.user.id == user.id), None)
		await self._gateway.emit_to_users(
			conversation.participants if conversation else [message.sender_id, user.id],
			events.MESSAGE_REACTED,
			{
				"messageId": message.id,
				"conversationId": message.conversation_id,
				"reaction": mine.dump() if mine else None,
				"reactions": [r.dump() for r in reactions],
			},
		)
		if message.sender_id != user.id:
			await self._notifications.publish(
				NotificationDraft(
					recipient_id=message.sender_id,
					sender_id=user.id,
					type=notification_models.MESSAGE_REACTION,
					conversation_id=message.conversation_id,
					message_id=message.id,
					reaction_type=emoji.strip(),
					preview=f"Reacted {emoji.strip()} to your message",
				)
			)
		return ReactionOutcome(message_id=message.id, conversation_id=message.conversation_id, reactions=reactions)

	async def unreact(self, user: UserRecord, message_id: str) -> ReactionOutcome:
		await rate_limit.enforce("general", user.id)
		message = await self._messages.unreact(message_id, user.id)
		conversation = await self._conversations.get(message.conversation_id)
		reactions = await self._hydrator.reaction_users(message)
		await self._gateway.emit_to_users(
			conversation.participants if conversation else [message.sender_id, user.id],
			events.MESSAGE_UNREACTED,
			{
				"messageId": message.id,
				"conversationId": message.conversation_id,
				"userId": user.id,
				"reactions": [r.dump() for r in reactions],
			},
		)
		return ReactionOutcome(message_id=message.id, conversation_id=message.conversation_id, reactions=reactions)

	# Deletion

	async def delete_for_me(self, user: UserRecord, message_id: str) -> DeleteOutcome:
		await rate_limit.enforce("general", user.id)
		message = await self._messages.get(message_id)
		if message is None:
			raise NotFound("Message not found")
		purged = await self._messages.delete_for_me(message_id, user.id)
		await self._after_commit([user.id])
		return DeleteOutcome(message_id=message_id, conversation_id=message.conversation_id, purged=purged)

	async def delete_for_everyone(self, user: UserRecord, message_id: str) -> DeleteOutcome:
		await rate_limit.enforce("general", user.id)
		message = await self._messages.delete_for_everyone(message_id, user.id)
		conversation = await self._conversations.get(message.conversation_id)
		participants = conversation.participants if conversation else [message.sender_id]
		await self._after_commit(participants)
		await self._gateway.emit_to_users(
			participants,
			events.MESSAGE_DELETED,
			{
				"messageId": message.id,
				"conversationId": message.conversation_id,
				"content": TOMBSTONE,
				"isDeleted": True,
			},
		)
		return DeleteOutcome(
			message_id=message.id,
			conversation_id=message.conversation_id,
			content=message.content,
		)

	async def clear(self, user: UserRecord, conversation_id: str) -> int:
		await rate_limit.enforce("general", user.id)
		cleared = await self._conversations.clear_for_user(conversation_id, user.id)
		await self._after_commit([user.id])
		return cleared

	async def delete_conversation(self, user: UserRecord, conversation_id: str) -> bool:
		await rate_limit.enforce("general", user.id)
		conversation = await self._conversations.require_member(conversation_id, user.id)
		purged = await self._conversations.soft_delete(conversation_id, user.id)
		await self._after_commit(conversation.participants if purged else [user.id])
		return purged

	async def archive(self, user: UserRecord, conversation_id: str, archived: bool) -> ConversationView:
		await rate_limit.enforce("general", user.id)
		conversation = await self._conversations.set_archived(conversation_id, user.id, archived)
		await self._after_commit([user.id])
		return await self._hydrator.conversation(conversation, user.id)

	# Groups

	async def _participant_summaries(self, user_ids: Sequence[str]) -> List[UserSummary]:
		users = await self._directory.get_many(user_ids)
		return [UserSummary(**item) for item in summaries(users, user_ids)]

	async def _require_known_users(self, user_ids: Sequence[str]) -> None:
		found = await self._directory.get_many(user_ids)
		missing = [uid for uid in user_ids if uid not in found]
		if missing:
			raise ValidationFailed("One or more participants not found")

	async def create_group(
		self,
		creator: UserRecord,
		participant_ids: Sequence[str],
		name: str,
		description: Optional[str] = None,
		avatar: Optional[str] = None,
	) -> GroupOutcome:
		await rate_limit.enforce("general", creator.id)
		others = [uid for uid in dict.fromkeys(participant_ids) if uid and uid != creator.id]
		await self._require_known_users(others)
		blocked = await self._directory.blocked_ids(creator.id)
		if any(uid in blocked for uid in others):
			raise Blocked("Cannot add a blocked user to a group")
		conversation = await self._conversations.create_group(creator.id, others, name, description, avatar)
		await self._after_commit(conversation.participants)
		view = await self._hydrator.conversation(conversation, creator.id)
		await self._gateway.emit_to_users(
			conversation.others(creator.id),
			events.GROUP_CREATED,
			{"conversation": view.model_copy(update={"other_user": None, "unread_count": 0}).dump()},
		)
		return GroupOutcome(conversation=view, changed=others)

	async def update_group(
		self,
		actor: UserRecord,
		conversation_id: str,
		*,
		name: Optional[str] = None,
		description: Optional[str] = None,
		avatar: Optional[str] = None,
	) -> GroupOutcome:
		await rate_limit.enforce("general", actor.id)
		conversation = await self._conversations.update_group(
			conversation_id, actor.id, name=name, description=description, avatar=avatar
		)
		await self._after_commit(conversation.participants)
		await self._gateway.emit_to_users(
			conversation.participants,
			events.GROUP_UPDATED,
			{
				"conversationId": conversation.id,
				"groupName": conversation.name,
				"groupDescription": conversation.description,
				"groupAvatar": conversation.avatar,
			},
		)
		return GroupOutcome(conversation=await self._hydrator.conversation(conversation, actor.id))

	async def add_participants(self, actor: UserRecord, conversation_id: str, user_ids: Sequence[str]) -> GroupOutcome:
		await rate_limit.enforce("general", actor.id)
		requested = [uid for uid in dict.fromkeys(user_ids) if uid]
		await self._require_known_users(requested)
		conversation, added = await self._conversations.add_participants(conversation_id, actor.id, requested)
		await self._after_commit(conversation.participants)
		participants = await self._participant_summaries(conversation.participants)
		by_id: Dict[str, UserSummary] = {p.id: p for p in participants}
		await self._gateway.emit_to_users(
			conversation.participants,
			events.GROUP_PARTICIPANT_ADDED,
			{
				"conversationId": conversation.id,
				"participants": [p.dump() for p in participants],
				"addedParticipants": [by_id[uid].dump() for uid in added if uid in by_id],
			},
		)
		return GroupOutcome(conversation=await self._hydrator.conversation(conversation, actor.id), changed=added)

	async def remove_participant(self, actor: UserRecord, conversation_id: str, user_id: str) -> GroupOutcome:
		await rate_limit.enforce("general", actor.id)
		conversation = await self._conversations.remove_participant(conversation_id, actor.id, user_id)
		await self._after_commit([*conversation.participants, user_id])
		participants = await self._participant_summaries(conversation.participants)
		await self._gateway.emit_to_users(
			conversation.participants,
			events.GROUP_PARTICIPANT_REMOVED,
			{
				"conversationId": conversation.id,
				"removedParticipantId": user_id,
				"participants": [p.dump() for p in participants],
			},
		)
		await self._gateway.emit_to_user(user_id, events.GROUP_REMOVED, {"conversationId": conversation.id})
		return GroupOutcome(conversation=await self._hydrator.conversation(conversation, actor.id), changed=[user_id])

	async def promote_admin(self, actor: UserRecord, conversation_id: str, user_id: str) -> GroupOutcome:
		await rate_limit.enforce("general", actor.id)
		conversation = await self._conversations.promote_admin(conversation_id, actor.id, user_id)
		await self._after_commit(conversation.participants)
		await self._gateway.emit_to_users(
			conversation.participants,
			events.GROUP_ADMIN_ADDED,
			{"conversationId": conversation.id, "newAdminId": user_id, "admins": list(conversation.admins)},
		)
		return GroupOutcome(conversation=await self._hydrator.conversation(conversation, actor.id), changed=[user_id])

	async def demote_admin(self, actor: UserRecord, conversation_id: str, user_id: str) -> GroupOutcome:
		await rate_limit.enforce("general", actor.id)
		conversation = await self._conversations.demote_admin(conversation_id, actor.id, user_id)
		await self._after_commit(conversation.participants)
		await self._gateway.emit_to_users(
			conversation.participants,
			events.GROUP_ADMIN_REMOVED,
			{"conversationId": conversation.id, "removedAdminId": user_id, "admins": list(conversation.admins)},
		)
		return GroupOutcome(conversation=await self._hydrator.conversation(conversation, actor.id), changed=[user_id])
