"""Notification fan-out: persist, announce over the push channel, fall back to mobile push."""

from __future__ import annotations

import asyncio
from typing import Dict, Iterable, List, Optional

from freetalk.domain.chat.shared import SharedContentLookup
from freetalk.domain.identity.directory import UserDirectory, UserRecord
from freetalk.domain.realtime import events
from freetalk.domain.realtime.gateway import RealtimeGateway
from freetalk.domain.realtime.push import MobilePushFallback
from freetalk.obs import logging as obs_logging
from freetalk.obs import metrics as obs_metrics
from freetalk.settings import settings

from . import models
from .models import Notification, NotificationDraft
from .schemas import NotificationPostRef, NotificationStoryRef, NotificationView
from .store import NotificationStore

_logger = obs_logging.get_logger("freetalk.notifications")

# Message notifications are pushed by the delivery engine with conversation titles.
_PUSH_BODIES: Dict[str, str] = {
	models.REACTION: "reacted to your post",
	models.COMMENT: "commented on your post",
	models.REPLY: "replied to your comment",
	models.POST_MENTION: "mentioned you in a post",
	models.FOLLOW: "started following you",
	models.STORY: "posted a new story",
	models.MESSAGE_REACTION: "reacted to your message",
	models.STORY_REACTION: "reacted to your story",
	models.POST_SHARE: "shared your post",
	models.TAG: "tagged you in a post",
	models.POKE: "poked you",
	models.REPORT_UPDATE: "Your report has an update",
	models.MODERATION_ACTION: "A moderator reviewed your content",
	models.VIDEO_LIKE: "liked your video",
	models.VIDEO_COMMENT: "commented on your video",
	models.VIDEO_TAG: "tagged you in a video",
}

_SYSTEM_TYPES = frozenset({models.REPORT_UPDATE, models.MODERATION_ACTION})


class NotificationDispatcher:
	"""Records notifications and announces them to the recipient's `user:<id>` room."""

	def __init__(
		self,
		store: NotificationStore,
		gateway: RealtimeGateway,
		push: MobilePushFallback,
		directory: UserDirectory,
		shared: Optional[SharedContentLookup] = None,
	) -> None:
		self._store = store
		self._gateway = gateway
		self._push = push
		self._directory = directory
		self._shared = shared or SharedContentLookup()

	@property
	def store(self) -> NotificationStore:
		return self._store

	async def record(self, draft: NotificationDraft) -> Optional[Notification]:
		"""Persist a draft; failures are logged and never propagate to the caller."""
		try:
			outcome = await self._store.record(draft)
		except Exception:
			_logger.warning(
				"notification_record_failed",
				extra={"recipient": draft.recipient_id, "notification_type": draft.type},
				exc_info=True,
			)
			return None
		return outcome.notification if outcome else None

	async def announce(self, notification: Notification, *, push: bool = True) -> None:
		"""Emit `notification:new` and a fresh unread count, then push when the recipient is offline.

		Failures are logged and never propagate; the record is already durable.
		"""
		try:
			view = (await self.views([notification]))[0]
			await self._gateway.emit_to_user(
				notification.recipient_id, events.NOTIFICATION_NEW, {"notification": view.dump()}
			)
		except Exception:
			_logger.warning(
				"notification_announce_failed",
				extra={"recipient": notification.recipient_id, "notification_id": notification.id},
				exc_info=True,
			)
			return
		try:
			await self.sync_unread(notification.recipient_id)
		except Exception:
			_logger.warning("notification_unread_count_failed", exc_info=True)
		if push and notification.type in _PUSH_BODIES:
			try:
				await self._push_if_offline(notification, view)
			except Exception:
				_logger.warning("notification_push_failed", extra={"notification_id": notification.id}, exc_info=True)

	async def sync_unread(self, user_id: str) -> int:
		"""Emit the user's current unread count to `user:<id>` and return it."""
		unread = await self._store.unread_count(user_id)
		await self._gateway.emit_to_user(user_id, events.NOTIFICATION_UNREAD_COUNT, {"unreadCount": unread})
		return unread

	async def publish(self, draft: NotificationDraft, *, push: bool = True) -> Optional[Notification]:
		notification = await self.record(draft)
		if notification is not None:
			await self.announce(notification, push=push)
		return notification

	async def _push_if_offline(self, notification: Notification, view: NotificationView) -> None:
		if await self._gateway.is_online(notification.recipient_id):
			return
		recipient = await self._directory.get(notification.recipient_id)
		if recipient is None:
			return
		body = _PUSH_BODIES[notification.type]
		if notification.type in _SYSTEM_TYPES:
			title = settings.service_name
		else:
			title = view.sender.name
		data = {"type": notification.type, "notificationId": notification.id}
		if notification.conversation_id:
			data["conversationId"] = notification.conversation_id
		self._push.notify(recipient, title, notification.preview or body, data)

	async def views(self, notifications: Iterable[Notification]) -> List[NotificationView]:
		items = list(notifications)
		if not items:
			return []
		senders, posts, stories = await asyncio.gather(
			self._directory.get_many(n.sender_id for n in items),
			self._shared.posts(n.post_id for n in items if n.post_id),
			self._shared.stories(n.story_id for n in items if n.story_id),
		)
		return [_view(n, senders, posts, stories) for n in items]


def _view(
	notification: Notification,
	senders: Dict[str, UserRecord],
	posts: Dict[str, dict],
	stories: Dict[str, dict],
) -> NotificationView:
	sender = senders.get(notification.sender_id)
	post = posts.get(notification.post_id) if notification.post_id else None
	story = stories.get(notification.story_id) if notification.story_id else None
	return NotificationView(
		id=notification.id,
		recipient=notification.recipient_id,
		sender=sender.summary() if sender else {"id": notification.sender_id, "name": "Unknown"},
		type=notification.type,
		message=notification.preview,
		post=NotificationPostRef(id=str(post["id"]), content=post.get("content"), media_url=post.get("media_url"))
		if post
		else None,
		story=NotificationStoryRef(
			id=str(story["id"]),
			media_type=story.get("media_type"),
			media_url=story.get("media_url"),
			text_content=story.get("text_content"),
		)
		if story
		else None,
		related_video=notification.video_id,
		conversation=notification.conversation_id,
		message_id=notification.message_id,
		poke_id=notification.poke_id,
		related_report=notification.report_id,
		reaction_type=notification.reaction_type,
		comment_text=notification.comment_text,
		poke_type=notification.poke_type,
		is_read=notification.is_read,
		created_at=notification.created_at,
	)


async def prune_forever(store: NotificationStore, interval_seconds: Optional[int] = None) -> None:
	"""Periodically remove notifications past the retention period."""
	interval = max(1, int(interval_seconds or settings.notification_prune_interval_seconds))
	while True:
		try:
			removed = await store.prune()
		except asyncio.CancelledError:
			raise
		except Exception:
			obs_metrics.record_job_run("notification_prune", result="error")
			_logger.exception("notification prune failed")
		else:
			obs_metrics.record_job_run("notification_prune", result="ok")
			if removed:
				_logger.info("notification_prune", extra={"removed": removed})
		await asyncio.sleep(interval)
