"""FastAPI endpoints for the caller's notification feed."""

from __future__ import annotations

import math

from fastapi import APIRouter, Depends, Query

from freetalk.api import deps
from freetalk.api.responses import ok
from freetalk.domain.chat.schemas import Pagination
from freetalk.domain.notifications.service import NotificationDispatcher
from freetalk.infra import rate_limit
from freetalk.infra.auth import AuthenticatedUser, get_active_user, get_current_user

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("")
async def list_notifications_endpoint(
	page: int = Query(default=1, ge=1),
	limit: int = Query(default=20, ge=1, le=100),
	unread_only: bool = Query(default=False, alias="unreadOnly"),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	dispatcher: NotificationDispatcher = Depends(deps.get_dispatcher),
) -> dict:
	items, total = await dispatcher.store.list(auth_user.id, page=page, limit=limit, unread_only=unread_only)
	unread = await dispatcher.store.unread_count(auth_user.id)
	views = await dispatcher.views(items)
	pagination = Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit) if total else 0)
	return ok(
		{
			"notifications": [view.dump() for view in views],
			"unreadCount": unread,
			"pagination": pagination.dump(exclude_none=True),
		},
		"Notifications retrieved successfully",
	)


@router.get("/unread-count")
async def unread_count_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
	dispatcher: NotificationDispatcher = Depends(deps.get_dispatcher),
) -> dict:
	return ok({"unreadCount": await dispatcher.store.unread_count(auth_user.id)})


@router.put("/read-all")
async def mark_all_read_endpoint(
	auth_user: AuthenticatedUser = Depends(get_active_user),
	dispatcher: NotificationDispatcher = Depends(deps.get_dispatcher),
) -> dict:
	await rate_limit.enforce("general", auth_user.id)
	updated = await dispatcher.store.mark_all_read(auth_user.id)
	await dispatcher.sync_unread(auth_user.id)
	return ok({"updated": updated}, "All notifications marked as read")


@router.put("/{notification_id}/read")
async def mark_read_endpoint(
	notification_id: str,
	auth_user: AuthenticatedUser = Depends(get_active_user),
	dispatcher: NotificationDispatcher = Depends(deps.get_dispatcher),
) -> dict:
	await rate_limit.enforce("general", auth_user.id)
	notification = await dispatcher.store.mark_read(notification_id, auth_user.id)
	await dispatcher.sync_unread(auth_user.id)
	view = (await dispatcher.views([notification]))[0]
	return ok({"notification": view.dump()}, "Notification marked as read")


@router.delete("/{notification_id}")
async def delete_notification_endpoint(
	notification_id: str,
	auth_user: AuthenticatedUser = Depends(get_active_user),
	dispatcher: NotificationDispatcher = Depends(deps.get_dispatcher),
) -> dict:
	await rate_limit.enforce("general", auth_user.id)
	await dispatcher.store.delete(notification_id, auth_user.id)
	await dispatcher.sync_unread(auth_user.id)
	return ok(message="Notification deleted")


@router.delete("")
async def delete_all_notifications_endpoint(
	auth_user: AuthenticatedUser = Depends(get_active_user),
	dispatcher: NotificationDispatcher = Depends(deps.get_dispatcher),
) -> dict:
	await rate_limit.enforce("general", auth_user.id)
	removed = await dispatcher.store.delete_all(auth_user.id)
	await dispatcher.sync_unread(auth_user.id)
	return ok({"deleted": removed}, "All notifications deleted")
