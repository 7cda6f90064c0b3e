"""FastAPI endpoints for conversations, messages and groups."""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Body, Depends, Query, Request, Response, status
from pydantic import ValidationError
from starlette.datastructures import UploadFile

from freetalk.api import deps
from freetalk.api.responses import ok
from freetalk.domain.chat.delivery import DeliveryEngine, SendRequest
from freetalk.domain.chat.models import TOMBSTONE, MessagePayload
from freetalk.domain.chat.schemas import (
	AddParticipantsRequest,
	ArchiveRequest,
	CreateGroupRequest,
	ReactRequest,
	SendMessageForm,
	TypingRequest,
)
from freetalk.domain.chat.service import ChatQueries
from freetalk.errors import ValidationFailed
from freetalk.infra.auth import AuthenticatedUser, get_active_user, get_current_user
from freetalk.infra.uploads import PendingUpload, UploadStorage, parse_duration, parse_waveform

router = APIRouter(prefix="/api/messages", tags=["messages"])

_MEDIA_FIELDS = ("media", "file")


def _is_multipart(request: Request) -> bool:
	return request.headers.get("content-type", "").lower().startswith("multipart/form-data")


async def _json_object(request: Request) -> Dict[str, Any]:
	try:
		body = await request.json()
	except ValueError:
		raise ValidationFailed("Invalid JSON body") from None
	if not isinstance(body, dict):
		raise ValidationFailed("Invalid JSON body")
	return body


def _form_upload(form) -> Optional[UploadFile]:
	for name in _MEDIA_FIELDS:
		value = form.get(name)
		if isinstance(value, UploadFile):
			return value
	return None


async def _send_fields(
	request: Request, user: AuthenticatedUser, uploads: UploadStorage
) -> Tuple[SendMessageForm, Optional[PendingUpload]]:
	"""Read a send from either a JSON body or a multipart form with an optional file."""
	if not _is_multipart(request):
		body = await _json_object(request)
		try:
			return SendMessageForm.model_validate(body), None
		except ValidationError:
			raise ValidationFailed("Invalid message payload") from None
	form = await request.form()
	values = {key: value for key, value in form.items() if isinstance(value, str)}
	try:
		fields = SendMessageForm.model_validate(values)
	except ValidationError:
		raise ValidationFailed("Invalid message payload") from None
	attachment = None
	upload = _form_upload(form)
	if upload is not None:
		attachment = await uploads.prepare_message_media(
			upload,
			user.id,
			duration=parse_duration(values.get("duration")),
			waveform=parse_waveform(values.get("waveformData")),
		)
	return fields, attachment


# Conversations


@router.get("/conversations")
async def list_conversations_endpoint(
	page: int = Query(default=1, ge=1),
	limit: int = Query(default=20, ge=1, le=100),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	queries: ChatQueries = Depends(deps.get_queries),
) -> dict:
	return ok(await queries.list_conversations(auth_user, page=page, limit=limit))


@router.get("/conversation/{user_id}")
async def open_direct_endpoint(
	user_id: str,
	auth_user: AuthenticatedUser = Depends(get_active_user),
	engine: DeliveryEngine = Depends(deps.get_engine),
) -> dict:
	conversation = await engine.open_direct(auth_user, user_id)
	return ok({"conversation": conversation.dump()})


@router.delete("/conversation/{conversation_id}/clear")
async def clear_conversation_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_active_user),
	engine: DeliveryEngine = Depends(deps.get_engine),
) -> dict:
	cleared = await engine.clear(auth_user, conversation_id)
	return ok({"clearedCount": cleared}, "Messages cleared successfully")


@router.delete("/conversation/{conversation_id}")
async def delete_conversation_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_active_user),
	engine: DeliveryEngine = Depends(deps.get_engine),
) -> dict:
	await engine.delete_conversation(auth_user, conversation_id)
	return ok(message="Conversation deleted successfully")


@router.patch("/conversation/{conversation_id}/archive")
async def archive_conversation_endpoint(
	conversation_id: str,
	payload: Optional[ArchiveRequest] = Body(default=None),
	auth_user: AuthenticatedUser = Depends(get_active_user),
	engine: DeliveryEngine = Depends(deps.get_engine),
) -> dict:
	archived = payload.archived if payload is not None else True
	conversation = await engine.archive(auth_user, conversation_id, archived)
	message = "Conversation archived" if archived else "Conversation unarchived"
	return ok({"conversation": conversation.dump()}, message)


# Groups


@router.post("/groups", status_code=status.HTTP_201_CREATED)
async def create_group_endpoint(
	payload: CreateGroupRequest,
	auth_user: AuthenticatedUser = Depends(get_active_user),
	engine: DeliveryEngine = Depends(deps.get_engine),
) -> dict:
	outcome = await engine.create_group(
		auth_user, payload.participants, payload.group_name, payload.group_description
	)
	return ok({"conversation": outcome.conversation.dump()}, "Group created successfully")


@router.put("/groups/{conversation_id}")
async def update_group_endpoint(
	conversation_id: str,
	request: Request,
	auth_user: AuthenticatedUser = Depends(get_active_user),
	engine: DeliveryEngine = Depends(deps.get_engine),
	uploads: UploadStorage = Depends(deps.get_uploads),
) -> dict:
	pending = None
	if _is_multipart(request):
		form = await request.form()
		values = {key: value for key, value in form.items() if isinstance(value, str)}
		upload = form.get("groupAvatar") or form.get("avatar")
		if isinstance(upload, UploadFile):
			pending = await uploads.prepare_group_avatar(upload, conversation_id)
	else:
		values = await _json_object(request)
	if pending is not None:
		await pending.save()
	try:
		outcome = await engine.update_group(
			auth_user,
			conversation_id,
			name=values.get("groupName"),
			description=values.get("groupDescription"),
			avatar=pending.url if pending else None,
		)
	except Exception:
		if pending is not None:
			pending.discard()
		raise
	return ok({"conversation": outcome.conversation.dump()}, "Group updated successfully")


@router.post("/groups/{conversation_id}/participants")
async def add_participants_endpoint(
	conversation_id: str,
	payload: AddParticipantsRequest,
	auth_user: AuthenticatedUser = Depends(get_active_user),
	engine: DeliveryEngine = Depends(deps.get_engine),
) -> dict:
	outcome = await engine.add_participants(auth_user, conversation_id, payload.participant_ids)
	return ok(
		{"conversation": outcome.conversation.dump(), "addedParticipants": outcome.changed},
		"Participants added successfully",
	)


@router.delete("/groups/{conversation_id}/participants/{user_id}")
async def remove_participant_endpoint(
	conversation_id: str,
	user_id: str,
	auth_user: AuthenticatedUser = Depends(get_active_user),
	engine: DeliveryEngine = Depends(deps.get_engine),
) -> dict:
	outcome = await engine.remove_participant(auth_user, conversation_id, user_id)
	message = "Left group successfully" if user_id == auth_user.id else "Participant removed successfully"
	return ok({"conversation": outcome.conversation.dump()}, message)


@router.post("/groups/{conversation_id}/admins/{user_id}")
async def promote_admin_endpoint(
	conversation_id: str,
	user_id: str,
	auth_user: AuthenticatedUser = Depends(get_active_user),
	engine: DeliveryEngine = Depends(deps.get_engine),
) -> dict:
	outcome = await engine.promote_admin(auth_user, conversation_id, user_id)
	return ok({"conversation": outcome.conversation.dump()}, "Admin added successfully")


@router.delete("/groups/{conversation_id}/admins/{user_id}")
async def demote_admin_endpoint(
	conversation_id: str,
	user_id: str,
	auth_user: AuthenticatedUser = Depends(get_active_user),
	engine: DeliveryEngine = Depends(deps.get_engine),
) -> dict:
	outcome = await engine.demote_admin(auth_user, conversation_id, user_id)
	return ok({"conversation": outcome.conversation.dump()}, "Admin removed successfully")


# Messages


@router.post("", status_code=status.HTTP_201_CREATED)
async def send_message_endpoint(
	request: Request,
	auth_user: AuthenticatedUser = Depends(get_active_user),
	engine: DeliveryEngine = Depends(deps.get_engine),
	uploads: UploadStorage = Depends(deps.get_uploads),
) -> dict:
	fields, attachment = await _send_fields(request, auth_user, uploads)
	payload = MessagePayload(
		content=fields.content or "",
		media=attachment.media if attachment else None,
		gif_url=fields.gif_url or None,
		shared_post_id=fields.post_id or None,
		shared_story_id=fields.story_id or None,
		reply_to_id=fields.reply_to or None,
	)
	outcome = await engine.send(
		auth_user,
		SendRequest(
			payload=payload,
			conversation_id=fields.conversation_id,
			recipient_id=fields.recipient,
			attachment=attachment,
		),
	)
	return ok({"message": outcome.message.dump()}, "Message sent successfully")


@router.post("/typing")
async def typing_endpoint(
	payload: TypingRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	engine: DeliveryEngine = Depends(deps.get_engine),
) -> dict:
	if not payload.conversation_id:
		raise ValidationFailed("Conversation ID is required")
	await engine.typing(auth_user, payload.conversation_id, payload.is_typing)
	return ok(message="Typing status updated")


@router.delete("/{message_id}/for-me")
async def delete_for_me_endpoint(
	message_id: str,
	auth_user: AuthenticatedUser = Depends(get_active_user),
	engine: DeliveryEngine = Depends(deps.get_engine),
) -> dict:
	await engine.delete_for_me(auth_user, message_id)
	return ok(message="Message deleted for you")


@router.delete("/{message_id}/for-everyone")
async def delete_for_everyone_endpoint(
	message_id: str,
	auth_user: AuthenticatedUser = Depends(get_active_user),
	engine: DeliveryEngine = Depends(deps.get_engine),
) -> dict:
	outcome = await engine.delete_for_everyone(auth_user, message_id)
	return ok(
		{
			"messageId": outcome.message_id,
			"conversationId": outcome.conversation_id,
			"content": TOMBSTONE,
			"isDeleted": True,
		},
		"Message deleted for everyone",
	)


@router.post("/{message_id}/react")
async def react_endpoint(
	message_id: str,
	payload: ReactRequest,
	auth_user: AuthenticatedUser = Depends(get_active_user),
	engine: DeliveryEngine = Depends(deps.get_engine),
) -> dict:
	outcome = await engine.react(auth_user, message_id, payload.emoji or "")
	return ok(
		{"messageId": outcome.message_id, "reactions": [r.dump() for r in outcome.reactions]},
		"Reaction added successfully",
	)


@router.delete("/{message_id}/react")
async def unreact_endpoint(
	message_id: str,
	auth_user: AuthenticatedUser = Depends(get_active_user),
	engine: DeliveryEngine = Depends(deps.get_engine),
) -> dict:
	outcome = await engine.unreact(auth_user, message_id)
	return ok(
		{"messageId": outcome.message_id, "reactions": [r.dump() for r in outcome.reactions]},
		"Reaction removed successfully",
	)


@router.patch("/{conversation_id}/read")
async def mark_read_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_active_user),
	engine: DeliveryEngine = Depends(deps.get_engine),
) -> dict:
	outcome = await engine.mark_read(auth_user, conversation_id)
	return ok(
		{"conversationId": outcome.conversation_id, "markedCount": outcome.marked},
		"Messages marked as read",
	)


@router.get("/{conversation_id}/search")
async def search_endpoint(
	conversation_id: str,
	query: Optional[str] = Query(default=None),
	page: int = Query(default=1, ge=1),
	limit: int = Query(default=20, ge=1, le=100),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	queries: ChatQueries = Depends(deps.get_queries),
) -> dict:
	views, pagination = await queries.search(auth_user, conversation_id, query, page=page, limit=limit)
	return ok(
		{
			"messages": [view.dump() for view in views],
			"query": query,
			"pagination": pagination.dump(exclude_none=True),
		}
	)


@router.get("/{conversation_id}/export")
async def export_endpoint(
	conversation_id: str,
	fmt: str = Query(default="json", alias="format"),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	queries: ChatQueries = Depends(deps.get_queries),
) -> Response:
	document = await queries.export(auth_user, conversation_id, fmt)
	return Response(
		content=document.body,
		media_type=document.media_type,
		headers={"Content-Disposition": f'attachment; filename="{document.file_name}"'},
	)


@router.get("/{conversation_id}")
async def fetch_messages_endpoint(
	conversation_id: str,
	page: int = Query(default=1, ge=1),
	limit: int = Query(default=50, ge=1, le=100),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	queries: ChatQueries = Depends(deps.get_queries),
) -> dict:
	views, pagination = await queries.fetch_messages(auth_user, conversation_id, page=page, limit=limit)
	return ok({"messages": [view.dump() for view in views], "pagination": pagination.dump(exclude_none=True)})


@router.delete("/{message_id}")
async def delete_message_endpoint(
	message_id: str,
	auth_user: AuthenticatedUser = Depends(get_active_user),
	engine: DeliveryEngine = Depends(deps.get_engine),
) -> dict:
	await engine.delete_for_me(auth_user, message_id)
	return ok(message="Message deleted successfully")
