"""Socket.IO namespace for the push channel and the gateway handle used to emit."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

import socketio
from socketio.exceptions import ConnectionRefusedError

from freetalk.domain.identity.directory import UserRecord
from freetalk.errors import FreeTalkError
from freetalk.infra.auth import resolve_credential
from freetalk.obs import logging as obs_logging
from freetalk.obs import metrics as obs_metrics
from freetalk.settings import settings

from . import events
from .registry import ConnectionRegistry

ConversationGuard = Callable[[str, str], Awaitable[bool]]
CredentialResolver = Callable[[Optional[str]], Awaitable[UserRecord]]
BlockCheck = Callable[[str, str], Awaitable[bool]]

_logger = obs_logging.get_logger("freetalk.realtime")


def _header(scope: dict, name: str) -> Optional[str]:
	target = name.encode().lower()
	for key, value in scope.get("headers", []):
		if key.lower() == target:
			return value.decode()
	return None


def _handshake_token(environ: dict, auth: Any) -> Optional[str]:
	if isinstance(auth, dict) and auth.get("token"):
		return str(auth["token"])
	scope = environ.get("asgi.scope", environ)
	header = _header(scope, "authorization") or environ.get("HTTP_AUTHORIZATION")
	if header and header.lower().startswith("bearer "):
		return header[7:].strip()
	return None


def _payload_token(payload: Any) -> Optional[str]:
	if isinstance(payload, str):
		return payload
	if isinstance(payload, dict):
		token = payload.get("token")
		return str(token) if token else None
	return None


class RealtimeNamespace(socketio.AsyncNamespace):
	"""Root namespace: authenticates sessions and joins them to `user:<id>`."""

	def __init__(
		self,
		registry: ConnectionRegistry,
		*,
		conversation_guard: ConversationGuard,
		resolver: CredentialResolver = resolve_credential,
		auth_grace_seconds: Optional[float] = None,
		block_check: Optional[BlockCheck] = None,
	) -> None:
		super().__init__("/")
		self._registry = registry
		self._guard = conversation_guard
		self._resolve = resolver
		self._block_check = block_check
		self._grace = settings.socket_auth_grace_seconds if auth_grace_seconds is None else auth_grace_seconds
		self._sessions: Dict[str, UserRecord] = {}
		self._pending: Dict[str, asyncio.Task] = {}

	async def on_connect(self, sid: str, environ: dict, auth: Any = None) -> None:
		obs_metrics.socket_connected(self.namespace)
		token = _handshake_token(environ, auth)
		if token:
			try:
				user = await self._resolve(token)
			except FreeTalkError as exc:
				obs_metrics.socket_disconnected(self.namespace)
				raise ConnectionRefusedError(exc.detail)
			await self._bind(sid, user)
			return
		self._pending[sid] = asyncio.create_task(self._expire_unauthenticated(sid))

	async def on_disconnect(self, sid: str, reason: Any = None) -> None:
		obs_metrics.socket_disconnected(self.namespace)
		self._cancel_grace(sid)
		self._sessions.pop(sid, None)
		user_id, went_offline = await self._registry.unregister(sid)
		if user_id and went_offline:
			await self._broadcast_status(user_id, online=False)

	async def on_authenticate(self, sid: str, payload: Any = None) -> None:
		obs_metrics.socket_event(self.namespace, "authenticate")
		try:
			user = await self._resolve(_payload_token(payload))
		except FreeTalkError as exc:
			await self.emit(events.AUTH_ERROR, {"message": exc.detail}, room=sid)
			await self.disconnect(sid)
			return
		await self._bind(sid, user)

	async def on_subscribe(self, sid: str, payload: Any = None) -> None:
		obs_metrics.socket_event(self.namespace, "subscribe")
		user = self._sessions.get(sid)
		room = str((payload or {}).get("room") or "") if isinstance(payload, dict) else ""
		reason = await self._refusal(user, room)
		if reason:
			await self.emit(events.SUBSCRIBE_REFUSED, {"room": room, "reason": reason}, room=sid)
			return
		await self.enter_room(sid, room)
		await self.emit(events.SUBSCRIBED, {"room": room}, room=sid)

	async def on_unsubscribe(self, sid: str, payload: Any = None) -> None:
		obs_metrics.socket_event(self.namespace, "unsubscribe")
		user = self._sessions.get(sid)
		room = str((payload or {}).get("room") or "") if isinstance(payload, dict) else ""
		if user is None or not room or room == events.user_room(user.id):
			return
		await self.leave_room(sid, room)
		await self.emit(events.UNSUBSCRIBED, {"room": room}, room=sid)

	async def on_ping(self, sid: str, payload: Any = None) -> None:
		await self.emit(events.PONG, {"timestamp": datetime.now(timezone.utc).isoformat()}, room=sid)

	async def trigger_event(self, event: str, *args):
		# call events carry ':' in their names, so they cannot map onto on_* methods
		if event in events.CALL_RELAY:
			return await self._relay_call(event, *args)
		return await super().trigger_event(event, *args)

	async def _relay_call(self, event: str, sid: str, payload: Any = None) -> None:
		"""Forward call signalling to the peer's `user:<id>` room; nothing is stored."""
		obs_metrics.socket_event(self.namespace, event)
		outgoing, forwarded = events.CALL_RELAY[event]
		data = payload if isinstance(payload, dict) else {}
		call_id = data.get("callId")
		peer_id = str(data.get("peerId") or data.get("calleeId") or "")
		user = self._sessions.get(sid)
		reason = None
		if user is None:
			reason = "unauthenticated"
		elif not call_id or not peer_id or peer_id == user.id:
			reason = "invalid"
		elif self._block_check is not None and await self._block_check(user.id, peer_id):
			reason = "blocked"
		elif event == "call:initiate" and not await self._registry.is_online(peer_id):
			reason = "User is offline"
		if reason:
			await self.emit(events.CALL_FAILED, {"callId": call_id, "reason": reason}, room=sid)
			return
		body = {"callId": call_id, "peerId": user.id}
		body.update({key: data[key] for key in forwarded if key in data})
		if event == "call:initiate":
			body.update(callerId=user.id, callerName=user.name, callerAvatar=user.avatar)
		await self.emit(outgoing, body, room=events.user_room(peer_id))


	def session_user(self, sid: str) -> Optional[UserRecord]:
		return self._sessions.get(sid)

	async def _refusal(self, user: Optional[UserRecord], room: str) -> Optional[str]:
		if user is None:
			return "unauthenticated"
		if room.startswith("user:"):
			return None if room == events.user_room(user.id) else "forbidden"
		if room.startswith("conversation:"):
			conversation_id = room.split(":", 1)[1]
			if conversation_id and await self._guard(conversation_id, user.id):
				return None
			return "forbidden"
		return "unknown_room"

	async def _bind(self, sid: str, user: UserRecord) -> None:
		self._cancel_grace(sid)
		previous = self._sessions.get(sid)
		if previous is not None and previous.id != user.id:
			await self.leave_room(sid, events.user_room(previous.id))
		self._sessions[sid] = user
		await self.enter_room(sid, events.user_room(user.id))
		registration = await self._registry.register(user.id, sid)
		tokens = obs_logging.bind_context(user_id=user.id, sid=sid)
		try:
			_logger.info("socket_authenticated")
		finally:
			obs_logging.reset_context(tokens)
		await self.emit(events.AUTHENTICATED, {"userId": user.id, "socketId": sid}, room=sid)
		if registration.displaced_offline:
			await self._broadcast_status(registration.displaced_offline, online=False)
		if registration.went_online:
			await self._broadcast_status(user.id, online=True)

	async def _broadcast_status(self, user_id: str, *, online: bool) -> None:
		obs_metrics.socket_event(self.namespace, events.USER_STATUS_CHANGED)
		await self.emit(events.USER_STATUS_CHANGED, {"userId": user_id, "isOnline": online})

	async def _expire_unauthenticated(self, sid: str) -> None:
		await asyncio.sleep(self._grace)
		self._pending.pop(sid, None)
		if sid not in self._sessions:
			_logger.info("socket_auth_timeout", extra={"sid": sid})
			await self.disconnect(sid)

	def _cancel_grace(self, sid: str) -> None:
		task = self._pending.pop(sid, None)
		if task is not None and not task.done():
			task.cancel()


class RealtimeGateway:
	"""Explicit emission handle passed to the delivery engine and notification dispatcher.

	Emission is best effort: failures are logged and counted, never raised, and
	nothing is buffered for disconnected clients.
	"""

	def __init__(self, emitter: socketio.AsyncNamespace, registry: ConnectionRegistry) -> None:
		self._emitter = emitter
		self._registry = registry

	@property
	def registry(self) -> ConnectionRegistry:
		return self._registry

	async def emit_to_room(self, room: str, event: str, payload: dict) -> None:
		if not events.is_known(event):
			raise ValueError(f"unknown event: {event}")
		try:
			await self._emitter.emit(event, payload, room=room)
		except Exception:
			obs_metrics.socket_emit_failed(event)
			_logger.warning("socket_emit_failed", extra={"event": event, "room": room}, exc_info=True)
			return
		obs_metrics.socket_event(self._emitter.namespace, event)

	async def emit_to_user(self, user_id: str, event: str, payload: dict) -> None:
		await self.emit_to_room(events.user_room(user_id), event, payload)

	async def emit_to_users(self, user_ids: Iterable[str], event: str, payload: dict) -> None:
		for user_id in dict.fromkeys(user_ids):
			await self.emit_to_user(user_id, event, payload)

	async def is_online(self, user_id: str) -> bool:
		return await self._registry.is_online(user_id)
