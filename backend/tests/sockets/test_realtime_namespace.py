import asyncio
from unittest.mock import AsyncMock

import pytest
import socketio
from socketio.exceptions import ConnectionRefusedError

from freetalk.domain.identity.directory import UserDirectory, seed_block
from freetalk.domain.realtime.gateway import RealtimeNamespace
from freetalk.domain.realtime.registry import ConnectionRegistry
from freetalk.infra import jwt as jwt_helper


def _scope_with_authorization(token: str) -> dict:
	return {"asgi.scope": {"headers": [(b"authorization", f"Bearer {token}".encode())]}}


def _token(user_id: str) -> str:
	return jwt_helper.encode_access({"sub": user_id})


async def _member_of_c1(conversation_id: str, user_id: str) -> bool:
	return conversation_id == "c1" and user_id == "alice"


def _namespace(registry=None, grace=5.0) -> RealtimeNamespace:
	server = socketio.AsyncServer(async_mode="asgi")
	namespace = RealtimeNamespace(
		registry or ConnectionRegistry(),
		conversation_guard=_member_of_c1,
		auth_grace_seconds=grace,
		block_check=UserDirectory().is_blocked,
	)
	server.register_namespace(namespace)
	namespace.emit = AsyncMock()
	namespace.enter_room = AsyncMock()
	namespace.leave_room = AsyncMock()
	namespace.disconnect = AsyncMock()
	return namespace


def _emitted(namespace, event):
	return [call for call in namespace.emit.await_args_list if call.args[0] == event]


@pytest.mark.asyncio
async def test_connect_with_handshake_token_joins_user_room(users):
	registry = ConnectionRegistry()
	namespace = _namespace(registry)

	await namespace.trigger_event("connect", "sid-1", {}, {"token": _token("alice")})

	namespace.enter_room.assert_awaited_with("sid-1", "user:alice")
	assert await registry.is_online("alice")
	assert namespace.session_user("sid-1").id == "alice"
	authenticated = _emitted(namespace, "authenticated")
	assert authenticated[0].args[1] == {"userId": "alice", "socketId": "sid-1"}
	assert authenticated[0].kwargs["room"] == "sid-1"
	status = _emitted(namespace, "user:status-changed")
	assert status[0].args[1] == {"userId": "alice", "isOnline": True}


@pytest.mark.asyncio
async def test_connect_reads_bearer_header(users):
	namespace = _namespace()
	await namespace.trigger_event("connect", "sid-1", _scope_with_authorization(_token("bob")))
	assert namespace.session_user("sid-1").id == "bob"


@pytest.mark.asyncio
async def test_connect_with_invalid_token_is_refused(users):
	namespace = _namespace()
	with pytest.raises(ConnectionRefusedError):
		await namespace.trigger_event("connect", "sid-1", {}, {"token": "not-a-jwt"})
	with pytest.raises(ConnectionRefusedError):
		await namespace.trigger_event("connect", "sid-2", {}, {"token": _token("ghost")})


@pytest.mark.asyncio
async def test_authenticate_after_connect_cancels_grace_timer(users):
	namespace = _namespace(grace=0.05)
	await namespace.trigger_event("connect", "sid-1", {})
	assert namespace.session_user("sid-1") is None

	await namespace.trigger_event("authenticate", "sid-1", {"token": _token("alice")})
	await asyncio.sleep(0.1)

	assert namespace.session_user("sid-1").id == "alice"
	namespace.disconnect.assert_not_awaited()


@pytest.mark.asyncio
async def test_unauthenticated_session_is_dropped_after_grace(users):
	namespace = _namespace(grace=0.01)
	await namespace.trigger_event("connect", "sid-1", {})
	await asyncio.sleep(0.05)
	namespace.disconnect.assert_awaited_once_with("sid-1")


@pytest.mark.asyncio
async def test_authenticate_with_bad_token_reports_and_disconnects(users):
	namespace = _namespace()
	await namespace.trigger_event("connect", "sid-1", {})
	await namespace.trigger_event("authenticate", "sid-1", "garbage")

	errors = _emitted(namespace, "auth_error")
	assert errors and errors[0].kwargs["room"] == "sid-1"
	namespace.disconnect.assert_awaited_once_with("sid-1")
	await namespace.trigger_event("disconnect", "sid-1")


@pytest.mark.asyncio
async def test_subscribe_guards_rooms(users):
	namespace = _namespace()
	await namespace.trigger_event("subscribe", "sid-anon", {"room": "user:alice"})
	await namespace.trigger_event("connect", "sid-1", {}, {"token": _token("alice")})

	await namespace.trigger_event("subscribe", "sid-1", {"room": "user:alice"})
	await namespace.trigger_event("subscribe", "sid-1", {"room": "user:bob"})
	await namespace.trigger_event("subscribe", "sid-1", {"room": "conversation:c1"})
	await namespace.trigger_event("subscribe", "sid-1", {"room": "conversation:c2"})
	await namespace.trigger_event("subscribe", "sid-1", {"room": "lobby"})

	refused = [(call.args[1]["room"], call.args[1]["reason"]) for call in _emitted(namespace, "subscribe:refused")]
	assert refused == [
		("user:alice", "unauthenticated"),
		("user:bob", "forbidden"),
		("conversation:c2", "forbidden"),
		("lobby", "unknown_room"),
	]
	subscribed = [call.args[1]["room"] for call in _emitted(namespace, "subscribed")]
	assert subscribed == ["user:alice", "conversation:c1"]


@pytest.mark.asyncio
async def test_unsubscribe_never_leaves_own_user_room(users):
	namespace = _namespace()
	await namespace.trigger_event("connect", "sid-1", {}, {"token": _token("alice")})
	await namespace.trigger_event("unsubscribe", "sid-1", {"room": "user:alice"})
	namespace.leave_room.assert_not_awaited()
	await namespace.trigger_event("unsubscribe", "sid-1", {"room": "conversation:c1"})
	namespace.leave_room.assert_awaited_once_with("sid-1", "conversation:c1")


@pytest.mark.asyncio
async def test_offline_broadcast_only_after_last_session(users):
	registry = ConnectionRegistry()
	namespace = _namespace(registry)
	await namespace.trigger_event("connect", "phone", {}, {"token": _token("alice")})
	await namespace.trigger_event("connect", "laptop", {}, {"token": _token("alice")})
	namespace.emit.reset_mock()

	await namespace.trigger_event("disconnect", "phone")
	assert _emitted(namespace, "user:status-changed") == []
	assert await registry.is_online("alice")

	await namespace.trigger_event("disconnect", "laptop")
	status = _emitted(namespace, "user:status-changed")
	assert [call.args[1] for call in status] == [{"userId": "alice", "isOnline": False}]


@pytest.mark.asyncio
async def test_ping_answers_with_pong():
	namespace = _namespace()
	await namespace.trigger_event("ping", "sid-1")
	pong = _emitted(namespace, "pong")
	assert "timestamp" in pong[0].args[1]
	assert pong[0].kwargs["room"] == "sid-1"


@pytest.mark.asyncio
async def test_call_signalling_is_relayed_to_peer_room(users):
	namespace = _namespace()
	await namespace.trigger_event("connect", "sid-alice", {}, {"token": _token("alice")})
	await namespace.trigger_event("connect", "sid-bob", {}, {"token": _token("bob")})
	namespace.emit.reset_mock()

	await namespace.trigger_event("call:initiate", "sid-alice", {"callId": "call-1", "calleeId": "bob", "callType": "video"})
	await namespace.trigger_event("call:accept", "sid-bob", {"callId": "call-1", "peerId": "alice"})
	await namespace.trigger_event("call:offer", "sid-alice", {"callId": "call-1", "peerId": "bob", "offer": {"sdp": "v=0"}})
	await namespace.trigger_event(
		"call:ice-candidate", "sid-bob", {"callId": "call-1", "peerId": "alice", "candidate": {"candidate": "c1"}}
	)
	await namespace.trigger_event("call:end", "sid-alice", {"callId": "call-1", "peerId": "bob"})

	relayed = [(call.args[0], call.kwargs["room"], call.args[1]) for call in namespace.emit.await_args_list]
	assert relayed == [
		(
			"call:incoming",
			"user:bob",
			{
				"callId": "call-1",
				"peerId": "alice",
				"callType": "video",
				"callerId": "alice",
				"callerName": "Alice",
				"callerAvatar": None,
			},
		),
		("call:accepted", "user:alice", {"callId": "call-1", "peerId": "bob"}),
		("call:offer", "user:bob", {"callId": "call-1", "peerId": "alice", "offer": {"sdp": "v=0"}}),
		("call:ice-candidate", "user:alice", {"callId": "call-1", "peerId": "bob", "candidate": {"candidate": "c1"}}),
		("call:ended", "user:bob", {"callId": "call-1", "peerId": "alice"}),
	]


@pytest.mark.asyncio
async def test_call_relay_refusals_answer_the_caller_only(users):
	namespace = _namespace()
	await namespace.trigger_event("call:offer", "sid-anon", {"callId": "c0", "peerId": "bob"})
	await namespace.trigger_event("connect", "sid-alice", {}, {"token": _token("alice")})
	await namespace.trigger_event("call:initiate", "sid-alice", {"callId": "c1", "calleeId": "carol"})
	await namespace.trigger_event("call:initiate", "sid-alice", {"callId": "c2", "calleeId": "alice"})
	await namespace.trigger_event("connect", "sid-dave", {}, {"token": _token("dave")})
	seed_block("dave", "alice")
	await namespace.trigger_event("call:initiate", "sid-alice", {"callId": "c3", "calleeId": "dave"})

	failures = [(call.kwargs["room"], call.args[1]) for call in _emitted(namespace, "call:failed")]
	assert failures == [
		("sid-anon", {"callId": "c0", "reason": "unauthenticated"}),
		("sid-alice", {"callId": "c1", "reason": "User is offline"}),
		("sid-alice", {"callId": "c2", "reason": "invalid"}),
		("sid-alice", {"callId": "c3", "reason": "blocked"}),
	]
	assert _emitted(namespace, "call:incoming") == []
