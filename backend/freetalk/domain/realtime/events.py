"""Event catalog for the push channel. Names are part of the client contract."""

from __future__ import annotations

MESSAGE_NEW = "message:new"
MESSAGE_UNREAD_COUNT = "message:unread-count"
MESSAGE_READ = "message:read"
MESSAGE_DELETED = "message:deleted"
MESSAGE_REACTED = "message:reacted"
MESSAGE_UNREACTED = "message:unreacted"
TYPING_START = "typing:start"
TYPING_STOP = "typing:stop"
NOTIFICATION_NEW = "notification:new"
NOTIFICATION_UNREAD_COUNT = "notification:unread-count"
GROUP_CREATED = "group:created"
GROUP_UPDATED = "group:updated"
GROUP_PARTICIPANT_ADDED = "group:participant-added"
GROUP_PARTICIPANT_REMOVED = "group:participant-removed"
GROUP_REMOVED = "group:removed"
GROUP_ADMIN_ADDED = "group:admin-added"
GROUP_ADMIN_REMOVED = "group:admin-removed"

# Session lifecycle
AUTHENTICATED = "authenticated"
AUTH_ERROR = "auth_error"
SUBSCRIBED = "subscribed"
UNSUBSCRIBED = "unsubscribed"
SUBSCRIBE_REFUSED = "subscribe:refused"
PONG = "pong"
USER_STATUS_CHANGED = "user:status-changed"

# Call signalling, relayed between user rooms; the server keeps no call state.
CALL_INCOMING = "call:incoming"
CALL_FAILED = "call:failed"
# client event -> (event delivered to the peer, payload keys forwarded as-is)
CALL_RELAY = {
	"call:initiate": (CALL_INCOMING, ("callType",)),
	"call:accept": ("call:accepted", ()),
	"call:decline": ("call:declined", ()),
	"call:end": ("call:ended", ("reason",)),
	"call:busy": ("call:busy", ()),
	"call:offer": ("call:offer", ("offer",)),
	"call:answer": ("call:answer", ("answer",)),
	"call:ice-candidate": ("call:ice-candidate", ("candidate",)),
}

# Emitted by sibling subsystems through the same gateway.
_SOCIAL_EVENTS = (
	"post:created",
	"post:updated",
	"post:deleted",
	"post:shared",
	"post:reacted",
	"post:commented",
	"comment:replied",
	"comment:reacted",
	"comment:unreacted",
	"reply:reacted",
	"reply:unreacted",
	"reply:replied",
	"story:created",
	"story:deleted",
	"story:viewed",
	"story:reaction",
	"story:reaction-removed",
	"poke:received",
	"profile:visited",
	"profile:updated",
	"user:followed",
	"user:unfollowed",
	"user:blocked",
	"user:unblocked",
	"user:settings-updated",
	"account_suspended",
	"account_banned",
	"account_deleted",
)

CATALOG = frozenset(
	{
		MESSAGE_NEW,
		MESSAGE_UNREAD_COUNT,
		MESSAGE_READ,
		MESSAGE_DELETED,
		MESSAGE_REACTED,
		MESSAGE_UNREACTED,
		TYPING_START,
		TYPING_STOP,
		NOTIFICATION_NEW,
		NOTIFICATION_UNREAD_COUNT,
		GROUP_CREATED,
		GROUP_UPDATED,
		GROUP_PARTICIPANT_ADDED,
		GROUP_PARTICIPANT_REMOVED,
		GROUP_REMOVED,
		GROUP_ADMIN_ADDED,
		GROUP_ADMIN_REMOVED,
		AUTHENTICATED,
		AUTH_ERROR,
		SUBSCRIBED,
		UNSUBSCRIBED,
		SUBSCRIBE_REFUSED,
		PONG,
		USER_STATUS_CHANGED,
		CALL_FAILED,
		*(outgoing for outgoing, _ in CALL_RELAY.values()),
		*_SOCIAL_EVENTS,
	}
)


def is_known(event: str) -> bool:
	return event in CATALOG


def user_room(user_id: str) -> str:
	return f"user:{user_id}"


def conversation_room(conversation_id: str) -> str:
	return f"conversation:{conversation_id}"
