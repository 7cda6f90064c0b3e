"""Domain exceptions shared by the messaging and notification services."""

from __future__ import annotations

from fastapi import status


class FreeTalkError(Exception):
	"""Base class for every error surfaced to clients."""

	status_code: int = status.HTTP_400_BAD_REQUEST
	code: str = "error"
	detail: str = "Request failed"
	retryable: bool = False

	def __init__(self, detail: str | None = None) -> None:
		super().__init__(detail or self.detail)
		if detail:
			self.detail = detail


class Unauthenticated(FreeTalkError):
	status_code = status.HTTP_401_UNAUTHORIZED
	code = "unauthenticated"
	detail = "Not authorized, no valid token"


class Forbidden(FreeTalkError):
	status_code = status.HTTP_403_FORBIDDEN
	code = "forbidden"
	detail = "Not allowed"


class Blocked(Forbidden):
	code = "blocked"
	detail = "Cannot message this user"


class Suspended(Forbidden):
	code = "suspended"
	detail = "Account suspended"


class NotParticipant(Forbidden):
	code = "not_participant"
	detail = "Not a participant of this conversation"


class NotAdmin(Forbidden):
	code = "not_admin"
	detail = "Only group admins can do this"


class LastAdmin(Forbidden):
	code = "last_admin"
	detail = "Cannot remove the last admin of the group"


class NotFound(FreeTalkError):
	status_code = status.HTTP_404_NOT_FOUND
	code = "not_found"
	detail = "Not found"


class ValidationFailed(FreeTalkError):
	status_code = status.HTTP_400_BAD_REQUEST
	code = "validation"
	detail = "Invalid request"


class Throttled(FreeTalkError):
	status_code = status.HTTP_429_TOO_MANY_REQUESTS
	code = "throttled"
	detail = "Too many requests"
	retryable = True


class Conflict(FreeTalkError):
	status_code = status.HTTP_409_CONFLICT
	code = "conflict"
	detail = "Conflict"


class AlreadyParticipant(Conflict):
	code = "already_participant"
	detail = "User is already a participant"


class AlreadyAdmin(Conflict):
	code = "already_admin"
	detail = "User is already an admin"


class DeleteWindowExpired(Conflict):
	code = "delete_window_expired"
	detail = "Can only delete messages for everyone within 1 hour of sending"


class Unavailable(FreeTalkError):
	status_code = status.HTTP_503_SERVICE_UNAVAILABLE
	code = "unavailable"
	detail = "Service temporarily unavailable, please retry"
	retryable = True


class InternalError(FreeTalkError):
	status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
	code = "internal"
	detail = "Internal server error"
