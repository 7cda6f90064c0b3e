"""Authentication helpers for FastAPI endpoints and socket sessions.

Bearer JWTs (HS256) are verified with settings.secret_key and the subject is
resolved against the user directory. Dev headers are only honoured in
development.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import InvalidTokenError

from freetalk.domain.identity.directory import UserDirectory, UserRecord
from freetalk.errors import Suspended, Unauthenticated
from freetalk.infra import jwt as jwt_helper
from freetalk.settings import settings

# The principal handed to every core operation is the directory record itself.
AuthenticatedUser = UserRecord

_bearer_scheme = HTTPBearer(auto_error=False)
_directory = UserDirectory()


def subject_from_token(token: str) -> str:
	"""Validate an access JWT and return its subject."""
	try:
		payload = jwt_helper.decode_access(token)
	except InvalidTokenError as exc:
		raise Unauthenticated("Not authorized, token failed") from exc
	return str(payload["sub"]).strip()


async def resolve_credential(token: Optional[str], directory: UserDirectory | None = None) -> AuthenticatedUser:
	"""Map a bearer credential onto the user record it names."""
	token = (token or "").strip()
	if token.lower().startswith("bearer "):
		token = token[7:].strip()
	if not token:
		raise Unauthenticated()
	user_id = subject_from_token(token)
	user = await (directory or _directory).get(user_id)
	if user is None:
		raise Unauthenticated("User not found")
	return user


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	"""Resolve the authenticated user.

	In development we allow the X-User-Id header. In all other environments a
	valid Bearer JWT is required.
	"""
	if credentials and credentials.scheme.lower() == "bearer":
		return await resolve_credential(credentials.credentials)
	if settings.is_dev() and x_user_id:
		user = await _directory.get(x_user_id.strip())
		if user is not None:
			return user
	raise Unauthenticated()


async def get_active_user(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
	"""Write-side guard: suspended accounts may read but not act."""
	if user.is_suspended:
		raise Suspended()
	return user
