"""Request ID helper for endpoints and error handlers."""

from __future__ import annotations

from typing import Optional

from starlette.requests import Request

from freetalk.obs import logging as obs_logging


def get_request_id(request: Optional[Request] = None, default: str = "unknown") -> str:
	"""Return the id bound by the observability middleware, else a default."""
	if request is not None:
		rid = getattr(request.state, "request_id", None)
		if rid:
			return str(rid)
	return obs_logging.request_id() or default
