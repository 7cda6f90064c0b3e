"""Success envelope helpers shared by the routers."""

from __future__ import annotations

from typing import Any, Optional


def ok(data: Any = None, message: Optional[str] = None) -> dict[str, Any]:
	body: dict[str, Any] = {"success": True}
	if message:
		body["message"] = message
	if data is not None:
		body["data"] = data
	return body
