"""Global error handlers mapping every failure onto the response envelope."""

from __future__ import annotations

import asyncpg
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from starlette.exceptions import HTTPException as StarletteHTTPException

from freetalk.api.request_id import get_request_id
from freetalk.errors import FreeTalkError, InternalError, Unavailable
from freetalk.obs import logging as obs_logging

_logger = obs_logging.get_logger("freetalk.api.errors")

_STATUS_CODES = {
	400: "validation",
	401: "unauthenticated",
	403: "forbidden",
	404: "not_found",
	405: "method_not_allowed",
	409: "conflict",
	413: "payload_too_large",
	429: "throttled",
	503: "unavailable",
}


def _envelope(request: Request, status_code: int, message: str, code: str, **extra) -> JSONResponse:
	payload = {"success": False, "message": message, "code": code, "request_id": get_request_id(request)}
	payload.update(extra)
	return JSONResponse(status_code=status_code, content=payload)


def install_error_handlers(app: FastAPI) -> None:
	@app.exception_handler(FreeTalkError)
	async def domain_exc_handler(request: Request, exc: FreeTalkError):  # type: ignore[override]
		return _envelope(request, exc.status_code, exc.detail, exc.code)

	@app.exception_handler(StarletteHTTPException)
	async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
		code = _STATUS_CODES.get(exc.status_code, "error")
		return _envelope(request, exc.status_code, str(exc.detail), code)

	@app.exception_handler(RequestValidationError)
	async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
		errors = [
			{"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg")}
			for err in exc.errors()
		]
		return _envelope(request, 400, "Invalid request", "validation", errors=errors)

	@app.exception_handler(asyncpg.PostgresConnectionError)
	async def postgres_down_handler(request: Request, exc: Exception):  # type: ignore[override]
		_logger.warning("postgres_unavailable", exc_info=exc)
		err = Unavailable()
		return _envelope(request, err.status_code, err.detail, err.code)

	@app.exception_handler(RedisConnectionError)
	@app.exception_handler(RedisTimeoutError)
	async def redis_down_handler(request: Request, exc: Exception):  # type: ignore[override]
		_logger.warning("redis_unavailable", exc_info=exc)
		err = Unavailable()
		return _envelope(request, err.status_code, err.detail, err.code)

	@app.exception_handler(Exception)
	async def unhandled_exc_handler(request: Request, exc: Exception):  # type: ignore[override]
		_logger.error("unhandled_error", exc_info=exc)
		err = InternalError()
		return _envelope(request, err.status_code, err.detail, err.code)
