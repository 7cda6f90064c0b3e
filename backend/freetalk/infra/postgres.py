"""AsyncPG pool management for the backend."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import asyncpg

from freetalk.errors import Unavailable
from freetalk.settings import settings

_pool: Optional[asyncpg.pool.Pool] = None
_disabled = False

_SCHEMA_PATH = Path(__file__).with_name("schema.sql")


async def init_pool() -> asyncpg.pool.Pool:
	global _pool
	if _pool is None:
		_pool = await asyncpg.create_pool(
			dsn=settings.postgres_url,
			min_size=settings.postgres_min_pool_size,
			max_size=settings.postgres_max_pool_size,
		)
	return _pool


async def get_pool() -> asyncpg.pool.Pool:
	"""Return the shared pool, creating it on first use.

	Connection failures raise `Unavailable` every time; nothing is cached until
	a pool actually exists.
	"""
	if _disabled:
		raise RuntimeError("postgres is disabled; repositories run on memory")
	try:
		return await init_pool()
	except (OSError, asyncpg.PostgresConnectionError, asyncpg.CannotConnectNowError) as exc:
		raise Unavailable("Database unavailable") from exc


def disable() -> None:
	"""Run every repository on its in-memory store for the rest of the process."""
	global _disabled, _pool
	_disabled = True
	_pool = None


def enable() -> None:
	global _disabled
	_disabled = False


def is_disabled() -> bool:
	return _disabled


async def apply_schema(pool: asyncpg.pool.Pool) -> None:
	"""Apply the idempotent DDL shipped next to this module."""
	ddl = _SCHEMA_PATH.read_text(encoding="utf-8")
	async with pool.acquire() as conn:
		await conn.execute(ddl)


async def close_pool() -> None:
	global _pool
	if _pool is not None:
		await _pool.close()
		_pool = None


class PoolBacked:
	"""Mixin for repositories backed by Postgres, or by memory once `disable()` ran.

	The backend is read from the module switch on every call so all
	repositories agree on it.
	"""

	async def _pool_or_none(self) -> Optional[asyncpg.pool.Pool]:
		if _disabled:
			return None
		return await get_pool()
