"""AsyncPG pool management for the backend."""

from __future__ import annotations

from typing import Optional

import asyncpg

from clstr.infra.resilience import backend_call
from clstr.settings import settings

_pool: Optional[asyncpg.pool.Pool] = None


def is_configured() -> bool:
	return bool(settings.postgres_enabled and settings.postgres_url.strip())


async def init_pool() -> asyncpg.pool.Pool:
	global _pool
	if _pool is None:
		# Force 127.0.0.1 instead of localhost to avoid IPv6 resolution stalls
		dsn = settings.postgres_url.replace("localhost", "127.0.0.1")
		_pool = await asyncpg.create_pool(
			dsn=dsn,
			min_size=settings.postgres_min_pool_size,
			max_size=settings.postgres_max_pool_size,
		)
	return _pool


def set_pool(pool: Optional[asyncpg.pool.Pool]) -> None:
	global _pool
	_pool = pool


async def get_pool() -> asyncpg.pool.Pool:
	if _pool is None:
		return await init_pool()
	return _pool


async def pool_or_none() -> Optional[asyncpg.pool.Pool]:
	"""Return the pool, or None when Postgres is switched off in settings.

	Repositories use None to select their in-memory stores. A configured but
	unreachable database raises ``OperationFailedError``; the next call tries
	to connect again.
	"""
	if not is_configured():
		return None
	async with backend_call("postgres.connect"):
		return await get_pool()


async def close_pool() -> None:
	global _pool
	if _pool is not None:
		await _pool.close()
		_pool = None
