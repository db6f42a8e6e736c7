"""Wrapping of transient backing-store failures.

Store calls run inside ``backend_call`` so network and timeout errors surface as
``OperationFailedError`` with the operation name. Domain errors pass through.
Reads may go through ``retry_read``; writes are never retried here.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

import asyncpg
from redis import exceptions as redis_exceptions

from clstr.domain.common.errors import OperationFailedError
from clstr.obs import metrics as obs_metrics
from clstr.settings import settings

_log = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
	asyncpg.PostgresConnectionError,
	asyncpg.InterfaceError,
	asyncpg.exceptions.CannotConnectNowError,
	asyncio.TimeoutError,
	OSError,
	redis_exceptions.ConnectionError,
	redis_exceptions.TimeoutError,
)


@asynccontextmanager
async def backend_call(operation: str) -> AsyncIterator[None]:
	try:
		yield
	except TRANSIENT_ERRORS as exc:
		obs_metrics.inc_backend_failure(operation)
		_log.warning("backend_call_failed", extra={"operation": operation, "error": type(exc).__name__})
		raise OperationFailedError(operation) from exc


async def retry_read(operation: str, call: Callable[[], Awaitable[T]]) -> T:
	"""Run a read, retrying ``OperationFailedError`` with a linear backoff."""
	attempts = max(1, settings.read_retry_attempts)
	for attempt in range(attempts):
		try:
			return await call()
		except OperationFailedError:
			if attempt + 1 >= attempts:
				raise
			_log.info("read_retry", extra={"operation": operation, "attempt": attempt + 1})
			await asyncio.sleep(settings.read_retry_backoff_seconds * (attempt + 1))
	raise OperationFailedError(operation)
