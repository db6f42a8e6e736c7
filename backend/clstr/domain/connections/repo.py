"""Connection ledger storage: asyncpg with an in-memory fallback."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import uuid4

import asyncpg

from clstr.infra import postgres
from clstr.infra.resilience import backend_call

from .models import Connection, ConnectionStatus

_COLUMNS = "id, requester_id, receiver_id, status, message, created_at, updated_at"


def _pair(user_a: str, user_b: str) -> Tuple[str, str]:
	return tuple(sorted((str(user_a), str(user_b))))  # type: ignore[return-value]


class _InMemoryLedger:
	"""Fallback ledger used in tests when Postgres is unavailable."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._rows: Dict[str, Connection] = {}

	def _active_for(self, pair: Tuple[str, str]) -> Optional[Connection]:
		for row in self._rows.values():
			if row.status.is_active and _pair(row.requester_id, row.receiver_id) == pair:
				return row
		return None

	async def get(self, connection_id: str) -> Optional[Connection]:
		async with self._lock:
			row = self._rows.get(connection_id)
			return replace(row) if row is not None else None

	async def active_between(self, user_a: str, user_b: str) -> Optional[Connection]:
		async with self._lock:
			row = self._active_for(_pair(user_a, user_b))
			return replace(row) if row is not None else None

	async def insert_pending(self, requester_id: str, receiver_id: str, note: Optional[str]) -> Optional[Connection]:
		async with self._lock:
			if self._active_for(_pair(requester_id, receiver_id)) is not None:
				return None
			now = datetime.now(timezone.utc)
			row = Connection(
				id=str(uuid4()),
				requester_id=requester_id,
				receiver_id=receiver_id,
				status=ConnectionStatus.PENDING,
				created_at=now,
				updated_at=now,
				message=note,
			)
			self._rows[row.id] = row
			return replace(row)

	async def update_status(
		self,
		connection_id: str,
		expected: Sequence[ConnectionStatus],
		target: ConnectionStatus,
	) -> Optional[Connection]:
		async with self._lock:
			row = self._rows.get(connection_id)
			if row is None or row.status not in expected:
				return None
			updated = replace(row, status=target, updated_at=datetime.now(timezone.utc))
			self._rows[connection_id] = updated
			return replace(updated)

	async def delete(self, connection_id: str, expected: ConnectionStatus) -> bool:
		async with self._lock:
			row = self._rows.get(connection_id)
			if row is None or row.status is not expected:
				return False
			del self._rows[connection_id]
			return True

	async def rows_for_partners(self, viewer_id: str, partner_ids: Sequence[str]) -> List[Connection]:
		wanted = set(partner_ids)
		async with self._lock:
			return [
				replace(row)
				for row in self._rows.values()
				if row.involves(viewer_id) and row.other_party(viewer_id) in wanted
			]

	async def list_for(
		self,
		viewer_id: str,
		status: ConnectionStatus,
		*,
		incoming_only: bool = False,
	) -> List[Connection]:
		async with self._lock:
			rows = [
				replace(row)
				for row in self._rows.values()
				if row.status is status
				and (row.receiver_id == viewer_id if incoming_only else row.involves(viewer_id))
			]
		key = (lambda r: r.created_at) if incoming_only else (lambda r: r.updated_at)
		rows.sort(key=key, reverse=True)
		return rows

	def clear(self) -> None:
		self._rows.clear()


_MEMORY_LEDGER = _InMemoryLedger()


def reset_memory_state() -> None:
	_MEMORY_LEDGER.clear()


class ConnectionRepository:
	"""Repository backed by asyncpg with an in-memory fallback."""

	async def _pool_or_none(self):
		return await postgres.pool_or_none()

	async def get(self, connection_id: str) -> Optional[Connection]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_LEDGER.get(connection_id)
		async with backend_call("connections.get"):
			async with pool.acquire() as conn:
				row = await conn.fetchrow(f"SELECT {_COLUMNS} FROM connections WHERE id = $1", connection_id)
		return Connection.from_record(dict(row)) if row else None

	async def active_between(self, user_a: str, user_b: str) -> Optional[Connection]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_LEDGER.active_between(user_a, user_b)
		async with backend_call("connections.active_between"):
			async with pool.acquire() as conn:
				row = await conn.fetchrow(
					f"""
					SELECT {_COLUMNS}
					FROM connections
					WHERE status <> 'rejected'
						AND ((requester_id = $1 AND receiver_id = $2)
							OR (requester_id = $2 AND receiver_id = $1))
					ORDER BY updated_at DESC
					LIMIT 1
					""",
					user_a,
					user_b,
				)
		return Connection.from_record(dict(row)) if row else None

	async def insert_pending(self, requester_id: str, receiver_id: str, note: Optional[str]) -> Optional[Connection]:
		"""Insert a pending row; None when an active row for the pair already exists."""
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_LEDGER.insert_pending(requester_id, receiver_id, note)
		async with backend_call("connections.insert"):
			async with pool.acquire() as conn:
				try:
					row = await conn.fetchrow(
						f"""
						INSERT INTO connections (id, requester_id, receiver_id, status, message)
						VALUES ($1, $2, $3, 'pending', $4)
						RETURNING {_COLUMNS}
						""",
						str(uuid4()),
						requester_id,
						receiver_id,
						note,
					)
				except asyncpg.UniqueViolationError:
					return None
		return Connection.from_record(dict(row))

	async def update_status(
		self,
		connection_id: str,
		expected: Sequence[ConnectionStatus],
		target: ConnectionStatus,
	) -> Optional[Connection]:
		"""Conditionally move a row to ``target``; None when it is no longer in ``expected``."""
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_LEDGER.update_status(connection_id, expected, target)
		async with backend_call("connections.update_status"):
			async with pool.acquire() as conn:
				row = await conn.fetchrow(
					f"""
					UPDATE connections
					SET status = $3, updated_at = NOW()
					WHERE id = $1 AND status = ANY($2::text[])
					RETURNING {_COLUMNS}
					""",
					connection_id,
					[status.value for status in expected],
					target.value,
				)
		return Connection.from_record(dict(row)) if row else None

	async def delete(self, connection_id: str, expected: ConnectionStatus) -> bool:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_LEDGER.delete(connection_id, expected)
		async with backend_call("connections.delete"):
			async with pool.acquire() as conn:
				result = await conn.execute(
					"DELETE FROM connections WHERE id = $1 AND status = $2",
					connection_id,
					expected.value,
				)
		return result.endswith(" 1")

	async def rows_for_partners(self, viewer_id: str, partner_ids: Iterable[str]) -> List[Connection]:
		ids = list(partner_ids)
		if not ids:
			return []
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_LEDGER.rows_for_partners(viewer_id, ids)
		async with backend_call("connections.statuses"):
			async with pool.acquire() as conn:
				rows = await conn.fetch(
					f"""
					SELECT {_COLUMNS}
					FROM connections
					WHERE (requester_id = $1 AND receiver_id = ANY($2::uuid[]))
						OR (receiver_id = $1 AND requester_id = ANY($2::uuid[]))
					""",
					viewer_id,
					ids,
				)
		return [Connection.from_record(dict(row)) for row in rows]

	async def list_incoming(self, viewer_id: str) -> List[Connection]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_LEDGER.list_for(viewer_id, ConnectionStatus.PENDING, incoming_only=True)
		async with backend_call("connections.list_incoming"):
			async with pool.acquire() as conn:
				rows = await conn.fetch(
					f"""
					SELECT {_COLUMNS}
					FROM connections
					WHERE receiver_id = $1 AND status = 'pending'
					ORDER BY created_at DESC
					""",
					viewer_id,
				)
		return [Connection.from_record(dict(row)) for row in rows]

	async def list_accepted(self, viewer_id: str) -> List[Connection]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_LEDGER.list_for(viewer_id, ConnectionStatus.ACCEPTED)
		async with backend_call("connections.list_accepted"):
			async with pool.acquire() as conn:
				rows = await conn.fetch(
					f"""
					SELECT {_COLUMNS}
					FROM connections
					WHERE (requester_id = $1 OR receiver_id = $1) AND status = 'accepted'
					ORDER BY updated_at DESC
					""",
					viewer_id,
				)
		return [Connection.from_record(dict(row)) for row in rows]


__all__ = ["ConnectionRepository", "reset_memory_state"]
