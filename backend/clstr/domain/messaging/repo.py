"""Message storage: asyncpg with an in-memory fallback."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import ulid

from clstr.infra import postgres
from clstr.infra.resilience import backend_call

from .models import Message

_COLUMNS = "id, sender_id, receiver_id, content, read, created_at, updated_at, college_domain"

# (partner_id, latest message, unread count)
ConversationRow = Tuple[str, Message, int]


def _older_than(message: Message, cursor: Tuple[datetime, str]) -> bool:
	cursor_dt, cursor_id = cursor
	return message.created_at < cursor_dt or (message.created_at == cursor_dt and message.id < cursor_id)


class _InMemoryStore:
	"""Fallback store used in tests when Postgres is unavailable."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._messages: Dict[str, Message] = {}
		self._last_created: Optional[datetime] = None

	def _next_timestamp(self) -> datetime:
		now = datetime.now(timezone.utc)
		if self._last_created is not None and now <= self._last_created:
			now = self._last_created + timedelta(microseconds=1)
		self._last_created = now
		return now

	async def insert(self, sender_id: str, receiver_id: str, content: str, domain: Optional[str]) -> Message:
		async with self._lock:
			created_at = self._next_timestamp()
			message = Message(
				id=str(ulid.new()),
				sender_id=sender_id,
				receiver_id=receiver_id,
				content=content,
				read=False,
				created_at=created_at,
				updated_at=created_at,
				domain=domain,
			)
			self._messages[message.id] = message
			return message

	async def get(self, message_id: str) -> Optional[Message]:
		async with self._lock:
			return self._messages.get(message_id)

	async def history(
		self,
		viewer_id: str,
		partner_id: str,
		*,
		cursor: Optional[Tuple[datetime, str]],
		limit: int,
	) -> List[Message]:
		pair = {viewer_id, partner_id}
		async with self._lock:
			thread = [
				m
				for m in self._messages.values()
				if {m.sender_id, m.receiver_id} == pair and m.sender_id != m.receiver_id
			]
		thread.sort(key=lambda m: (m.created_at, m.id), reverse=True)
		if cursor:
			thread = [m for m in thread if _older_than(m, cursor)]
		return thread[:limit]

	async def mark_read(self, viewer_id: str, partner_id: str) -> List[Message]:
		async with self._lock:
			flipped: List[Message] = []
			now = datetime.now(timezone.utc)
			for message_id, message in list(self._messages.items()):
				if message.receiver_id == viewer_id and message.sender_id == partner_id and not message.read:
					updated = replace(message, read=True, updated_at=max(now, message.updated_at))
					self._messages[message_id] = updated
					flipped.append(updated)
			flipped.sort(key=lambda m: (m.created_at, m.id))
			return flipped

	async def conversations(self, viewer_id: str) -> List[ConversationRow]:
		latest: Dict[str, Message] = {}
		unread: Dict[str, int] = {}
		async with self._lock:
			for message in self._messages.values():
				if not message.involves(viewer_id):
					continue
				partner_id = message.partner_of(viewer_id)
				current = latest.get(partner_id)
				if current is None or (message.created_at, message.id) > (current.created_at, current.id):
					latest[partner_id] = message
				if message.receiver_id == viewer_id and not message.read:
					unread[partner_id] = unread.get(partner_id, 0) + 1
		rows = [(pid, msg, unread.get(pid, 0)) for pid, msg in latest.items()]
		rows.sort(key=lambda row: (row[1].created_at, row[1].id), reverse=True)
		return rows

	async def unread_total(self, viewer_id: str) -> int:
		async with self._lock:
			return sum(1 for m in self._messages.values() if m.receiver_id == viewer_id and not m.read)

	def clear(self) -> None:
		self._messages.clear()
		self._last_created = None


_MEMORY_STORE = _InMemoryStore()


def reset_memory_state() -> None:
	_MEMORY_STORE.clear()


class MessageRepository:
	"""Repository backed by asyncpg with an in-memory fallback."""

	async def _pool_or_none(self):
		return await postgres.pool_or_none()

	async def insert(self, sender_id: str, receiver_id: str, content: str, domain: Optional[str]) -> Message:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.insert(sender_id, receiver_id, content, domain)
		async with backend_call("messages.insert"):
			async with pool.acquire() as conn:
				row = await conn.fetchrow(
					f"""
					INSERT INTO messages (id, sender_id, receiver_id, content, read, college_domain)
					VALUES ($1, $2, $3, $4, FALSE, $5)
					RETURNING {_COLUMNS}
					""",
					str(ulid.new()),
					sender_id,
					receiver_id,
					content,
					domain,
				)
		return Message.from_record(dict(row))

	async def get(self, message_id: str) -> Optional[Message]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.get(message_id)
		async with backend_call("messages.get"):
			async with pool.acquire() as conn:
				row = await conn.fetchrow(f"SELECT {_COLUMNS} FROM messages WHERE id = $1", message_id)
		return Message.from_record(dict(row)) if row else None

	async def history(
		self,
		viewer_id: str,
		partner_id: str,
		*,
		cursor: Optional[Tuple[datetime, str]],
		limit: int,
	) -> List[Message]:
		"""Newest-first slice of the pair's thread strictly older than ``cursor``."""
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.history(viewer_id, partner_id, cursor=cursor, limit=limit)
		params: list = [viewer_id, partner_id, limit]
		keyset = ""
		if cursor:
			keyset = "AND (created_at, id) < ($4, $5)"
			params.extend(cursor)
		async with backend_call("messages.history"):
			async with pool.acquire() as conn:
				rows = await conn.fetch(
					f"""
					SELECT {_COLUMNS}
					FROM messages
					WHERE ((sender_id = $1 AND receiver_id = $2) OR (sender_id = $2 AND receiver_id = $1))
						{keyset}
					ORDER BY created_at DESC, id DESC
					LIMIT $3
					""",
					*params,
				)
		return [Message.from_record(dict(row)) for row in rows]

	async def mark_read(self, viewer_id: str, partner_id: str) -> List[Message]:
		"""Flip unread rows addressed to ``viewer_id`` from ``partner_id``; returns the flipped rows."""
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.mark_read(viewer_id, partner_id)
		async with backend_call("messages.mark_read"):
			async with pool.acquire() as conn:
				rows = await conn.fetch(
					f"""
					UPDATE messages
					SET read = TRUE, updated_at = NOW()
					WHERE receiver_id = $1 AND sender_id = $2 AND read = FALSE
					RETURNING {_COLUMNS}
					""",
					viewer_id,
					partner_id,
				)
		messages = [Message.from_record(dict(row)) for row in rows]
		messages.sort(key=lambda m: (m.created_at, m.id))
		return messages

	async def conversations(self, viewer_id: str) -> List[ConversationRow]:
		"""Latest message and unread count per partner in a single grouped query."""
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.conversations(viewer_id)
		async with backend_call("messages.conversations"):
			async with pool.acquire() as conn:
				rows = await conn.fetch(
					f"""
					WITH scoped AS (
						SELECT {_COLUMNS},
							CASE WHEN sender_id = $1 THEN receiver_id ELSE sender_id END AS partner_id
						FROM messages
						WHERE sender_id = $1 OR receiver_id = $1
					),
					latest AS (
						SELECT DISTINCT ON (partner_id) *
						FROM scoped
						ORDER BY partner_id, created_at DESC, id DESC
					),
					unread AS (
						SELECT partner_id, COUNT(*) FILTER (WHERE receiver_id = $1 AND read = FALSE) AS unread_count
						FROM scoped
						GROUP BY partner_id
					)
					SELECT latest.*, unread.unread_count
					FROM latest
					JOIN unread USING (partner_id)
					ORDER BY latest.created_at DESC, latest.id DESC
					""",
					viewer_id,
				)
		return [
			(str(row["partner_id"]), Message.from_record(dict(row)), int(row["unread_count"]))
			for row in rows
		]

	async def unread_total(self, viewer_id: str) -> int:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY_STORE.unread_total(viewer_id)
		async with backend_call("messages.unread_total"):
			async with pool.acquire() as conn:
				count = await conn.fetchval(
					"SELECT COUNT(*) FROM messages WHERE receiver_id = $1 AND read = FALSE",
					viewer_id,
				)
		return int(count or 0)
