"""Profile directory backed by asyncpg with an in-memory fallback."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from clstr.infra import postgres
from clstr.infra.resilience import backend_call

from .models import Profile, normalise_domain


class _MemoryDirectory:
	"""Fallback profile store used in tests when Postgres is unavailable."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._profiles: Dict[str, Profile] = {}

	async def upsert(self, profile: Profile) -> None:
		async with self._lock:
			self._profiles[profile.id] = profile

	async def fetch(self, user_ids: Iterable[str]) -> List[Profile]:
		async with self._lock:
			return [self._profiles[uid] for uid in user_ids if uid in self._profiles]

	async def touch(self, user_id: str, seen_at: datetime) -> None:
		async with self._lock:
			profile = self._profiles.get(user_id)
			if profile is not None:
				profile.last_seen = seen_at

	def clear(self) -> None:
		self._profiles.clear()


_MEMORY = _MemoryDirectory()


def reset_memory_state() -> None:
	_MEMORY.clear()


async def register_profile(
	user_id: str,
	*,
	domain: Optional[str],
	role: Optional[str] = None,
	full_name: Optional[str] = None,
	avatar_url: Optional[str] = None,
	last_seen: Optional[datetime] = None,
) -> Profile:
	"""Seed a profile into the in-memory directory (tests and local dev)."""
	profile = Profile(
		id=str(user_id),
		full_name=full_name,
		avatar_url=avatar_url,
		domain=normalise_domain(domain),
		role=role,
		last_seen=last_seen,
	)
	await _MEMORY.upsert(profile)
	return profile


class ProfileRepository:
	async def _pool_or_none(self):
		return await postgres.pool_or_none()

	async def fetch_many(self, user_ids: Iterable[str]) -> Dict[str, Profile]:
		ids = list(dict.fromkeys(str(uid) for uid in user_ids))
		if not ids:
			return {}
		pool = await self._pool_or_none()
		if pool is None:
			return {profile.id: profile for profile in await _MEMORY.fetch(ids)}
		async with backend_call("profiles.fetch"):
			async with pool.acquire() as conn:
				rows = await conn.fetch(
					"""
					SELECT id, full_name, avatar_url, college_domain, role, last_seen
					FROM profiles
					WHERE id = ANY($1::uuid[])
					""",
					ids,
				)
		profiles = [Profile.from_record(dict(row)) for row in rows]
		return {profile.id: profile for profile in profiles}

	async def fetch_one(self, user_id: str) -> Optional[Profile]:
		found = await self.fetch_many([user_id])
		return found.get(str(user_id))

	async def touch_last_seen(self, user_id: str, seen_at: datetime) -> None:
		pool = await self._pool_or_none()
		if pool is None:
			await _MEMORY.touch(str(user_id), seen_at)
			return
		async with backend_call("profiles.touch_last_seen"):
			async with pool.acquire() as conn:
				await conn.execute(
					"UPDATE profiles SET last_seen = $2 WHERE id = $1",
					user_id,
					seen_at,
				)
