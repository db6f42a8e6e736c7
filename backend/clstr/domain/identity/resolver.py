"""Identity & domain resolution for the caller and their counterparts.

Every public operation of the ledger and the message store resolves the caller
here first. Domains are always re-read from the profile directory, never taken
from client input.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional

from clstr.domain.common.errors import UnauthenticatedError, assert_valid_uuid
from clstr.infra.auth import AuthenticatedUser

from .models import Identity, MessageUser
from .repo import ProfileRepository

_log = logging.getLogger(__name__)


class IdentityResolver:
	def __init__(self, repository: ProfileRepository | None = None) -> None:
		self._repo = repository or ProfileRepository()

	async def current(self, auth_user: Optional[AuthenticatedUser]) -> Identity:
		if auth_user is None or not getattr(auth_user, "id", None):
			raise UnauthenticatedError()
		user_id = assert_valid_uuid(auth_user.id, label="user_id")
		profile = await self._repo.fetch_one(user_id)
		role = profile.role if profile and profile.role else None
		if role is None and auth_user.roles:
			role = auth_user.roles[0]
		return Identity(id=user_id, domain=profile.domain if profile else None, role=role)

	async def domain_of(self, user_id: str) -> Optional[str]:
		profile = await self._repo.fetch_one(user_id)
		return profile.domain if profile else None

	async def domains_of(self, user_ids: Iterable[str]) -> Dict[str, Optional[str]]:
		found = await self._repo.fetch_many(user_ids)
		return {uid: profile.domain for uid, profile in found.items()}

	async def profiles(self, user_ids: Iterable[str]) -> Dict[str, MessageUser]:
		"""Batch lookup of display info; unknown ids get a placeholder."""
		ids = [str(uid) for uid in user_ids]
		found = await self._repo.fetch_many(ids)
		result: Dict[str, MessageUser] = {}
		for uid in ids:
			profile = found.get(uid)
			result[uid] = MessageUser.from_profile(profile) if profile else MessageUser.placeholder(uid)
		return result

	async def touch_last_seen(self, user_id: str, *, now: Optional[datetime] = None) -> datetime:
		seen_at = now or datetime.now(timezone.utc)
		await self._repo.touch_last_seen(assert_valid_uuid(user_id, label="user_id"), seen_at)
		_log.debug("presence_touch", extra={"target_user": user_id})
		return seen_at


_RESOLVER = IdentityResolver()


def get_resolver() -> IdentityResolver:
	return _RESOLVER
