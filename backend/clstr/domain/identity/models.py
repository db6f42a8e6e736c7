"""Identity records consumed by the connection ledger and message store."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from clstr.settings import settings

UNKNOWN_USER_NAME = "Unknown User"


def normalise_domain(value: Optional[str]) -> Optional[str]:
	"""Trim and lower-case a college domain tag; blank values become None."""
	if value is None:
		return None
	cleaned = str(value).strip().lower()
	return cleaned or None


def is_online(last_seen: Optional[datetime], now: Optional[datetime] = None) -> bool:
	"""True when ``last_seen`` falls inside the presence window."""
	if last_seen is None:
		return False
	now = now or datetime.now(timezone.utc)
	if last_seen.tzinfo is None:
		last_seen = last_seen.replace(tzinfo=timezone.utc)
	return now - last_seen <= timedelta(seconds=settings.presence_online_seconds)


@dataclass(slots=True, frozen=True)
class Identity:
	id: str
	domain: Optional[str]
	role: Optional[str]


@dataclass(slots=True)
class Profile:
	"""Row of the ``profiles`` table."""

	id: str
	full_name: Optional[str]
	avatar_url: Optional[str]
	domain: Optional[str]
	role: Optional[str]
	last_seen: Optional[datetime]

	@classmethod
	def from_record(cls, record) -> "Profile":
		return cls(
			id=str(record["id"]),
			full_name=record.get("full_name"),
			avatar_url=record.get("avatar_url"),
			domain=normalise_domain(record.get("college_domain")),
			role=record.get("role"),
			last_seen=record.get("last_seen"),
		)


@dataclass(slots=True, frozen=True)
class MessageUser:
	"""Display info attached to enriched messages and conversations."""

	id: str
	full_name: str
	avatar_url: Optional[str] = None
	last_seen: Optional[datetime] = None

	@classmethod
	def from_profile(cls, profile: Profile) -> "MessageUser":
		return cls(
			id=profile.id,
			full_name=profile.full_name or UNKNOWN_USER_NAME,
			avatar_url=profile.avatar_url,
			last_seen=profile.last_seen,
		)

	@classmethod
	def placeholder(cls, user_id: str) -> "MessageUser":
		return cls(id=user_id, full_name=UNKNOWN_USER_NAME)

	@property
	def online(self) -> bool:
		return is_online(self.last_seen)

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"full_name": self.full_name,
			"avatar_url": self.avatar_url,
			"last_seen": self.last_seen.isoformat() if self.last_seen else None,
			"is_online": self.online,
		}
