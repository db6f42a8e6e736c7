"""Domain models for the connection ledger."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class ConnectionStatus(str, Enum):
	"""Lifecycle states of a connection record."""

	PENDING = "pending"
	ACCEPTED = "accepted"
	REJECTED = "rejected"
	BLOCKED = "blocked"

	@property
	def is_active(self) -> bool:
		return self is not ConnectionStatus.REJECTED


class Decision(str, Enum):
	ACCEPT = "accept"
	REJECT = "reject"

	@property
	def target_status(self) -> ConnectionStatus:
		return ConnectionStatus.ACCEPTED if self is Decision.ACCEPT else ConnectionStatus.REJECTED


@dataclass(slots=True)
class Connection:
	"""A directional request between two users; at most one active per pair."""

	id: str
	requester_id: str
	receiver_id: str
	status: ConnectionStatus
	created_at: datetime
	updated_at: datetime
	message: Optional[str] = None

	@classmethod
	def from_record(cls, record) -> "Connection":
		return cls(
			id=str(record["id"]),
			requester_id=str(record["requester_id"]),
			receiver_id=str(record["receiver_id"]),
			status=ConnectionStatus(record["status"]),
			created_at=record["created_at"],
			updated_at=record["updated_at"],
			message=record.get("message"),
		)

	def involves(self, user_id: str) -> bool:
		return str(user_id) in (self.requester_id, self.receiver_id)

	def other_party(self, user_id: str) -> str:
		return self.receiver_id if str(user_id) == self.requester_id else self.requester_id

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"requester_id": self.requester_id,
			"receiver_id": self.receiver_id,
			"status": self.status.value,
			"message": self.message,
			"created_at": self.created_at.isoformat(),
			"updated_at": self.updated_at.isoformat(),
		}
