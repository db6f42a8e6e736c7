"""Domain models for direct messages."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional

from clstr.domain.connections.models import ConnectionStatus
from clstr.domain.identity.models import MessageUser


@dataclass(slots=True, frozen=True)
class Eligibility:
	allowed: bool
	connection_status: Optional[ConnectionStatus]
	can_bypass_gate: bool

	def to_dict(self) -> dict:
		return {
			"allowed": self.allowed,
			"connection_status": self.connection_status.value if self.connection_status else None,
			"can_bypass_gate": self.can_bypass_gate,
		}


@dataclass(slots=True, frozen=True)
class Message:
	"""A stored direct message; only ``read`` ever changes after insert."""

	id: str
	sender_id: str
	receiver_id: str
	content: str
	read: bool
	created_at: datetime
	updated_at: datetime
	domain: Optional[str] = None
	sender: Optional[MessageUser] = None
	receiver: Optional[MessageUser] = None

	@classmethod
	def from_record(cls, record) -> "Message":
		return cls(
			id=str(record["id"]),
			sender_id=str(record["sender_id"]),
			receiver_id=str(record["receiver_id"]),
			content=record["content"],
			read=bool(record["read"]),
			created_at=record["created_at"],
			updated_at=record["updated_at"],
			domain=record.get("college_domain"),
		)

	def partner_of(self, viewer_id: str) -> str:
		return self.receiver_id if self.sender_id == str(viewer_id) else self.sender_id

	def involves(self, user_id: str) -> bool:
		return str(user_id) in (self.sender_id, self.receiver_id)

	def with_users(self, sender: MessageUser, receiver: MessageUser) -> "Message":
		return replace(self, sender=sender, receiver=receiver)

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"sender_id": self.sender_id,
			"receiver_id": self.receiver_id,
			"content": self.content,
			"read": self.read,
			"created_at": self.created_at.isoformat(),
			"updated_at": self.updated_at.isoformat(),
			"sender": self.sender.to_dict() if self.sender else None,
			"receiver": self.receiver.to_dict() if self.receiver else None,
		}


@dataclass(slots=True, frozen=True)
class Conversation:
	"""Derived view of one partner thread; never persisted."""

	partner: MessageUser
	last_message: Message
	unread_count: int


@dataclass(slots=True)
class MessagePage:
	messages: List[Message] = field(default_factory=list)
	has_more: bool = False
	next_cursor: Optional[str] = None
