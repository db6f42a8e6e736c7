"""Pydantic schemas for the direct messaging API."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from clstr.domain.identity.models import MessageUser

from .models import Conversation, Eligibility, Message, MessagePage


class MessageUserOut(BaseModel):
	id: str
	full_name: str
	avatar_url: Optional[str] = None
	last_seen: Optional[datetime] = None
	is_online: bool = False

	@classmethod
	def from_model(cls, user: MessageUser) -> "MessageUserOut":
		return cls(
			id=user.id,
			full_name=user.full_name,
			avatar_url=user.avatar_url,
			last_seen=user.last_seen,
			is_online=user.online,
		)


class SendMessageRequest(BaseModel):
	receiver_id: str
	content: str = Field(..., description="Message text; trimmed server-side")


class MessageResponse(BaseModel):
	id: str
	sender_id: str
	receiver_id: str
	content: str
	read: bool
	created_at: datetime
	updated_at: datetime
	sender: Optional[MessageUserOut] = None
	receiver: Optional[MessageUserOut] = None

	@classmethod
	def from_model(cls, message: Message) -> "MessageResponse":
		return cls(
			id=message.id,
			sender_id=message.sender_id,
			receiver_id=message.receiver_id,
			content=message.content,
			read=message.read,
			created_at=message.created_at,
			updated_at=message.updated_at,
			sender=MessageUserOut.from_model(message.sender) if message.sender else None,
			receiver=MessageUserOut.from_model(message.receiver) if message.receiver else None,
		)


class MessagePageResponse(BaseModel):
	messages: List[MessageResponse]
	has_more: bool
	next_cursor: Optional[str] = None

	@classmethod
	def from_model(cls, page: MessagePage) -> "MessagePageResponse":
		return cls(
			messages=[MessageResponse.from_model(m) for m in page.messages],
			has_more=page.has_more,
			next_cursor=page.next_cursor,
		)


class ConversationResponse(BaseModel):
	partner: MessageUserOut
	last_message: MessageResponse
	unread_count: int

	@classmethod
	def from_model(cls, conversation: Conversation) -> "ConversationResponse":
		return cls(
			partner=MessageUserOut.from_model(conversation.partner),
			last_message=MessageResponse.from_model(conversation.last_message),
			unread_count=conversation.unread_count,
		)


class EligibilityResponse(BaseModel):
	allowed: bool
	connection_status: Optional[Literal["pending", "accepted", "blocked"]] = None
	can_bypass_gate: bool

	@classmethod
	def from_model(cls, decision: Eligibility) -> "EligibilityResponse":
		return cls(**decision.to_dict())


class UnreadCountResponse(BaseModel):
	count: int


class MarkReadResponse(BaseModel):
	updated: List[str]
