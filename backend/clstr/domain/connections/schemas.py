"""Pydantic schemas for the connection ledger API."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .models import Connection


class ConnectionRequestBody(BaseModel):
	receiver_id: str = Field(..., description="User to connect with")
	message: Optional[str] = Field(default=None, max_length=500, description="Optional note shown to the receiver")


class RespondBody(BaseModel):
	decision: Literal["accept", "reject"]


class ConnectionSummary(BaseModel):
	id: str
	requester_id: str
	receiver_id: str
	status: Literal["pending", "accepted", "rejected", "blocked"]
	message: Optional[str] = None
	created_at: datetime
	updated_at: datetime

	@classmethod
	def from_model(cls, connection: Connection) -> "ConnectionSummary":
		return cls(
			id=connection.id,
			requester_id=connection.requester_id,
			receiver_id=connection.receiver_id,
			status=connection.status.value,
			message=connection.message,
			created_at=connection.created_at,
			updated_at=connection.updated_at,
		)


class ConnectionStatusResponse(BaseModel):
	partner_id: str
	status: Optional[Literal["pending", "accepted", "blocked"]] = None


class StatusesBody(BaseModel):
	partner_ids: List[str] = Field(default_factory=list, max_length=200)


class StatusesResponse(BaseModel):
	statuses: Dict[str, Optional[Literal["pending", "accepted", "blocked"]]]
