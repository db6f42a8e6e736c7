"""FastAPI endpoints for direct messaging."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from clstr.domain.common.errors import ClstrError
from clstr.domain.connections import service as connections
from clstr.domain.messaging import service
from clstr.domain.messaging.schemas import (
	ConversationResponse,
	EligibilityResponse,
	MarkReadResponse,
	MessagePageResponse,
	MessageResponse,
	MessageUserOut,
	SendMessageRequest,
	UnreadCountResponse,
)
from clstr.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(prefix="/messages", tags=["messages"])


def _map_error(exc: ClstrError) -> HTTPException:
	return HTTPException(exc.status_code, detail=exc.detail)


@router.post("", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
	payload: SendMessageRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> MessageResponse:
	try:
		message = await service.send_message(auth_user, payload.receiver_id, payload.content)
	except ClstrError as exc:
		raise _map_error(exc) from None
	return MessageResponse.from_model(message)


@router.get("/contacts", response_model=List[MessageUserOut])
async def contacts(auth_user: AuthenticatedUser = Depends(get_current_user)) -> List[MessageUserOut]:
	try:
		users = await connections.connected_users(auth_user)
	except ClstrError as exc:
		raise _map_error(exc) from None
	return [MessageUserOut.from_model(user) for user in users]


@router.get("/conversations", response_model=List[ConversationResponse])
async def list_conversations(auth_user: AuthenticatedUser = Depends(get_current_user)) -> List[ConversationResponse]:
	try:
		rows = await service.list_conversations(auth_user)
	except ClstrError as exc:
		raise _map_error(exc) from None
	return [ConversationResponse.from_model(row) for row in rows]


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(auth_user: AuthenticatedUser = Depends(get_current_user)) -> UnreadCountResponse:
	try:
		count = await service.unread_count(auth_user)
	except ClstrError as exc:
		raise _map_error(exc) from None
	return UnreadCountResponse(count=count)


@router.get("/eligibility/{partner_id}", response_model=EligibilityResponse)
async def eligibility(
	partner_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> EligibilityResponse:
	try:
		decision = await service.check_eligibility(auth_user, partner_id)
	except ClstrError as exc:
		raise _map_error(exc) from None
	return EligibilityResponse.from_model(decision)


@router.get("/{partner_id}", response_model=MessagePageResponse)
async def history(
	partner_id: str,
	*,
	limit: Optional[int] = Query(default=None, ge=1, le=200),
	cursor: Optional[str] = Query(default=None),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> MessagePageResponse:
	try:
		page = await service.get_history(auth_user, partner_id, limit=limit, cursor=cursor)
	except ClstrError as exc:
		raise _map_error(exc) from None
	return MessagePageResponse.from_model(page)


@router.post("/{partner_id}/read", response_model=MarkReadResponse)
async def mark_read(
	partner_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> MarkReadResponse:
	try:
		updated = await service.mark_read(auth_user, partner_id)
	except ClstrError as exc:
		raise _map_error(exc) from None
	return MarkReadResponse(updated=updated)
