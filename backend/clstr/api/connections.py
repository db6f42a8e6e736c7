"""REST API surface for the connection ledger."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status

from clstr.domain.common.errors import ClstrError
from clstr.domain.connections import service
from clstr.domain.connections.schemas import (
	ConnectionRequestBody,
	ConnectionStatusResponse,
	ConnectionSummary,
	RespondBody,
	StatusesBody,
	StatusesResponse,
)
from clstr.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(prefix="/connections", tags=["connections"])


def _map_error(exc: ClstrError) -> HTTPException:
	return HTTPException(exc.status_code, detail=exc.detail)


@router.post("", response_model=ConnectionSummary, status_code=status.HTTP_201_CREATED)
async def request_connection(
	payload: ConnectionRequestBody,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> ConnectionSummary:
	try:
		connection = await service.request_connection(auth_user, payload.receiver_id, payload.message)
	except ClstrError as exc:
		raise _map_error(exc) from None
	return ConnectionSummary.from_model(connection)


@router.get("", response_model=List[ConnectionSummary])
async def list_connections(auth_user: AuthenticatedUser = Depends(get_current_user)) -> List[ConnectionSummary]:
	try:
		rows = await service.list_connections(auth_user)
	except ClstrError as exc:
		raise _map_error(exc) from None
	return [ConnectionSummary.from_model(row) for row in rows]


@router.get("/incoming", response_model=List[ConnectionSummary])
async def list_incoming(auth_user: AuthenticatedUser = Depends(get_current_user)) -> List[ConnectionSummary]:
	try:
		rows = await service.list_incoming(auth_user)
	except ClstrError as exc:
		raise _map_error(exc) from None
	return [ConnectionSummary.from_model(row) for row in rows]


@router.get("/status/{partner_id}", response_model=ConnectionStatusResponse)
async def connection_status(
	partner_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> ConnectionStatusResponse:
	try:
		current = await service.connection_status(auth_user, partner_id)
	except ClstrError as exc:
		raise _map_error(exc) from None
	return ConnectionStatusResponse(partner_id=partner_id, status=current.value if current else None)


@router.post("/statuses", response_model=StatusesResponse)
async def connection_statuses(
	payload: StatusesBody,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> StatusesResponse:
	try:
		statuses = await service.connection_statuses_for_many(auth_user, payload.partner_ids)
	except ClstrError as exc:
		raise _map_error(exc) from None
	return StatusesResponse(statuses={pid: value.value if value else None for pid, value in statuses.items()})


@router.post("/{connection_id}/respond", response_model=ConnectionSummary)
async def respond(
	connection_id: str,
	payload: RespondBody,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> ConnectionSummary:
	try:
		connection = await service.respond_to_connection(auth_user, connection_id, payload.decision)
	except ClstrError as exc:
		raise _map_error(exc) from None
	return ConnectionSummary.from_model(connection)


@router.post("/{connection_id}/cancel", response_model=ConnectionSummary)
async def cancel(
	connection_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> ConnectionSummary:
	try:
		connection = await service.cancel_connection(auth_user, connection_id)
	except ClstrError as exc:
		raise _map_error(exc) from None
	return ConnectionSummary.from_model(connection)


@router.post("/{connection_id}/block", response_model=ConnectionSummary)
async def block(
	connection_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> ConnectionSummary:
	try:
		connection = await service.block_connection(auth_user, connection_id)
	except ClstrError as exc:
		raise _map_error(exc) from None
	return ConnectionSummary.from_model(connection)


@router.delete("/{connection_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove(
	connection_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> None:
	try:
		await service.remove_connection(auth_user, connection_id)
	except ClstrError as exc:
		raise _map_error(exc) from None
