"""Transition guards for the connection state machine."""

from __future__ import annotations

from typing import Iterable, Optional

from clstr.domain.common.errors import (
	DomainMismatchError,
	DuplicateConnectionError,
	InvalidStateError,
	MissingDomainError,
	NotAuthorizedError,
	SelfConnectionError,
)

from .models import Connection, ConnectionStatus

# Lower wins when a pair has several rows.
STATUS_PRIORITY = {
	ConnectionStatus.ACCEPTED: 1,
	ConnectionStatus.PENDING: 2,
	ConnectionStatus.BLOCKED: 3,
	ConnectionStatus.REJECTED: 4,
}

_DUPLICATE_REASONS = {
	ConnectionStatus.ACCEPTED: "already_connected",
	ConnectionStatus.PENDING: "already_pending",
	ConnectionStatus.BLOCKED: "blocked",
}


def guard_not_self(user_id: str, target_id: str) -> None:
	if str(user_id) == str(target_id):
		raise SelfConnectionError()


def guard_same_domain(requester_domain: Optional[str], receiver_domain: Optional[str]) -> None:
	if not requester_domain or not receiver_domain:
		raise MissingDomainError()
	if requester_domain != receiver_domain:
		raise DomainMismatchError()


def duplicate_error(existing: Connection) -> DuplicateConnectionError:
	return DuplicateConnectionError(_DUPLICATE_REASONS.get(existing.status, DuplicateConnectionError.reason))


def ensure_can_respond(connection: Connection, caller_id: str) -> None:
	if connection.receiver_id != str(caller_id):
		raise NotAuthorizedError()
	if connection.status is not ConnectionStatus.PENDING:
		raise InvalidStateError()


def ensure_can_cancel(connection: Connection, caller_id: str) -> None:
	if connection.requester_id != str(caller_id):
		raise NotAuthorizedError()
	if connection.status is not ConnectionStatus.PENDING:
		raise InvalidStateError()


def needs_block(connection: Connection, caller_id: str) -> bool:
	"""Return False when already blocked; raise when the block is not allowed."""
	if not connection.involves(caller_id):
		raise NotAuthorizedError()
	if connection.status is ConnectionStatus.BLOCKED:
		return False
	if connection.status is ConnectionStatus.REJECTED:
		raise InvalidStateError()
	return True


def ensure_can_remove(connection: Connection, caller_id: str) -> None:
	if not connection.involves(caller_id):
		raise NotAuthorizedError()
	if connection.status is not ConnectionStatus.ACCEPTED:
		raise InvalidStateError()


def pick_status(statuses: Iterable[ConnectionStatus]) -> Optional[ConnectionStatus]:
	"""Highest-priority active status, or None when only rejected rows exist."""
	best: Optional[ConnectionStatus] = None
	for status in statuses:
		if not status.is_active:
			continue
		if best is None or STATUS_PRIORITY[status] < STATUS_PRIORITY[best]:
			best = status
	return best
