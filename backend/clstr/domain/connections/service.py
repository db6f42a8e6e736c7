"""Connection ledger service: requests, responses and the status queries."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from clstr.domain.common.errors import (
	ClstrError,
	ConnectionNotFoundError,
	DuplicateConnectionError,
	InvalidStateError,
	assert_valid_uuid,
)
from clstr.domain.identity import Identity, IdentityResolver, MessageUser, get_resolver
from clstr.infra.auth import AuthenticatedUser

from . import audit, policy, sockets
from .models import Connection, ConnectionStatus, Decision
from .repo import ConnectionRepository

logger = logging.getLogger(__name__)


class ConnectionService:
	def __init__(
		self,
		repository: ConnectionRepository | None = None,
		resolver: IdentityResolver | None = None,
	) -> None:
		self._repo = repository or ConnectionRepository()
		self._identity = resolver or get_resolver()

	async def _load(self, connection_id: str) -> Connection:
		connection = await self._repo.get(assert_valid_uuid(connection_id, label="connection_id"))
		if connection is None:
			raise ConnectionNotFoundError()
		return connection

	async def _announce(self, action: str, connection: Connection, actor_id: str) -> None:
		audit.inc_transition(action)
		await audit.log_connection_event(action, connection, actor_id=actor_id)
		payload = {"action": action, "connection": connection.to_dict()}
		for user_id in (connection.requester_id, connection.receiver_id):
			await sockets.emit_connection_update(user_id, payload)
		logger.info(
			"connection_transition",
			extra={"action": action, "connection_id": connection.id, "status": connection.status.value},
		)

	async def request(
		self,
		auth_user: AuthenticatedUser,
		receiver_id: str,
		note: Optional[str] = None,
	) -> Connection:
		me = await self._identity.current(auth_user)
		target_id = assert_valid_uuid(receiver_id, label="receiver_id")
		try:
			policy.guard_not_self(me.id, target_id)
			policy.guard_same_domain(me.domain, await self._identity.domain_of(target_id))
			existing = await self._repo.active_between(me.id, target_id)
			if existing is not None:
				raise policy.duplicate_error(existing)
			cleaned = note.strip() if note else None
			connection = await self._repo.insert_pending(me.id, target_id, cleaned or None)
			if connection is None:
				# Lost a race with a concurrent request for the same pair.
				existing = await self._repo.active_between(me.id, target_id)
				if existing is None:
					raise DuplicateConnectionError()
				raise policy.duplicate_error(existing)
		except ClstrError as exc:
			audit.inc_request_reject(exc.reason)
			raise
		await self._announce("requested", connection, me.id)
		return connection

	async def respond(self, auth_user: AuthenticatedUser, connection_id: str, decision: Decision | str) -> Connection:
		me = await self._identity.current(auth_user)
		decision = Decision(decision)
		connection = await self._load(connection_id)
		policy.ensure_can_respond(connection, me.id)
		updated = await self._repo.update_status(connection.id, (ConnectionStatus.PENDING,), decision.target_status)
		if updated is None:
			await self._raise_stale(connection.id, me.id, policy.ensure_can_respond)
		await self._announce(decision.target_status.value, updated, me.id)
		return updated

	async def cancel(self, auth_user: AuthenticatedUser, connection_id: str) -> Connection:
		me = await self._identity.current(auth_user)
		connection = await self._load(connection_id)
		policy.ensure_can_cancel(connection, me.id)
		if not await self._repo.delete(connection.id, ConnectionStatus.PENDING):
			await self._raise_stale(connection.id, me.id, policy.ensure_can_cancel)
		await self._announce("cancelled", connection, me.id)
		return connection

	async def block(self, auth_user: AuthenticatedUser, connection_id: str) -> Connection:
		me = await self._identity.current(auth_user)
		connection = await self._load(connection_id)
		if not policy.needs_block(connection, me.id):
			return connection
		updated = await self._repo.update_status(
			connection.id,
			(ConnectionStatus.PENDING, ConnectionStatus.ACCEPTED),
			ConnectionStatus.BLOCKED,
		)
		if updated is None:
			current = await self._load(connection.id)
			if not policy.needs_block(current, me.id):
				return current
			raise InvalidStateError()
		await self._announce("blocked", updated, me.id)
		return updated

	async def remove(self, auth_user: AuthenticatedUser, connection_id: str) -> Connection:
		me = await self._identity.current(auth_user)
		connection = await self._load(connection_id)
		policy.ensure_can_remove(connection, me.id)
		if not await self._repo.delete(connection.id, ConnectionStatus.ACCEPTED):
			await self._raise_stale(connection.id, me.id, policy.ensure_can_remove)
		await self._announce("removed", connection, me.id)
		return connection

	async def _raise_stale(self, connection_id: str, caller_id: str, guard) -> None:
		"""Re-read after a lost conditional write and raise the matching error."""
		current = await self._load(connection_id)
		guard(current, caller_id)
		raise InvalidStateError()

	async def status_between(self, auth_user: AuthenticatedUser, partner_id: str) -> Optional[ConnectionStatus]:
		me = await self._identity.current(auth_user)
		return await self.status_for(me, partner_id)

	async def status_for(self, me: Identity, partner_id: str) -> Optional[ConnectionStatus]:
		"""Active status between an already resolved caller and ``partner_id``."""
		partner = assert_valid_uuid(partner_id, label="partner_id")
		if partner == me.id:
			return None
		existing = await self._repo.active_between(me.id, partner)
		return existing.status if existing else None

	async def statuses_for_many(
		self,
		auth_user: AuthenticatedUser,
		partner_ids: Iterable[str],
	) -> Dict[str, Optional[ConnectionStatus]]:
		me = await self._identity.current(auth_user)
		partners = [assert_valid_uuid(pid, label="partner_ids") for pid in partner_ids]
		partners = [pid for pid in dict.fromkeys(partners) if pid != me.id]
		rows = await self._repo.rows_for_partners(me.id, partners)
		grouped: Dict[str, List[ConnectionStatus]] = {pid: [] for pid in partners}
		for row in rows:
			grouped.setdefault(row.other_party(me.id), []).append(row.status)
		return {pid: policy.pick_status(statuses) for pid, statuses in grouped.items()}

	async def list_incoming(self, auth_user: AuthenticatedUser) -> List[Connection]:
		me = await self._identity.current(auth_user)
		return await self._repo.list_incoming(me.id)

	async def list_connections(self, auth_user: AuthenticatedUser) -> List[Connection]:
		me = await self._identity.current(auth_user)
		return await self._repo.list_accepted(me.id)

	async def connected_users(self, auth_user: AuthenticatedUser) -> List[MessageUser]:
		"""Accepted partners that share the caller's domain."""
		me = await self._identity.current(auth_user)
		if not me.domain:
			return []
		rows = await self._repo.list_accepted(me.id)
		partner_ids = [row.other_party(me.id) for row in rows]
		domains = await self._identity.domains_of(partner_ids)
		same_domain = [pid for pid in partner_ids if domains.get(pid) == me.domain]
		profiles = await self._identity.profiles(same_domain)
		return [profiles[pid] for pid in same_domain]


_SERVICE = ConnectionService()


def get_service() -> ConnectionService:
	return _SERVICE


async def request_connection(auth_user: AuthenticatedUser, receiver_id: str, note: Optional[str] = None) -> Connection:
	return await _SERVICE.request(auth_user, receiver_id, note)


async def respond_to_connection(auth_user: AuthenticatedUser, connection_id: str, decision: Decision | str) -> Connection:
	return await _SERVICE.respond(auth_user, connection_id, decision)


async def cancel_connection(auth_user: AuthenticatedUser, connection_id: str) -> Connection:
	return await _SERVICE.cancel(auth_user, connection_id)


async def block_connection(auth_user: AuthenticatedUser, connection_id: str) -> Connection:
	return await _SERVICE.block(auth_user, connection_id)


async def remove_connection(auth_user: AuthenticatedUser, connection_id: str) -> Connection:
	return await _SERVICE.remove(auth_user, connection_id)


async def connection_status(auth_user: AuthenticatedUser, partner_id: str) -> Optional[ConnectionStatus]:
	return await _SERVICE.status_between(auth_user, partner_id)


async def connection_statuses_for_many(
	auth_user: AuthenticatedUser,
	partner_ids: Iterable[str],
) -> Dict[str, Optional[ConnectionStatus]]:
	return await _SERVICE.statuses_for_many(auth_user, partner_ids)


async def list_incoming(auth_user: AuthenticatedUser) -> List[Connection]:
	return await _SERVICE.list_incoming(auth_user)


async def list_connections(auth_user: AuthenticatedUser) -> List[Connection]:
	return await _SERVICE.list_connections(auth_user)


async def connected_users(auth_user: AuthenticatedUser) -> List[MessageUser]:
	return await _SERVICE.connected_users(auth_user)
