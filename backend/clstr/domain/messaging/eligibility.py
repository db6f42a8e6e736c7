"""Messaging eligibility: who may open or continue a thread with whom."""

from __future__ import annotations

from typing import AbstractSet, Optional

from clstr.domain.common.errors import SelfMessagingError
from clstr.domain.connections.models import ConnectionStatus
from clstr.domain.connections.service import ConnectionService
from clstr.domain.identity import Identity
from clstr.settings import privileged_roles

from .models import Eligibility


def decide(
	role: Optional[str],
	connection_status: Optional[ConnectionStatus],
	privileged: AbstractSet[str],
) -> Eligibility:
	"""Pure gating rule: privileged roles bypass, everyone else needs accepted."""
	can_bypass = bool(role) and role in privileged
	allowed = can_bypass or connection_status is ConnectionStatus.ACCEPTED
	return Eligibility(allowed=allowed, connection_status=connection_status, can_bypass_gate=can_bypass)


async def check(me: Identity, partner_id: str, connections: ConnectionService) -> Eligibility:
	"""Evaluate eligibility for an already resolved caller; never cached."""
	if me.id == str(partner_id):
		raise SelfMessagingError()
	status = await connections.status_for(me, partner_id)
	return decide(me.role, status, privileged_roles())
