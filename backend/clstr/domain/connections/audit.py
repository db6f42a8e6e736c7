"""Audit helpers for connection ledger transitions."""

from __future__ import annotations

import logging
from typing import Dict

from redis import exceptions as redis_exceptions

from clstr.infra.redis import redis_client
from clstr.obs import metrics as obs_metrics

from .models import Connection

_log = logging.getLogger(__name__)

STREAM = "x:connections.events"


async def log_connection_event(event: str, connection: Connection, *, actor_id: str) -> None:
	payload: Dict[str, str] = {
		"event": event,
		"connection_id": connection.id,
		"requester_id": connection.requester_id,
		"receiver_id": connection.receiver_id,
		"status": connection.status.value,
		"actor_id": str(actor_id),
	}
	try:
		await redis_client.xadd(STREAM, payload)
	except (redis_exceptions.ConnectionError, redis_exceptions.TimeoutError):
		# The ledger row is already committed; the audit trail is best effort.
		_log.warning("connection_audit_failed", extra={"event_name": event, "connection_id": connection.id})


def inc_transition(action: str) -> None:
	obs_metrics.inc_connection_transition(action)


def inc_request_reject(reason: str) -> None:
	obs_metrics.inc_connection_request_reject(reason)
