"""Socket.IO namespace for connection ledger updates."""

from __future__ import annotations

from typing import Optional

import socketio

from clstr.infra.auth import AuthenticatedUser
from clstr.infra.socket_auth import authenticate_socket
from clstr.obs import metrics as obs_metrics

_namespace: "ConnectionsNamespace" | None = None


class ConnectionsNamespace(socketio.AsyncNamespace):
	"""Namespace that keeps each client in their personal room."""

	def __init__(self) -> None:
		super().__init__("/connections")
		self._sessions: dict[str, AuthenticatedUser] = {}

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		user = authenticate_socket(environ, auth)
		obs_metrics.socket_connected(self.namespace)
		self._sessions[sid] = user
		await self.enter_room(sid, self.user_room(user.id))
		await self.emit("connections:ack", {"ok": True}, room=sid)

	async def on_disconnect(self, sid: str, *args) -> None:
		user = self._sessions.pop(sid, None)
		if user:
			obs_metrics.socket_disconnected(self.namespace)
			await self.leave_room(sid, self.user_room(user.id))

	@staticmethod
	def user_room(user_id: str) -> str:
		return f"user:{user_id}"


def set_namespace(ns: Optional[ConnectionsNamespace]) -> None:
	global _namespace
	_namespace = ns


async def emit_connection_update(user_id: str, payload: dict) -> None:
	if _namespace is None:
		return
	obs_metrics.socket_event(_namespace.namespace, "connection:update")
	await _namespace.emit("connection:update", payload, room=ConnectionsNamespace.user_room(user_id))
