"""Socket.IO namespace that relays each viewer's message changes."""

from __future__ import annotations

from typing import Callable, Dict, Optional

import socketio

from clstr.domain.common.errors import ClstrError
from clstr.infra.socket_auth import authenticate_socket
from clstr.obs import metrics as obs_metrics

from .models import Message
from .service import MessagingService, get_service


class MessagesNamespace(socketio.AsyncNamespace):
	"""One fan-out subscription per connected session."""

	def __init__(self, service: MessagingService | None = None) -> None:
		super().__init__("/messages")
		self._service = service or get_service()
		self._unsubscribers: Dict[str, Callable[[], None]] = {}

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		user = authenticate_socket(environ, auth)

		async def relay(message: Message) -> None:
			obs_metrics.socket_event(self.namespace, "message:upsert")
			await self.emit("message:upsert", message.to_dict(), room=sid)

		try:
			unsubscribe = await self._service.subscribe(user, relay)
		except ClstrError as exc:
			raise ConnectionRefusedError(exc.reason) from None
		self._unsubscribers[sid] = unsubscribe
		await self._service.touch_presence(user.id)
		obs_metrics.socket_connected(self.namespace)
		await self.emit("messages:ack", {"ok": True}, room=sid)

	async def on_disconnect(self, sid: str, *args) -> None:
		unsubscribe = self._unsubscribers.pop(sid, None)
		if unsubscribe is not None:
			unsubscribe()
			obs_metrics.socket_disconnected(self.namespace)

	@property
	def session_count(self) -> int:
		return len(self._unsubscribers)
