"""Handshake authentication shared by the Socket.IO namespaces."""

from __future__ import annotations

from typing import Optional

from fastapi import HTTPException

from clstr.infra.auth import AuthenticatedUser, verify_access_jwt
from clstr.settings import settings


def _header(scope: dict, name: str) -> Optional[str]:
	target = name.encode().lower()
	for key, value in scope.get("headers", []):
		if key.lower() == target:
			return value.decode()
	return None


def authenticate_socket(environ: dict, auth: Optional[dict] = None) -> AuthenticatedUser:
	"""Resolve the connecting user or raise ConnectionRefusedError."""
	scope = environ.get("asgi.scope", environ)
	# python-socketio >=5 passes client-provided auth as a separate argument
	auth_payload = auth or environ.get("auth") or scope.get("auth") or {}
	token = auth_payload.get("token")
	if not token:
		header = _header(scope, "authorization") or ""
		if header.lower().startswith("bearer "):
			token = header[7:].strip()
	if token:
		try:
			return verify_access_jwt(token)
		except HTTPException:
			raise ConnectionRefusedError("invalid token") from None
	if settings.is_dev():
		user_id = auth_payload.get("userId") or _header(scope, "x-user-id")
		if user_id:
			return AuthenticatedUser(id=str(user_id).strip())
	raise ConnectionRefusedError("missing user id")
