"""JSON logging with per-request context for the messaging backend.

Request-scoped fields (request id, route, caller, client address) live in
context vars so every log line emitted while serving a request or socket event
carries them without threading them through call sites. Message text and
connection notes are redacted wherever they appear in ``extra``.
"""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from clstr.settings import settings

_ROOT_LOGGER = "clstr"

# Field name in the JSON payload -> context var holding it.
_CONTEXT: Dict[str, ContextVar[Optional[str]]] = {
	"request_id": ContextVar("clstr_request_id", default=None),
	"route": ContextVar("clstr_route", default=None),
	"user_id": ContextVar("clstr_user_id", default=None),
	"ip": ContextVar("clstr_client_ip", default=None),
}
_CONTEXT_ALIASES = {"client_ip": "ip"}

_REDACTED = "[redacted]"
_SENSITIVE_KEYWORDS = (
	"token",
	"secret",
	"authorization",
	"password",
	"email",
	"content",
	"body",
	"note",
)
_MAX_STRING_LENGTH = 256
_MAX_ITEMS = 10

_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def bind_context(**fields: Optional[str]) -> Dict[str, Token]:
	"""Bind request fields (``request_id``, ``route``, ``user_id``, ``client_ip``).

	``None`` values are skipped. The returned tokens restore the previous values
	through :func:`reset_context`.
	"""
	tokens: Dict[str, Token] = {}
	for name, value in fields.items():
		if value is None:
			continue
		key = _CONTEXT_ALIASES.get(name, name)
		var = _CONTEXT.get(key)
		if var is None:
			raise TypeError(f"unknown log context field: {name}")
		tokens[key] = var.set(str(value))
	return tokens


def reset_context(tokens: Mapping[str, Token]) -> None:
	for key, token in tokens.items():
		_CONTEXT[key].reset(token)


def clear_context() -> None:
	for var in _CONTEXT.values():
		var.set(None)


def current_request_id() -> Optional[str]:
	return _CONTEXT["request_id"].get()


def _is_sensitive(key: str) -> bool:
	lowered = key.lower()
	return any(keyword in lowered for keyword in _SENSITIVE_KEYWORDS)


def _clip(value: Any) -> Any:
	if value is None or isinstance(value, (bool, int, float)):
		return value
	if isinstance(value, str):
		return value if len(value) <= _MAX_STRING_LENGTH else value[:_MAX_STRING_LENGTH] + "..."
	if isinstance(value, Mapping):
		items = list(value.items())
		clipped = {str(k): (_REDACTED if _is_sensitive(str(k)) else _clip(v)) for k, v in items[:_MAX_ITEMS]}
		if len(items) > _MAX_ITEMS:
			clipped["..."] = f"+{len(items) - _MAX_ITEMS} keys"
		return clipped
	if isinstance(value, (list, tuple, set, frozenset)):
		items = [_clip(item) for item in value]
		return items if len(items) <= _MAX_ITEMS else items[:_MAX_ITEMS] + ["..."]
	return str(value)


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per line: base fields, request context, then extras."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003
		payload: Dict[str, object] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"logger": record.name,
			"msg": record.getMessage(),
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		for key, var in _CONTEXT.items():
			value = var.get()
			if value:
				payload[key] = value
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		for key, value in vars(record).items():
			if key in _RESERVED_ATTRS or key in payload:
				continue
			payload[key] = _REDACTED if _is_sensitive(key) else _clip(value)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Drop a share of INFO records; other levels always pass."""

	def __init__(self, rate: Optional[float] = None) -> None:
		super().__init__()
		self._rate = rate

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = self._rate if self._rate is not None else settings.obs_log_sampling_rate_info
		rate = max(0.0, min(1.0, rate))
		return rate >= 1.0 or random.random() < rate


def configure_logging() -> logging.Logger:
	"""Install the JSON handler on the root logger and return the service logger."""
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root = logging.getLogger()
	root.handlers[:] = [handler]
	root.setLevel(settings.obs_log_level)
	return logging.getLogger(_ROOT_LOGGER)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	return logging.getLogger(name or _ROOT_LOGGER)
