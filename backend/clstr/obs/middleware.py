"""HTTP middleware: request ids, log context, access logs and latency metrics."""

from __future__ import annotations

import time
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from clstr.obs import logging as obs_logging
from clstr.obs import metrics
from clstr.settings import settings

REQUEST_ID_HEADER = "X-Request-Id"


def _route_template(request: Request) -> str:
	# templated path keeps metric label cardinality bounded
	route = request.scope.get("route")
	path = getattr(route, "path", None)
	return path or request.url.path


def _request_id(request: Request) -> str:
	current = getattr(request.state, "request_id", None)
	if current:
		return current
	incoming = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
	request.state.request_id = incoming[:128] or uuid4().hex
	return request.state.request_id


class ObservabilityMiddleware(BaseHTTPMiddleware):
	"""Tag each request with an id, then record its latency and outcome."""

	def __init__(self, app, *, enabled: bool = True) -> None:
		super().__init__(app)
		self._enabled = enabled
		self._logger = obs_logging.get_logger("clstr.http")

	async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
		request_id = _request_id(request)
		if not (self._enabled and settings.obs_enabled):
			response = await call_next(request)
			response.headers.setdefault(REQUEST_ID_HEADER, request_id)
			return response

		client_ip = request.client.host if request.client else None
		tokens = obs_logging.bind_context(request_id=request_id, route=request.url.path, client_ip=client_ip)
		started = time.perf_counter()
		status_code = 500
		try:
			response = await call_next(request)
			status_code = response.status_code
		except Exception:
			self._logger.exception("http_request_error", extra={"method": request.method})
			raise
		finally:
			elapsed = time.perf_counter() - started
			route = _route_template(request)
			metrics.observe_request(route, request.method, status_code, elapsed)
			self._logger.info(
				"http_request",
				extra={
					"method": request.method,
					"route_template": route,
					"status": status_code,
					"latency_ms": round(elapsed * 1000, 3),
				},
			)
			obs_logging.reset_context(tokens)
			obs_logging.clear_context()
		response.headers.setdefault(REQUEST_ID_HEADER, request_id)
		return response


def install(app, *, enabled: bool = True) -> None:
	app.add_middleware(ObservabilityMiddleware, enabled=enabled)
