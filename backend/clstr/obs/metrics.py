"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


REQUEST_COUNTER = Counter(
	"clstr_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"clstr_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"clstr_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"clstr_socketio_events_total",
	"Socket.IO events emitted per namespace",
	["namespace", "event"],
)

CONNECTION_TRANSITIONS = Counter(
	"clstr_connection_transitions_total",
	"Connection ledger transitions applied",
	["action"],
)

CONNECTION_REQUEST_REJECTS = Counter(
	"clstr_connection_request_rejects_total",
	"Connection requests rejected",
	["reason"],
)

MESSAGES_SENT = Counter(
	"clstr_messages_sent_total",
	"Direct messages persisted",
	["gate"],
)

MESSAGE_SEND_REJECTS = Counter(
	"clstr_message_send_rejects_total",
	"Direct message sends rejected",
	["reason"],
)

MESSAGE_READ_UPDATES = Counter(
	"clstr_message_read_updates_total",
	"Messages flipped to read",
)

REALTIME_DELIVERIES = Counter(
	"clstr_realtime_deliveries_total",
	"Change events delivered to subscribers",
	["kind"],
)

REALTIME_SUBSCRIPTIONS = Gauge(
	"clstr_realtime_subscriptions",
	"Open realtime message subscriptions",
)

BACKEND_FAILURES = Counter(
	"clstr_backend_failures_total",
	"Transient backend failures surfaced as operation errors",
	["operation"],
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def inc_connection_transition(action: str) -> None:
	CONNECTION_TRANSITIONS.labels(action=action).inc()


def inc_connection_request_reject(reason: str) -> None:
	CONNECTION_REQUEST_REJECTS.labels(reason=reason).inc()


def inc_message_sent(gate: str) -> None:
	MESSAGES_SENT.labels(gate=gate).inc()


def inc_message_send_reject(reason: str) -> None:
	MESSAGE_SEND_REJECTS.labels(reason=reason).inc()


def inc_message_read(count: int = 1) -> None:
	if count > 0:
		MESSAGE_READ_UPDATES.inc(count)


def inc_realtime_delivery(kind: str) -> None:
	REALTIME_DELIVERIES.labels(kind=kind).inc()


def realtime_subscribed() -> None:
	REALTIME_SUBSCRIPTIONS.inc()


def realtime_unsubscribed() -> None:
	REALTIME_SUBSCRIPTIONS.dec()


def inc_backend_failure(operation: str) -> None:
	BACKEND_FAILURES.labels(operation=operation).inc()
