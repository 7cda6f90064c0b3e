"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


REQUEST_COUNTER = Counter(
	"freetalk_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"freetalk_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"freetalk_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"freetalk_socketio_events_total",
	"Socket.IO events emitted per namespace",
	["namespace", "event"],
)

SOCKET_EMIT_FAILURES = Counter(
	"freetalk_socketio_emit_failures_total",
	"Socket.IO emissions that raised and were dropped",
	["event"],
)

ONLINE_USERS = Gauge(
	"freetalk_online_users",
	"Users holding at least one live push-channel session",
)

MESSAGES_SENT = Counter(
	"freetalk_messages_sent_total",
	"Messages persisted by the delivery engine",
	["kind", "type"],
)

MESSAGES_READ = Counter(
	"freetalk_messages_mark_read_total",
	"Mark-as-read operations",
)

NOTIFICATIONS_PERSISTED = Counter(
	"freetalk_notifications_persisted_total",
	"Notification records written",
	["result"],
)

PUSH_DISPATCH = Counter(
	"freetalk_push_dispatch_total",
	"Mobile push dispatch attempts by result",
	["result"],
)

RATE_LIMITED = Counter(
	"freetalk_rate_limited_total",
	"Requests rejected by the rate limiter",
	["kind"],
)

JOB_RUNS = Counter(
	"freetalk_job_runs_total",
	"Background maintenance job runs",
	["job", "result"],
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


def socket_emit_failed(event: str) -> None:
	SOCKET_EMIT_FAILURES.labels(event=event).inc()


def set_online_users(count: int) -> None:
	ONLINE_USERS.set(max(0, count))


def inc_message_sent(kind: str, message_type: str) -> None:
	MESSAGES_SENT.labels(kind=kind, type=message_type).inc()


def inc_mark_read() -> None:
	MESSAGES_READ.inc()


def notification_persisted(result: str) -> None:
	NOTIFICATIONS_PERSISTED.labels(result=result).inc()


def push_dispatched(result: str) -> None:
	PUSH_DISPATCH.labels(result=result).inc()


def rate_limited(kind: str) -> None:
	RATE_LIMITED.labels(kind=kind).inc()


def record_job_run(job: str, *, result: str) -> None:
	JOB_RUNS.labels(job=job, result=result).inc()
