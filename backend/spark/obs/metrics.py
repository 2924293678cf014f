"""Central registry for Prometheus metrics used across the chat core."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNTER = Counter(
	"spark_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"spark_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

WS_SESSIONS = Gauge(
	"spark_ws_sessions_active",
	"Live chat sessions held by this process",
)

WS_HANDSHAKE_REJECTS = Counter(
	"spark_ws_handshake_rejects_total",
	"Upgrade requests refused before a session was created",
	["reason"],
)

WS_CLOSES = Counter(
	"spark_ws_closes_total",
	"Chat sessions closed",
	["reason"],
)

CHAT_INBOUND = Counter(
	"spark_chat_inbound_events_total",
	"Inbound chat events accepted by the router",
	["event"],
)

CHAT_OUTBOUND = Counter(
	"spark_chat_outbound_events_total",
	"Outbound chat events enqueued to sessions",
	["event"],
)

CHAT_ERRORS = Counter(
	"spark_chat_errors_total",
	"Error events reported to senders",
	["code"],
)

CHAT_HANDLER_FAILURES = Counter(
	"spark_chat_handler_failures_total",
	"Unexpected failures inside chat event handlers",
	["event"],
)

CHAT_DROPPED_FRAMES = Counter(
	"spark_chat_dropped_frames_total",
	"Queued non-critical frames dropped to relieve backpressure",
	["event"],
)

CHAT_BUS_EVENTS = Counter(
	"spark_chat_bus_events_total",
	"Pub/sub envelopes consumed from other nodes",
	["result"],
)

CHAT_POLICY_VERDICTS = Counter(
	"spark_chat_policy_verdicts_total",
	"Content policy verdicts for chat text",
	["verdict"],
)

RATE_LIMITED_EVENTS = Counter(
	"spark_rate_limited_total",
	"Events rejected due to rate limiting",
	["action"],
)

RATE_LIMIT_DEGRADED = Counter(
	"spark_rate_limit_degraded_total",
	"Rate limit checks served by the in-process fallback",
	["action"],
)

EXTERNAL_CALL_FAILURES = Counter(
	"spark_external_call_failures_total",
	"Repository, presence or policy calls that failed or timed out",
	["operation", "attempt"],
)

PRESENCE_TRANSITIONS = Counter(
	"spark_presence_transitions_total",
	"Presence online/offline transitions emitted",
	["status"],
)

EPHEMERAL_ACCESS = Counter(
	"spark_ephemeral_access_total",
	"Ephemeral photo access attempts",
	["stage", "result"],
)

BACKGROUND_RUNS = Counter(
	"spark_background_runs_total",
	"Background job executions",
	["name", "result"],
)

BACKGROUND_DURATION = Histogram(
	"spark_background_duration_seconds",
	"Background job duration in seconds",
	["name"],
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected() -> None:
	WS_SESSIONS.inc()


def socket_disconnected(reason: str) -> None:
	WS_SESSIONS.dec()
	WS_CLOSES.labels(reason=reason).inc()


def socket_rejected(reason: str) -> None:
	WS_HANDSHAKE_REJECTS.labels(reason=reason).inc()


def inc_chat_inbound(event: str) -> None:
	CHAT_INBOUND.labels(event=event).inc()


def inc_chat_outbound(event: str) -> None:
	CHAT_OUTBOUND.labels(event=event).inc()


def inc_chat_error(code: str) -> None:
	CHAT_ERRORS.labels(code=code).inc()


def inc_handler_failure(event: str) -> None:
	CHAT_HANDLER_FAILURES.labels(event=event).inc()


def inc_dropped_frame(event: str) -> None:
	CHAT_DROPPED_FRAMES.labels(event=event).inc()


def inc_bus_event(result: str) -> None:
	CHAT_BUS_EVENTS.labels(result=result).inc()


def inc_policy_verdict(verdict: str) -> None:
	CHAT_POLICY_VERDICTS.labels(verdict=verdict).inc()


def inc_rate_limited(action: str) -> None:
	RATE_LIMITED_EVENTS.labels(action=action).inc()


def inc_rate_limit_degraded(action: str) -> None:
	RATE_LIMIT_DEGRADED.labels(action=action).inc()


def inc_external_failure(operation: str, attempt: int) -> None:
	EXTERNAL_CALL_FAILURES.labels(operation=operation, attempt=str(attempt)).inc()


def inc_presence_transition(status: str) -> None:
	PRESENCE_TRANSITIONS.labels(status=status).inc()


def inc_ephemeral_access(stage: str, result: str) -> None:
	EPHEMERAL_ACCESS.labels(stage=stage, result=result).inc()


def record_job_run(name: str, *, result: str, duration_seconds: float | None = None) -> None:
	BACKGROUND_RUNS.labels(name=name, result=result).inc()
	if duration_seconds is not None:
		BACKGROUND_DURATION.labels(name=name).observe(duration_seconds)
