"""Central registry for Prometheus metrics used by the sync engine."""

from __future__ import annotations

from prometheus_client import Counter, Gauge

INBOUND_EVENTS = Counter(
	"chatsync_inbound_events_total",
	"Inbound envelopes dispatched, by type",
	["type"],
)

INBOUND_DISCARDED = Counter(
	"chatsync_inbound_discarded_total",
	"Inbound envelopes discarded before dispatch",
	["reason"],
)

DUPLICATE_EVENTS = Counter(
	"chatsync_duplicate_events_total",
	"Server-confirmed messages observed more than once and absorbed",
)

RECONCILIATIONS = Counter(
	"chatsync_reconciliations_total",
	"Temporary messages replaced by confirmed ones",
	["mode"],
)

DELIVERY_TRANSITIONS = Counter(
	"chatsync_delivery_transitions_total",
	"Delivery status transitions applied",
	["from_status", "to_status"],
)

OUTBOX_DEPTH = Gauge(
	"chatsync_outbox_depth",
	"Socket-bound actions waiting for the connection",
)

OUTBOX_REPLAYED = Counter(
	"chatsync_outbox_replayed_total",
	"Queued actions replayed after reconnecting",
)

OUTBOX_DISCARDED = Counter(
	"chatsync_outbox_discarded_total",
	"Queued actions dropped without being sent",
	["reason"],
)

RECONNECT_ATTEMPTS = Counter(
	"chatsync_reconnect_attempts_total",
	"Reconnection attempts scheduled",
)

CONNECTION_STATE = Gauge(
	"chatsync_connection_state",
	"Current duplex connection state (1 for the active state)",
	["state"],
)

CONNECTION_LOST = Counter(
	"chatsync_connection_lost_total",
	"Sessions that exhausted their reconnection attempts",
)

HEARTBEATS = Counter(
	"chatsync_heartbeats_total",
	"Liveness probes sent while open",
)

TYPING_EXPIRED = Counter(
	"chatsync_typing_expired_total",
	"Remote typing indicators removed by TTL instead of a stop event",
)

GATEWAY_SENDS = Counter(
	"chatsync_gateway_sends_total",
	"Sends routed through the request/response side channel",
	["result"],
)

ACK_TIMEOUTS = Counter(
	"chatsync_ack_timeouts_total",
	"Messages failed because no acknowledgement arrived in time",
)

_STATES = ("connecting", "open", "closed")


def inc_inbound(event_type: str) -> None:
	INBOUND_EVENTS.labels(type=event_type).inc()


def inc_discarded(reason: str) -> None:
	INBOUND_DISCARDED.labels(reason=reason).inc()


def inc_duplicate() -> None:
	DUPLICATE_EVENTS.inc()


def inc_reconciled(mode: str) -> None:
	RECONCILIATIONS.labels(mode=mode).inc()


def inc_delivery_transition(old: str, new: str) -> None:
	DELIVERY_TRANSITIONS.labels(from_status=old, to_status=new).inc()


def set_outbox_depth(depth: int) -> None:
	OUTBOX_DEPTH.set(float(depth))


def inc_outbox_replayed(count: int = 1) -> None:
	OUTBOX_REPLAYED.inc(count)


def inc_outbox_discarded(reason: str, count: int = 1) -> None:
	OUTBOX_DISCARDED.labels(reason=reason).inc(count)


def inc_reconnect_attempt() -> None:
	RECONNECT_ATTEMPTS.inc()


def set_connection_state(state: str) -> None:
	for name in _STATES:
		CONNECTION_STATE.labels(state=name).set(1.0 if name == state else 0.0)


def inc_connection_lost() -> None:
	CONNECTION_LOST.inc()


def inc_heartbeat() -> None:
	HEARTBEATS.inc()


def inc_typing_expired(count: int = 1) -> None:
	TYPING_EXPIRED.inc(count)


def inc_gateway_send(result: str) -> None:
	GATEWAY_SENDS.labels(result=result).inc()


def inc_ack_timeout() -> None:
	ACK_TIMEOUTS.inc()
