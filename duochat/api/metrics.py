"""
Prometheus metrics for the messaging engine.

Tracks WebSocket sessions, event traffic, message persistence, push
notifications, and presence fan-out.
"""
from prometheus_client import Counter, Gauge, Histogram

# WebSocket session metrics
websocket_sessions_active = Gauge(
    "duochat_websocket_sessions_active",
    "Number of active WebSocket sessions",
    labelnames=["instance"]
)

websocket_users_connected = Gauge(
    "duochat_websocket_users_connected",
    "Number of unique users currently connected",
    labelnames=["instance"]
)

websocket_sessions_total = Counter(
    "duochat_websocket_sessions_total",
    "Total number of WebSocket sessions admitted",
    labelnames=["instance"]
)

websocket_disconnections_total = Counter(
    "duochat_websocket_disconnections_total",
    "Total number of WebSocket sessions released",
    labelnames=["instance", "reason"]
)

websocket_rejections_total = Counter(
    "duochat_websocket_rejections_total",
    "Connection attempts refused before admission",
    labelnames=["reason"]
)

websocket_events_received_total = Counter(
    "duochat_websocket_events_received_total",
    "Total number of events received from clients",
    labelnames=["event"]
)

websocket_events_sent_total = Counter(
    "duochat_websocket_events_sent_total",
    "Total number of events sent to sessions",
    labelnames=["event"]
)

# Message pipeline metrics
messages_persisted_total = Counter(
    "duochat_messages_persisted_total",
    "Total number of messages persisted",
    labelnames=["type"]
)

message_send_failures_total = Counter(
    "duochat_message_send_failures_total",
    "Sends that failed at persistence",
)

message_send_duration_seconds = Histogram(
    "duochat_message_send_duration_seconds",
    "Time from accepted chat_message event to completed fan-out",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)

push_notifications_total = Counter(
    "duochat_push_notifications_total",
    "Push notification jobs by outcome",
    labelnames=["outcome"]
)

# Delivery and presence metrics
message_status_transitions_total = Counter(
    "duochat_message_status_transitions_total",
    "Message status transitions applied",
    labelnames=["status"]
)

presence_events_total = Counter(
    "duochat_presence_events_total",
    "Presence events addressed to contacts",
    labelnames=["state"]
)


def update_websocket_metrics(registry) -> None:
    """
    Update session gauges from registry state.

    Args:
        registry: SessionRegistry instance
    """
    websocket_sessions_active.labels(instance="api").set(registry.get_session_count())
    websocket_users_connected.labels(instance="api").set(registry.get_user_count())
