"""Metric definitions for the realtime core."""

from __future__ import annotations

from .registry import registry


realtime_connections = registry.gauge(
    "realtime_active_connections",
    "Number of websocket connections registered on this instance.",
)

realtime_subscriptions = registry.gauge(
    "realtime_channel_subscriptions",
    "Number of connection-to-channel subscriptions by channel kind.",
    label_names=("kind",),
)

realtime_events_total = registry.counter(
    "realtime_events_total",
    "Realtime events processed, by topic, direction and action.",
    label_names=("topic", "direction", "action"),
)

realtime_dropped_events_total = registry.counter(
    "realtime_dropped_events_total",
    "Inbound socket events dropped without a reply.",
    label_names=("event", "reason"),
)

realtime_deliveries_total = registry.counter(
    "realtime_deliveries_total",
    "Outbound websocket frames by delivery outcome.",
    label_names=("outcome",),
)

realtime_publish_errors_total = registry.counter(
    "realtime_publish_errors_total",
    "Failures publishing to the cross-instance broker.",
    label_names=("reason",),
)

presence_online_users = registry.gauge(
    "presence_online_users",
    "Users announced online through at least one local connection.",
)

realtime_transport_restarts_total = registry.counter(
    "realtime_transport_restarts_total",
    "Broker reconnect attempts scheduled, by trigger.",
    label_names=("reason",),
)
