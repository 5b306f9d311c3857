from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge

REGISTRY = CollectorRegistry()

# Throttle / dedup stage
notifications_shown = Counter(
    "clinic_realtime_notifications_shown_total",
    "Toasts surfaced to the user",
    labelnames=("kind",),
    registry=REGISTRY,
)
notifications_dropped = Counter(
    "clinic_realtime_notifications_dropped_total",
    "Notifications coalesced by the per-key cool-down window",
    labelnames=("kind",),
    registry=REGISTRY,
)
desktop_notifications = Counter(
    "clinic_realtime_desktop_notifications_total",
    "Desktop escalation decisions by outcome",
    labelnames=("outcome",),
    registry=REGISTRY,
)

# Subscription multiplexer
change_events = Counter(
    "clinic_realtime_change_events_total",
    "Raw change-feed payloads received",
    labelnames=("table", "event_type"),
    registry=REGISTRY,
)
enrichment_failures = Counter(
    "clinic_realtime_enrichment_failures_total",
    "Best-effort lookups that degraded to a generic label",
    labelnames=("table",),
    registry=REGISTRY,
)
live_sessions = Gauge(
    "clinic_realtime_live_sessions",
    "Multiplexers with open subscriptions",
    registry=REGISTRY,
)

# Queue reorder
reorders = Counter(
    "clinic_realtime_queue_reorders_total",
    "Queue reorder operations by terminal state",
    labelnames=("outcome",),
    registry=REGISTRY,
)

# Outbox
outbox_deliveries = Counter(
    "clinic_realtime_outbox_deliveries_total",
    "Outbox delivery attempts by final result",
    labelnames=("result",),
    registry=REGISTRY,
)
