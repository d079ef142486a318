from __future__ import annotations

from prometheus_client import Counter, Gauge


SESSIONS_LIVE = Gauge(
    "waworker_sessions_live", "Number of live driver handles held in memory"
)
SESSIONS_READY = Gauge(
    "waworker_sessions_ready", "Number of live sessions ready to send messages"
)
SESSIONS_AWAITING_SCAN = Gauge(
    "waworker_sessions_awaiting_scan",
    "Number of live sessions waiting for a QR code to be scanned",
)
CREATION_TOTAL = Counter(
    "waworker_creation_total",
    "Session creation sequences grouped by outcome",
    labelnames=("outcome",),
)
DRIVER_EVENTS_TOTAL = Counter(
    "waworker_driver_events_total",
    "Lifecycle events received from drivers",
    labelnames=("kind",),
)
TEARDOWN_TOTAL = Counter(
    "waworker_teardown_total",
    "Live sessions torn down grouped by reason",
    labelnames=("reason",),
)
NUKE_FAILURES_TOTAL = Counter(
    "waworker_nuke_failures_total",
    "Session directories that could not be removed after all retries",
)
RECONCILER_FIXES_TOTAL = Counter(
    "waworker_reconciler_fixes_total",
    "Persisted statuses downgraded by the reconciler",
)


def update_session_gauges(snapshot: dict[str, int]) -> None:
    SESSIONS_LIVE.set(snapshot.get("live", 0))
    SESSIONS_READY.set(snapshot.get("ready", 0))
    SESSIONS_AWAITING_SCAN.set(snapshot.get("awaiting_scan", 0))


__all__ = [
    "SESSIONS_LIVE",
    "SESSIONS_READY",
    "SESSIONS_AWAITING_SCAN",
    "CREATION_TOTAL",
    "DRIVER_EVENTS_TOTAL",
    "TEARDOWN_TOTAL",
    "NUKE_FAILURES_TOTAL",
    "RECONCILER_FIXES_TOTAL",
    "update_session_gauges",
]
