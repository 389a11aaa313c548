"""Prometheus metrics for feed maintenance and queries.

The exporter is opt-in: set ``METRICS_EXPORTER_AUTO_START=1`` to serve metrics
on ``METRICS_PORT`` as soon as this module is imported, or call
``ensure_metrics_exporter()`` from a long-running entry point.
"""

from __future__ import annotations

import os
import signal
import threading
from types import FrameType
from typing import Final

from prometheus_client import Counter, Histogram, start_http_server

from feed_engine.config.logging_config import get_logger

logger = get_logger(__name__)

FEED_MEMBERSHIP_MUTATIONS_TOTAL: Final[Counter] = Counter(
    "feed_membership_mutations_total",
    "Feed membership rows added or removed",
    labelnames=("operation",),
)

GROUPED_ENTRY_WRITES_TOTAL: Final[Counter] = Counter(
    "grouped_feed_entry_writes_total",
    "Grouped feed entry recomputations by outcome",
    labelnames=("outcome",),
)

GROUP_RESOLUTIONS_TOTAL: Final[Counter] = Counter(
    "similarity_group_resolutions_total",
    "Similarity group resolutions by outcome",
    labelnames=("outcome",),
)

CONSISTENCY_WARNINGS_TOTAL: Final[Counter] = Counter(
    "feed_consistency_warnings_total",
    "Inconsistencies detected between feed rows and events",
    labelnames=("kind",),
)

STORE_RETRIES_TOTAL: Final[Counter] = Counter(
    "feed_store_retries_total",
    "Transactions retried after a transient store error",
    labelnames=("operation",),
)

MIGRATION_ROWS_TOTAL: Final[Counter] = Counter(
    "feed_migration_rows_total",
    "Rows visited by backfill and repair jobs",
    labelnames=("job", "result"),
)

FEED_QUERY_DURATION_SECONDS: Final[Histogram] = Histogram(
    "feed_query_duration_seconds",
    "Latency of feed page queries",
    labelnames=("direction", "mode"),
)

_EXPORTER_LOCK = threading.Lock()
_EXPORTER_STARTED = False
_EXPORTER_STOP_EVENT = threading.Event()
_DEFAULT_METRICS_PORT: Final[int] = 9000
_METRICS_PORT_ENV: Final[str] = "METRICS_PORT"
METRICS_EXPORTER_AUTO_START_ENV: Final[str] = "METRICS_EXPORTER_AUTO_START"


def _should_autostart() -> bool:
    """Return True when the metrics exporter should auto-start."""

    raw_value = os.getenv(METRICS_EXPORTER_AUTO_START_ENV, "0")
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def _resolve_metrics_port() -> int:
    port_raw = os.getenv(_METRICS_PORT_ENV)
    try:
        return int(port_raw) if port_raw else _DEFAULT_METRICS_PORT
    except ValueError:
        logger.warning("invalid_metrics_port", port=port_raw)
        return _DEFAULT_METRICS_PORT


def ensure_metrics_exporter() -> None:
    """Start Prometheus HTTP exporter once per process."""

    global _EXPORTER_STARTED
    with _EXPORTER_LOCK:
        if _EXPORTER_STARTED:
            return

        port = _resolve_metrics_port()
        try:
            start_http_server(port)
        except OSError as exc:
            logger.error("metrics_exporter_start_failed", port=port, error=str(exc))
            raise

        _EXPORTER_STARTED = True
        logger.info("metrics_exporter_started", port=port)


def _handle_shutdown_signal(signum: int, frame: FrameType | None) -> None:
    logger.info("metrics_exporter_shutdown_signal", signal=signum)
    _EXPORTER_STOP_EVENT.set()


def run_metrics_exporter_forever() -> None:
    """Start the exporter and block until a shutdown signal is received."""

    ensure_metrics_exporter()
    for watched_signal in (signal.SIGTERM, signal.SIGINT):
        signal.signal(watched_signal, _handle_shutdown_signal)

    _EXPORTER_STOP_EVENT.wait()
    logger.info("metrics_exporter_stopped")


__all__ = [
    "CONSISTENCY_WARNINGS_TOTAL",
    "FEED_MEMBERSHIP_MUTATIONS_TOTAL",
    "FEED_QUERY_DURATION_SECONDS",
    "GROUPED_ENTRY_WRITES_TOTAL",
    "GROUP_RESOLUTIONS_TOTAL",
    "MIGRATION_ROWS_TOTAL",
    "STORE_RETRIES_TOTAL",
    "ensure_metrics_exporter",
    "run_metrics_exporter_forever",
]


if _should_autostart():
    ensure_metrics_exporter()


if __name__ == "__main__":
    run_metrics_exporter_forever()
