# Prometheus metrics for graphloader runs

from typing import Optional

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
)

from .logging import get_logger

logger = get_logger(__name__)

# ===== Record metrics =====
records_total = Counter(
    "graphloader_records_total",
    "Input records by final status",
    ["status"],  # committed, failed, skipped
)

# ===== Batch / transaction metrics =====
batches_total = Counter(
    "graphloader_batches_total",
    "Batches by final transaction outcome",
    ["outcome"],  # committed, fatal, skipped
)

transaction_conflicts_total = Counter(
    "graphloader_transaction_conflicts_total",
    "Transaction attempts aborted by a write conflict",
)

transaction_errors_total = Counter(
    "graphloader_transaction_errors_total",
    "Transaction attempts that failed, by error class",
    ["error_class"],
)

transaction_duration_seconds = Histogram(
    "graphloader_transaction_duration_seconds",
    "Wall time of one transaction attempt (lookup, mutate, commit)",
    ["outcome"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

transactions_in_flight = Gauge(
    "graphloader_transactions_in_flight",
    "Transaction executor invocations currently running",
)

properties_written_total = Counter(
    "graphloader_properties_written_total",
    "Node properties and edges written by committed transactions",
)

# ===== Service info =====
service_info = Info(
    "graphloader",
    "graphloader run information",
)


def setup_metrics(port: Optional[int] = None, **info: str) -> None:
    """
    Setup Prometheus metrics collection.

    Args:
        port: If given, expose /metrics over HTTP on this port
        info: Static labels describing the run (endpoint, label, ...)
    """
    from graphloader import __version__

    service_info.info({"version": __version__, **info})

    if port:
        start_http_server(port)
        logger.info("Prometheus metrics exporter started", port=port)
