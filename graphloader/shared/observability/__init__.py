# Observability package
from .logging import get_logger, set_correlation_id, setup_logging
from .metrics import setup_metrics

__all__ = [
    "get_logger",
    "setup_logging",
    "set_correlation_id",
    "setup_metrics",
]
