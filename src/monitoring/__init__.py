"""
Monitoring and metrics infrastructure for Punto Settlement.

This package provides:
- Application metrics collection (counters, gauges, histograms)
- Structured logging with JSON output and redaction
- Request timing middleware

Usage:
    from monitoring import metrics, get_logger

    metrics.increment("payments_created_total")
    with metrics.timer("payout_confirmation_ms"):
        chain.await_confirmation(pending)

    logger = get_logger(__name__)
    logger.info("Payment marked paid", extra={"payment_id": payment.id})
"""

from monitoring.logging import LoggingContext, configure_logging, get_logger
from monitoring.metrics import MetricsCollector, metrics
from monitoring.middleware import setup_request_logging

__all__ = [
    "LoggingContext",
    "MetricsCollector",
    "configure_logging",
    "get_logger",
    "metrics",
    "setup_request_logging",
]
