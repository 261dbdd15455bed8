"""
OpenTelemetry Metrics

Delivery-status metrics for the outbox relay and the dispatcher. Relay and
consumer failures never reach the original request, so these counters and
the dead-letter tables are how operators see them.
"""

import logging
from typing import Optional, Dict, Any

from opentelemetry import metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    MetricReader,
    PeriodicExportingMetricReader,
)
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.resources import Resource, SERVICE_NAME

logger = logging.getLogger(__name__)

# Global meter
_meter: Optional[metrics.Meter] = None

# Metric instruments
_counters: Dict[str, metrics.Counter] = {}
_histograms: Dict[str, metrics.Histogram] = {}

COUNTERS = {
    "outbox_appended_total": "Events appended to the outbox",
    "outbox_published_total": "Outbox records acknowledged by the broker",
    "outbox_publish_failed_total": "Failed publish attempts",
    "outbox_dead_total": "Outbox records that exhausted their attempts",
    "outbox_claims_expired_total": "Expired claims returned to the pending pool",
    "dispatch_applied_total": "Events applied by a consumer",
    "dispatch_duplicates_total": "Redeliveries absorbed by the idempotency ledger",
    "dispatch_retries_total": "Deliveries left unacknowledged for redelivery",
    "dispatch_dead_lettered_total": "Deliveries routed to the dead-letter channel",
    "http_requests_total": "HTTP requests served",
}

HISTOGRAMS = {
    "outbox_batch_duration_seconds": "Relay batch duration",
    "dispatch_handler_duration_seconds": "Consumer handler duration",
    "http_request_duration_seconds": "HTTP request duration",
}


def init_metrics(
    service_name: str = "orderflow",
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False,
    export_interval_ms: int = 60000,
    extra_readers: Optional[list] = None
) -> metrics.Meter:
    """
    Initialize OpenTelemetry metrics.

    Args:
        service_name: Name of the service
        otlp_endpoint: OTLP exporter endpoint
        console_export: Enable console export for debugging
        export_interval_ms: Export interval in milliseconds
        extra_readers: Additional metric readers (e.g. InMemoryMetricReader in tests)

    Returns:
        Configured meter
    """
    global _meter

    readers: list[MetricReader] = list(extra_readers or [])

    if otlp_endpoint:
        otlp_exporter = OTLPMetricExporter(endpoint=otlp_endpoint, insecure=True)
        readers.append(PeriodicExportingMetricReader(
            otlp_exporter,
            export_interval_millis=export_interval_ms
        ))
        logger.info(f"OTel metrics: OTLP exporter configured -> {otlp_endpoint}")

    if console_export:
        readers.append(PeriodicExportingMetricReader(
            ConsoleMetricExporter(),
            export_interval_millis=export_interval_ms
        ))
        logger.info("OTel metrics: Console exporter enabled")

    resource = Resource.create({SERVICE_NAME: service_name})

    provider = MeterProvider(resource=resource, metric_readers=readers)
    metrics.set_meter_provider(provider)

    _meter = provider.get_meter(service_name)
    _counters.clear()
    _histograms.clear()
    _init_standard_metrics()

    logger.info(f"OTel metrics initialized: {service_name}")

    return _meter


def _init_standard_metrics():
    """Create the outbox and dispatcher instruments."""
    meter = get_meter()

    for name, description in COUNTERS.items():
        _counters[name] = meter.create_counter(name, description=description, unit="1")

    for name, description in HISTOGRAMS.items():
        _histograms[name] = meter.create_histogram(name, description=description, unit="s")


def get_meter() -> metrics.Meter:
    """Get the global meter."""
    global _meter
    if _meter is None:
        _meter = metrics.get_meter("orderflow")
    return _meter


def record_counter(
    name: str,
    value: int = 1,
    attributes: Dict[str, Any] = None
):
    """Record a counter metric."""
    if not _counters:
        _init_standard_metrics()
    if name in _counters:
        _counters[name].add(value, attributes or {})


def record_histogram(
    name: str,
    value: float,
    attributes: Dict[str, Any] = None
):
    """Record a histogram metric."""
    if not _histograms:
        _init_standard_metrics()
    if name in _histograms:
        _histograms[name].record(value, attributes or {})
