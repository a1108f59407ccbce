"""
Prometheus metrics for the DeviceLink limb.

Collectors live on an injected registry, so each reconciler (and each
test) owns its own set instead of sharing process-global state.
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

logger = logging.getLogger(__name__)

SEND_LATENCY_BUCKETS = (0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)


class LimbMetrics:
    """Connection and send metrics, labelled by adaptor name."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.connections = Gauge(
            "limb_connections",
            "Live adaptor connections held by this limb",
            ["adaptor"],
            registry=self.registry,
        )
        self.send_errors = Counter(
            "limb_send_errors_total",
            "Failed sends of a device to its adaptor",
            ["adaptor"],
            registry=self.registry,
        )
        self.connect_errors = Counter(
            "limb_connect_errors_total",
            "Failed connects to an adaptor",
            ["adaptor"],
            registry=self.registry,
        )
        self.send_latency = Histogram(
            "limb_send_latency_seconds",
            "Latency of sending a device to its adaptor",
            ["adaptor"],
            buckets=SEND_LATENCY_BUCKETS,
            registry=self.registry,
        )

    def increase_connections(self, adaptor: str) -> None:
        self.connections.labels(adaptor=adaptor).inc()

    def decrease_connections(self, adaptor: str) -> None:
        self.connections.labels(adaptor=adaptor).dec()

    def increase_send_errors(self, adaptor: str) -> None:
        self.send_errors.labels(adaptor=adaptor).inc()

    def increase_connect_errors(self, adaptor: str) -> None:
        self.connect_errors.labels(adaptor=adaptor).inc()

    def observe_send_latency(self, adaptor: str, seconds: float) -> None:
        self.send_latency.labels(adaptor=adaptor).observe(seconds)


def start_metrics_server(port: int, registry: Optional[CollectorRegistry] = None):
    """Expose a registry over HTTP on ``port``."""
    start_http_server(port, registry=registry if registry is not None else REGISTRY)
    logger.info(f"Metrics endpoint listening on port {port}")
