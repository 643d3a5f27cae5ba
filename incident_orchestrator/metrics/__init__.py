"""
Metrics module - metric collection and normalization.

This module contains:
    - client: Prometheus-compatible provider with circuit breaker
    - gateway: Fan-out gateway with normalization and aggregation cache
"""

from incident_orchestrator.metrics.client import (
    CircuitBreakerState,
    PrometheusMetricsProvider,
    build_selector,
)
from incident_orchestrator.metrics.gateway import MetricAggregation, MetricsGateway

__all__ = [
    # Client
    "PrometheusMetricsProvider",
    "CircuitBreakerState",
    "build_selector",
    # Gateway
    "MetricsGateway",
    "MetricAggregation",
]
