"""
Metrics gateway - the single entry point for time-series data.

The gateway fans a query out to every configured provider, normalizes what
comes back and keeps a running aggregation per metric stream. Nothing else
in the pipeline talks to a provider directly.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime

from incident_orchestrator.core.config import MetricsConfig, get_config
from incident_orchestrator.core.exceptions import (
    MetricsUnavailableError,
    TransientInfraError,
)
from incident_orchestrator.core.logging import EventType, get_logger, log_event
from incident_orchestrator.core.models import MetricSample, TimeRange, stream_key
from incident_orchestrator.core.protocols import MetricsProvider
from incident_orchestrator.core.utils import coerce_float, retry_with_backoff

logger = get_logger(__name__)


@dataclass
class MetricAggregation:
    """Running statistics for one metric stream."""

    sum: float = 0.0
    count: int = 0
    min: float | None = None
    max: float | None = None
    last_timestamp: datetime | None = None

    @property
    def average(self) -> float | None:
        return self.sum / self.count if self.count else None

    def add(self, value: float, timestamp: datetime) -> None:
        self.sum += value
        self.count += 1
        self.min = value if self.min is None else min(self.min, value)
        self.max = value if self.max is None else max(self.max, value)
        if self.last_timestamp is None or timestamp > self.last_timestamp:
            self.last_timestamp = timestamp


class MetricsGateway:
    """Fan-out query layer over one or more metrics providers.

    Example:
        >>> gateway = MetricsGateway([PrometheusMetricsProvider()])
        >>> samples = gateway.query("checkout", ["error_rate"], {}, TimeRange.last(5))
    """

    def __init__(
        self,
        providers: list[MetricsProvider],
        config: MetricsConfig | None = None,
    ) -> None:
        self._providers = list(providers)
        self._config = config or get_config().metrics
        self._aggregations: dict[str, MetricAggregation] = {}
        self._lock = threading.Lock()

    @property
    def providers(self) -> list[MetricsProvider]:
        return list(self._providers)

    def query(
        self,
        namespace: str,
        metric_names: list[str],
        dimensions: dict[str, str] | None,
        time_range: TimeRange,
    ) -> list[MetricSample]:
        """Query every provider and return normalized samples.

        Args:
            namespace: Metric namespace.
            metric_names: Metrics to fetch.
            dimensions: Label filters.
            time_range: Interval to fetch.

        Returns:
            De-duplicated samples sorted by timestamp.

        Raises:
            MetricsUnavailableError: If every provider failed.
        """
        dims = dict(dimensions or {})
        collected: list[MetricSample] = []
        failures: list[str] = []

        for provider in self._providers:
            provider_name = getattr(provider, "name", type(provider).__name__)
            try:
                raw = retry_with_backoff(
                    lambda p=provider: p.query(namespace, list(metric_names), dims, time_range),
                    max_attempts=self._config.retry_attempts,
                    base_delay=self._config.retry_base_delay,
                    max_delay=self._config.retry_max_delay,
                    operation=f"metrics query via {provider_name}",
                )
            except TransientInfraError as e:
                self._record_failure(failures, namespace, provider_name, e.message)
                continue
            except Exception as e:
                self._record_failure(failures, namespace, provider_name, f"unexpected error: {e}")
                continue
            collected.extend(self._normalize(raw, provider_name))

        if len(failures) == len(self._providers):
            raise MetricsUnavailableError(
                namespace,
                metric_names=list(metric_names),
                reason="; ".join(failures) or "no providers configured",
            )

        samples = self._deduplicate(collected)
        self._update_aggregations(samples)

        log_event(
            logger, logging.DEBUG, EventType.METRICS_COLLECTED, namespace,
            f"Collected {len(samples)} samples", metrics=",".join(metric_names),
        )
        return samples

    @staticmethod
    def _record_failure(failures: list[str], namespace: str, provider_name: str, reason: str) -> None:
        failures.append(f"{provider_name}: {reason}")
        log_event(
            logger, logging.WARNING, EventType.METRICS_FAILED, namespace,
            "Provider failed, skipping", provider=provider_name, error=reason,
        )

    def _normalize(self, raw: list[MetricSample], provider_name: str) -> list[MetricSample]:
        """Coerce values to float, drop invalid points and stamp the source."""
        normalized: list[MetricSample] = []
        for sample in raw:
            value = coerce_float(sample.value)
            if value is None:
                logger.debug(f"Dropping non-numeric sample {sample.name}={sample.value!r} from {provider_name}")
                continue
            normalized.append(
                MetricSample(
                    source=provider_name,
                    namespace=sample.namespace,
                    name=sample.name,
                    value=value,
                    unit=sample.unit or "",
                    timestamp=sample.timestamp,
                    dimensions={str(k): str(v) for k, v in (sample.dimensions or {}).items()},
                )
            )
        return normalized

    @staticmethod
    def _deduplicate(samples: list[MetricSample]) -> list[MetricSample]:
        """Drop identical points reported by more than one provider."""
        seen: set[tuple] = set()
        unique: list[MetricSample] = []
        for sample in samples:
            key = (sample.stream_key(), sample.timestamp, sample.value)
            if key in seen:
                continue
            seen.add(key)
            unique.append(sample)
        unique.sort(key=lambda s: s.timestamp)
        return unique

    # =========================================================================
    # Aggregation Cache
    # =========================================================================

    def _update_aggregations(self, samples: list[MetricSample]) -> None:
        with self._lock:
            for sample in samples:
                aggregation = self._aggregations.setdefault(sample.stream_key(), MetricAggregation())
                aggregation.add(sample.value, sample.timestamp)

    def get_aggregation(
        self,
        namespace: str,
        name: str,
        dimensions: dict[str, str] | None = None,
    ) -> MetricAggregation | None:
        """Get running statistics for a metric stream, if any samples were seen."""
        with self._lock:
            aggregation = self._aggregations.get(stream_key(namespace, name, dimensions))
            if aggregation is None:
                return None
            return MetricAggregation(
                sum=aggregation.sum,
                count=aggregation.count,
                min=aggregation.min,
                max=aggregation.max,
                last_timestamp=aggregation.last_timestamp,
            )

    def clear_aggregations(self) -> None:
        with self._lock:
            self._aggregations.clear()

    def health_check(self) -> dict[str, bool]:
        """Health of each provider, keyed by provider name."""
        return {
            getattr(p, "name", type(p).__name__): bool(p.health_check())
            for p in self._providers
        }
