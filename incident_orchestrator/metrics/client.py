"""
Prometheus-compatible metrics provider.

This module provides a robust client for querying any backend that speaks
the Prometheus HTTP API (Prometheus, VictoriaMetrics, Mimir), with retry
logic, circuit breaker pattern, and proper error handling.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from types import TracebackType
from typing import Any

import requests
import urllib3

from incident_orchestrator.core.config import MetricsConfig, get_config
from incident_orchestrator.core.exceptions import (
    CircuitBreakerOpenError,
    MetricsUnavailableError,
)
from incident_orchestrator.core.logging import EventType, get_logger, log_event
from incident_orchestrator.core.models import MetricSample, TimeRange
from incident_orchestrator.core.protocols import MetricsProvider

logger = get_logger(__name__)

# Labels that identify the series rather than describe it
_RESERVED_LABELS = frozenset({"__name__", "namespace", "unit"})


# =============================================================================
# Circuit Breaker
# =============================================================================


@dataclass
class CircuitBreakerState:
    """Consecutive-failure counter guarding one metrics backend.

    After ``threshold`` failures in a row the breaker stays open for
    ``timeout_seconds`` measured from the latest failure. Any success closes
    it again.
    """

    failure_count: int = 0
    last_failure_time: float | None = None
    threshold: int = 5
    timeout_seconds: int = 300

    def record_success(self) -> None:
        self.failure_count = 0
        self.last_failure_time = None

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.monotonic()

    def _remaining(self) -> float:
        if self.failure_count < self.threshold or self.last_failure_time is None:
            return 0.0
        return self.timeout_seconds - (time.monotonic() - self.last_failure_time)

    def is_open(self) -> bool:
        return self._remaining() > 0

    def time_until_reset(self) -> float | None:
        """Seconds until the breaker closes, or None when already closed."""
        remaining = self._remaining()
        return remaining if remaining > 0 else None


# =============================================================================
# Query Helpers
# =============================================================================


def build_selector(namespace: str, metric_name: str, dimensions: dict[str, str]) -> str:
    """Build a PromQL series selector.

    Examples:
        >>> build_selector("checkout", "error_rate", {"region": "eu"})
        'error_rate{namespace="checkout",region="eu"}'
    """
    labels = {"namespace": namespace, **dimensions}
    matchers = ",".join(f'{k}="{_escape_label(v)}"' for k, v in sorted(labels.items()))
    return f"{metric_name}{{{matchers}}}"


def _escape_label(value: str) -> str:
    return str(value).replace("\\", "\\\\").replace('"', '\\"')


def _to_unix(value: datetime) -> float:
    return value.replace(tzinfo=timezone.utc).timestamp()


def _from_unix(value: float) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc).replace(tzinfo=None)


# =============================================================================
# Prometheus Provider
# =============================================================================


class PrometheusMetricsProvider(MetricsProvider):
    """Metrics provider backed by the Prometheus ``query_range`` API.

    One pooled session per backend. Each selector is retried with linear
    backoff and repeated failures trip a per-backend circuit breaker so a
    dead backend costs nothing until its timeout passes.

    Example:
        >>> provider = PrometheusMetricsProvider("http://prometheus:9090")
        >>> provider.query("checkout", ["error_rate"], {}, TimeRange.last(5))
    """

    def __init__(
        self,
        endpoint: str | None = None,
        config: MetricsConfig | None = None,
        name: str | None = None,
    ) -> None:
        self._config = config or get_config().metrics
        self._endpoint = (endpoint or self._config.endpoints[0]).rstrip("/")
        self.name = name or self._endpoint
        self._session = self._create_session()
        self._circuit_breaker = CircuitBreakerState(
            threshold=self._config.circuit_breaker_threshold,
            timeout_seconds=self._config.circuit_breaker_timeout_seconds,
        )

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def _create_session(self) -> requests.Session:
        """Session whose adapter retries the configured status codes."""
        session = requests.Session()

        adapter = requests.adapters.HTTPAdapter(
            pool_connections=self._config.pool_connections,
            pool_maxsize=self._config.pool_maxsize,
            max_retries=urllib3.util.retry.Retry(
                total=2,
                backoff_factor=self._config.retry_backoff_factor,
                status_forcelist=list(self._config.retry_status_forcelist),
            ),
            pool_block=False,
        )

        session.mount("http://", adapter)
        session.mount("https://", adapter)

        return session

    def is_circuit_open(self) -> bool:
        return self._circuit_breaker.is_open()

    def health_details(self, max_latency_ms: float = 5000) -> tuple[bool, dict[str, Any]]:
        """Probe the backend's ``/-/healthy`` endpoint.

        A backend counts as healthy when the probe returns 200 within
        ``max_latency_ms``. The details dict always carries ``healthy``,
        ``latency_ms``, ``status_code``, ``error`` and ``circuit_breaker_open``.
        """
        breaker_open = self.is_circuit_open()
        details: dict[str, Any] = {
            "healthy": False,
            "latency_ms": None,
            "status_code": None,
            "error": None,
            "circuit_breaker_open": breaker_open,
        }
        if breaker_open:
            details["error"] = f"{self.name}: breaker open after {self._circuit_breaker.failure_count} failures"
            return False, details

        started = time.monotonic()
        try:
            response = self._session.get(f"{self._endpoint}/-/healthy", timeout=self._config.timeout_seconds)
        except requests.exceptions.Timeout:
            details["error"] = f"{self.name}: no answer within {self._config.timeout_seconds}s"
            return False, details
        except requests.exceptions.ConnectionError as e:
            details["error"] = f"{self.name}: Connection failed ({e})"
            return False, details
        except requests.RequestException as e:
            details["error"] = f"{self.name}: probe error ({e})"
            return False, details

        elapsed_ms = (time.monotonic() - started) * 1000
        details["latency_ms"] = round(elapsed_ms, 2)
        details["status_code"] = response.status_code
        if response.status_code != 200:
            details["error"] = f"{self.name}: probe returned HTTP {response.status_code}"
        elif elapsed_ms > max_latency_ms:
            details["error"] = f"{self.name}: probe took {elapsed_ms:.0f}ms (limit {max_latency_ms:.0f}ms)"
        else:
            details["healthy"] = True
        return details["healthy"], details

    def health_check(self) -> bool:
        return self.health_details()[0]

    def query(
        self,
        namespace: str,
        metric_names: list[str],
        dimensions: dict[str, str],
        time_range: TimeRange,
    ) -> list[MetricSample]:
        """Fetch every metric over ``time_range``.

        Raises:
            CircuitBreakerOpenError: If the circuit breaker is open.
            MetricsUnavailableError: If the backend cannot answer.
        """
        if self.is_circuit_open():
            log_event(
                logger, logging.WARNING, EventType.CIRCUIT_BREAKER, namespace,
                "Circuit open, skipping query", provider=self.name,
            )
            raise CircuitBreakerOpenError(
                self.name,
                failures=self._circuit_breaker.failure_count,
                timeout_remaining=self._circuit_breaker.time_until_reset(),
            )

        samples: list[MetricSample] = []
        try:
            for metric_name in metric_names:
                selector = build_selector(namespace, metric_name, dimensions)
                payload = self._query_range_with_retry(namespace, selector, time_range)
                samples.extend(self._parse_matrix(payload, namespace, metric_name))
        except MetricsUnavailableError:
            self._circuit_breaker.record_failure()
            raise

        self._circuit_breaker.record_success()
        return samples

    def _query_range_with_retry(self, namespace: str, selector: str, time_range: TimeRange) -> dict[str, Any]:
        """One ``query_range`` call, retried up to ``max_retries`` times."""
        params = {
            "query": selector,
            "start": _to_unix(time_range.start),
            "end": _to_unix(time_range.end),
            "step": f"{self._config.query_step_seconds}s",
        }

        last_exception: Exception | None = None

        for attempt in range(self._config.max_retries):
            try:
                response = self._session.get(
                    f"{self._endpoint}/api/v1/query_range",
                    params=params,
                    timeout=self._config.timeout_seconds,
                )
                response.raise_for_status()
                result: dict[str, Any] = response.json()

                if result.get("status") == "error":
                    raise ValueError(f"backend error: {result.get('error', 'Unknown')}")

                return result

            except (requests.RequestException, ValueError) as e:
                last_exception = e
                if attempt < self._config.max_retries - 1:
                    time.sleep(0.5 * (attempt + 1))
                    continue
                break

        raise MetricsUnavailableError(
            namespace,
            metric_names=[selector.split("{", 1)[0]],
            reason=str(last_exception) if last_exception else "Max retries exceeded",
            cause=last_exception,
        )

    def _parse_matrix(
        self,
        payload: dict[str, Any],
        namespace: str,
        metric_name: str,
    ) -> list[MetricSample]:
        """Convert a ``matrix`` response into samples."""
        samples: list[MetricSample] = []
        for series in payload.get("data", {}).get("result", []):
            labels = series.get("metric", {})
            dims = {k: v for k, v in labels.items() if k not in _RESERVED_LABELS}
            unit = labels.get("unit", "")
            for point in series.get("values", []):
                try:
                    ts, raw = point[0], point[1]
                    value = float(raw)
                except (ValueError, TypeError, IndexError):
                    logger.debug(f"Skipping malformed point for {metric_name}: {point}")
                    continue
                samples.append(
                    MetricSample(
                        source=self.name,
                        namespace=namespace,
                        name=metric_name,
                        value=value,
                        unit=unit,
                        timestamp=_from_unix(ts),
                        dimensions=dims,
                    )
                )
        return samples

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> PrometheusMetricsProvider:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
