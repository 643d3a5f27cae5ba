"""
Rolling statistical baseline per metric stream.

Each ``(namespace, metric_name)`` pair keeps a time-indexed pandas Series
trimmed to a trailing window. New points are buffered and folded into the
series the next time statistics are requested.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta

import numpy as np
import pandas as pd

from incident_orchestrator.core.logging import get_logger
from incident_orchestrator.core.models import MetricSample

logger = get_logger(__name__)

BaselineKey = tuple[str, str]


@dataclass(frozen=True)
class BaselineStats:
    """Mean and standard deviation of a stream over the trailing window."""

    mean: float
    std: float
    count: int

    def zscore(self, value: float) -> float | None:
        """Distance from the mean in standard deviations (None when std is 0)."""
        if self.std <= 0 or not np.isfinite(self.std):
            return None
        return abs(value - self.mean) / self.std


class RollingBaseline:
    """Trailing-window mean/stddev tracker for metric streams.

    Example:
        >>> baseline = RollingBaseline(window=timedelta(days=14), min_samples=30)
        >>> baseline.add("checkout", "latency_ms", ts, 120.0)
        >>> baseline.is_anomalous("checkout", "latency_ms", 400.0, ts)
    """

    def __init__(
        self,
        window: timedelta = timedelta(days=14),
        min_samples: int = 30,
        sigma: float = 3.0,
    ) -> None:
        self.window = window
        self.min_samples = min_samples
        self.sigma = sigma
        self._series: dict[BaselineKey, pd.Series] = {}
        self._pending: dict[BaselineKey, list[tuple[datetime, float]]] = {}
        self._lock = threading.Lock()

    def add(self, namespace: str, metric_name: str, timestamp: datetime, value: float) -> None:
        with self._lock:
            self._pending.setdefault((namespace, metric_name), []).append((timestamp, float(value)))

    def seed(self, samples: list[MetricSample]) -> int:
        """Bootstrap history from past samples. Returns the number added."""
        for sample in samples:
            self.add(sample.namespace, sample.name, sample.timestamp, sample.value)
        logger.debug(f"Seeded baseline with {len(samples)} samples")
        return len(samples)

    def _flush(self, key: BaselineKey) -> pd.Series:
        """Fold buffered points into the stored series and trim it."""
        series = self._series.get(key)
        pending = self._pending.pop(key, None)
        if pending:
            index = pd.DatetimeIndex([ts for ts, _ in pending])
            fresh = pd.Series([v for _, v in pending], index=index, dtype="float64")
            series = fresh if series is None else pd.concat([series, fresh])
            series = series.sort_index()
        if series is None:
            series = pd.Series(dtype="float64", index=pd.DatetimeIndex([]))
        if len(series):
            cutoff = series.index.max() - self.window
            series = series[series.index > cutoff]
        self._series[key] = series
        return series

    def stats(self, namespace: str, metric_name: str, at: datetime | None = None) -> BaselineStats | None:
        """Statistics over the window ending at ``at`` (or the latest point).

        Returns:
            None when fewer than ``min_samples`` points fall in the window.
        """
        key = (namespace, metric_name)
        with self._lock:
            series = self._flush(key)
        if at is not None and len(series):
            series = series[(series.index > at - self.window) & (series.index <= at)]
        count = int(series.count())
        if count < self.min_samples:
            return None
        return BaselineStats(mean=float(series.mean()), std=float(series.std()), count=count)

    def is_anomalous(
        self,
        namespace: str,
        metric_name: str,
        value: float,
        at: datetime | None = None,
    ) -> tuple[bool, float | None]:
        """Check ``value`` against the baseline.

        Returns:
            Tuple of (is_anomalous, zscore). The z-score is None when the
            baseline is not usable yet (too few samples or zero stddev).
        """
        stats = self.stats(namespace, metric_name, at)
        if stats is None:
            return False, None
        z = stats.zscore(value)
        if z is None:
            return False, None
        return z > self.sigma, z

    def sample_count(self, namespace: str, metric_name: str) -> int:
        key = (namespace, metric_name)
        with self._lock:
            return int(self._flush(key).count())

    def clear(self) -> None:
        with self._lock:
            self._series.clear()
            self._pending.clear()
