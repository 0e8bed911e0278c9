"""
In-memory time-series store for engine metrics

Features:
- Bounded per-metric history (oldest points evicted first)
- Lookback and most-recent queries
- Descriptive statistics (mean, median, std, p95, p99)
- Z-score anomaly detection
- Holt double exponential smoothing forecasts
- Retention cleanup
"""

import logging
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
from scipy import stats

logger = logging.getLogger(__name__)


@dataclass
class MetricDataPoint:
    """Individual metric measurement"""
    timestamp: datetime
    value: float
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class MetricStatistics:
    """Descriptive statistics for one metric"""
    metric_name: str
    count: int = 0
    mean: float = 0.0
    median: float = 0.0
    std_dev: float = 0.0
    min: float = 0.0
    max: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    first_timestamp: Optional[datetime] = None
    last_timestamp: Optional[datetime] = None


class HoltForecaster:
    """Double exponential smoothing (level + trend)"""

    def __init__(self, alpha: float = 0.3, beta: float = 0.3):
        """
        Args:
            alpha: Level smoothing parameter (0-1)
            beta: Trend smoothing parameter (0-1)
        """
        self.alpha = alpha
        self.beta = beta
        self.level = 0.0
        self.trend = 0.0
        self.initialized = False

    def update(self, new_value: float) -> None:
        if not self.initialized:
            self.level = new_value
            self.trend = 0.0
            self.initialized = True
            return

        prev_level = self.level
        self.level = self.alpha * new_value + (1 - self.alpha) * (self.level + self.trend)
        self.trend = self.beta * (self.level - prev_level) + (1 - self.beta) * self.trend

    def fit(self, values: Iterable[float]) -> "HoltForecaster":
        for value in values:
            self.update(value)
        return self

    def predict(self, steps_ahead: int = 1) -> float:
        if not self.initialized:
            return 0.0
        return self.level + steps_ahead * self.trend


class TimeSeriesDatabase:
    """
    Thread-safe bounded in-memory time-series store

    Each metric keeps at most ``max_history_size`` points. Zero, negative and
    extreme values are stored as given.
    """

    def __init__(self, max_history_size: int = 10000):
        if max_history_size <= 0:
            raise ValueError("max_history_size must be positive")
        self.max_history_size = max_history_size
        self._series: Dict[str, deque] = defaultdict(lambda: deque(maxlen=self.max_history_size))
        self._lock = threading.RLock()
        self._total_points_stored = 0

    def store_metric(
        self,
        metric_name: str,
        value: float,
        timestamp: Optional[datetime] = None,
        labels: Optional[Dict[str, str]] = None
    ) -> None:
        """Store a single data point"""
        if not metric_name:
            raise ValueError("metric_name must not be empty")
        point = MetricDataPoint(
            timestamp=timestamp or datetime.utcnow(),
            value=float(value),
            labels=dict(labels or {})
        )
        with self._lock:
            self._series[metric_name].append(point)
            self._total_points_stored += 1

    def store_batch(
        self,
        values: Dict[str, float],
        timestamp: Optional[datetime] = None
    ) -> int:
        """Store several metrics sharing one timestamp. Returns the number stored."""
        timestamp = timestamp or datetime.utcnow()
        with self._lock:
            for name, value in values.items():
                self.store_metric(name, value, timestamp)
        return len(values)

    def get_history(
        self,
        metric_name: str,
        lookback: Optional[timedelta] = None,
        now: Optional[datetime] = None
    ) -> List[MetricDataPoint]:
        """Points within ``lookback`` of ``now`` (all points when lookback is None), oldest first"""
        with self._lock:
            points = list(self._series.get(metric_name, ()))
        if lookback is not None:
            cutoff = (now or datetime.utcnow()) - lookback
            points = [p for p in points if p.timestamp >= cutoff]
        return sorted(points, key=lambda p: p.timestamp)

    def get_recent_metrics(self, metric_name: str, count: int) -> List[MetricDataPoint]:
        """Most recent ``count`` points, oldest first"""
        if count <= 0:
            return []
        with self._lock:
            points = list(self._series.get(metric_name, ()))
        return points[-count:]

    def get_values(self, metric_name: str, lookback: Optional[timedelta] = None) -> List[float]:
        return [p.value for p in self.get_history(metric_name, lookback)]

    def latest_value(self, metric_name: str) -> Optional[float]:
        with self._lock:
            series = self._series.get(metric_name)
            return series[-1].value if series else None

    def history_span(self, metric_name: str) -> timedelta:
        """Time between the oldest and newest stored point"""
        with self._lock:
            series = self._series.get(metric_name)
            if not series or len(series) < 2:
                return timedelta(0)
            timestamps = [p.timestamp for p in series]
        return max(timestamps) - min(timestamps)

    def get_statistics(
        self,
        metric_name: str,
        lookback: Optional[timedelta] = None
    ) -> MetricStatistics:
        """Descriptive statistics over the selected history"""
        points = self.get_history(metric_name, lookback)
        result = MetricStatistics(metric_name=metric_name, count=len(points))
        if not points:
            return result

        values = np.array([p.value for p in points], dtype=float)
        with np.errstate(over='ignore', invalid='ignore'):
            result.mean = float(np.mean(values))
            result.median = float(np.median(values))
            result.std_dev = float(np.std(values))
            result.p95 = float(np.percentile(values, 95))
            result.p99 = float(np.percentile(values, 99))
        result.min = float(np.min(values))
        result.max = float(np.max(values))
        result.first_timestamp = points[0].timestamp
        result.last_timestamp = points[-1].timestamp
        return result

    def detect_anomalies(
        self,
        metric_name: str,
        threshold: float = 3.0,
        lookback: Optional[timedelta] = None
    ) -> List[Tuple[MetricDataPoint, float]]:
        """Points whose absolute z-score exceeds ``threshold``"""
        points = self.get_history(metric_name, lookback)
        if len(points) < 3:
            return []

        values = np.array([p.value for p in points], dtype=float)
        with np.errstate(over='ignore', invalid='ignore', divide='ignore'):
            scores = stats.zscore(values)
        anomalies = [
            (point, float(score))
            for point, score in zip(points, scores)
            if np.isfinite(score) and abs(score) > threshold
        ]
        if anomalies:
            logger.debug(f"Detected {len(anomalies)} anomalies in {metric_name}")
        return anomalies

    def forecast(
        self,
        metric_name: str,
        steps_ahead: int = 1,
        alpha: float = 0.3,
        beta: float = 0.3
    ) -> Optional[float]:
        """Holt forecast ``steps_ahead`` samples past the newest point, None without history"""
        values = self.get_values(metric_name)
        if not values:
            return None
        return HoltForecaster(alpha, beta).fit(values).predict(steps_ahead)

    def cleanup_old_data(self, retention: timedelta, now: Optional[datetime] = None) -> int:
        """Drop points older than ``retention``. Returns the number removed."""
        cutoff = (now or datetime.utcnow()) - retention
        removed = 0
        with self._lock:
            for name in list(self._series.keys()):
                series = self._series[name]
                kept = [p for p in series if p.timestamp >= cutoff]
                removed += len(series) - len(kept)
                if kept:
                    self._series[name] = deque(kept, maxlen=self.max_history_size)
                else:
                    del self._series[name]
        if removed:
            logger.info(f"Removed {removed} metric points older than {retention}")
        return removed

    def metric_names(self) -> List[str]:
        with self._lock:
            return sorted(self._series.keys())

    def size(self, metric_name: str) -> int:
        with self._lock:
            series = self._series.get(metric_name)
            return len(series) if series else 0

    def get_storage_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "metrics": len(self._series),
                "points": sum(len(s) for s in self._series.values()),
                "total_points_stored": self._total_points_stored,
                "max_history_size": self.max_history_size
            }

    def clear(self) -> None:
        with self._lock:
            self._series.clear()
