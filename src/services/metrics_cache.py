"""
Rolling-window metrics cache

Keeps bounded per-key sample windows (LRU-evicted beyond a key capacity),
connection trend data and connection breakdown snapshots. Feeds hourly
profiles to seasonal pattern detection.
"""

import logging
import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import numpy as np

from src.services.time_series_db import TimeSeriesDatabase
from src.utils.window_aligner import WindowAligner

logger = logging.getLogger(__name__)

CONNECTION_COUNT_METRIC = "ConnectionCount"


@dataclass
class WindowSample:
    """Single sample in a rolling window"""
    timestamp: datetime
    count: int


@dataclass
class ConnectionBreakdown:
    """Connection counts split by category (e.g. transport or client type)"""
    timestamp: datetime
    counts: Dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.counts.values())


class ConnectionMetricsCache:
    """
    Thread-safe rolling-window cache for connection metrics

    Features:
    - At most ``max_windows`` keys, least recently written evicted first
    - At most ``window_size`` samples per key
    - Trend points mirrored into the time-series store
    - Bounded breakdown history
    """

    def __init__(
        self,
        time_series_db: Optional[TimeSeriesDatabase] = None,
        max_windows: int = 1000,
        window_size: int = 288,
        breakdown_history_size: int = 288
    ):
        if max_windows <= 0 or window_size <= 0:
            raise ValueError("max_windows and window_size must be positive")
        self.time_series_db = time_series_db
        self.max_windows = max_windows
        self.window_size = window_size
        self._windows: "OrderedDict[str, deque]" = OrderedDict()
        self._trend: deque = deque(maxlen=window_size)
        self._breakdowns: deque = deque(maxlen=breakdown_history_size)
        self._lock = threading.RLock()
        self.evictions = 0

    def cache_metric_with_rolling_window(
        self,
        window_key: str,
        count: int,
        timestamp: Optional[datetime] = None
    ) -> None:
        """Append a count to the window for ``window_key``; any int (zero, negative, huge) is accepted"""
        sample = WindowSample(timestamp=timestamp or datetime.utcnow(), count=int(count))
        key = window_key if window_key is not None else ""
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                while len(self._windows) >= self.max_windows:
                    self._windows.popitem(last=False)
                    self.evictions += 1
                window = deque(maxlen=self.window_size)
                self._windows[key] = window
            else:
                self._windows.move_to_end(key)
            window.append(sample)

    def cache_for_window(self, prefix: str, count: int, timestamp: Optional[datetime] = None,
                         window: str = 'H1') -> str:
        """Cache under the aligned key for ``timestamp`` and return that key"""
        timestamp = timestamp or datetime.utcnow()
        key = WindowAligner.window_key(prefix, timestamp, window)
        self.cache_metric_with_rolling_window(key, count, timestamp)
        return key

    def store_connection_trend_data(self, count: int, timestamp: Optional[datetime] = None) -> None:
        """Record a connection count trend point"""
        timestamp = timestamp or datetime.utcnow()
        with self._lock:
            self._trend.append(WindowSample(timestamp=timestamp, count=int(count)))
        if self.time_series_db is not None:
            self.time_series_db.store_metric(CONNECTION_COUNT_METRIC, count, timestamp)

    def store_connection_breakdown(
        self,
        counts: Dict[str, int],
        timestamp: Optional[datetime] = None
    ) -> ConnectionBreakdown:
        """Record a per-category connection breakdown"""
        breakdown = ConnectionBreakdown(
            timestamp=timestamp or datetime.utcnow(),
            counts={str(k): int(v) for k, v in (counts or {}).items()}
        )
        with self._lock:
            self._breakdowns.append(breakdown)
        return breakdown

    def get_window_values(self, window_key: str) -> List[int]:
        with self._lock:
            window = self._windows.get(window_key)
            return [s.count for s in window] if window else []

    def get_window_average(self, window_key: str) -> float:
        values = self.get_window_values(window_key)
        if not values:
            return 0.0
        return float(np.mean(np.array(values, dtype=float)))

    def get_trend(self, lookback: Optional[timedelta] = None) -> List[WindowSample]:
        with self._lock:
            samples = list(self._trend)
        if lookback is not None:
            cutoff = datetime.utcnow() - lookback
            samples = [s for s in samples if s.timestamp >= cutoff]
        return samples

    def get_breakdown_history(self) -> List[ConnectionBreakdown]:
        with self._lock:
            return list(self._breakdowns)

    def get_hourly_profile(self) -> List[float]:
        """
        Mean trend count per hour, in chronological hour buckets.

        Returns:
            One value per hour that has samples, oldest hour first
        """
        buckets: "OrderedDict[datetime, List[int]]" = OrderedDict()
        for sample in sorted(self.get_trend(), key=lambda s: s.timestamp):
            hour = WindowAligner.align_to_window(sample.timestamp, 'H1')
            buckets.setdefault(hour, []).append(sample.count)
        return [float(np.mean(counts)) for counts in buckets.values()]

    def window_keys(self) -> List[str]:
        with self._lock:
            return list(self._windows.keys())

    def window_count(self) -> int:
        with self._lock:
            return len(self._windows)

    def get_cache_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "windows": len(self._windows),
                "max_windows": self.max_windows,
                "window_size": self.window_size,
                "trend_points": len(self._trend),
                "breakdowns": len(self._breakdowns),
                "evictions": self.evictions
            }
