"""
Metrics aggregation for the optimization engine

Features:
- Per-request-type execution tracking (latency, memory, downstream calls)
- Immutable RequestExecutionMetrics snapshots per request type
- System resource sampling with psutil
- Latest named metric series for the engine's collection cycle
"""

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import psutil

from src.core.cancellation import throw_if_cancelled
from src.models.data_models import RequestExecutionMetrics

logger = logging.getLogger(__name__)

# Metric names shared with the engine and the health scorer
THROUGHPUT_METRIC = "ThroughputPerSecond"
CPU_UTILIZATION_METRIC = "CpuUtilization"
MEMORY_UTILIZATION_METRIC = "MemoryUtilization"
ERROR_RATE_METRIC = "ErrorRate"
AVERAGE_LATENCY_METRIC = "AverageResponseTimeMs"
P95_LATENCY_METRIC = "P95ResponseTimeMs"
ACTIVE_REQUESTS_METRIC = "ActiveRequests"

MetricSeries = List[Tuple[datetime, float]]


class MetricsAggregator(ABC):
    """Source of the latest named metric series"""

    @abstractmethod
    def get_latest_metrics(self) -> Dict[str, MetricSeries]:
        """Latest samples per metric name, oldest first"""

    @abstractmethod
    async def collect_all_metrics(self, cancel_event: Optional[Any] = None) -> Dict[str, MetricSeries]:
        """Take a fresh sample of every metric and return the full series"""

    def get_request_metrics(self, request_type: str) -> Optional[RequestExecutionMetrics]:
        return None

    def get_active_breakdown(self) -> Dict[str, int]:
        """In-flight executions per request type"""
        return {}


@dataclass
class _ExecutionRecord:
    timestamp: datetime
    duration_seconds: float
    success: bool
    memory_used: int = 0
    memory_allocated: int = 0
    database_calls: int = 0
    external_api_calls: int = 0


@dataclass
class _RequestTypeStats:
    records: deque = field(default_factory=lambda: deque(maxlen=1000))
    total: int = 0
    successful: int = 0
    in_flight: int = 0
    last_execution: Optional[datetime] = None


class SystemMetricsAggregator(MetricsAggregator):
    """
    In-process aggregator: request executions reported by the dispatch layer
    plus psutil resource samples.
    """

    def __init__(self, max_samples: int = 720, throughput_window: timedelta = timedelta(minutes=1)):
        self.max_samples = max_samples
        self.throughput_window = throughput_window
        self._series: Dict[str, deque] = defaultdict(lambda: deque(maxlen=self.max_samples))
        self._requests: Dict[str, _RequestTypeStats] = defaultdict(_RequestTypeStats)
        self._lock = threading.RLock()

    def execution_started(self, request_type: str) -> None:
        with self._lock:
            self._requests[request_type].in_flight += 1

    def record_execution(
        self,
        request_type: str,
        duration: timedelta,
        success: bool = True,
        memory_used: int = 0,
        memory_allocated: int = 0,
        database_calls: int = 0,
        external_api_calls: int = 0,
        timestamp: Optional[datetime] = None
    ) -> None:
        """Record one completed execution of ``request_type``"""
        timestamp = timestamp or datetime.utcnow()
        record = _ExecutionRecord(
            timestamp=timestamp,
            duration_seconds=duration.total_seconds(),
            success=success,
            memory_used=memory_used,
            memory_allocated=memory_allocated,
            database_calls=database_calls,
            external_api_calls=external_api_calls
        )
        with self._lock:
            stats = self._requests[request_type]
            stats.records.append(record)
            stats.total += 1
            stats.successful += 1 if success else 0
            stats.in_flight = max(0, stats.in_flight - 1)
            stats.last_execution = timestamp

    def get_active_breakdown(self) -> Dict[str, int]:
        with self._lock:
            return {name: s.in_flight for name, s in self._requests.items() if s.in_flight > 0}

    def get_request_metrics(self, request_type: str) -> Optional[RequestExecutionMetrics]:
        """Snapshot for one request type, None if it never executed"""
        with self._lock:
            stats = self._requests.get(request_type)
            if stats is None or not stats.records:
                return None
            records = list(stats.records)
            total, successful, in_flight = stats.total, stats.successful, stats.in_flight
            last_execution = stats.last_execution

        durations = np.array([r.duration_seconds for r in records], dtype=float)
        return RequestExecutionMetrics(
            total_executions=total,
            successful_executions=successful,
            failed_executions=total - successful,
            average_execution_time=timedelta(seconds=float(np.mean(durations))),
            p95_execution_time=timedelta(seconds=float(np.percentile(durations, 95))),
            concurrent_executions=in_flight,
            memory_usage=int(np.mean([r.memory_used for r in records])),
            memory_allocated=int(np.mean([r.memory_allocated for r in records])),
            database_calls=sum(r.database_calls for r in records),
            external_api_calls=sum(r.external_api_calls for r in records),
            success_rate=successful / total if total else 1.0,
            last_execution=last_execution
        )

    def get_request_types(self) -> List[str]:
        with self._lock:
            return sorted(self._requests.keys())

    def get_execution_time_variance(self, request_type: str) -> float:
        """Coefficient of variation of recent execution times"""
        with self._lock:
            stats = self._requests.get(request_type)
            durations = [r.duration_seconds for r in stats.records] if stats else []
        if len(durations) < 2 or np.ptp(durations) == 0:
            return 0.0
        mean = float(np.mean(durations))
        return float(np.std(durations) / mean) if mean > 0 else 0.0

    def sample_request_metrics(self, now: Optional[datetime] = None) -> Dict[str, float]:
        """Throughput, error rate and latency across all request types"""
        now = now or datetime.utcnow()
        cutoff = now - self.throughput_window
        with self._lock:
            recent = [r for s in self._requests.values() for r in s.records if r.timestamp >= cutoff]
            active = sum(s.in_flight for s in self._requests.values())

        window_seconds = self.throughput_window.total_seconds()
        values = {
            THROUGHPUT_METRIC: len(recent) / window_seconds if window_seconds > 0 else 0.0,
            ACTIVE_REQUESTS_METRIC: float(active),
            ERROR_RATE_METRIC: 0.0,
            AVERAGE_LATENCY_METRIC: 0.0,
            P95_LATENCY_METRIC: 0.0,
        }
        if recent:
            durations_ms = np.array([r.duration_seconds * 1000 for r in recent], dtype=float)
            values[ERROR_RATE_METRIC] = sum(1 for r in recent if not r.success) / len(recent)
            values[AVERAGE_LATENCY_METRIC] = float(np.mean(durations_ms))
            values[P95_LATENCY_METRIC] = float(np.percentile(durations_ms, 95))
        return values

    def sample_system_metrics(self) -> Dict[str, float]:
        """CPU and memory utilization as fractions"""
        try:
            return {
                CPU_UTILIZATION_METRIC: psutil.cpu_percent(interval=None) / 100.0,
                MEMORY_UTILIZATION_METRIC: psutil.virtual_memory().percent / 100.0,
            }
        except Exception as e:
            logger.error(f"Error sampling system metrics: {e}")
            return {}

    def record_sample(self, values: Dict[str, float], timestamp: Optional[datetime] = None) -> None:
        timestamp = timestamp or datetime.utcnow()
        with self._lock:
            for name, value in values.items():
                self._series[name].append((timestamp, float(value)))

    def get_latest_metrics(self) -> Dict[str, MetricSeries]:
        with self._lock:
            return {name: list(series) for name, series in self._series.items() if series}

    async def collect_all_metrics(self, cancel_event: Optional[Any] = None) -> Dict[str, MetricSeries]:
        throw_if_cancelled(cancel_event, "collect_all_metrics")
        start_time = time.perf_counter()
        # psutil calls can block briefly
        system_values = await asyncio.to_thread(self.sample_system_metrics)
        throw_if_cancelled(cancel_event, "collect_all_metrics")

        values = {**system_values, **self.sample_request_metrics()}
        self.record_sample(values)
        logger.debug(f"Collected {len(values)} metrics in {(time.perf_counter() - start_time) * 1000:.1f}ms")
        return self.get_latest_metrics()
