"""
Services package for the optimization engine

This package provides the engine's in-process collaborators:
- Bounded time-series storage and rolling-window caching
- Metrics aggregation (psutil + request execution tracking)
- Health scoring and system analysis
- Prometheus publishing
- Background scheduling
"""

from .time_series_db import TimeSeriesDatabase, MetricDataPoint, MetricStatistics, HoltForecaster
from .metrics_cache import ConnectionMetricsCache, ConnectionBreakdown
from .metrics_aggregator import MetricsAggregator, SystemMetricsAggregator
from .system_analyzer import (
    HealthScorer,
    WeightedHealthScorer,
    SystemAnalyzer,
    DefaultSystemAnalyzer
)
from .metrics_publisher import MetricsPublisher, PrometheusMetricsPublisher
from .scheduler import BackgroundScheduler, PeriodicTask

__all__ = [
    'TimeSeriesDatabase',
    'MetricDataPoint',
    'MetricStatistics',
    'HoltForecaster',
    'ConnectionMetricsCache',
    'ConnectionBreakdown',
    'MetricsAggregator',
    'SystemMetricsAggregator',
    'HealthScorer',
    'WeightedHealthScorer',
    'SystemAnalyzer',
    'DefaultSystemAnalyzer',
    'MetricsPublisher',
    'PrometheusMetricsPublisher',
    'BackgroundScheduler',
    'PeriodicTask',
]
