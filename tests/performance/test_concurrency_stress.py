"""
Concurrency stress tests for the shared in-memory stores and the validator.

Hammers the time-series store, the connection metrics cache and the
recommendation validator from many writers at once and checks that:
- no writer sees an exception
- every store stays within its configured bounds
- counters add up once all writers are done

Usage:
    pytest tests/performance/test_concurrency_stress.py -v -m performance
"""

import asyncio
import concurrent.futures
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List

import pytest

from config.settings import OptimizationOptions
from src.models.data_models import OptimizationRecommendation, OptimizationStrategy, RiskLevel
from src.services.metrics_cache import ConnectionMetricsCache
from src.services.time_series_db import TimeSeriesDatabase
from src.validation.optimization_validator import OptimizationValidator
from src.validation.validation_metrics import ValidationMetricsCollector

BASE_TIME = datetime(2024, 1, 15, 0, 0, 0)


@dataclass
class StressRunResult:
    """Outcome of one concurrent run."""
    test_name: str
    workers: int
    operations: int
    duration_seconds: float
    errors: List[Exception] = field(default_factory=list)

    @property
    def ops_per_second(self) -> float:
        return self.operations / self.duration_seconds if self.duration_seconds > 0 else 0.0


def run_concurrently(test_name: str, worker, workers: int, operations_per_worker: int) -> StressRunResult:
    result = StressRunResult(test_name, workers, workers * operations_per_worker, 0.0)
    start = time.perf_counter()
    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(worker, n) for n in range(workers)]
        for future in concurrent.futures.as_completed(futures):
            try:
                future.result()
            except Exception as e:
                result.errors.append(e)
    result.duration_seconds = time.perf_counter() - start
    return result


@pytest.mark.performance
class TestConcurrencyStress:

    def test_time_series_writers(self):
        db = TimeSeriesDatabase(max_history_size=500)
        per_worker = 200

        def writer(n):
            for i in range(per_worker):
                db.store_metric(f"Metric{n % 4}", float(i), BASE_TIME + timedelta(seconds=i))
                if i % 20 == 0:
                    db.get_statistics(f"Metric{n % 4}")

        result = run_concurrently("time_series_writers", writer, workers=32, operations_per_worker=per_worker)

        assert result.errors == []
        stats = db.get_storage_stats()
        assert stats["total_points_stored"] == result.operations
        assert stats["metrics"] == 4
        for name in db.metric_names():
            assert db.size(name) <= 500

    def test_cache_writers_and_readers(self):
        cache = ConnectionMetricsCache(TimeSeriesDatabase(), max_windows=50, window_size=30)
        per_worker = 100

        def worker(n):
            for i in range(per_worker):
                timestamp = BASE_TIME + timedelta(minutes=n * per_worker + i)
                cache.cache_metric_with_rolling_window(f"pool{n % 8}", i, timestamp)
                cache.store_connection_trend_data(i, timestamp)
                if i % 10 == 0:
                    cache.get_hourly_profile()
                    cache.get_trend()

        result = run_concurrently("cache_writers_and_readers", worker, workers=24, operations_per_worker=per_worker)

        assert result.errors == []
        assert cache.window_count() <= 50
        for key in cache.window_keys():
            assert len(cache.get_window_values(key)) <= 30

    @pytest.mark.asyncio
    async def test_parallel_validations_keep_counts(self):
        validator = OptimizationValidator(OptimizationOptions())
        collector = ValidationMetricsCollector()
        recommendations = [
            OptimizationRecommendation(
                strategy=OptimizationStrategy.ENABLE_CACHING,
                confidence_score=0.9 if i % 2 == 0 else 0.4,
                risk=RiskLevel.LOW,
                estimated_improvement=timedelta(milliseconds=40),
                parameters={"RequestType": f"Query{i}", "ExpectedHitRate": 0.8}
            )
            for i in range(400)
        ]

        start = time.perf_counter()
        results = await asyncio.gather(*[
            validator.validate_recommendation(rec, rec.parameters["RequestType"]) for rec in recommendations
        ])
        duration = time.perf_counter() - start
        for result in results:
            collector.record_validation_result(result)

        assert validator.validation_stats["total_validations"] == 400
        assert validator.validation_stats["failed_validations"] == 200
        assert collector.get_current_metrics().total_validations == 400
        assert duration < 5.0
