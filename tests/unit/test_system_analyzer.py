"""
Unit tests for health scoring, load classification, bottlenecks and predictions
"""

import threading
from datetime import datetime, timedelta

import pytest

from src.core.cancellation import OperationCancelledError
from src.models.data_models import BottleneckSeverity, LoadLevel, OptimizationStrategy
from src.services.system_analyzer import (
    DefaultSystemAnalyzer, TrendDirection, WeightedHealthScorer,
    analyze_trend, classify_load_level
)
from src.services.time_series_db import TimeSeriesDatabase


@pytest.mark.unit
class TestWeightedHealthScorer:

    @pytest.fixture
    def scorer(self):
        return WeightedHealthScorer()

    @pytest.mark.asyncio
    async def test_no_data_is_healthy(self, scorer):
        assert await scorer.calculate_score({}) == 1.0

    @pytest.mark.asyncio
    async def test_weighted_components(self, scorer):
        values = {
            "P95ResponseTimeMs": 500.0,
            "ErrorRate": 0.1,
            "MemoryUtilization": 0.5,
            "CpuUtilization": 0.5,
        }

        score = await scorer.calculate_score(values)

        assert score == pytest.approx(0.3 * 0.5 + 0.3 * 0.9 + 0.2 * 0.5 + 0.2 * 0.5)

    @pytest.mark.asyncio
    async def test_missing_components_are_left_out(self, scorer):
        assert await scorer.calculate_score({"ErrorRate": 0.2}) == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_cancelled_score(self, scorer):
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(OperationCancelledError):
            await scorer.calculate_score({}, cancel)

    def test_health_score_breakdown(self, scorer):
        health = scorer.build_health_score({
            "P95ResponseTimeMs": 2000.0,
            "ErrorRate": 0.0,
            "CpuUtilization": 0.95,
            "MemoryUtilization": 0.3,
        })

        assert health.performance == 0.0
        assert health.reliability == 1.0
        assert health.scalability == pytest.approx((0.05 + 0.7) / 2)
        assert health.critical_areas == ["cpu", "latency"]
        assert health.status == "Critical"


@pytest.mark.unit
class TestLoadAndTrend:

    @pytest.mark.parametrize("cpu,memory,throughput,level", [
        (0.0, 0.0, 0.0, LoadLevel.IDLE),
        (0.1, 0.1, 50.0, LoadLevel.LOW),
        (0.3, 0.1, 0.0, LoadLevel.LOW),
        (0.6, 0.1, 0.0, LoadLevel.MEDIUM),
        (0.1, 0.75, 0.0, LoadLevel.HIGH),
        (0.95, 0.1, 0.0, LoadLevel.CRITICAL),
    ])
    def test_classify_load_level(self, cpu, memory, throughput, level):
        assert classify_load_level(cpu, memory, throughput) == level

    @pytest.mark.parametrize("values,direction", [
        ([1.0, 1.0, 2.0, 2.0], TrendDirection.INCREASING),
        ([2.0, 2.0, 1.0, 1.0], TrendDirection.DECREASING),
        ([1.0, 1.01, 1.0, 1.01], TrendDirection.STABLE),
        ([0.0, 0.0, 1.0, 1.0], TrendDirection.INCREASING),
        ([5.0], TrendDirection.STABLE),
    ])
    def test_analyze_trend(self, values, direction):
        assert analyze_trend(values) == direction


@pytest.mark.unit
class TestDefaultSystemAnalyzer:

    @pytest.fixture
    def analyzer(self):
        return DefaultSystemAnalyzer()

    @pytest.mark.asyncio
    async def test_load_patterns_include_outcomes(self, analyzer):
        analyzer.record_prediction_outcome(OptimizationStrategy.ENABLE_CACHING, True, 0.4)
        analyzer.record_prediction_outcome(OptimizationStrategy.ENABLE_CACHING, False, -0.2)
        analyzer.record_prediction_outcome(OptimizationStrategy.BATCH_PROCESSING, True, 0.3)

        load = await analyzer.analyze_load_patterns({"CpuUtilization": 0.6})

        assert load.level == LoadLevel.MEDIUM
        assert load.total_predictions == 3
        assert load.success_rate == pytest.approx(2 / 3)
        assert load.average_improvement == pytest.approx(0.5 / 3)
        assert load.strategy_effectiveness == {
            "EnableCaching": pytest.approx(0.1),
            "BatchProcessing": pytest.approx(0.3),
        }

    @pytest.mark.asyncio
    async def test_cancelled_analysis(self, analyzer):
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(OperationCancelledError):
            await analyzer.analyze_load_patterns({}, cancel)

    def test_bottlenecks(self, analyzer):
        bottlenecks = analyzer.identify_bottlenecks({
            "CpuUtilization": 0.95,
            "MemoryUtilization": 0.85,
            "ErrorRate": 0.01,
            "P95ResponseTimeMs": 1500.0,
        })

        by_component = {b.component: b for b in bottlenecks}
        assert set(by_component) == {"CPU", "Memory", "Latency"}
        assert by_component["CPU"].severity == BottleneckSeverity.CRITICAL
        assert by_component["Memory"].severity == BottleneckSeverity.HIGH
        assert by_component["Latency"].impact == 1.0
        assert by_component["CPU"].description == "CPU utilization at 95%"

    def test_predict_without_history(self, analyzer):
        prediction = analyzer.predict(TimeSeriesDatabase())

        assert prediction.prediction_confidence == 0.0
        assert prediction.next_hour_predictions == {}

    def test_predict_flags_rising_cpu(self):
        analyzer = DefaultSystemAnalyzer(samples_for_full_confidence=10)
        db = TimeSeriesDatabase()
        start = datetime(2024, 1, 15)
        for i in range(20):
            db.store_metric("CpuUtilization", 0.5 + 0.02 * i, start + timedelta(minutes=5 * i))

        prediction = analyzer.predict(db)

        assert prediction.prediction_confidence == 1.0
        assert prediction.next_hour_predictions["CpuUtilization"] > 0.9
        assert any("CPU" in issue for issue in prediction.potential_issues)

    def test_predict_flags_rising_latency(self):
        analyzer = DefaultSystemAnalyzer()
        db = TimeSeriesDatabase()
        start = datetime(2024, 1, 15)
        for i in range(12):
            db.store_metric("P95ResponseTimeMs", 200.0 + 25 * i, start + timedelta(minutes=5 * i))
            db.store_metric("ErrorRate", 0.01, start + timedelta(minutes=5 * i))

        issues = analyzer.predict(db).potential_issues

        assert "P95 latency is trending upward" in issues
        assert "Error rate is trending upward" not in issues

    def test_short_history_has_no_trend_issue(self):
        db = TimeSeriesDatabase()
        db.store_metric("P95ResponseTimeMs", 100.0, datetime(2024, 1, 15))
        db.store_metric("P95ResponseTimeMs", 900.0, datetime(2024, 1, 15, 0, 5))

        assert DefaultSystemAnalyzer().predict(db).potential_issues == []
