"""
Unit tests for OptimizationEngine periodic actions, lifecycle and analysis
"""

import asyncio
import logging
import threading
from datetime import datetime, timedelta

import pytest

from config.settings import OptimizationOptions
from src.core.cancellation import OperationCancelledError
from src.core.confidence_model import HeuristicConfidenceModel
from src.core.optimization_engine import (
    HEALTH_SCORE_METRIC, LOAD_LEVEL_METRIC, METRICS_COLLECTION_TASK, MODEL_UPDATE_TASK,
    EngineDisposedError, OptimizationEngine
)
from src.models.data_models import (
    LoadLevel, OptimizationStrategy, RequestExecutionMetrics, SystemLoadMetrics
)
from src.services.system_analyzer import DefaultSystemAnalyzer, WeightedHealthScorer

ENGINE_LOGGER = "src.core.optimization_engine"


class FailingModel(HeuristicConfidenceModel):
    def retrain(self, samples):
        raise RuntimeError("training data corrupted")


class BlockingHealthScorer(WeightedHealthScorer):
    """Holds calculate_score open until released"""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def calculate_score(self, values, cancel_event=None):
        self.entered.set()
        await self.release.wait()
        return await super().calculate_score(values, cancel_event)


def build_engine(aggregator, publisher, options=None, **kwargs):
    return OptimizationEngine(
        options or OptimizationOptions(),
        aggregator,
        kwargs.pop("health_scorer", WeightedHealthScorer()),
        kwargs.pop("system_analyzer", DefaultSystemAnalyzer()),
        publisher,
        **kwargs
    )


def seed_history(engine, span: timedelta):
    now = datetime.utcnow()
    engine.time_series_db.store_metric("ThroughputPerSecond", 10.0, now - span)
    engine.time_series_db.store_metric("ThroughputPerSecond", 12.0, now)


@pytest.mark.unit
class TestEngineConstruction:

    def test_required_collaborators(self, fake_aggregator, recording_publisher):
        with pytest.raises(ValueError):
            OptimizationEngine(None, fake_aggregator, WeightedHealthScorer(),
                               DefaultSystemAnalyzer(), recording_publisher)
        with pytest.raises(ValueError):
            build_engine(None, recording_publisher)
        with pytest.raises(ValueError):
            build_engine(fake_aggregator, None)

    def test_defaults_follow_options(self, fake_aggregator, recording_publisher):
        options = OptimizationOptions(time_series_max_history=50, rolling_window_max_windows=7)
        engine = build_engine(fake_aggregator, recording_publisher, options)

        assert engine.time_series_db.max_history_size == 50
        assert engine.metrics_cache.max_windows == 7
        assert engine.learning_enabled
        assert not engine.is_disposed


@pytest.mark.unit
class TestMetricsCollection:

    @pytest.fixture
    def engine(self, fake_aggregator, recording_publisher):
        return build_engine(fake_aggregator, recording_publisher)

    @pytest.mark.asyncio
    async def test_collect_stores_and_publishes(self, engine, recording_publisher):
        assert await engine.collect_metrics()

        assert engine.time_series_db.latest_value("CpuUtilization") == 0.4
        assert recording_publisher.last(HEALTH_SCORE_METRIC) == pytest.approx(0.781)
        assert recording_publisher.last(LOAD_LEVEL_METRIC) == int(LoadLevel.LOW)
        assert recording_publisher.last("ThroughputPerSecond") == 25.0
        assert engine.metrics_collections == 1

    @pytest.mark.asyncio
    async def test_active_requests_feed_the_rolling_window(self, engine):
        await engine.collect_metrics()

        assert [s.count for s in engine.metrics_cache.get_trend()] == [7]
        assert engine.metrics_cache.window_count() == 1
        assert engine.metrics_cache.get_breakdown_history() == []

    @pytest.mark.asyncio
    async def test_in_flight_breakdown_is_cached(self, engine, fake_aggregator):
        fake_aggregator.active_breakdown = {"GetUserQuery": 3, "BulkImport": 1}

        await engine.collect_metrics()

        history = engine.metrics_cache.get_breakdown_history()
        assert len(history) == 1
        assert history[0].total == 4
        assert engine.get_engine_status()["active_breakdown"] == {"GetUserQuery": 3, "BulkImport": 1}

    @pytest.mark.asyncio
    async def test_disposed_engine_skips_collection(self, engine, fake_aggregator, caplog):
        caplog.set_level(logging.DEBUG, logger=ENGINE_LOGGER)
        await engine.dispose()

        assert not await engine.collect_metrics()
        assert fake_aggregator.calls == 0
        assert "Collected" not in caplog.text

    @pytest.mark.asyncio
    async def test_collaborator_failure_is_logged_as_warning(self, engine, fake_aggregator, caplog):
        caplog.set_level(logging.DEBUG, logger=ENGINE_LOGGER)
        fake_aggregator.raise_error = ConnectionError("aggregator unavailable")

        assert not await engine.collect_metrics()

        records = [r for r in caplog.records if "Error collecting performance metrics" in r.message]
        assert len(records) == 1
        assert records[0].levelno == logging.WARNING
        assert engine.metrics_collections == 0

    @pytest.mark.asyncio
    async def test_overlapping_collection_is_skipped(self, fake_aggregator, recording_publisher):
        scorer = BlockingHealthScorer()
        engine = build_engine(fake_aggregator, recording_publisher, health_scorer=scorer)

        first = asyncio.create_task(engine.collect_metrics())
        await scorer.entered.wait()
        second = await engine.collect_metrics()
        scorer.release.set()

        assert second is False
        assert await first is True
        assert fake_aggregator.calls == 1

    @pytest.mark.asyncio
    async def test_empty_series_are_ignored(self, make_aggregator, recording_publisher):
        engine = build_engine(make_aggregator({"CpuUtilization": []}), recording_publisher)

        assert await engine.collect_metrics()
        assert engine.time_series_db.metric_names() == []
        assert recording_publisher.last(HEALTH_SCORE_METRIC) == 1.0


@pytest.mark.unit
class TestModelUpdate:

    @pytest.fixture
    def engine(self, fake_aggregator, recording_publisher):
        return build_engine(fake_aggregator, recording_publisher)

    @pytest.mark.asyncio
    async def test_update_runs_with_enough_history(self, engine, caplog):
        caplog.set_level(logging.INFO, logger=ENGINE_LOGGER)
        seed_history(engine, timedelta(hours=25))

        assert await engine.update_model()

        assert engine.model_updates == 1
        assert engine.tracker.last_retraining is not None
        assert "AI model update completed" in caplog.text

    @pytest.mark.asyncio
    async def test_insufficient_history_skips(self, engine, caplog):
        caplog.set_level(logging.INFO, logger=ENGINE_LOGGER)
        seed_history(engine, timedelta(hours=3))

        assert not await engine.update_model()
        assert engine.model_updates == 0
        assert "AI model update completed" not in caplog.text

    @pytest.mark.asyncio
    async def test_learning_disabled_skips(self, engine, caplog):
        caplog.set_level(logging.INFO, logger=ENGINE_LOGGER)
        seed_history(engine, timedelta(hours=48))
        engine.set_learning_mode(False)

        assert not await engine.update_model()
        assert "AI model update completed" not in caplog.text

    @pytest.mark.asyncio
    async def test_disposed_engine_skips_update(self, engine, caplog):
        caplog.set_level(logging.INFO, logger=ENGINE_LOGGER)
        seed_history(engine, timedelta(hours=48))
        await engine.dispose()

        assert not await engine.update_model()
        assert "AI model update completed" not in caplog.text

    @pytest.mark.asyncio
    async def test_failure_is_logged_as_error(self, fake_aggregator, recording_publisher, caplog):
        caplog.set_level(logging.INFO, logger=ENGINE_LOGGER)
        engine = build_engine(fake_aggregator, recording_publisher, model=FailingModel())
        seed_history(engine, timedelta(hours=25))

        assert not await engine.update_model()

        records = [r for r in caplog.records if "Error updating AI model" in r.message]
        assert len(records) == 1
        assert records[0].levelno == logging.ERROR
        # the guard is released after a failure
        assert not engine._update_guard.locked()

    @pytest.mark.asyncio
    async def test_custom_minimum_history(self, fake_aggregator, recording_publisher):
        options = OptimizationOptions(min_model_history=timedelta(hours=1))
        engine = build_engine(fake_aggregator, recording_publisher, options)
        seed_history(engine, timedelta(hours=2))

        assert await engine.update_model()


@pytest.mark.unit
class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_registers_both_tasks(self, fake_aggregator, recording_publisher):
        engine = build_engine(fake_aggregator, recording_publisher)

        await engine.start()
        try:
            assert engine.scheduler.is_running
            assert engine.scheduler.get_task(MODEL_UPDATE_TASK).interval == timedelta(hours=1)
            assert engine.scheduler.get_task(METRICS_COLLECTION_TASK).interval == timedelta(minutes=5)
        finally:
            await engine.dispose()

        assert not engine.scheduler.is_running

    @pytest.mark.asyncio
    async def test_dispose_is_idempotent(self, fake_aggregator, recording_publisher):
        engine = build_engine(fake_aggregator, recording_publisher)

        await engine.dispose()
        await engine.dispose()

        assert engine.is_disposed
        assert engine.get_engine_status()["disposed"] is True

    @pytest.mark.asyncio
    async def test_disposed_engine_rejects_work(self, fake_aggregator, recording_publisher):
        engine = build_engine(fake_aggregator, recording_publisher)
        await engine.dispose()

        with pytest.raises(EngineDisposedError):
            engine.get_recommendations("GetUserQuery", RequestExecutionMetrics())
        with pytest.raises(EngineDisposedError):
            await engine.get_system_insights()
        with pytest.raises(EngineDisposedError):
            await engine.start()
        assert engine.learn_from_execution("GetUserQuery", [OptimizationStrategy.ENABLE_CACHING],
                                           RequestExecutionMetrics()) == 0


@pytest.mark.unit
class TestRecommendationsAndLearning:

    @pytest.fixture
    def engine(self, fake_aggregator, recording_publisher):
        return build_engine(fake_aggregator, recording_publisher)

    @pytest.fixture
    def slow_query(self):
        return RequestExecutionMetrics(
            total_executions=500,
            successful_executions=495,
            failed_executions=5,
            average_execution_time=timedelta(milliseconds=250),
            database_calls=400,
            success_rate=0.99
        )

    def test_recommendations_are_scored(self, engine, slow_query):
        recommendations = engine.get_recommendations("GetUserQuery", slow_query)

        assert recommendations[0].strategy == OptimizationStrategy.ENABLE_CACHING
        assert 0 < recommendations[0].confidence_score <= 1
        assert recommendations[0].estimated_improvement > timedelta(0)
        assert engine.get_engine_status()["pending_predictions"] == len(recommendations)

    def test_nothing_to_recommend(self, engine):
        recommendation = engine.analyze_request("Ping", RequestExecutionMetrics(total_executions=10))

        assert recommendation.strategy == OptimizationStrategy.NONE
        assert "Ping" in recommendation.reasoning

    def test_unknown_request_type_without_metrics(self, engine):
        assert engine.get_recommendations("NeverSeen") == []

    def test_learning_uses_pending_baseline(self, engine, slow_query):
        engine.get_recommendations("GetUserQuery", slow_query)
        faster = slow_query.model_copy(update={"average_execution_time": timedelta(milliseconds=100)})

        recorded = engine.learn_from_execution("GetUserQuery", [OptimizationStrategy.ENABLE_CACHING], faster)

        assert recorded == 1
        sample = engine.tracker.get_samples()[0]
        assert sample.was_successful
        assert sample.performance_gain == pytest.approx(0.6)
        assert engine.system_analyzer.get_strategy_effectiveness() == {"EnableCaching": pytest.approx(0.6)}
        assert engine.time_series_db.latest_value("OptimizationGain") == pytest.approx(0.6)

    def test_learning_with_explicit_gains(self, engine):
        recorded = engine.learn_from_execution(
            "BulkImport",
            [OptimizationStrategy.BATCH_PROCESSING, OptimizationStrategy.MEMORY_POOLING],
            RequestExecutionMetrics(total_executions=100),
            performance_gains={OptimizationStrategy.BATCH_PROCESSING: -0.1}
        )

        assert recorded == 1
        assert not engine.tracker.get_samples()[0].was_successful

    def test_learning_disabled_records_nothing(self, engine, slow_query):
        engine.set_learning_mode(False)

        assert engine.learn_from_execution(
            "GetUserQuery", [OptimizationStrategy.ENABLE_CACHING], slow_query,
            performance_gains={OptimizationStrategy.ENABLE_CACHING: 0.5}) == 0

    def test_learning_rejects_null_metrics(self, engine):
        with pytest.raises(ValueError):
            engine.learn_from_execution("GetUserQuery", [OptimizationStrategy.ENABLE_CACHING], None)

    def test_batch_size_prediction(self, engine):
        assert engine.predict_optimal_batch_size("BulkImport", SystemLoadMetrics()) == 10
        assert engine.predict_optimal_batch_size(
            "BulkImport", SystemLoadMetrics(cpu_utilization=1.0)) == 1
        with pytest.raises(ValueError):
            engine.predict_optimal_batch_size("BulkImport", None)

    def test_model_statistics_fall_back_to_training_date(self, fake_aggregator, recording_publisher):
        trained = datetime(2024, 1, 1)
        options = OptimizationOptions(model_version="2.1.0", model_training_date=trained)
        engine = build_engine(fake_aggregator, recording_publisher, options)

        stats = engine.get_model_statistics()

        assert stats.model_version == "2.1.0"
        assert stats.last_retraining == trained


@pytest.mark.unit
class TestSystemInsights:

    @pytest.mark.asyncio
    async def test_insights_after_collection(self, fake_aggregator, recording_publisher):
        engine = build_engine(fake_aggregator, recording_publisher)
        await engine.collect_metrics()

        insights = await engine.get_system_insights(timedelta(hours=1))

        assert insights.health_score.overall == pytest.approx(0.781)
        assert insights.performance_grade == "C"
        assert insights.load_patterns.level == LoadLevel.LOW
        assert insights.bottlenecks == []
        assert insights.key_metrics["CpuUtilization"] == 0.4
        assert "CpuUtilization.mean" in insights.key_metrics
        assert 0 < insights.predictions.prediction_confidence <= 1

    @pytest.mark.asyncio
    async def test_cancelled_insights(self, fake_aggregator, recording_publisher):
        engine = build_engine(fake_aggregator, recording_publisher)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(OperationCancelledError):
            await engine.get_system_insights(cancel_event=cancel)

    @pytest.mark.asyncio
    async def test_load_pattern_analysis_uses_latest_collection(self, fake_aggregator, recording_publisher):
        engine = build_engine(fake_aggregator, recording_publisher)
        await engine.collect_metrics()

        load = await engine.get_load_pattern_analysis()

        assert load.level == LoadLevel.LOW

    def test_seasonal_patterns_from_throughput_history(self, fake_aggregator, recording_publisher):
        import math
        engine = build_engine(fake_aggregator, recording_publisher)
        start = datetime.utcnow() - timedelta(hours=96)
        for hour in range(96):
            engine.time_series_db.store_metric(
                "ThroughputPerSecond", 50 + 40 * math.sin(2 * math.pi * hour / 24),
                start + timedelta(hours=hour))

        periods = {p.period_hours for p in engine.detect_seasonal_patterns()}

        assert 24 in periods
