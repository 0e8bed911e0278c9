"""
Integration tests for the closed optimization loop

Covers:
1. Drafting and validating recommendations from recorded executions
2. Automatic-apply decisions under different policies
3. Outcome verification feeding the confidence model and analyzer
4. Stability checks publishing their score
5. Runtime assembly and lifecycle
"""

import threading
from datetime import timedelta

import pytest
from prometheus_client import CollectorRegistry

from config.settings import OptimizationOptions
from src.core.cancellation import OperationCancelledError
from src.core.optimization_engine import OptimizationEngine
from src.models.data_models import OptimizationStrategy, RiskLevel
from src.services.metrics_aggregator import SystemMetricsAggregator
from src.services.metrics_publisher import PrometheusMetricsPublisher
from src.services.optimization_pipeline import STABILITY_SCORE_METRIC, OptimizationPipeline
from src.services.runtime import OptimizationRuntime
from src.services.system_analyzer import DefaultSystemAnalyzer, WeightedHealthScorer
from src.validation.optimization_validator import OptimizationValidator
from src.validation.validation_metrics import ValidationMetricsCollector


def build_pipeline(options: OptimizationOptions):
    aggregator = SystemMetricsAggregator()
    publisher = PrometheusMetricsPublisher(CollectorRegistry())
    engine = OptimizationEngine(
        options, aggregator, WeightedHealthScorer(), DefaultSystemAnalyzer(), publisher
    )
    pipeline = OptimizationPipeline(engine, OptimizationValidator(options), ValidationMetricsCollector())
    return pipeline, aggregator, publisher


def record_slow_query(aggregator: SystemMetricsAggregator, count: int = 200):
    for i in range(count):
        aggregator.record_execution(
            "GetUserQuery", timedelta(milliseconds=220 + (i % 5)),
            success=True, database_calls=1, memory_used=2048
        )


@pytest.mark.integration
class TestOptimizationPipeline:

    @pytest.mark.asyncio
    async def test_propose_validates_drafted_recommendations(self):
        pipeline, aggregator, _ = build_pipeline(OptimizationOptions())
        record_slow_query(aggregator)

        decisions = await pipeline.propose("GetUserQuery")

        assert decisions
        caching = decisions[0]
        assert caching.recommendation.strategy == OptimizationStrategy.ENABLE_CACHING
        assert caching.approved
        assert not caching.auto_apply  # automatic optimization is off by default
        assert pipeline.metrics_collector.get_current_metrics().total_validations == len(decisions)

    @pytest.mark.asyncio
    async def test_auto_apply_requires_clean_low_risk_result(self, make_recommendation, caching_parameters):
        options = OptimizationOptions(enable_automatic_optimization=True,
                                      max_automatic_optimization_risk=RiskLevel.LOW)
        pipeline, _, _ = build_pipeline(options)

        clean = await pipeline.review(make_recommendation(parameters=caching_parameters), "GetUserQuery")
        risky = await pipeline.review(
            make_recommendation(risk=RiskLevel.MEDIUM, parameters=caching_parameters), "GetUserQuery")
        rejected = await pipeline.review(make_recommendation(confidence=0.2), "GetUserQuery")

        assert clean.auto_apply
        assert risky.approved and not risky.auto_apply
        assert not rejected.approved and not rejected.auto_apply

    @pytest.mark.asyncio
    async def test_verify_feeds_learning(self, before_metrics, after_metrics):
        pipeline, aggregator, _ = build_pipeline(OptimizationOptions())
        record_slow_query(aggregator)
        await pipeline.propose("GetUserQuery")

        outcome = await pipeline.verify(
            "GetUserQuery", [OptimizationStrategy.ENABLE_CACHING], before_metrics, after_metrics)

        engine = pipeline.engine
        assert outcome.was_successful
        samples = engine.tracker.get_samples()
        assert len(samples) == 1
        assert samples[0].performance_gain == pytest.approx(outcome.overall_improvement)
        assert engine.system_analyzer.get_strategy_effectiveness()["EnableCaching"] > 0.4
        assert engine.get_engine_status()["pending_predictions"] == 0

    @pytest.mark.asyncio
    async def test_failed_outcome_is_learned_as_failure(self, before_metrics, after_metrics):
        pipeline, _, _ = build_pipeline(OptimizationOptions())

        outcome = await pipeline.verify(
            "RenderReport", [OptimizationStrategy.MEMORY_POOLING], after_metrics, before_metrics)

        assert not outcome.was_successful
        assert not pipeline.engine.tracker.get_samples()[0].was_successful

    @pytest.mark.asyncio
    async def test_stability_check_publishes_score(self):
        pipeline, aggregator, publisher = build_pipeline(OptimizationOptions())
        aggregator.record_sample({
            "CpuUtilization": 0.97, "MemoryUtilization": 0.95,
            "ErrorRate": 0.2, "P95ResponseTimeMs": 1500.0
        })
        await pipeline.engine.collect_metrics()

        result = await pipeline.check_stability()

        assert not result.is_stable
        assert result.stability_score < 0.4
        components = {issue.component for issue in result.issues}
        assert {"Overall System", "Performance", "CPU", "Memory"} <= components
        assert publisher.get_value(STABILITY_SCORE_METRIC) == pytest.approx(result.stability_score)
        assert pipeline.metrics_collector.get_health_score()[1]["stability_penalty"] > 0

    @pytest.mark.asyncio
    async def test_cancelled_propose(self):
        pipeline, aggregator, _ = build_pipeline(OptimizationOptions())
        record_slow_query(aggregator)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(OperationCancelledError):
            await pipeline.propose("GetUserQuery", cancel_event=cancel)
        assert pipeline.validator.validation_stats["total_validations"] == 0


@pytest.mark.integration
class TestOptimizationRuntime:

    @pytest.mark.asyncio
    async def test_initialize_and_shutdown(self):
        runtime = OptimizationRuntime(OptimizationOptions())

        status = await runtime.initialize(start_background_tasks=True)

        try:
            assert status["initialized"]
            task_names = {t["name"] for t in runtime.scheduler.get_status()}
            assert task_names == {"metrics_sampling", "model_update", "metrics_collection"}
            assert runtime.scheduler.is_running
        finally:
            await runtime.shutdown()

        assert runtime.engine.is_disposed
        assert not runtime.scheduler.is_running
        assert not runtime.initialized

    @pytest.mark.asyncio
    async def test_initialize_without_background_tasks(self):
        runtime = OptimizationRuntime(OptimizationOptions())

        await runtime.initialize(start_background_tasks=False)
        again = await runtime.initialize(start_background_tasks=False)

        assert again["initialized"]
        assert runtime.scheduler.get_status() == []
        await runtime.shutdown()

    @pytest.mark.asyncio
    async def test_sampling_then_collection(self):
        runtime = OptimizationRuntime(OptimizationOptions())
        runtime.aggregator.record_execution("GetUserQuery", timedelta(milliseconds=80))

        await runtime.aggregator.collect_all_metrics()
        collected = await runtime.engine.collect_metrics()

        assert collected
        assert "ThroughputPerSecond" in runtime.time_series_db.metric_names()
        assert runtime.publisher.get_value("HealthScore") is not None
        await runtime.shutdown()
