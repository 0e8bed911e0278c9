"""
Pytest configuration and shared fixtures for the optimization engine tests.

Provides option sets, recommendation factories, before/after metric snapshots,
performance insights and fake collaborators for engine tests.
"""

import pytest
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from faker import Faker

from config.settings import OptimizationOptions
from src.models.data_models import (
    BottleneckSeverity, LoadPatternData, OptimizationRecommendation,
    OptimizationStrategy, PerformanceBottleneck, PredictiveAnalysis,
    RequestExecutionMetrics, RiskLevel, SystemHealthScore,
    SystemPerformanceInsights
)
from src.services.metrics_aggregator import MetricsAggregator
from src.services.metrics_publisher import MetricsPublisher
from src.validation.optimization_validator import OptimizationValidator

fake = Faker()
Faker.seed(42)  # For reproducible test data


@pytest.fixture
def options() -> OptimizationOptions:
    """Default validation and engine options."""
    return OptimizationOptions()


@pytest.fixture
def validator(options) -> OptimizationValidator:
    return OptimizationValidator(options)


@pytest.fixture
def make_recommendation():
    """Factory for recommendations that pass every generic gate by default."""
    def _make(
        strategy: OptimizationStrategy = OptimizationStrategy.ENABLE_CACHING,
        confidence: float = 0.9,
        risk: RiskLevel = RiskLevel.LOW,
        improvement: timedelta = timedelta(milliseconds=50),
        parameters: Optional[Dict[str, Any]] = None,
    ) -> OptimizationRecommendation:
        return OptimizationRecommendation(
            strategy=strategy,
            confidence_score=confidence,
            risk=risk,
            estimated_improvement=improvement,
            parameters=parameters,
            reasoning=fake.sentence()
        )
    return _make


@pytest.fixture
def caching_parameters() -> Dict[str, Any]:
    return {"RequestType": "GetUserQuery", "ExpectedHitRate": 0.8}


@pytest.fixture
def before_metrics() -> RequestExecutionMetrics:
    """Baseline: 200ms average, 100MB, 95% success."""
    return RequestExecutionMetrics(
        total_executions=1000,
        successful_executions=950,
        failed_executions=50,
        average_execution_time=timedelta(milliseconds=200),
        p95_execution_time=timedelta(milliseconds=350),
        memory_usage=100 * 1024 * 1024,
        success_rate=0.95,
        last_execution=datetime(2024, 1, 15, 12, 0, 0)
    )


@pytest.fixture
def after_metrics() -> RequestExecutionMetrics:
    """Improved: 100ms average, 80MB, 98% success."""
    return RequestExecutionMetrics(
        total_executions=1000,
        successful_executions=980,
        failed_executions=20,
        average_execution_time=timedelta(milliseconds=100),
        p95_execution_time=timedelta(milliseconds=180),
        memory_usage=80 * 1024 * 1024,
        success_rate=0.98,
        last_execution=datetime(2024, 1, 15, 13, 0, 0)
    )


@pytest.fixture
def healthy_insights() -> SystemPerformanceInsights:
    return SystemPerformanceInsights(
        health_score=SystemHealthScore(
            overall=0.95, performance=0.95, reliability=0.98,
            scalability=0.9, security=0.95, maintainability=0.9
        ),
        performance_grade="A",
        predictions=PredictiveAnalysis(prediction_confidence=0.9),
        load_patterns=LoadPatternData(level="Low", success_rate=0.9)
    )


@pytest.fixture
def unhealthy_insights() -> SystemPerformanceInsights:
    """Overall 0.6, grade D, two critical bottlenecks."""
    return SystemPerformanceInsights(
        health_score=SystemHealthScore(
            overall=0.6, performance=0.5, reliability=0.85,
            scalability=0.6, security=0.9, maintainability=0.8
        ),
        performance_grade="D",
        bottlenecks=[
            PerformanceBottleneck(component="Database", severity=BottleneckSeverity.CRITICAL,
                                  description="Connection pool exhausted", impact=0.9),
            PerformanceBottleneck(component="Memory", severity=BottleneckSeverity.CRITICAL,
                                  description="Memory utilization at 95%", impact=0.8),
        ],
        predictions=PredictiveAnalysis(prediction_confidence=0.5)
    )


class FakeMetricsAggregator(MetricsAggregator):
    """Aggregator returning whatever series the test sets."""

    def __init__(self, series: Optional[Dict[str, List[Tuple[datetime, float]]]] = None):
        self.series = series or {}
        self.request_metrics: Dict[str, RequestExecutionMetrics] = {}
        self.active_breakdown: Dict[str, int] = {}
        self.calls = 0
        self.raise_error: Optional[Exception] = None

    def get_latest_metrics(self):
        self.calls += 1
        if self.raise_error is not None:
            raise self.raise_error
        return {name: list(points) for name, points in self.series.items()}

    async def collect_all_metrics(self, cancel_event=None):
        return self.get_latest_metrics()

    def get_request_metrics(self, request_type: str):
        return self.request_metrics.get(request_type)

    def get_active_breakdown(self):
        return dict(self.active_breakdown)


class RecordingPublisher(MetricsPublisher):
    """Publisher that keeps everything it is given."""

    def __init__(self):
        self.published: List[Tuple[str, float, Dict[str, str]]] = []

    def publish(self, name, value, labels=None):
        self.published.append((name, value, labels or {}))

    def last(self, name: str) -> Optional[float]:
        for published_name, value, _ in reversed(self.published):
            if published_name == name:
                return value
        return None


@pytest.fixture
def fake_aggregator() -> FakeMetricsAggregator:
    now = datetime.utcnow()
    return FakeMetricsAggregator({
        "CpuUtilization": [(now - timedelta(minutes=5), 0.3), (now, 0.4)],
        "MemoryUtilization": [(now, 0.5)],
        "ThroughputPerSecond": [(now, 25.0)],
        "ErrorRate": [(now, 0.01)],
        "P95ResponseTimeMs": [(now, 120.0)],
        "ActiveRequests": [(now, 7.0)],
    })


@pytest.fixture
def make_aggregator():
    """Factory for aggregators with custom series"""
    return FakeMetricsAggregator


@pytest.fixture
def recording_publisher() -> RecordingPublisher:
    return RecordingPublisher()


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "performance: Performance tests")
    config.addinivalue_line("markers", "edge_cases: Edge case tests")
