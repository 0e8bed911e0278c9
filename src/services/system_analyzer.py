"""
Health scoring and system analysis

Features:
- Weighted health score from latency, reliability and resource headroom
- Load level classification
- Bottleneck detection from the latest metric values
- Strategy effectiveness tracking from measured outcomes
- Next-hour predictions and trend direction
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from src.core.cancellation import throw_if_cancelled
from src.models.data_models import (
    BottleneckSeverity, LoadLevel, LoadPatternData, OptimizationStrategy,
    PerformanceBottleneck, PredictiveAnalysis, SystemHealthScore
)
from src.services.metrics_aggregator import (
    AVERAGE_LATENCY_METRIC, CPU_UTILIZATION_METRIC, ERROR_RATE_METRIC,
    MEMORY_UTILIZATION_METRIC, P95_LATENCY_METRIC, THROUGHPUT_METRIC
)
from src.services.time_series_db import TimeSeriesDatabase

logger = logging.getLogger(__name__)

LATENCY_BUDGET_MS = 1000.0
FORECAST_METRICS = (
    THROUGHPUT_METRIC, CPU_UTILIZATION_METRIC, MEMORY_UTILIZATION_METRIC, ERROR_RATE_METRIC
)
TREND_METRICS = ((P95_LATENCY_METRIC, "P95 latency"), (ERROR_RATE_METRIC, "Error rate"))
TREND_SAMPLES = 12


class TrendDirection(str, Enum):
    INCREASING = "Increasing"
    DECREASING = "Decreasing"
    STABLE = "Stable"


class HealthScorer(ABC):
    """Turns named metric values into a health score"""

    @abstractmethod
    async def calculate_score(self, values: Dict[str, float], cancel_event: Optional[Any] = None) -> float:
        """Overall health in [0, 1]"""

    @abstractmethod
    def build_health_score(self, values: Dict[str, float]) -> SystemHealthScore:
        """Overall plus sub-scores"""


class WeightedHealthScorer(HealthScorer):
    """Weighted average of per-component scores; missing components are left out"""

    DEFAULT_WEIGHTS = {
        "latency": 0.3,
        "reliability": 0.3,
        "memory": 0.2,
        "cpu": 0.2
    }

    def __init__(self, weights: Optional[Dict[str, float]] = None):
        self.weights = dict(weights or self.DEFAULT_WEIGHTS)

    def score_components(self, values: Dict[str, float]) -> Dict[str, float]:
        components = {}
        latency = values.get(P95_LATENCY_METRIC, values.get(AVERAGE_LATENCY_METRIC))
        if latency is not None:
            components["latency"] = max(0.0, 1.0 - latency / LATENCY_BUDGET_MS)
        if ERROR_RATE_METRIC in values:
            components["reliability"] = max(0.0, 1.0 - values[ERROR_RATE_METRIC])
        if MEMORY_UTILIZATION_METRIC in values:
            components["memory"] = max(0.0, 1.0 - values[MEMORY_UTILIZATION_METRIC])
        if CPU_UTILIZATION_METRIC in values:
            components["cpu"] = max(0.0, 1.0 - values[CPU_UTILIZATION_METRIC])
        return {k: min(1.0, v) for k, v in components.items()}

    def _weighted(self, components: Dict[str, float]) -> float:
        if not components:
            return 1.0  # Assume healthy if no data yet
        total_weight = sum(self.weights.get(name, 0.0) for name in components)
        if total_weight <= 0:
            return float(np.mean(list(components.values())))
        return sum(score * self.weights.get(name, 0.0) for name, score in components.items()) / total_weight

    async def calculate_score(self, values: Dict[str, float], cancel_event: Optional[Any] = None) -> float:
        throw_if_cancelled(cancel_event, "calculate_score")
        return self._weighted(self.score_components(values))

    def build_health_score(self, values: Dict[str, float]) -> SystemHealthScore:
        components = self.score_components(values)
        overall = self._weighted(components)
        resources = [components[k] for k in ("cpu", "memory") if k in components]

        if overall >= 0.8:
            status = "Healthy"
        elif overall >= 0.6:
            status = "Degraded"
        else:
            status = "Critical"

        return SystemHealthScore(
            overall=overall,
            performance=components.get("latency", 1.0),
            reliability=components.get("reliability", 1.0),
            scalability=float(np.mean(resources)) if resources else 1.0,
            status=status,
            critical_areas=sorted(name for name, score in components.items() if score < 0.5)
        )


def classify_load_level(cpu: float, memory: float, throughput: float = 0.0) -> LoadLevel:
    if cpu > 0.9 or memory > 0.9:
        return LoadLevel.CRITICAL
    if cpu > 0.7 or memory > 0.7:
        return LoadLevel.HIGH
    if cpu > 0.5 or memory > 0.5:
        return LoadLevel.MEDIUM
    if cpu > 0.2 or memory > 0.2 or throughput > 10:
        return LoadLevel.LOW
    return LoadLevel.IDLE


def analyze_trend(values: Sequence[float], stable_threshold: float = 0.05) -> TrendDirection:
    """Compare the mean of the second half with the first half"""
    if len(values) < 2:
        return TrendDirection.STABLE
    half = len(values) // 2
    first, second = float(np.mean(values[:half])), float(np.mean(values[half:]))
    if first == 0:
        return TrendDirection.INCREASING if second > 0 else TrendDirection.STABLE
    change = (second - first) / abs(first)
    if change > stable_threshold:
        return TrendDirection.INCREASING
    if change < -stable_threshold:
        return TrendDirection.DECREASING
    return TrendDirection.STABLE


class SystemAnalyzer(ABC):
    """Load pattern analysis and strategy feedback"""

    @abstractmethod
    async def analyze_load_patterns(self, values: Dict[str, float],
                                    cancel_event: Optional[Any] = None) -> LoadPatternData:
        """Classify load and attach strategy effectiveness"""

    @abstractmethod
    def record_prediction_outcome(self, strategy: OptimizationStrategy, was_successful: bool,
                                  improvement: float) -> None:
        """Feed back a measured optimization outcome"""

    @abstractmethod
    def get_strategy_effectiveness(self) -> Dict[str, float]:
        """Mean measured gain per strategy"""

    def identify_bottlenecks(self, values: Dict[str, float]) -> List[PerformanceBottleneck]:
        return []

    def predict(self, time_series_db: TimeSeriesDatabase) -> PredictiveAnalysis:
        return PredictiveAnalysis()


class DefaultSystemAnalyzer(SystemAnalyzer):
    """Threshold-based analyzer with bounded outcome history"""

    def __init__(self, max_outcomes: int = 1000, samples_for_full_confidence: int = 288):
        self.samples_for_full_confidence = samples_for_full_confidence
        self._outcomes: Dict[str, deque] = defaultdict(lambda: deque(maxlen=max_outcomes))
        self._total_predictions = 0
        self._successful_predictions = 0
        self._lock = threading.Lock()

    async def analyze_load_patterns(self, values: Dict[str, float],
                                    cancel_event: Optional[Any] = None) -> LoadPatternData:
        throw_if_cancelled(cancel_event, "analyze_load_patterns")
        level = classify_load_level(
            values.get(CPU_UTILIZATION_METRIC, 0.0),
            values.get(MEMORY_UTILIZATION_METRIC, 0.0),
            values.get(THROUGHPUT_METRIC, 0.0)
        )
        with self._lock:
            total = self._total_predictions
            successful = self._successful_predictions
            all_gains = [gain for gains in self._outcomes.values() for gain in gains]

        return LoadPatternData(
            level=level,
            success_rate=successful / total if total else 0.0,
            average_improvement=float(np.mean(all_gains)) if all_gains else 0.0,
            total_predictions=total,
            strategy_effectiveness=self.get_strategy_effectiveness()
        )

    def record_prediction_outcome(self, strategy: OptimizationStrategy, was_successful: bool,
                                  improvement: float) -> None:
        with self._lock:
            self._outcomes[strategy.value].append(float(improvement))
            self._total_predictions += 1
            if was_successful:
                self._successful_predictions += 1

    def get_strategy_effectiveness(self) -> Dict[str, float]:
        with self._lock:
            return {
                name: float(np.mean(gains))
                for name, gains in self._outcomes.items() if gains
            }

    def identify_bottlenecks(self, values: Dict[str, float]) -> List[PerformanceBottleneck]:
        bottlenecks = []

        def check(component: str, value: Optional[float], high: float, critical: float,
                  description: str, actions: List[str]):
            if value is None or value <= high:
                return
            severity = BottleneckSeverity.CRITICAL if value > critical else BottleneckSeverity.HIGH
            bottlenecks.append(PerformanceBottleneck(
                component=component,
                severity=severity,
                description=description.format(value=value),
                impact=min(1.0, value / critical) if critical > 0 else 1.0,
                recommended_actions=actions
            ))

        check("CPU", values.get(CPU_UTILIZATION_METRIC), 0.8, 0.9,
              "CPU utilization at {value:.0%}",
              ["Enable caching for hot queries", "Scale out workers"])
        check("Memory", values.get(MEMORY_UTILIZATION_METRIC), 0.8, 0.9,
              "Memory utilization at {value:.0%}",
              ["Enable memory pooling", "Reduce batch sizes"])
        check("Error Rate", values.get(ERROR_RATE_METRIC), 0.05, 0.1,
              "Error rate at {value:.1%}",
              ["Add a circuit breaker around failing dependencies"])
        check("Latency", values.get(P95_LATENCY_METRIC), 500.0, LATENCY_BUDGET_MS,
              "P95 latency at {value:.0f}ms",
              ["Profile slow request types", "Enable caching or batching"])
        return bottlenecks

    def predict(self, time_series_db: TimeSeriesDatabase,
                horizon: timedelta = timedelta(hours=1),
                sample_interval: timedelta = timedelta(minutes=5)) -> PredictiveAnalysis:
        steps = max(1, int(horizon / sample_interval))
        predictions: Dict[str, float] = {}
        sample_counts = []
        for metric in FORECAST_METRICS:
            forecast = time_series_db.forecast(metric, steps_ahead=steps)
            if forecast is None:
                continue
            predictions[metric] = forecast
            sample_counts.append(time_series_db.size(metric))

        confidence = 0.0
        if sample_counts:
            confidence = min(1.0, float(np.mean(sample_counts)) / self.samples_for_full_confidence)

        issues = []
        if predictions.get(CPU_UTILIZATION_METRIC, 0.0) > 0.9:
            issues.append("CPU utilization is forecast to exceed 90% within the hour")
        if predictions.get(MEMORY_UTILIZATION_METRIC, 0.0) > 0.9:
            issues.append("Memory utilization is forecast to exceed 90% within the hour")
        if predictions.get(ERROR_RATE_METRIC, 0.0) > 0.05:
            issues.append("Error rate is forecast to exceed 5% within the hour")
        for metric, label in TREND_METRICS:
            recent = time_series_db.get_values(metric)[-TREND_SAMPLES:]
            if len(recent) >= TREND_SAMPLES // 2 and analyze_trend(recent) == TrendDirection.INCREASING:
                issues.append(f"{label} is trending upward")

        return PredictiveAnalysis(
            prediction_confidence=confidence,
            next_hour_predictions=predictions,
            potential_issues=issues
        )
