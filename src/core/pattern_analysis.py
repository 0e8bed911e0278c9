"""
Pure analysis functions used by the optimization engine

Features:
- Performance grade from overall health
- Seasonal pattern detection by autocorrelation
- Candidate recommendations drafted from request execution metrics
- Batch size prediction from current load
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from src.models.data_models import (
    OptimizationStrategy, RequestExecutionMetrics, RiskLevel,
    SeasonalPattern, SystemLoadMetrics
)

logger = logging.getLogger(__name__)

SEASONAL_PERIODS_HOURS = (8, 12, 24, 48, 168, 336)
SEASONAL_STRENGTH_THRESHOLD = 0.7

SLOW_REQUEST_THRESHOLD = timedelta(milliseconds=100)
LARGE_ALLOCATION_BYTES = 1024 * 1024


def calculate_performance_grade(overall_health: float) -> str:
    """Map an overall health score to a letter grade"""
    if overall_health > 0.9:
        return "A"
    if overall_health > 0.8:
        return "B"
    if overall_health > 0.7:
        return "C"
    if overall_health > 0.6:
        return "D"
    return "F"


def autocorrelation(values: Sequence[float], lag: int) -> float:
    """Pearson autocorrelation of a series with itself shifted by ``lag``"""
    series = np.asarray(values, dtype=float)
    if lag <= 0 or len(series) <= lag:
        return 0.0
    head, tail = series[:-lag], series[lag:]
    if np.std(head) == 0 or np.std(tail) == 0:
        return 0.0
    return float(np.corrcoef(head, tail)[0, 1])


def classify_seasonal_type(period_hours: int) -> str:
    if period_hours <= 8:
        return "Intraday"
    if period_hours <= 24:
        return "Daily"
    if period_hours <= 48:
        return "Semi-weekly"
    if period_hours <= 168:
        return "Weekly"
    if period_hours <= 336:
        return "Bi-weekly"
    return "Monthly"


def detect_seasonal_patterns(
    hourly_values: Sequence[float],
    periods: Sequence[int] = SEASONAL_PERIODS_HOURS,
    threshold: float = SEASONAL_STRENGTH_THRESHOLD
) -> List[SeasonalPattern]:
    """
    Find recurring patterns in an hourly series.

    Args:
        hourly_values: One value per hour, oldest first
        periods: Candidate periods in hours; each needs two full cycles of data
        threshold: Minimum autocorrelation to report a pattern

    Returns:
        Patterns sorted by strength, strongest first
    """
    if len(hourly_values) < 24:
        return []

    patterns = []
    for period in periods:
        if len(hourly_values) < period * 2:
            continue
        strength = autocorrelation(hourly_values, period)
        if strength > threshold:
            pattern_type = classify_seasonal_type(period)
            patterns.append(SeasonalPattern(
                period_hours=period,
                strength=strength,
                pattern_type=pattern_type,
                description=f"{pattern_type} pattern every {period}h (strength {strength:.2f})"
            ))
    return sorted(patterns, key=lambda p: p.strength, reverse=True)


@dataclass
class CandidateRecommendation:
    """Strategy proposal before confidence scoring"""
    strategy: OptimizationStrategy
    risk: RiskLevel
    estimated_gain: float  # expected fraction of execution time saved
    parameters: Dict[str, Any] = field(default_factory=dict)
    reasoning: str = ""


def draft_candidates(request_name: str, metrics: RequestExecutionMetrics) -> List[CandidateRecommendation]:
    """Heuristic strategy candidates for one request type, best first"""
    candidates: List[CandidateRecommendation] = []
    executions = max(metrics.total_executions, 1)
    is_command = "Command" in request_name

    if (not is_command
            and metrics.average_execution_time >= SLOW_REQUEST_THRESHOLD
            and metrics.success_rate >= 0.95
            and (metrics.database_calls > 0 or metrics.external_api_calls > 0)):
        # More executions means more repeats of the same arguments
        expected_hit_rate = min(0.95, 0.2 + 0.75 * (1 - 1 / (1 + executions / 100)))
        candidates.append(CandidateRecommendation(
            strategy=OptimizationStrategy.ENABLE_CACHING,
            risk=RiskLevel.LOW,
            estimated_gain=expected_hit_rate * 0.8,
            parameters={"RequestType": request_name, "ExpectedHitRate": round(expected_hit_rate, 3)},
            reasoning=f"{request_name} is slow and read-heavy; expected hit rate {expected_hit_rate:.0%}"
        ))

    calls_per_execution = (metrics.database_calls + metrics.external_api_calls) / executions
    if metrics.concurrent_executions >= 5 or calls_per_execution > 2:
        batch_size = int(min(100, max(2, metrics.concurrent_executions * 2, round(calls_per_execution * 5))))
        candidates.append(CandidateRecommendation(
            strategy=OptimizationStrategy.BATCH_PROCESSING,
            risk=RiskLevel.MEDIUM,
            estimated_gain=min(0.5, 0.1 + calls_per_execution * 0.05),
            parameters={"OptimalBatchSize": batch_size},
            reasoning=f"{calls_per_execution:.1f} downstream calls per execution with "
                      f"{metrics.concurrent_executions} concurrent executions"
        ))

    if metrics.memory_allocated >= LARGE_ALLOCATION_BYTES:
        threshold = max(1024, metrics.memory_allocated // 4)
        candidates.append(CandidateRecommendation(
            strategy=OptimizationStrategy.MEMORY_POOLING,
            risk=RiskLevel.LOW,
            estimated_gain=0.15,
            parameters={"MemoryThreshold": int(threshold)},
            reasoning=f"{metrics.memory_allocated} bytes allocated per execution"
        ))

    if metrics.success_rate < 0.95 and metrics.external_api_calls > 0:
        candidates.append(CandidateRecommendation(
            strategy=OptimizationStrategy.CIRCUIT_BREAKER,
            risk=RiskLevel.MEDIUM,
            estimated_gain=min(0.4, metrics.failure_rate),
            parameters={"FailureThreshold": 5, "RecoveryTimeoutSeconds": 60},
            reasoning=f"Failure rate {metrics.failure_rate:.1%} with external dependencies"
        ))

    return sorted(candidates, key=lambda c: c.estimated_gain, reverse=True)


def predict_batch_size(
    load: SystemLoadMetrics,
    average_execution_time: Optional[timedelta],
    execution_time_variance: float,
    default_batch_size: int,
    max_batch_size: int
) -> int:
    """
    Scale the default batch size by free capacity and observed latency.

    Args:
        load: Current load
        average_execution_time: Observed mean latency, None when unknown
        execution_time_variance: Coefficient of variation of latency
        default_batch_size: Starting point
        max_batch_size: Upper bound

    Returns:
        Batch size in [1, max_batch_size]
    """
    size = default_batch_size * (1 - load.cpu_utilization) * (1 - load.memory_utilization)

    if average_execution_time is not None:
        if average_execution_time > timedelta(milliseconds=1000):
            size *= 0.5
        elif average_execution_time < timedelta(milliseconds=50):
            size = min(size * 2, 100)

    if execution_time_variance > 0.5:
        size *= 0.7

    return int(max(1, min(max_batch_size, round(size))))
