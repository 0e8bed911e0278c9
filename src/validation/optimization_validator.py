"""
Optimization validation framework

Gates drafted optimization recommendations before they are applied, scores
applied optimizations against before/after metrics, and rates overall system
stability from a performance insights snapshot.

Validation framework covers:
1. Recommendation validation: parameters, confidence, risk, improvement and
   strategy-specific rules
2. Outcome validation: weighted time/memory/reliability gain per strategy
3. Stability validation: deductions for weak health, poor grade and
   critical bottlenecks
4. Model validation: accuracy, F1, training volume, staleness and latency

Policy violations are reported as structured errors and warnings, never raised.
Missing required inputs raise ValueError, and a set cancel event raises
OperationCancelledError before any work happens.
"""

import logging
import numbers
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from config.settings import OptimizationOptions
from src.core.cancellation import throw_if_cancelled
from src.models.data_models import (
    AIModelStatistics, BottleneckSeverity, OptimizationRecommendation,
    OptimizationStrategy, RequestExecutionMetrics, RiskLevel,
    SystemPerformanceInsights, ValidationSeverity
)

logger = logging.getLogger(__name__)

# Weights of the blended performance gain
TIME_GAIN_WEIGHT = 0.6
MEMORY_GAIN_WEIGHT = 0.2
RELIABILITY_GAIN_WEIGHT = 0.2
# Downstream terms only count when the baseline made such calls
DATABASE_GAIN_WEIGHT = 0.1
EXTERNAL_API_GAIN_WEIGHT = 0.1

# Stability thresholds and deductions
MIN_OVERALL_HEALTH = 0.7
MIN_RELIABILITY = 0.9
MIN_PREDICTION_CONFIDENCE = 0.7
POOR_GRADES = ("D", "F")
OVERALL_HEALTH_DEDUCTION = 0.3
POOR_GRADE_DEDUCTION = 0.2
RELIABILITY_DEDUCTION = 0.05
PREDICTION_DEDUCTION = 0.05
CRITICAL_BOTTLENECK_DEDUCTION = 0.2


@dataclass
class ValidationResult:
    """Outcome of validating one recommendation"""
    is_valid: bool
    severity: ValidationSeverity
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    validated_strategy: OptimizationStrategy = OptimizationStrategy.NONE
    validation_time: datetime = field(default_factory=datetime.utcnow)
    validation_time_ms: Optional[float] = None

    @classmethod
    def from_messages(
        cls,
        strategy: OptimizationStrategy,
        errors: List[str],
        warnings: List[str]
    ) -> "ValidationResult":
        if errors:
            severity = ValidationSeverity.ERROR
        elif warnings:
            severity = ValidationSeverity.WARNING
        else:
            severity = ValidationSeverity.SUCCESS
        return cls(
            is_valid=severity != ValidationSeverity.ERROR,
            severity=severity,
            errors=list(errors),
            warnings=list(warnings),
            validated_strategy=strategy,
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "severity": self.severity.label,
            "strategy": self.validated_strategy.value,
            "error_count": len(self.errors),
            "warning_count": len(self.warnings),
            "validation_time_ms": self.validation_time_ms,
        }


@dataclass
class StrategyValidationResult:
    """Measured outcome of one applied strategy"""
    strategy: OptimizationStrategy
    was_successful: bool
    actual_improvement: timedelta
    performance_gain: float
    time_gain: float = 0.0
    memory_gain: float = 0.0
    reliability_gain: float = 0.0
    database_gain: float = 0.0
    external_api_gain: float = 0.0


@dataclass
class OptimizationValidationResult:
    """Measured outcome of a set of applied strategies"""
    was_successful: bool
    overall_improvement: float
    strategy_results: List[StrategyValidationResult] = field(default_factory=list)
    before_metrics: Optional[RequestExecutionMetrics] = None
    after_metrics: Optional[RequestExecutionMetrics] = None
    validation_time: datetime = field(default_factory=datetime.utcnow)


@dataclass
class SystemValidationIssue:
    """Stability finding for one component"""
    component: str
    severity: ValidationSeverity
    message: str
    impact: float = 0.0
    recommended_actions: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"[{self.severity.label.upper()}] {self.component}: {self.message}"


@dataclass
class SystemHealthValidationResult:
    """Stability verdict; the score only ever goes down while issues are added"""
    is_stable: bool = True
    stability_score: float = 1.0
    issues: List[SystemValidationIssue] = field(default_factory=list)
    validation_time: datetime = field(default_factory=datetime.utcnow)

    def add_issue(
        self,
        component: str,
        severity: ValidationSeverity,
        message: str,
        deduction: float,
        impact: float = 0.0,
        recommended_actions: List[str] = None
    ):
        """Record an issue and apply its deduction"""
        self.issues.append(SystemValidationIssue(
            component=component,
            severity=severity,
            message=message,
            impact=impact,
            recommended_actions=recommended_actions or []
        ))
        self.stability_score = max(0.0, self.stability_score - max(0.0, deduction))
        if severity == ValidationSeverity.ERROR:
            self.is_stable = False

    def get_issues_by_severity(self, severity: ValidationSeverity) -> List[SystemValidationIssue]:
        return [issue for issue in self.issues if issue.severity == severity]


@dataclass
class ModelValidationIssue:
    """Model quality finding"""
    metric: str
    severity: ValidationSeverity
    message: str
    current_value: float = 0.0
    threshold: float = 0.0


@dataclass
class ModelValidationResult:
    """Model quality verdict"""
    is_healthy: bool = True
    overall_score: float = 0.0
    issues: List[ModelValidationIssue] = field(default_factory=list)
    validation_time: datetime = field(default_factory=datetime.utcnow)


# A strategy check appends to (errors, warnings) given the parameter bag and target name
StrategyCheck = Callable[[Dict[str, Any], str, List[str], List[str]], None]


@dataclass
class StrategyRules:
    """Per-strategy policy: required parameters, max risk and custom checks"""
    required_parameters: Sequence[str] = ()
    max_recommended_risk: Optional[RiskLevel] = None
    checks: Sequence[StrategyCheck] = ()


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _is_integer(value: Any) -> bool:
    return isinstance(value, numbers.Integral) and not isinstance(value, bool)


def _check_caching(parameters: Dict[str, Any], target_name: str,
                   errors: List[str], warnings: List[str]):
    hit_rate = parameters.get("ExpectedHitRate")
    if _is_number(hit_rate) and hit_rate < 0.3:
        warnings.append(
            f"Expected cache hit rate {hit_rate:.2f} is low - caching may not be effective"
        )
    if "Command" in target_name:
        warnings.append(
            "Commands are typically not suitable for caching - consider if this is a query instead"
        )


def _check_batching(parameters: Dict[str, Any], target_name: str,
                    errors: List[str], warnings: List[str]):
    batch_size = parameters.get("OptimalBatchSize")
    if not _is_integer(batch_size):
        return
    if batch_size < 2:
        errors.append("Batch size must be at least 2 for batching to be effective")
    elif batch_size > 100:
        warnings.append(f"Large batch size {batch_size} may cause memory pressure")


def _check_memory_pooling(parameters: Dict[str, Any], target_name: str,
                          errors: List[str], warnings: List[str]):
    threshold = parameters.get("MemoryThreshold")
    if _is_integer(threshold) and threshold < 1024:
        warnings.append(
            f"Memory threshold {threshold} bytes is very low - pooling may not provide benefits"
        )


DEFAULT_STRATEGY_RULES: Dict[OptimizationStrategy, StrategyRules] = {
    OptimizationStrategy.ENABLE_CACHING: StrategyRules(
        required_parameters=("RequestType", "ExpectedHitRate"),
        max_recommended_risk=RiskLevel.LOW,
        checks=(_check_caching,),
    ),
    OptimizationStrategy.BATCH_PROCESSING: StrategyRules(
        required_parameters=("OptimalBatchSize",),
        max_recommended_risk=RiskLevel.MEDIUM,
        checks=(_check_batching,),
    ),
    OptimizationStrategy.MEMORY_POOLING: StrategyRules(
        required_parameters=("MemoryThreshold",),
        max_recommended_risk=RiskLevel.LOW,
        checks=(_check_memory_pooling,),
    ),
}

_NO_RULES = StrategyRules()


def _relative_reduction(before: float, after: float) -> float:
    """(before - after) / before clamped to [-1, 1]; 0 when there is no baseline"""
    if before <= 0:
        return 0.0
    return max(-1.0, min(1.0, (before - after) / before))


def _type_name(request_type: Union[type, str]) -> str:
    if isinstance(request_type, str):
        return request_type
    return getattr(request_type, "__name__", str(request_type))


class OptimizationValidator:
    """
    Policy-driven validation of optimization recommendations and outcomes

    All entry points are coroutines, accept an optional cancel event and keep
    running statistics for monitoring.
    """

    def __init__(
        self,
        options: Optional[OptimizationOptions] = None,
        strategy_rules: Optional[Dict[OptimizationStrategy, StrategyRules]] = None
    ):
        """
        Initialize validator

        Args:
            options: Validation thresholds; defaults when omitted
            strategy_rules: Per-strategy rules; the built-in table when omitted
        """
        self.options = options or OptimizationOptions()
        self.strategy_rules = dict(DEFAULT_STRATEGY_RULES if strategy_rules is None else strategy_rules)
        self.validation_stats = {
            "total_validations": 0,
            "failed_validations": 0,
            "warning_validations": 0,
            "outcome_validations": 0,
            "stability_validations": 0,
            "avg_validation_time_ms": 0.0
        }

    def rules_for(self, strategy: OptimizationStrategy) -> StrategyRules:
        return self.strategy_rules.get(strategy, _NO_RULES)

    async def validate_recommendation(
        self,
        recommendation: OptimizationRecommendation,
        target_request_type: Union[type, str],
        cancel_event: Optional[Any] = None
    ) -> ValidationResult:
        """
        Validate a drafted recommendation against policy

        Args:
            recommendation: Recommendation to validate
            target_request_type: Request type (class or name) the optimization targets
            cancel_event: Optional event; if set on entry the call is cancelled

        Returns:
            ValidationResult with ordered errors and warnings
        """
        throw_if_cancelled(cancel_event, "validate_recommendation")
        if recommendation is None:
            raise ValueError("recommendation must not be None")
        if target_request_type is None:
            raise ValueError("target_request_type must not be None")

        start_time = time.perf_counter()
        errors: List[str] = []
        warnings: List[str] = []
        rules = self.rules_for(recommendation.strategy)
        parameters = recommendation.parameters or {}

        # 1. Parameter presence
        if not parameters and rules.required_parameters:
            warnings.append("No parameters provided for optimization")
        for name in rules.required_parameters:
            if parameters.get(name) is None:
                errors.append(f"Required parameter '{name}' is missing")

        # 2. Confidence gate
        if recommendation.confidence_score < self.options.min_confidence_score:
            errors.append(
                f"Confidence score {recommendation.confidence_score:.2f} is below "
                f"minimum threshold {self.options.min_confidence_score:.2f}"
            )

        # 3. Risk gates
        if (self.options.enable_automatic_optimization
                and recommendation.risk > self.options.max_automatic_optimization_risk):
            warnings.append(
                f"Risk level {recommendation.risk.label} exceeds maximum automatic "
                f"optimization risk {self.options.max_automatic_optimization_risk.label}"
            )
        if rules.max_recommended_risk is not None and recommendation.risk > rules.max_recommended_risk:
            warnings.append(
                f"Strategy risk {recommendation.risk.label} exceeds recommended {rules.max_recommended_risk.label}"
            )

        # 4. Improvement gate
        if recommendation.estimated_improvement <= timedelta(0):
            warnings.append("No performance improvement estimated for this optimization")

        # 5. Strategy-specific checks
        target_name = _type_name(target_request_type)
        for check in rules.checks:
            check(parameters, target_name, errors, warnings)

        # 6. Null parameter scan
        for name, value in parameters.items():
            if value is None:
                errors.append(f"Parameter '{name}' has null value")

        result = ValidationResult.from_messages(recommendation.strategy, errors, warnings)
        result.validation_time_ms = (time.perf_counter() - start_time) * 1000
        self._record_stats(result)

        logger.debug(
            f"Validated {recommendation.strategy.value} for {target_name}: "
            f"{result.severity.label} ({len(errors)} errors, {len(warnings)} warnings)"
        )
        return result

    async def validate_optimization_results(
        self,
        applied_strategies: Sequence[OptimizationStrategy],
        before_metrics: RequestExecutionMetrics,
        after_metrics: RequestExecutionMetrics,
        cancel_event: Optional[Any] = None
    ) -> OptimizationValidationResult:
        """
        Score applied strategies by comparing before/after metrics

        The gain blends relative reduction in average execution time (0.6),
        relative reduction in memory usage (0.2) and reduction in failure rate
        (0.2). Database and external API call reductions (0.1 each) join the
        blend when the baseline made such calls, and the weights are
        renormalized. Each term is clamped to [-1, 1].
        """
        throw_if_cancelled(cancel_event, "validate_optimization_results")
        if applied_strategies is None:
            raise ValueError("applied_strategies must not be None")
        if before_metrics is None or after_metrics is None:
            raise ValueError("before_metrics and after_metrics must not be None")

        self.validation_stats["outcome_validations"] += 1
        strategy_results = [
            self._score_strategy(strategy, before_metrics, after_metrics)
            for strategy in applied_strategies
        ]

        if not strategy_results:
            logger.info("Outcome validation called with no applied strategies")
            return OptimizationValidationResult(
                was_successful=False,
                overall_improvement=0.0,
                before_metrics=before_metrics,
                after_metrics=after_metrics
            )

        overall = sum(r.performance_gain for r in strategy_results) / len(strategy_results)
        result = OptimizationValidationResult(
            was_successful=overall > 0,
            overall_improvement=overall,
            strategy_results=strategy_results,
            before_metrics=before_metrics,
            after_metrics=after_metrics
        )
        logger.info(
            f"Outcome validation for {len(strategy_results)} strategies: "
            f"overall improvement {overall:.3f}, successful={result.was_successful}"
        )
        return result

    async def validate_system_health(
        self,
        insights: SystemPerformanceInsights,
        cancel_event: Optional[Any] = None
    ) -> SystemHealthValidationResult:
        """
        Rate system stability from a performance insights snapshot

        Returns:
            Result whose score starts at 1.0 and is reduced per issue, floored at 0
        """
        throw_if_cancelled(cancel_event, "validate_system_health")
        if insights is None:
            raise ValueError("insights must not be None")

        self.validation_stats["stability_validations"] += 1
        result = SystemHealthValidationResult()
        health = insights.health_score

        if health.overall < MIN_OVERALL_HEALTH:
            result.add_issue(
                "Overall System", ValidationSeverity.ERROR,
                f"Overall health score {health.overall:.2f} is below {MIN_OVERALL_HEALTH:.2f}",
                OVERALL_HEALTH_DEDUCTION,
                impact=1.0 - health.overall,
                recommended_actions=["Review critical areas", "Reduce load or scale out"]
            )

        if insights.performance_grade in POOR_GRADES:
            result.add_issue(
                "Performance", ValidationSeverity.ERROR,
                f"Performance grade {insights.performance_grade} indicates degraded performance",
                POOR_GRADE_DEDUCTION,
                impact=0.5,
                recommended_actions=["Investigate slow request types", "Apply pending optimizations"]
            )

        if health.reliability < MIN_RELIABILITY:
            result.add_issue(
                "Reliability", ValidationSeverity.WARNING,
                f"Reliability score {health.reliability:.2f} is below {MIN_RELIABILITY:.2f}",
                RELIABILITY_DEDUCTION,
                impact=1.0 - health.reliability,
                recommended_actions=["Check error rates", "Consider a circuit breaker"]
            )

        if insights.predictions.prediction_confidence < MIN_PREDICTION_CONFIDENCE:
            result.add_issue(
                "Predictive Analytics", ValidationSeverity.WARNING,
                f"Prediction confidence {insights.predictions.prediction_confidence:.2f} "
                f"is below {MIN_PREDICTION_CONFIDENCE:.2f}",
                PREDICTION_DEDUCTION,
                impact=0.1,
                recommended_actions=["Collect more history before trusting predictions"]
            )

        for bottleneck in insights.bottlenecks:
            if bottleneck.severity != BottleneckSeverity.CRITICAL:
                continue
            result.add_issue(
                bottleneck.component, ValidationSeverity.ERROR,
                bottleneck.description or f"Critical bottleneck in {bottleneck.component}",
                CRITICAL_BOTTLENECK_DEDUCTION,
                impact=bottleneck.impact,
                recommended_actions=list(bottleneck.recommended_actions)
            )

        if not result.is_stable:
            logger.warning(
                f"System unstable: score {result.stability_score:.2f}, {len(result.issues)} issues"
            )
        return result

    async def validate_model_performance(
        self,
        statistics: AIModelStatistics,
        cancel_event: Optional[Any] = None
    ) -> ModelValidationResult:
        """Check confidence model quality against fixed thresholds."""
        throw_if_cancelled(cancel_event, "validate_model_performance")
        if statistics is None:
            raise ValueError("statistics must not be None")

        result = ModelValidationResult()

        if statistics.accuracy_score < 0.7:
            result.issues.append(ModelValidationIssue(
                metric="Accuracy",
                severity=ValidationSeverity.ERROR if statistics.accuracy_score < 0.5 else ValidationSeverity.WARNING,
                message=f"Model accuracy {statistics.accuracy_score:.2%} is below acceptable threshold",
                current_value=statistics.accuracy_score,
                threshold=0.7
            ))

        if statistics.f1_score < 0.6:
            result.issues.append(ModelValidationIssue(
                metric="F1Score",
                severity=ValidationSeverity.WARNING,
                message=f"F1 score {statistics.f1_score:.3f} indicates poor precision/recall balance",
                current_value=statistics.f1_score,
                threshold=0.6
            ))

        if statistics.training_data_points < 100:
            result.issues.append(ModelValidationIssue(
                metric="TrainingData",
                severity=ValidationSeverity.WARNING,
                message=f"Only {statistics.training_data_points} training points available - model may be unreliable",
                current_value=statistics.training_data_points,
                threshold=100
            ))

        if statistics.last_retraining is not None:
            age = datetime.utcnow() - statistics.last_retraining
            if age > timedelta(days=7):
                result.issues.append(ModelValidationIssue(
                    metric="ModelAge",
                    severity=ValidationSeverity.WARNING,
                    message=f"Model was last retrained {age.days} days ago - consider retraining",
                    current_value=age.total_seconds() / 86400,
                    threshold=7
                ))

        prediction_ms = statistics.average_prediction_time.total_seconds() * 1000
        if prediction_ms > 100:
            result.issues.append(ModelValidationIssue(
                metric="PredictionLatency",
                severity=ValidationSeverity.WARNING,
                message=f"Average prediction time {prediction_ms:.0f}ms is high",
                current_value=prediction_ms,
                threshold=100
            ))

        error_count = sum(1 for i in result.issues if i.severity == ValidationSeverity.ERROR)
        warning_count = sum(1 for i in result.issues if i.severity == ValidationSeverity.WARNING)
        base_score = (statistics.accuracy_score + statistics.f1_score + statistics.model_confidence) / 3
        result.overall_score = max(0.0, base_score - error_count * 0.1 - warning_count * 0.05)
        result.is_healthy = error_count == 0
        return result

    def _score_strategy(
        self,
        strategy: OptimizationStrategy,
        before: RequestExecutionMetrics,
        after: RequestExecutionMetrics
    ) -> StrategyValidationResult:
        time_gain = _relative_reduction(
            before.average_execution_time.total_seconds(),
            after.average_execution_time.total_seconds()
        )
        memory_gain = _relative_reduction(before.memory_usage, after.memory_usage)

        if before.success_rate < 1.0:
            reliability_gain = (after.success_rate - before.success_rate) / (1.0 - before.success_rate)
        else:
            reliability_gain = after.success_rate - before.success_rate
        reliability_gain = max(-1.0, min(1.0, reliability_gain))

        weighted = (TIME_GAIN_WEIGHT * time_gain
                    + MEMORY_GAIN_WEIGHT * memory_gain
                    + RELIABILITY_GAIN_WEIGHT * reliability_gain)
        total_weight = TIME_GAIN_WEIGHT + MEMORY_GAIN_WEIGHT + RELIABILITY_GAIN_WEIGHT

        database_gain = _relative_reduction(before.database_calls, after.database_calls)
        external_api_gain = _relative_reduction(before.external_api_calls, after.external_api_calls)
        if before.database_calls > 0:
            weighted += DATABASE_GAIN_WEIGHT * database_gain
            total_weight += DATABASE_GAIN_WEIGHT
        if before.external_api_calls > 0:
            weighted += EXTERNAL_API_GAIN_WEIGHT * external_api_gain
            total_weight += EXTERNAL_API_GAIN_WEIGHT
        gain = weighted / total_weight

        return StrategyValidationResult(
            strategy=strategy,
            was_successful=gain > 0,
            actual_improvement=before.average_execution_time - after.average_execution_time,
            performance_gain=gain,
            time_gain=time_gain,
            memory_gain=memory_gain,
            reliability_gain=reliability_gain,
            database_gain=database_gain,
            external_api_gain=external_api_gain
        )

    def _record_stats(self, result: ValidationResult):
        stats = self.validation_stats
        stats["total_validations"] += 1
        if not result.is_valid:
            stats["failed_validations"] += 1
        elif result.severity == ValidationSeverity.WARNING:
            stats["warning_validations"] += 1
        if result.validation_time_ms is not None:
            count = stats["total_validations"]
            stats["avg_validation_time_ms"] += (result.validation_time_ms - stats["avg_validation_time_ms"]) / count

    def get_validation_stats(self) -> Dict[str, Any]:
        """Get validation statistics"""
        return {
            **self.validation_stats,
            "success_rate": (
                (self.validation_stats["total_validations"] - self.validation_stats["failed_validations"]) /
                max(self.validation_stats["total_validations"], 1)
            )
        }
