"""
Closed optimization loop: recommend -> validate -> (apply) -> verify -> learn

Applying an optimization is left to the caller. The pipeline decides which
recommendations are approved, and after application it scores the outcome
and feeds it back to the engine.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Union

from src.core.cancellation import throw_if_cancelled
from src.core.optimization_engine import OptimizationEngine
from src.models.data_models import (
    OptimizationRecommendation, OptimizationStrategy, RequestExecutionMetrics,
    ValidationSeverity
)
from src.validation.optimization_validator import (
    OptimizationValidationResult, OptimizationValidator,
    SystemHealthValidationResult, ValidationResult
)
from src.validation.validation_metrics import ValidationMetricsCollector

logger = logging.getLogger(__name__)

STABILITY_SCORE_METRIC = "StabilityScore"


@dataclass
class ProposalDecision:
    """A recommendation with its validation verdict"""
    recommendation: OptimizationRecommendation
    validation: ValidationResult
    approved: bool
    auto_apply: bool


class OptimizationPipeline:
    """Wires engine, validator and metrics collector into one loop"""

    def __init__(
        self,
        engine: OptimizationEngine,
        validator: OptimizationValidator,
        metrics_collector: Optional[ValidationMetricsCollector] = None
    ):
        self.engine = engine
        self.validator = validator
        self.metrics_collector = metrics_collector or ValidationMetricsCollector()

    async def propose(
        self,
        request_type: Union[type, str],
        metrics: Optional[RequestExecutionMetrics] = None,
        cancel_event: Optional[Any] = None
    ) -> List[ProposalDecision]:
        """Draft and validate recommendations for a request type, best first"""
        throw_if_cancelled(cancel_event, "propose")
        decisions = []
        for recommendation in self.engine.get_recommendations(request_type, metrics):
            decisions.append(await self.review(recommendation, request_type, cancel_event))

        approved = sum(1 for d in decisions if d.approved)
        logger.info(f"Proposed {len(decisions)} optimizations for {request_type}, {approved} approved")
        return decisions

    async def review(
        self,
        recommendation: OptimizationRecommendation,
        request_type: Union[type, str],
        cancel_event: Optional[Any] = None
    ) -> ProposalDecision:
        """Validate one recommendation and decide whether it may be applied automatically"""
        validation = await self.validator.validate_recommendation(recommendation, request_type, cancel_event)
        self.metrics_collector.record_validation_result(validation)

        options = self.validator.options
        auto_apply = (
            options.enable_automatic_optimization
            and validation.severity == ValidationSeverity.SUCCESS
            and recommendation.risk <= options.max_automatic_optimization_risk
        )
        return ProposalDecision(
            recommendation=recommendation,
            validation=validation,
            approved=validation.is_valid,
            auto_apply=auto_apply
        )

    async def verify(
        self,
        request_type: Union[type, str],
        applied_strategies: Sequence[OptimizationStrategy],
        before_metrics: RequestExecutionMetrics,
        after_metrics: RequestExecutionMetrics,
        cancel_event: Optional[Any] = None
    ) -> OptimizationValidationResult:
        """Score applied strategies and feed the measured gains back to the engine"""
        outcome = await self.validator.validate_optimization_results(
            applied_strategies, before_metrics, after_metrics, cancel_event
        )
        gains = {r.strategy: r.performance_gain for r in outcome.strategy_results}
        self.engine.learn_from_execution(request_type, list(applied_strategies), after_metrics, gains)
        return outcome

    async def check_stability(self, cancel_event: Optional[Any] = None) -> SystemHealthValidationResult:
        """Validate current system stability and publish the score"""
        insights = await self.engine.get_system_insights(cancel_event=cancel_event)
        result = await self.validator.validate_system_health(insights, cancel_event)
        self.metrics_collector.record_stability_result(result)
        self.engine.metrics_publisher.publish(STABILITY_SCORE_METRIC, result.stability_score)
        return result
