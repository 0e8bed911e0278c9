"""
Optimization endpoints

- POST /optimization/recommendations/validate - gate a recommendation
- POST /optimization/results/validate - score applied strategies and learn
- GET /optimization/insights - current performance insights
- GET /optimization/stability - stability verdict
- GET /optimization/model - confidence model statistics and health
"""

import logging
from dataclasses import asdict
from datetime import timedelta

from fastapi import APIRouter, Depends, Query

from src.api.schemas import (
    InsightsResponse, ModelStatisticsResponse, OptimizationResultsResponse,
    StabilityResponse, StrategyResultResponse, SystemIssueResponse,
    ValidateRecommendationRequest, ValidateResultsRequest, ValidationResultResponse
)
from src.services.runtime import OptimizationRuntime, get_runtime

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/optimization/recommendations/validate", response_model=ValidationResultResponse)
async def validate_recommendation(
    request: ValidateRecommendationRequest,
    runtime: OptimizationRuntime = Depends(get_runtime)
) -> ValidationResultResponse:
    decision = await runtime.pipeline.review(request.recommendation, request.target_request_type)
    result = decision.validation
    return ValidationResultResponse(
        is_valid=result.is_valid,
        severity=result.severity.label,
        errors=result.errors,
        warnings=result.warnings,
        validated_strategy=result.validated_strategy,
        validation_time=result.validation_time,
        auto_apply=decision.auto_apply
    )


@router.post("/optimization/results/validate", response_model=OptimizationResultsResponse)
async def validate_results(
    request: ValidateResultsRequest,
    runtime: OptimizationRuntime = Depends(get_runtime)
) -> OptimizationResultsResponse:
    outcome = await runtime.pipeline.verify(
        request.request_type,
        request.applied_strategies,
        request.before_metrics,
        request.after_metrics
    )
    return OptimizationResultsResponse(
        was_successful=outcome.was_successful,
        overall_improvement=outcome.overall_improvement,
        strategy_results=[
            StrategyResultResponse(
                strategy=r.strategy,
                was_successful=r.was_successful,
                actual_improvement_ms=r.actual_improvement.total_seconds() * 1000,
                performance_gain=r.performance_gain
            )
            for r in outcome.strategy_results
        ],
        validation_time=outcome.validation_time
    )


@router.get("/optimization/insights", response_model=InsightsResponse)
async def get_insights(
    window_minutes: int = Query(default=60, ge=1, le=7 * 24 * 60),
    runtime: OptimizationRuntime = Depends(get_runtime)
) -> InsightsResponse:
    insights = await runtime.engine.get_system_insights(timedelta(minutes=window_minutes))
    return InsightsResponse(insights=insights)


@router.get("/optimization/stability", response_model=StabilityResponse)
async def get_stability(runtime: OptimizationRuntime = Depends(get_runtime)) -> StabilityResponse:
    result = await runtime.pipeline.check_stability()
    return StabilityResponse(
        is_stable=result.is_stable,
        stability_score=result.stability_score,
        issues=[
            SystemIssueResponse(
                component=i.component,
                severity=i.severity.label,
                message=i.message,
                impact=i.impact,
                recommended_actions=i.recommended_actions
            )
            for i in result.issues
        ],
        validation_time=result.validation_time
    )


@router.get("/optimization/model", response_model=ModelStatisticsResponse)
async def get_model_statistics(runtime: OptimizationRuntime = Depends(get_runtime)) -> ModelStatisticsResponse:
    statistics = runtime.engine.get_model_statistics()
    validation = await runtime.validator.validate_model_performance(statistics)
    return ModelStatisticsResponse(
        statistics=statistics.model_dump(mode="json"),
        is_healthy=validation.is_healthy,
        overall_score=validation.overall_score,
        issues=[
            {**asdict(i), "severity": i.severity.label}
            for i in validation.issues
        ]
    )
