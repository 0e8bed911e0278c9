"""
API request/response schemas for the optimization service
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from src.models.data_models import (
    OptimizationRecommendation, OptimizationStrategy, RequestExecutionMetrics,
    SystemPerformanceInsights
)


class HealthStatusEnum(str, Enum):
    """Health status values"""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ErrorDetail(BaseModel):
    code: str
    message: str
    trace_id: Optional[str] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


class ValidateRecommendationRequest(BaseModel):
    """Recommendation to gate, with the request type it targets"""
    recommendation: OptimizationRecommendation
    target_request_type: str = Field(min_length=1)


class ValidationResultResponse(BaseModel):
    is_valid: bool
    severity: str
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    validated_strategy: OptimizationStrategy
    validation_time: datetime
    auto_apply: bool = False


class ValidateResultsRequest(BaseModel):
    """Before/after metrics for applied strategies"""
    request_type: str = Field(min_length=1)
    applied_strategies: List[OptimizationStrategy]
    before_metrics: RequestExecutionMetrics
    after_metrics: RequestExecutionMetrics


class StrategyResultResponse(BaseModel):
    strategy: OptimizationStrategy
    was_successful: bool
    actual_improvement_ms: float
    performance_gain: float


class OptimizationResultsResponse(BaseModel):
    was_successful: bool
    overall_improvement: float
    strategy_results: List[StrategyResultResponse] = Field(default_factory=list)
    validation_time: datetime


class SystemIssueResponse(BaseModel):
    component: str
    severity: str
    message: str
    impact: float
    recommended_actions: List[str] = Field(default_factory=list)


class StabilityResponse(BaseModel):
    is_stable: bool
    stability_score: float
    issues: List[SystemIssueResponse] = Field(default_factory=list)
    validation_time: datetime


class InsightsResponse(BaseModel):
    insights: SystemPerformanceInsights


class ModelStatisticsResponse(BaseModel):
    statistics: Dict[str, Any]
    is_healthy: bool
    overall_score: float
    issues: List[Dict[str, Any]] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: HealthStatusEnum
    timestamp: datetime
    version: str
    uptime_seconds: int
    checks: Dict[str, str] = Field(default_factory=dict)
    errors: Optional[List[str]] = None
