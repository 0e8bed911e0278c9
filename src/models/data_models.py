"""
Data models for the adaptive optimization engine
"""
import math
from typing import Optional, Dict, Any, List
from datetime import datetime, timedelta
from enum import Enum, IntEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator


def clamp_unit(value: float) -> float:
    """Clamp a ratio into [0, 1]; NaN counts as 0"""
    if value is None:
        return 0.0
    value = float(value)
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))


class OptimizationStrategy(str, Enum):
    """Optimization strategies the engine can recommend"""
    NONE = "None"
    ENABLE_CACHING = "EnableCaching"
    BATCH_PROCESSING = "BatchProcessing"
    MEMORY_POOLING = "MemoryPooling"
    PARALLEL_PROCESSING = "ParallelProcessing"
    CIRCUIT_BREAKER = "CircuitBreaker"
    DATABASE_OPTIMIZATION = "DatabaseOptimization"
    COMPRESSION_OPTIMIZATION = "CompressionOptimization"
    RESOURCE_POOLING = "ResourcePooling"
    LAZY_LOADING = "LazyLoading"
    CUSTOM = "Custom"


class _LabelledIntEnum(IntEnum):
    """Ordered enum that renders as its CamelCase label"""

    @property
    def label(self) -> str:
        return "".join(part.capitalize() for part in self.name.split("_"))

    def __str__(self) -> str:
        return self.label

    @classmethod
    def parse(cls, value):
        """Accept a member, an int, a name ("VERY_LOW") or a label ("VeryLow")"""
        if isinstance(value, cls):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(value)
        if isinstance(value, str):
            normalized = value.replace("-", "").replace("_", "").lower()
            for member in cls:
                if member.name.replace("_", "").lower() == normalized:
                    return member
        raise ValueError(f"Unknown {cls.__name__}: {value!r}")


class RiskLevel(_LabelledIntEnum):
    """Risk of applying an optimization automatically"""
    VERY_LOW = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    VERY_HIGH = 4


class ValidationSeverity(_LabelledIntEnum):
    """Validation outcome severity, aggregated worst-of"""
    SUCCESS = 0
    WARNING = 1
    ERROR = 2


class LoadLevel(_LabelledIntEnum):
    """Coarse system load classification"""
    IDLE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class BottleneckSeverity(str, Enum):
    """Bottleneck severity"""
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class RequestExecutionMetrics(BaseModel):
    """Immutable snapshot of execution statistics for one request type"""
    model_config = ConfigDict(frozen=True)

    total_executions: int = Field(default=0, ge=0)
    successful_executions: int = Field(default=0, ge=0)
    failed_executions: int = Field(default=0, ge=0)
    average_execution_time: timedelta = timedelta(0)
    p95_execution_time: timedelta = timedelta(0)
    concurrent_executions: int = Field(default=0, ge=0)
    memory_usage: int = 0  # bytes used
    memory_allocated: int = 0  # bytes allocated
    database_calls: int = Field(default=0, ge=0)
    external_api_calls: int = Field(default=0, ge=0)
    success_rate: float = 1.0
    last_execution: Optional[datetime] = None

    @field_validator('success_rate', mode='before')
    @classmethod
    def clamp_success_rate(cls, v):
        return clamp_unit(v)

    @property
    def failure_rate(self) -> float:
        return 1.0 - self.success_rate


class OptimizationRecommendation(BaseModel):
    """A drafted optimization awaiting validation"""
    strategy: OptimizationStrategy = OptimizationStrategy.NONE
    confidence_score: float = 0.0
    risk: RiskLevel = RiskLevel.LOW
    estimated_improvement: timedelta = timedelta(0)
    parameters: Optional[Dict[str, Any]] = None
    reasoning: str = ""
    priority: int = 0
    estimated_gain_percentage: float = 0.0

    @field_validator('confidence_score', mode='before')
    @classmethod
    def clamp_confidence(cls, v):
        return clamp_unit(v)

    @field_validator('risk', mode='before')
    @classmethod
    def parse_risk(cls, v):
        return RiskLevel.parse(v)


class SystemHealthScore(BaseModel):
    """Health sub-scores; overall comes from the scorer, not a mean of the rest"""
    overall: float = 1.0
    performance: float = 1.0
    reliability: float = 1.0
    scalability: float = 1.0
    security: float = 1.0
    maintainability: float = 1.0
    status: str = "Healthy"
    critical_areas: List[str] = Field(default_factory=list)

    @field_validator('overall', 'performance', 'reliability', 'scalability',
                     'security', 'maintainability', mode='before')
    @classmethod
    def clamp_scores(cls, v):
        return clamp_unit(v)


class PerformanceBottleneck(BaseModel):
    """Detected bottleneck"""
    component: str
    severity: BottleneckSeverity = BottleneckSeverity.LOW
    description: str = ""
    impact: float = 0.0
    recommended_actions: List[str] = Field(default_factory=list)

    @field_validator('impact', mode='before')
    @classmethod
    def clamp_impact(cls, v):
        return clamp_unit(v)


class SeasonalPattern(BaseModel):
    """Recurring load pattern found by autocorrelation"""
    period_hours: int = Field(gt=0)
    strength: float = 0.0
    pattern_type: str = ""
    description: str = ""

    @field_validator('strength', mode='before')
    @classmethod
    def clamp_strength(cls, v):
        return clamp_unit(v)


class PredictiveAnalysis(BaseModel):
    """Short-horizon predictions with a confidence"""
    prediction_confidence: float = 0.0
    next_hour_predictions: Dict[str, float] = Field(default_factory=dict)
    potential_issues: List[str] = Field(default_factory=list)

    @field_validator('prediction_confidence', mode='before')
    @classmethod
    def clamp_confidence(cls, v):
        return clamp_unit(v)


class LoadPatternData(BaseModel):
    """Load classification and strategy effectiveness snapshot"""
    level: LoadLevel = LoadLevel.IDLE
    success_rate: float = 0.0
    average_improvement: float = 0.0
    total_predictions: int = 0
    strategy_effectiveness: Dict[str, float] = Field(default_factory=dict)

    @field_validator('success_rate', mode='before')
    @classmethod
    def clamp_success_rate(cls, v):
        return clamp_unit(v)

    @field_validator('level', mode='before')
    @classmethod
    def parse_level(cls, v):
        return LoadLevel.parse(v)


class SystemPerformanceInsights(BaseModel):
    """Everything stability validation needs, in one object"""
    analysis_time: datetime = Field(default_factory=datetime.utcnow)
    analysis_period: timedelta = timedelta(hours=1)
    health_score: SystemHealthScore = Field(default_factory=SystemHealthScore)
    performance_grade: str = "A"
    bottlenecks: List[PerformanceBottleneck] = Field(default_factory=list)
    seasonal_patterns: List[SeasonalPattern] = Field(default_factory=list)
    key_metrics: Dict[str, float] = Field(default_factory=dict)
    load_patterns: LoadPatternData = Field(default_factory=LoadPatternData)
    predictions: PredictiveAnalysis = Field(default_factory=PredictiveAnalysis)

    @field_validator('performance_grade')
    @classmethod
    def validate_grade(cls, v):
        v = v.strip().upper()
        if v not in ('A', 'B', 'C', 'D', 'F'):
            raise ValueError('performance_grade must be one of A, B, C, D, F')
        return v


class SystemLoadMetrics(BaseModel):
    """Current load used to size batches"""
    cpu_utilization: float = 0.0
    memory_utilization: float = 0.0
    active_requests: int = 0
    queued_requests: int = 0
    throughput_per_second: float = 0.0

    @field_validator('cpu_utilization', 'memory_utilization', mode='before')
    @classmethod
    def clamp_utilization(cls, v):
        return clamp_unit(v)


class AIModelStatistics(BaseModel):
    """Confidence model quality snapshot"""
    model_config = ConfigDict(protected_namespaces=())

    accuracy_score: float = 0.0
    precision: float = 0.0
    recall: float = 0.0
    f1_score: float = 0.0
    model_confidence: float = 0.0
    total_predictions: int = 0
    correct_predictions: int = 0
    training_data_points: int = 0
    last_retraining: Optional[datetime] = None
    average_prediction_time: timedelta = timedelta(0)
    model_version: str = "1.0.0"

    @field_validator('accuracy_score', 'precision', 'recall', 'f1_score',
                     'model_confidence', mode='before')
    @classmethod
    def clamp_scores(cls, v):
        return clamp_unit(v)
