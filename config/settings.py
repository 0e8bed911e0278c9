"""
Application configuration using Pydantic Settings
"""
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.models.data_models import RiskLevel


class OptimizationOptions(BaseModel):
    """Plain option values consumed by the engine and the validator"""
    model_config = ConfigDict(protected_namespaces=())

    min_confidence_score: float = Field(default=0.7, ge=0, le=1)
    max_automatic_optimization_risk: RiskLevel = RiskLevel.MEDIUM
    enable_automatic_optimization: bool = False
    learning_enabled: bool = True

    model_update_interval: timedelta = timedelta(hours=1)
    metrics_collection_interval: timedelta = timedelta(minutes=5)
    min_model_history: timedelta = timedelta(hours=24)

    default_batch_size: int = Field(default=10, ge=1)
    max_batch_size: int = Field(default=100, ge=1)

    time_series_max_history: int = Field(default=1000, gt=0)
    rolling_window_max_windows: int = Field(default=1000, gt=0)
    rolling_window_size: int = Field(default=288, gt=0)  # 24h of 5 minute samples

    model_version: str = "1.0.0"
    model_training_date: Optional[datetime] = None

    @field_validator('max_automatic_optimization_risk', mode='before')
    @classmethod
    def parse_risk(cls, v):
        return RiskLevel.parse(v)


class Settings(BaseSettings):
    """Application settings with environment variable support (OPTIMIZER_ prefix)"""

    model_config = SettingsConfigDict(
        env_prefix="OPTIMIZER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )

    # Application
    app_name: str = "Adaptive Optimization Engine"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = "development"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_workers: int = 1

    # Validation policy
    min_confidence_score: float = 0.7
    max_automatic_optimization_risk: str = "Medium"
    enable_automatic_optimization: bool = False

    # Learning
    learning_enabled: bool = True
    model_update_interval_seconds: int = 3600
    metrics_collection_interval_seconds: int = 300
    min_model_history_hours: int = 24
    model_version: str = "1.0.0"
    model_training_date: Optional[datetime] = None

    # Batching
    default_batch_size: int = 10
    max_batch_size: int = 100

    # Storage bounds
    time_series_max_history: int = 1000
    rolling_window_max_windows: int = 1000
    rolling_window_size: int = 288

    # Monitoring
    prometheus_enabled: bool = True
    start_background_tasks: bool = True

    @field_validator('max_automatic_optimization_risk')
    @classmethod
    def validate_risk(cls, v):
        RiskLevel.parse(v)
        return v

    def to_optimization_options(self) -> OptimizationOptions:
        """Build the engine/validator options from environment settings"""
        return OptimizationOptions(
            min_confidence_score=self.min_confidence_score,
            max_automatic_optimization_risk=self.max_automatic_optimization_risk,
            enable_automatic_optimization=self.enable_automatic_optimization,
            learning_enabled=self.learning_enabled,
            model_update_interval=timedelta(seconds=self.model_update_interval_seconds),
            metrics_collection_interval=timedelta(seconds=self.metrics_collection_interval_seconds),
            min_model_history=timedelta(hours=self.min_model_history_hours),
            default_batch_size=self.default_batch_size,
            max_batch_size=self.max_batch_size,
            time_series_max_history=self.time_series_max_history,
            rolling_window_max_windows=self.rolling_window_max_windows,
            rolling_window_size=self.rolling_window_size,
            model_version=self.model_version,
            model_training_date=self.model_training_date,
        )

    def get_runtime_configuration(self) -> Dict[str, Any]:
        """Get complete runtime configuration"""
        return {
            "environment": self.environment,
            "validation": {
                "min_confidence_score": self.min_confidence_score,
                "max_automatic_optimization_risk": self.max_automatic_optimization_risk,
                "enable_automatic_optimization": self.enable_automatic_optimization,
            },
            "learning": {
                "enabled": self.learning_enabled,
                "model_update_interval": self.model_update_interval_seconds,
                "metrics_collection_interval": self.metrics_collection_interval_seconds,
                "min_model_history_hours": self.min_model_history_hours,
                "model_version": self.model_version,
            },
            "batching": {
                "default_batch_size": self.default_batch_size,
                "max_batch_size": self.max_batch_size,
            },
        }


# Global settings instance
settings = Settings()
