"""
Optimization runtime initialization module

Builds the engine with its collaborators, the validator and the closed-loop
pipeline, and owns the background scheduler that drives them.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from config.settings import OptimizationOptions, settings
from src.core.optimization_engine import OptimizationEngine
from src.services.metrics_aggregator import SystemMetricsAggregator
from src.services.metrics_cache import ConnectionMetricsCache
from src.services.metrics_publisher import PrometheusMetricsPublisher
from src.services.optimization_pipeline import OptimizationPipeline
from src.services.scheduler import BackgroundScheduler
from src.services.system_analyzer import DefaultSystemAnalyzer, WeightedHealthScorer
from src.services.time_series_db import TimeSeriesDatabase
from src.validation.optimization_validator import OptimizationValidator
from src.validation.validation_metrics import ValidationMetricsCollector

logger = logging.getLogger(__name__)

METRICS_SAMPLING_TASK = "metrics_sampling"
METRICS_SAMPLING_INTERVAL = timedelta(seconds=15)


class OptimizationRuntime:
    """
    Owns every long-lived component of the service.

    Responsibilities:
    - Construct engine collaborators from options
    - Start and stop background sampling, collection and model updates
    - Report initialization status
    """

    def __init__(self, options: Optional[OptimizationOptions] = None):
        self.options = options or settings.to_optimization_options()
        self.scheduler = BackgroundScheduler()
        self.aggregator = SystemMetricsAggregator()
        self.time_series_db = TimeSeriesDatabase(self.options.time_series_max_history)
        self.metrics_cache = ConnectionMetricsCache(
            self.time_series_db,
            max_windows=self.options.rolling_window_max_windows,
            window_size=self.options.rolling_window_size
        )
        self.publisher = PrometheusMetricsPublisher()
        self.engine = OptimizationEngine(
            options=self.options,
            metrics_aggregator=self.aggregator,
            health_scorer=WeightedHealthScorer(),
            system_analyzer=DefaultSystemAnalyzer(),
            metrics_publisher=self.publisher,
            time_series_db=self.time_series_db,
            metrics_cache=self.metrics_cache,
            scheduler=self.scheduler
        )
        self.validator = OptimizationValidator(self.options)
        self.validation_metrics = ValidationMetricsCollector()
        self.pipeline = OptimizationPipeline(self.engine, self.validator, self.validation_metrics)

        self.initialized = False
        self.initialization_time: Optional[datetime] = None

    async def initialize(self, start_background_tasks: bool = True) -> Dict[str, Any]:
        """Start background work. Returns initialization status."""
        if self.initialized:
            logger.warning("Optimization runtime already initialized")
            return self.get_status()

        started_at = datetime.utcnow()
        if start_background_tasks:
            self.scheduler.add_task(
                METRICS_SAMPLING_TASK, METRICS_SAMPLING_INTERVAL,
                self.aggregator.collect_all_metrics, initial_delay=timedelta(0)
            )
            await self.engine.start()

        self.initialized = True
        self.initialization_time = datetime.utcnow()
        logger.info(
            f"Optimization runtime initialized in "
            f"{(self.initialization_time - started_at).total_seconds() * 1000:.0f}ms "
            f"(background tasks: {start_background_tasks})"
        )
        return self.get_status()

    async def shutdown(self) -> None:
        await self.engine.dispose()
        self.initialized = False
        logger.info("Optimization runtime shut down")

    def get_status(self) -> Dict[str, Any]:
        return {
            "initialized": self.initialized,
            "initialization_time": self.initialization_time.isoformat() if self.initialization_time else None,
            "engine": self.engine.get_engine_status(),
            "validation": self.validator.get_validation_stats()
        }


_runtime: Optional[OptimizationRuntime] = None


def get_runtime() -> OptimizationRuntime:
    """Current runtime, created on first use"""
    global _runtime
    if _runtime is None:
        _runtime = OptimizationRuntime()
    return _runtime


async def initialize_runtime(start_background_tasks: bool = True) -> Dict[str, Any]:
    return await get_runtime().initialize(start_background_tasks)


async def shutdown_runtime() -> None:
    global _runtime
    if _runtime is not None:
        await _runtime.shutdown()
        _runtime = None
