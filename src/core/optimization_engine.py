"""
Self-tuning optimization engine

Observes request execution metrics, derives health and bottleneck insight,
drafts optimization recommendations and learns from measured outcomes.

Features:
- Periodic metrics collection into a bounded time-series store
- Periodic confidence model updates once enough history exists
- Recommendation drafting with model confidence per strategy
- Batch size prediction from current load
- Performance insights: grade, bottlenecks, seasonal patterns, predictions
- Feedback learning from validated optimization outcomes

Both periodic actions return immediately once the engine is disposed or
(for model updates) learning is off, and skip a tick while the previous one
is still running. Neither lets an exception escape.
"""

import logging
import threading
import time
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from config.settings import OptimizationOptions
from src.core.cancellation import throw_if_cancelled
from src.core.confidence_model import (
    ConfidenceModel, HeuristicConfidenceModel, PredictionTracker, TrainingSample
)
from src.core.pattern_analysis import (
    calculate_performance_grade, detect_seasonal_patterns, draft_candidates, predict_batch_size
)
from src.models.data_models import (
    AIModelStatistics, LoadPatternData, OptimizationRecommendation, OptimizationStrategy,
    RequestExecutionMetrics, SystemLoadMetrics, SystemPerformanceInsights
)
from src.services.metrics_aggregator import (
    ACTIVE_REQUESTS_METRIC, MetricsAggregator, THROUGHPUT_METRIC
)
from src.services.metrics_cache import ConnectionMetricsCache
from src.services.metrics_publisher import MetricsPublisher
from src.services.scheduler import BackgroundScheduler
from src.services.system_analyzer import HealthScorer, SystemAnalyzer
from src.services.time_series_db import TimeSeriesDatabase
from src.utils.window_aligner import WindowAligner

logger = logging.getLogger(__name__)

HEALTH_SCORE_METRIC = "HealthScore"
LOAD_LEVEL_METRIC = "LoadLevel"
OPTIMIZATION_GAIN_METRIC = "OptimizationGain"

MODEL_UPDATE_TASK = "model_update"
METRICS_COLLECTION_TASK = "metrics_collection"

DATA_RETENTION = timedelta(days=14)
SEASONAL_LOOKBACK = timedelta(days=14)


class EngineDisposedError(RuntimeError):
    """Raised when a disposed engine is asked to do work"""


def _type_name(request_type: Union[type, str]) -> str:
    if isinstance(request_type, str):
        return request_type
    return getattr(request_type, "__name__", str(request_type))


class OptimizationEngine:
    """
    Closed-loop optimization engine

    Collaborators are injected; the confidence model and time-series store
    default to in-process implementations.
    """

    def __init__(
        self,
        options: OptimizationOptions,
        metrics_aggregator: MetricsAggregator,
        health_scorer: HealthScorer,
        system_analyzer: SystemAnalyzer,
        metrics_publisher: MetricsPublisher,
        model: Optional[ConfidenceModel] = None,
        time_series_db: Optional[TimeSeriesDatabase] = None,
        metrics_cache: Optional[ConnectionMetricsCache] = None,
        scheduler: Optional[BackgroundScheduler] = None
    ):
        for name, value in (("options", options), ("metrics_aggregator", metrics_aggregator),
                            ("health_scorer", health_scorer), ("system_analyzer", system_analyzer),
                            ("metrics_publisher", metrics_publisher)):
            if value is None:
                raise ValueError(f"{name} must not be None")

        self.options = options
        self.metrics_aggregator = metrics_aggregator
        self.health_scorer = health_scorer
        self.system_analyzer = system_analyzer
        self.metrics_publisher = metrics_publisher
        self.model = model or HeuristicConfidenceModel()
        self.time_series_db = time_series_db or TimeSeriesDatabase(options.time_series_max_history)
        self.metrics_cache = metrics_cache or ConnectionMetricsCache(
            self.time_series_db,
            max_windows=options.rolling_window_max_windows,
            window_size=options.rolling_window_size
        )
        self.scheduler = scheduler or BackgroundScheduler()
        self.tracker = PredictionTracker(positive_threshold=options.min_confidence_score)

        self._disposed = False
        self._learning_enabled = options.learning_enabled
        self._update_guard = threading.Lock()
        self._collect_guard = threading.Lock()
        self._state_lock = threading.RLock()

        self._latest_values: Dict[str, float] = {}
        self._latest_health: Optional[float] = None
        self._latest_load: Optional[LoadPatternData] = None
        # (request type, strategy) -> (confidence, baseline metrics) awaiting feedback
        self._pending: "OrderedDict[Tuple[str, OptimizationStrategy], Tuple[float, RequestExecutionMetrics]]" = OrderedDict()
        self._max_pending = 10000

        self.model_updates = 0
        self.metrics_collections = 0
        self.last_model_update: Optional[datetime] = None
        self.last_metrics_collection: Optional[datetime] = None

        logger.info(
            f"Optimization engine created (learning={self._learning_enabled}, "
            f"model {options.model_version})"
        )

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def learning_enabled(self) -> bool:
        return self._learning_enabled

    def _ensure_not_disposed(self) -> None:
        if self._disposed:
            raise EngineDisposedError("Optimization engine has been disposed")

    # Lifecycle

    async def start(self) -> None:
        """Register and start the periodic model update and metrics collection"""
        self._ensure_not_disposed()
        if self.scheduler.get_task(MODEL_UPDATE_TASK) is None:
            self.scheduler.add_task(MODEL_UPDATE_TASK, self.options.model_update_interval, self.update_model)
        if self.scheduler.get_task(METRICS_COLLECTION_TASK) is None:
            self.scheduler.add_task(METRICS_COLLECTION_TASK, self.options.metrics_collection_interval,
                                    self.collect_metrics)
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()

    async def dispose(self) -> None:
        """Stop background work. Safe to call more than once."""
        if self._disposed:
            return
        self._disposed = True
        await self.scheduler.stop()
        logger.info("Optimization engine disposed")

    # Periodic actions

    async def update_model(self) -> bool:
        """
        Retrain the confidence model from recorded outcomes.

        Returns:
            True if an update actually ran
        """
        if self._disposed or not self._learning_enabled:
            return False
        if not self._update_guard.acquire(blocking=False):
            logger.debug("Model update already in progress, skipping")
            return False

        try:
            if self._disposed or not self._learning_enabled:
                return False

            history_span = self.time_series_db.history_span(THROUGHPUT_METRIC)
            if history_span < self.options.min_model_history:
                logger.debug(
                    f"Skipping model update: {history_span} of history, "
                    f"{self.options.min_model_history} required"
                )
                return False

            start_time = time.perf_counter()
            samples = self.tracker.get_samples()
            self.model.retrain(samples)
            if samples:
                self.model.adjust(self.tracker.accuracy())
            self.tracker.mark_retrained()
            removed = self.time_series_db.cleanup_old_data(DATA_RETENTION)

            self.model_updates += 1
            self.last_model_update = datetime.utcnow()
            logger.info(
                f"AI model update completed in {(time.perf_counter() - start_time) * 1000:.1f}ms "
                f"({len(samples)} samples, {removed} expired points removed)"
            )
            return True

        except Exception as e:
            logger.error(f"Error updating AI model: {e}")
            return False
        finally:
            self._update_guard.release()

    async def collect_metrics(self) -> bool:
        """
        Pull the latest aggregated metrics, store them and publish health.

        Returns:
            True if a collection actually ran
        """
        if self._disposed:
            return False
        if not self._collect_guard.acquire(blocking=False):
            logger.debug("Metrics collection already in progress, skipping")
            return False

        try:
            if self._disposed:
                return False

            latest = self.metrics_aggregator.get_latest_metrics()
            values: Dict[str, float] = {}
            timestamp = None
            for name, series in latest.items():
                if not series:
                    continue
                ts, value = series[-1]
                values[name] = float(value)
                timestamp = ts if timestamp is None else max(timestamp, ts)

            if values:
                self.time_series_db.store_batch(values, timestamp)

            health = await self.health_scorer.calculate_score(values)
            load = await self.system_analyzer.analyze_load_patterns(values)

            with self._state_lock:
                self._latest_values = values
                self._latest_health = health
                self._latest_load = load

            self.metrics_publisher.publish(HEALTH_SCORE_METRIC, health)
            self.metrics_publisher.publish(LOAD_LEVEL_METRIC, int(load.level))
            for name, value in values.items():
                self.metrics_publisher.publish(name, value)

            if ACTIVE_REQUESTS_METRIC in values:
                active = int(values[ACTIVE_REQUESTS_METRIC])
                self.metrics_cache.store_connection_trend_data(active, timestamp)
                self.metrics_cache.cache_metric_with_rolling_window(
                    WindowAligner.window_key("active_requests", timestamp or datetime.utcnow()), active
                )
            breakdown = self.metrics_aggregator.get_active_breakdown()
            if breakdown:
                self.metrics_cache.store_connection_breakdown(breakdown, timestamp)

            self.metrics_collections += 1
            self.last_metrics_collection = datetime.utcnow()
            logger.debug(f"Collected {len(values)} metrics, health {health:.2f}, load {load.level.label}")
            return True

        except Exception as e:
            logger.warning(f"Error collecting performance metrics: {e}")
            return False
        finally:
            self._collect_guard.release()

    # Analysis

    def get_recommendations(
        self,
        request_type: Union[type, str],
        metrics: Optional[RequestExecutionMetrics] = None
    ) -> List[OptimizationRecommendation]:
        """All scored recommendations for a request type, best first"""
        self._ensure_not_disposed()
        name = _type_name(request_type)
        metrics = metrics or self.metrics_aggregator.get_request_metrics(name)
        if metrics is None:
            return []

        recommendations = []
        for priority, candidate in enumerate(draft_candidates(name, metrics), start=1):
            start_time = time.perf_counter()
            confidence = self.model.score(candidate.strategy, metrics)
            self.tracker.record_prediction_time(timedelta(seconds=time.perf_counter() - start_time))

            recommendations.append(OptimizationRecommendation(
                strategy=candidate.strategy,
                confidence_score=confidence,
                risk=candidate.risk,
                estimated_improvement=metrics.average_execution_time * candidate.estimated_gain,
                parameters=dict(candidate.parameters),
                reasoning=candidate.reasoning,
                priority=priority,
                estimated_gain_percentage=candidate.estimated_gain * 100
            ))
            self._remember_prediction(name, candidate.strategy, confidence, metrics)

        recommendations.sort(
            key=lambda r: r.confidence_score * r.estimated_gain_percentage, reverse=True
        )
        return recommendations

    def analyze_request(
        self,
        request_type: Union[type, str],
        metrics: Optional[RequestExecutionMetrics] = None
    ) -> OptimizationRecommendation:
        """
        Best recommendation for a request type.

        Returns:
            A recommendation with strategy None when nothing applies
        """
        recommendations = self.get_recommendations(request_type, metrics)
        if recommendations:
            return recommendations[0]
        return OptimizationRecommendation(
            strategy=OptimizationStrategy.NONE,
            reasoning=f"No optimization opportunity found for {_type_name(request_type)}"
        )

    def predict_optimal_batch_size(
        self,
        request_type: Union[type, str],
        load: SystemLoadMetrics
    ) -> int:
        """Batch size in [1, max_batch_size] for current load and observed latency"""
        self._ensure_not_disposed()
        if load is None:
            raise ValueError("load must not be None")

        name = _type_name(request_type)
        metrics = self.metrics_aggregator.get_request_metrics(name)
        variance_fn = getattr(self.metrics_aggregator, "get_execution_time_variance", None)
        variance = variance_fn(name) if variance_fn else 0.0

        return predict_batch_size(
            load,
            metrics.average_execution_time if metrics else None,
            variance,
            self.options.default_batch_size,
            self.options.max_batch_size
        )

    def learn_from_execution(
        self,
        request_type: Union[type, str],
        applied_strategies: Sequence[OptimizationStrategy],
        actual_metrics: RequestExecutionMetrics,
        performance_gains: Optional[Dict[OptimizationStrategy, float]] = None
    ) -> int:
        """
        Record measured outcomes for applied strategies.

        Args:
            request_type: Request type the strategies were applied to
            applied_strategies: Strategies that were applied
            actual_metrics: Metrics observed after application
            performance_gains: Measured gain per strategy; derived from the
                baseline captured at recommendation time when omitted

        Returns:
            Number of outcomes recorded (0 when disposed or not learning)
        """
        if self._disposed or not self._learning_enabled:
            return 0
        if actual_metrics is None or applied_strategies is None:
            raise ValueError("applied_strategies and actual_metrics must not be None")

        name = _type_name(request_type)
        recorded = 0
        for strategy in applied_strategies:
            with self._state_lock:
                confidence, baseline = self._pending.pop((name, strategy), (None, None))

            if performance_gains and strategy in performance_gains:
                gain = performance_gains[strategy]
            elif baseline is not None and baseline.average_execution_time > timedelta(0):
                gain = 1 - actual_metrics.average_execution_time / baseline.average_execution_time
            else:
                continue

            if confidence is None:
                confidence = self.model.score(strategy, actual_metrics)

            was_successful = gain > 0
            self.tracker.record_outcome(TrainingSample(
                strategy=strategy,
                predicted_confidence=confidence,
                was_successful=was_successful,
                performance_gain=gain
            ))
            self.system_analyzer.record_prediction_outcome(strategy, was_successful, gain)
            self.time_series_db.store_metric(
                OPTIMIZATION_GAIN_METRIC, gain, labels={"strategy": strategy.value, "request_type": name}
            )
            recorded += 1

        if recorded:
            logger.info(f"Learned from {recorded} optimization outcomes for {name}")
        return recorded

    async def get_system_insights(
        self,
        analysis_window: timedelta = timedelta(hours=1),
        cancel_event: Optional[Any] = None
    ) -> SystemPerformanceInsights:
        """Snapshot of health, grade, bottlenecks, seasonal patterns and predictions"""
        throw_if_cancelled(cancel_event, "get_system_insights")
        self._ensure_not_disposed()

        values = self._current_values()
        overall = await self.health_scorer.calculate_score(values, cancel_event)
        health = self.health_scorer.build_health_score(values).model_copy(update={"overall": overall})
        throw_if_cancelled(cancel_event, "get_system_insights")
        load = await self.system_analyzer.analyze_load_patterns(values, cancel_event)

        key_metrics = dict(values)
        for metric in self.time_series_db.metric_names():
            window_stats = self.time_series_db.get_statistics(metric, analysis_window)
            if window_stats.count:
                key_metrics[f"{metric}.mean"] = window_stats.mean

        return SystemPerformanceInsights(
            analysis_time=datetime.utcnow(),
            analysis_period=analysis_window,
            health_score=health,
            performance_grade=calculate_performance_grade(overall),
            bottlenecks=self.system_analyzer.identify_bottlenecks(values),
            seasonal_patterns=self.detect_seasonal_patterns(),
            key_metrics=key_metrics,
            load_patterns=load,
            predictions=self.system_analyzer.predict(self.time_series_db)
        )

    def detect_seasonal_patterns(self):
        """Seasonal patterns in hourly throughput (needs at least 24 hours of data)"""
        hourly = self._hourly_series(THROUGHPUT_METRIC, SEASONAL_LOOKBACK)
        profile = self.metrics_cache.get_hourly_profile()
        if len(profile) > len(hourly):
            hourly = profile
        return detect_seasonal_patterns(hourly)

    async def get_load_pattern_analysis(self) -> LoadPatternData:
        self._ensure_not_disposed()
        with self._state_lock:
            if self._latest_load is not None:
                return self._latest_load
        return await self.system_analyzer.analyze_load_patterns(self._current_values())

    def set_learning_mode(self, enabled: bool) -> None:
        self._ensure_not_disposed()
        self._learning_enabled = bool(enabled)
        logger.info(f"Learning mode {'enabled' if enabled else 'disabled'}")

    def get_model_statistics(self) -> AIModelStatistics:
        self._ensure_not_disposed()
        samples = self.tracker.get_samples()
        model_confidence = (
            sum(s.predicted_confidence for s in samples) / len(samples) if samples else 0.0
        )
        statistics = self.tracker.get_statistics(self.options.model_version, model_confidence)
        if statistics.last_retraining is None and self.options.model_training_date is not None:
            statistics = statistics.model_copy(update={"last_retraining": self.options.model_training_date})
        return statistics

    def _latest_breakdown(self) -> Dict[str, int]:
        history = self.metrics_cache.get_breakdown_history()
        return dict(history[-1].counts) if history else {}

    def get_engine_status(self) -> Dict[str, Any]:
        return {
            "disposed": self._disposed,
            "learning_enabled": self._learning_enabled,
            "model_updates": self.model_updates,
            "metrics_collections": self.metrics_collections,
            "last_model_update": self.last_model_update.isoformat() if self.last_model_update else None,
            "last_metrics_collection": (
                self.last_metrics_collection.isoformat() if self.last_metrics_collection else None
            ),
            "latest_health_score": self._latest_health,
            "pending_predictions": len(self._pending),
            "active_breakdown": self._latest_breakdown(),
            "scheduler": self.scheduler.get_status(),
            "storage": self.time_series_db.get_storage_stats()
        }

    def _current_values(self) -> Dict[str, float]:
        with self._state_lock:
            if self._latest_values:
                return dict(self._latest_values)
        values = {}
        for metric in self.time_series_db.metric_names():
            latest = self.time_series_db.latest_value(metric)
            if latest is not None:
                values[metric] = latest
        return values

    def _hourly_series(self, metric: str, lookback: timedelta) -> List[float]:
        buckets: "OrderedDict[datetime, List[float]]" = OrderedDict()
        for point in self.time_series_db.get_history(metric, lookback):
            hour = WindowAligner.align_to_window(point.timestamp, 'H1')
            buckets.setdefault(hour, []).append(point.value)
        return [sum(v) / len(v) for v in buckets.values()]

    def _remember_prediction(self, name: str, strategy: OptimizationStrategy, confidence: float,
                             metrics: RequestExecutionMetrics) -> None:
        with self._state_lock:
            key = (name, strategy)
            self._pending[key] = (confidence, metrics)
            self._pending.move_to_end(key)
            while len(self._pending) > self._max_pending:
                self._pending.popitem(last=False)
