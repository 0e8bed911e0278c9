"""
Pluggable confidence model and prediction quality tracking
"""
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

import numpy as np

from src.models.data_models import (
    AIModelStatistics, OptimizationStrategy, RequestExecutionMetrics, clamp_unit
)

logger = logging.getLogger(__name__)


@dataclass
class TrainingSample:
    """One observed optimization outcome"""
    strategy: OptimizationStrategy
    predicted_confidence: float
    was_successful: bool
    performance_gain: float = 0.0
    timestamp: datetime = field(default_factory=datetime.utcnow)


class ConfidenceModel(ABC):
    """Scores how likely a strategy is to help a request type"""

    @abstractmethod
    def score(self, strategy: OptimizationStrategy, metrics: RequestExecutionMetrics) -> float:
        """Confidence in [0, 1]"""

    @abstractmethod
    def retrain(self, samples: Sequence[TrainingSample]) -> None:
        """Refit from observed outcomes"""

    def adjust(self, accuracy: float) -> None:
        """Nudge the model after measuring its accuracy"""


class HeuristicConfidenceModel(ConfidenceModel):
    """
    Base confidence per strategy, blended with the observed success rate of
    that strategy and discounted when the request type has little history.
    """

    BASE_CONFIDENCE: Dict[OptimizationStrategy, float] = {
        OptimizationStrategy.ENABLE_CACHING: 0.85,
        OptimizationStrategy.BATCH_PROCESSING: 0.8,
        OptimizationStrategy.MEMORY_POOLING: 0.8,
        OptimizationStrategy.CIRCUIT_BREAKER: 0.75,
    }
    DEFAULT_CONFIDENCE = 0.6
    FULL_HISTORY_EXECUTIONS = 100

    def __init__(self):
        self.success_rates: Dict[OptimizationStrategy, float] = {}
        self.sample_counts: Dict[OptimizationStrategy, int] = {}
        self.adjustment = 1.0
        self._lock = threading.Lock()

    def score(self, strategy: OptimizationStrategy, metrics: RequestExecutionMetrics) -> float:
        base = self.BASE_CONFIDENCE.get(strategy, self.DEFAULT_CONFIDENCE)
        with self._lock:
            observed = self.success_rates.get(strategy)
            samples = self.sample_counts.get(strategy, 0)
            adjustment = self.adjustment

        if observed is not None:
            weight = min(1.0, samples / 20)
            base = (1 - weight) * base + weight * observed

        data_factor = 0.5 + 0.5 * min(1.0, metrics.total_executions / self.FULL_HISTORY_EXECUTIONS)
        return clamp_unit(base * data_factor * adjustment)

    def retrain(self, samples: Sequence[TrainingSample]) -> None:
        outcomes: Dict[OptimizationStrategy, List[bool]] = defaultdict(list)
        for sample in samples:
            outcomes[sample.strategy].append(sample.was_successful)

        with self._lock:
            for strategy, results in outcomes.items():
                # Laplace smoothing keeps a single outcome from pinning the rate
                self.success_rates[strategy] = (sum(results) + 1) / (len(results) + 2)
                self.sample_counts[strategy] = len(results)

        logger.debug(f"Retrained confidence model on {len(samples)} samples")

    def adjust(self, accuracy: float) -> None:
        with self._lock:
            if accuracy < 0.7:
                self.adjustment = max(0.5, self.adjustment * 0.9)
            elif accuracy > 0.9:
                self.adjustment = min(1.2, self.adjustment * 1.05)


class PredictionTracker:
    """
    Bounded record of predictions and their outcomes

    A prediction counts as positive when its confidence reached the
    threshold; the outcome is whether the optimization actually helped.
    """

    def __init__(self, positive_threshold: float = 0.7, max_samples: int = 10000):
        self.positive_threshold = positive_threshold
        self.samples: deque = deque(maxlen=max_samples)
        self.prediction_times: deque = deque(maxlen=1000)
        self.total_predictions = 0
        self.last_retraining: Optional[datetime] = None
        self._lock = threading.Lock()

    def record_prediction_time(self, elapsed: timedelta) -> None:
        with self._lock:
            self.prediction_times.append(elapsed.total_seconds())
            self.total_predictions += 1

    def record_outcome(self, sample: TrainingSample) -> None:
        with self._lock:
            self.samples.append(sample)

    def get_samples(self) -> List[TrainingSample]:
        with self._lock:
            return list(self.samples)

    def mark_retrained(self) -> None:
        self.last_retraining = datetime.utcnow()

    def accuracy(self) -> float:
        samples = self.get_samples()
        if not samples:
            return 0.0
        correct = sum(
            1 for s in samples
            if (s.predicted_confidence >= self.positive_threshold) == s.was_successful
        )
        return correct / len(samples)

    def get_statistics(self, model_version: str, model_confidence: float) -> AIModelStatistics:
        samples = self.get_samples()
        tp = fp = fn = 0
        for s in samples:
            predicted = s.predicted_confidence >= self.positive_threshold
            if predicted and s.was_successful:
                tp += 1
            elif predicted and not s.was_successful:
                fp += 1
            elif not predicted and s.was_successful:
                fn += 1

        precision = tp / (tp + fp) if tp + fp else 0.0
        recall = tp / (tp + fn) if tp + fn else 0.0
        f1 = 2 * precision * recall / (precision + recall) if precision + recall else 0.0
        accuracy = self.accuracy()

        with self._lock:
            times = list(self.prediction_times)
            total_predictions = self.total_predictions
        avg_prediction_time = timedelta(seconds=float(np.mean(times))) if times else timedelta(0)

        return AIModelStatistics(
            accuracy_score=accuracy,
            precision=precision,
            recall=recall,
            f1_score=f1,
            model_confidence=model_confidence,
            total_predictions=total_predictions,
            correct_predictions=int(round(accuracy * len(samples))),
            training_data_points=len(samples),
            last_retraining=self.last_retraining,
            average_prediction_time=avg_prediction_time,
            model_version=model_version
        )
