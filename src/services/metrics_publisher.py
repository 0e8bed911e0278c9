"""
Publishing of engine metrics to Prometheus
"""
import logging
import re
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

from prometheus_client import CollectorRegistry, Gauge, generate_latest

logger = logging.getLogger(__name__)


class MetricsPublisher(ABC):
    """Fire-and-forget sink for named metric values"""

    @abstractmethod
    def publish(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        """Publish one value. Must never raise."""


def to_metric_name(name: str, namespace: str = "optimizer") -> str:
    """``ThroughputPerSecond`` -> ``optimizer_throughput_per_second``"""
    snake = re.sub(r'(?<=[a-z0-9])(?=[A-Z])', '_', name)
    snake = re.sub(r'[^a-zA-Z0-9_]', '_', snake).lower().strip('_')
    return f"{namespace}_{snake}" if namespace else snake


class PrometheusMetricsPublisher(MetricsPublisher):
    """Gauges created on first use in a dedicated registry"""

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "optimizer"):
        self.registry = registry or CollectorRegistry()
        self.namespace = namespace
        self._gauges: Dict[str, Tuple[Gauge, Tuple[str, ...]]] = {}
        self._lock = threading.Lock()
        self.publish_failures = 0

    def publish(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        labels = labels or {}
        try:
            gauge, label_names = self._get_gauge(name, tuple(sorted(labels)))
            if label_names:
                gauge.labels(**{k: str(labels.get(k, "")) for k in label_names}).set(value)
            else:
                gauge.set(value)
        except Exception as e:
            self.publish_failures += 1
            logger.warning(f"Failed to publish metric {name}: {e}")

    def _get_gauge(self, name: str, label_names: Tuple[str, ...]) -> Tuple[Gauge, Tuple[str, ...]]:
        with self._lock:
            entry = self._gauges.get(name)
            if entry is None:
                gauge = Gauge(
                    to_metric_name(name, self.namespace),
                    f"Optimization engine metric {name}",
                    list(label_names),
                    registry=self.registry
                )
                entry = (gauge, label_names)
                self._gauges[name] = entry
            return entry

    def get_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        return self.registry.get_sample_value(to_metric_name(name, self.namespace), labels or {})

    def export(self) -> bytes:
        """Prometheus text exposition of everything published"""
        return generate_latest(self.registry)
