"""
Validation metrics and alerting for the optimization validator

Features:
- Bounded history of recommendation validation results
- Counts by severity and by strategy
- Windowed summaries with timing statistics
- Failure analysis of the most common error messages
- Stability score tracking
- Threshold-based alert rules
- JSON and Prometheus text export
"""

import json
import logging
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from src.models.data_models import ValidationSeverity
from src.validation.optimization_validator import (
    SystemHealthValidationResult, ValidationResult
)

logger = logging.getLogger(__name__)


@dataclass
class ValidationMetrics:
    """Running validation counters"""
    timestamp: datetime
    total_validations: int = 0
    successful_validations: int = 0
    warning_validations: int = 0
    failed_validations: int = 0
    error_messages: int = 0
    warning_messages: int = 0
    avg_validation_time_ms: float = 0.0
    max_validation_time_ms: float = 0.0
    validation_time_p95_ms: float = 0.0
    strategy_counts: Dict[str, int] = field(default_factory=dict)


@dataclass
class AlertRule:
    """Validation alert rule evaluated against a windowed summary"""
    name: str
    description: str
    condition: Callable[[Dict[str, Any]], bool]
    severity: str   # "low", "medium", "high", "critical"
    threshold: float
    window_minutes: int = 5
    cooldown_minutes: int = 15
    enabled: bool = True


class ValidationMetricsCollector:
    """
    Collects and analyzes validation outcomes for monitoring and alerting.
    """

    def __init__(self, max_history_size: int = 10000):
        """
        Initialize metrics collector

        Args:
            max_history_size: Maximum number of validation results to keep in memory
        """
        self.max_history_size = max_history_size
        self.validation_history: deque = deque(maxlen=max_history_size)
        self.validation_times: deque = deque(maxlen=1000)
        self.stability_history: deque = deque(maxlen=1000)
        self.metrics_lock = RLock()

        self.current_metrics = ValidationMetrics(timestamp=datetime.utcnow())
        self.strategy_counters: Dict[str, int] = defaultdict(int)
        self.severity_counters: Dict[str, int] = defaultdict(int)

        self.alert_rules = self._initialize_default_alert_rules()
        self.active_alerts: Dict[str, Dict[str, Any]] = {}
        self.alert_history: deque = deque(maxlen=1000)

    def record_validation_result(self, result: ValidationResult):
        """
        Record a recommendation validation result and update metrics

        Args:
            result: Validation result to record
        """
        with self.metrics_lock:
            self.validation_history.append(result)

            metrics = self.current_metrics
            metrics.total_validations += 1
            if result.severity == ValidationSeverity.ERROR:
                metrics.failed_validations += 1
            elif result.severity == ValidationSeverity.WARNING:
                metrics.warning_validations += 1
            else:
                metrics.successful_validations += 1
            metrics.error_messages += len(result.errors)
            metrics.warning_messages += len(result.warnings)

            self.severity_counters[result.severity.label] += 1
            self.strategy_counters[result.validated_strategy.value] += 1
            metrics.strategy_counts = dict(self.strategy_counters)

            if result.validation_time_ms is not None:
                self.validation_times.append(result.validation_time_ms)
                self._update_timing_metrics()

            metrics.timestamp = datetime.utcnow()
            self._check_alert_rules()

    def record_stability_result(self, result: SystemHealthValidationResult):
        """Record a stability verdict"""
        with self.metrics_lock:
            self.stability_history.append(
                (result.validation_time, result.stability_score, result.is_stable)
            )
            if not result.is_stable:
                logger.warning(
                    f"Recorded unstable system: score {result.stability_score:.2f}, "
                    f"issues: {', '.join(str(i) for i in result.issues)}"
                )

    def get_current_metrics(self) -> ValidationMetrics:
        with self.metrics_lock:
            return self.current_metrics

    def get_metrics_summary(self, window_minutes: Optional[int] = None) -> Dict[str, Any]:
        """
        Get validation metrics summary

        Args:
            window_minutes: Time window for metrics (None for all-time)

        Returns:
            Metrics summary dictionary
        """
        with self.metrics_lock:
            if window_minutes is None:
                relevant_results = list(self.validation_history)
            else:
                cutoff_time = datetime.utcnow() - timedelta(minutes=window_minutes)
                relevant_results = [
                    r for r in self.validation_history if r.validation_time >= cutoff_time
                ]

        if not relevant_results:
            return {
                "total_validations": 0,
                "success_rate": 0.0,
                "failure_rate": 0.0,
                "severity_counts": {},
                "strategy_counts": {},
                "timing_stats": {},
                "window_minutes": window_minutes,
                "timestamp": datetime.utcnow().isoformat()
            }

        total = len(relevant_results)
        failed = sum(1 for r in relevant_results if not r.is_valid)
        severity_counts = Counter(r.severity.label for r in relevant_results)
        strategy_counts = Counter(r.validated_strategy.value for r in relevant_results)

        validation_times = [
            r.validation_time_ms for r in relevant_results if r.validation_time_ms is not None
        ]
        timing_stats = {}
        if validation_times:
            timing_stats = {
                "avg_ms": float(np.mean(validation_times)),
                "median_ms": float(np.median(validation_times)),
                "p95_ms": float(np.percentile(validation_times, 95)),
                "p99_ms": float(np.percentile(validation_times, 99)),
                "max_ms": float(np.max(validation_times)),
                "min_ms": float(np.min(validation_times))
            }

        return {
            "total_validations": total,
            "successful_validations": total - failed,
            "failed_validations": failed,
            "success_rate": (total - failed) / total,
            "failure_rate": failed / total,
            "warning_rate": severity_counts.get(ValidationSeverity.WARNING.label, 0) / total,
            "severity_counts": dict(severity_counts),
            "strategy_counts": dict(strategy_counts),
            "timing_stats": timing_stats,
            "window_minutes": window_minutes,
            "timestamp": datetime.utcnow().isoformat()
        }

    def get_failure_analysis(self, top_n: int = 10) -> Dict[str, Any]:
        """
        Most common error messages among rejected recommendations

        Args:
            top_n: Number of top messages to include
        """
        with self.metrics_lock:
            history = list(self.validation_history)

        failed_results = [r for r in history if not r.is_valid]
        if not failed_results:
            return {
                "total_failures": 0,
                "analysis": "No validation failures recorded"
            }

        # Group messages by their text before any number so thresholds don't split them
        message_patterns = Counter()
        strategy_failures = Counter()
        for result in failed_results:
            strategy_failures[result.validated_strategy.value] += 1
            for message in result.errors:
                message_patterns[_message_pattern(message)] += 1

        return {
            "total_failures": len(failed_results),
            "failure_rate": len(failed_results) / len(history),
            "top_error_patterns": message_patterns.most_common(top_n),
            "failures_by_strategy": dict(strategy_failures),
            "analysis_timestamp": datetime.utcnow().isoformat()
        }

    def get_health_score(self) -> Tuple[float, Dict[str, Any]]:
        """
        Calculate validation health score (0-100)

        Returns:
            Tuple of (health_score, detailed_breakdown)
        """
        with self.metrics_lock:
            history = list(self.validation_history)
            stability = list(self.stability_history)

        if not history and not stability:
            return 100.0, {"status": "no_data"}

        recent_cutoff = datetime.utcnow() - timedelta(hours=1)
        recent_results = [r for r in history if r.validation_time >= recent_cutoff] or history[-10:]

        success_rate = (
            sum(1 for r in recent_results if r.is_valid) / len(recent_results)
            if recent_results else 1.0
        )
        warning_penalty = min(
            sum(1 for r in recent_results if r.severity == ValidationSeverity.WARNING) * 2, 20
        )
        stability_penalty = 0.0
        if stability:
            _, latest_score, _ = stability[-1]
            stability_penalty = (1.0 - latest_score) * 30

        base_score = success_rate * 100
        health_score = max(0.0, base_score - warning_penalty - stability_penalty)

        breakdown = {
            "base_score": base_score,
            "success_rate": success_rate,
            "warning_penalty": warning_penalty,
            "stability_penalty": stability_penalty,
            "final_score": health_score,
            "samples_analyzed": len(recent_results),
            "timestamp": datetime.utcnow().isoformat()
        }
        return health_score, breakdown

    def _update_timing_metrics(self):
        times = list(self.validation_times)
        if not times:
            return
        self.current_metrics.avg_validation_time_ms = float(np.mean(times))
        self.current_metrics.max_validation_time_ms = float(np.max(times))
        self.current_metrics.validation_time_p95_ms = float(np.percentile(times, 95))

    def _initialize_default_alert_rules(self) -> List[AlertRule]:
        return [
            AlertRule(
                name="high_rejection_rate",
                description="Recommendation rejection rate exceeds 50%",
                condition=lambda m: m["total_validations"] >= 10 and m["failure_rate"] > 0.5,
                severity="high",
                threshold=0.5,
                window_minutes=5
            ),
            AlertRule(
                name="high_warning_rate",
                description="More than 80% of recommendations carry warnings",
                condition=lambda m: m["total_validations"] >= 10 and m.get("warning_rate", 0) > 0.8,
                severity="medium",
                threshold=0.8,
                window_minutes=15
            ),
            AlertRule(
                name="slow_validation_performance",
                description="Average validation time exceeds 100ms",
                condition=lambda m: m["timing_stats"].get("avg_ms", 0) > 100,
                severity="medium",
                threshold=100,
                window_minutes=10
            )
        ]

    def _check_alert_rules(self):
        current_time = datetime.utcnow()

        for rule in self.alert_rules:
            if not rule.enabled:
                continue

            last_alert = self.active_alerts.get(rule.name)
            if last_alert and (current_time - last_alert["timestamp"]).total_seconds() < rule.cooldown_minutes * 60:
                continue

            window_metrics = self.get_metrics_summary(rule.window_minutes)
            try:
                triggered = rule.condition(window_metrics)
            except Exception as e:
                logger.warning(f"Error evaluating alert rule {rule.name}: {e}")
                continue

            if not triggered:
                continue

            alert = {
                "rule_name": rule.name,
                "description": rule.description,
                "severity": rule.severity,
                "threshold": rule.threshold,
                "timestamp": current_time,
                "window_minutes": rule.window_minutes
            }
            self.active_alerts[rule.name] = alert
            self.alert_history.append(alert)

            log_level = {
                "low": logging.INFO,
                "medium": logging.WARNING,
                "high": logging.ERROR,
                "critical": logging.CRITICAL
            }.get(rule.severity, logging.WARNING)
            logger.log(log_level, f"Validation alert: {rule.name} - {rule.description} (severity: {rule.severity})")

    def get_active_alerts(self) -> List[Dict[str, Any]]:
        """Alerts still within their cooldown period"""
        current_time = datetime.utcnow()
        with self.metrics_lock:
            alerts = list(self.active_alerts.items())
        active = []
        for name, alert in alerts:
            rule = next((r for r in self.alert_rules if r.name == name), None)
            if rule and (current_time - alert["timestamp"]).total_seconds() < rule.cooldown_minutes * 60:
                active.append(alert)
        return active

    def export_metrics(self, format: str = "json") -> str:
        """
        Export metrics in specified format

        Args:
            format: Export format ("json", "prometheus")
        """
        if format == "json":
            return self._export_json()
        elif format == "prometheus":
            return self._export_prometheus()
        else:
            raise ValueError(f"Unsupported export format: {format}")

    def _export_json(self) -> str:
        metrics = self.get_current_metrics()
        export_data = {
            "current_metrics": {
                "timestamp": metrics.timestamp.isoformat(),
                "total_validations": metrics.total_validations,
                "successful_validations": metrics.successful_validations,
                "warning_validations": metrics.warning_validations,
                "failed_validations": metrics.failed_validations,
                "avg_validation_time_ms": metrics.avg_validation_time_ms,
                "max_validation_time_ms": metrics.max_validation_time_ms,
                "validation_time_p95_ms": metrics.validation_time_p95_ms,
                "strategy_counts": metrics.strategy_counts
            },
            "summary": self.get_metrics_summary(),
            "health_score": self.get_health_score()[0],
            "active_alerts": self.get_active_alerts(),
            "export_timestamp": datetime.utcnow().isoformat()
        }
        return json.dumps(export_data, indent=2, default=str)

    def _export_prometheus(self) -> str:
        metrics = self.get_current_metrics()
        lines = [
            f"optimization_validation_total {metrics.total_validations}",
            f"optimization_validation_successful {metrics.successful_validations}",
            f"optimization_validation_warning {metrics.warning_validations}",
            f"optimization_validation_failed {metrics.failed_validations}",
            f"optimization_validation_time_avg_ms {metrics.avg_validation_time_ms}",
            f"optimization_validation_time_p95_ms {metrics.validation_time_p95_ms}",
        ]
        for strategy, count in metrics.strategy_counts.items():
            lines.append(f'optimization_validation_strategy_count{{strategy="{strategy}"}} {count}')

        health_score, _ = self.get_health_score()
        lines.append(f"optimization_validation_health_score {health_score}")
        return "\n".join(lines)


def _message_pattern(message: str) -> str:
    for i, ch in enumerate(message):
        if ch.isdigit():
            return message[:i].rstrip()
    return message
