"""
In-process metrics and threshold alerts for the push operation.

Metrics are kept in a bounded in-memory window. When a recorded value
crosses its configured threshold an alert is logged at warning level.
"""

import enum
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any

from flashpush.config import MonitoringConfig, get_config
from flashpush.core.datetime_utils import utc_now
from flashpush.core.logging import get_logger

logger = get_logger(__name__)


class MetricType(str, enum.Enum):
    ERROR_RATE = "error_rate"
    EXECUTION_TIME = "execution_time"
    FCM_FAILURE_RATE = "fcm_failure_rate"
    RATE_LIMIT_VIOLATIONS = "rate_limit_violations"


@dataclass
class Metric:
    type: MetricType
    value: float
    timestamp: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Alert:
    type: MetricType
    message: str
    value: float
    threshold: float
    metadata: dict[str, Any] = field(default_factory=dict)


class MonitoringService:
    """Records metrics and raises log alerts on threshold breaches."""

    def __init__(self, config: MonitoringConfig | None = None) -> None:
        self.config = config or get_config().monitoring
        self._metrics: deque[Metric] = deque(maxlen=self.config.max_metrics_in_memory)
        self.alerts: list[Alert] = []

    def record_metric(
        self,
        metric_type: MetricType,
        value: float,
        now: datetime | None = None,
        **metadata: Any,
    ) -> Alert | None:
        metric = Metric(type=metric_type, value=value, timestamp=now or utc_now(), metadata=metadata)
        self._metrics.append(metric)
        return self._check_alert(metric)

    def get_metrics(
        self,
        metric_type: MetricType,
        since: datetime | None = None,
    ) -> list[Metric]:
        return [
            m
            for m in self._metrics
            if m.type == metric_type and (since is None or m.timestamp >= since)
        ]

    def _check_alert(self, metric: Metric) -> Alert | None:
        match metric.type:
            case MetricType.ERROR_RATE:
                threshold = self.config.error_rate_threshold
                observed = metric.value
                message = f"Error rate exceeded {threshold:.0%}"
            case MetricType.FCM_FAILURE_RATE:
                threshold = self.config.fcm_failure_rate_threshold
                observed = metric.value
                message = f"FCM failure rate exceeded {threshold:.0%}"
            case MetricType.EXECUTION_TIME:
                threshold = self.config.execution_time_threshold_ms
                observed = metric.value
                message = f"Execution time exceeded {threshold / 1000:g} seconds"
            case MetricType.RATE_LIMIT_VIOLATIONS:
                # Violations alert on their hourly total, not a single value
                threshold = self.config.rate_limit_violations_per_hour
                hour_ago = metric.timestamp - timedelta(hours=1)
                observed = sum(m.value for m in self.get_metrics(metric.type, since=hour_ago))
                message = f"Rate limit violations exceeded {threshold} per hour"

        if observed <= threshold:
            return None

        alert = Alert(
            type=metric.type,
            message=message,
            value=observed,
            threshold=threshold,
            metadata=metric.metadata,
        )
        self.alerts.append(alert)
        logger.bind(
            alert_type=metric.type.value,
            value=observed,
            threshold=threshold,
            **metric.metadata,
        ).warning("monitoring_alert")
        return alert


@lru_cache(maxsize=1)
def get_monitoring() -> MonitoringService:
    """Process-wide monitoring instance."""
    return MonitoringService()
