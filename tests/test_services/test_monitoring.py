"""Tests for in-process metrics and alerts."""

from datetime import timedelta

from flashpush.config import MonitoringConfig
from flashpush.core.datetime_utils import utc_now
from flashpush.services.monitoring import MetricType, MonitoringService


class TestMonitoringService:
    """Tests for MonitoringService."""

    def test_below_threshold_no_alert(self, monitoring):
        assert monitoring.record_metric(MetricType.FCM_FAILURE_RATE, 0.05) is None
        assert monitoring.alerts == []

    def test_fcm_failure_rate_alert(self, monitoring):
        """Should alert when the FCM failure rate exceeds 10%."""
        alert = monitoring.record_metric(MetricType.FCM_FAILURE_RATE, 0.25, offer_id="o1")

        assert alert is not None
        assert alert.threshold == 0.10
        assert alert.metadata == {"offer_id": "o1"}
        assert monitoring.alerts == [alert]

    def test_execution_time_alert(self, monitoring):
        assert monitoring.record_metric(MetricType.EXECUTION_TIME, 20_000) is None
        alert = monitoring.record_metric(MetricType.EXECUTION_TIME, 26_000)
        assert "25 seconds" in alert.message

    def test_rate_limit_violations_sum_over_hour(self):
        """Should alert on the hourly total of violations."""
        monitoring = MonitoringService(MonitoringConfig({"rate_limit_violations_per_hour": 5}))
        now = utc_now()

        assert monitoring.record_metric(MetricType.RATE_LIMIT_VIOLATIONS, 3, now=now) is None
        alert = monitoring.record_metric(MetricType.RATE_LIMIT_VIOLATIONS, 3, now=now)

        assert alert is not None
        assert alert.value == 6

    def test_old_violations_ignored(self):
        monitoring = MonitoringService(MonitoringConfig({"rate_limit_violations_per_hour": 5}))
        now = utc_now()

        monitoring.record_metric(MetricType.RATE_LIMIT_VIOLATIONS, 5, now=now - timedelta(hours=2))
        assert monitoring.record_metric(MetricType.RATE_LIMIT_VIOLATIONS, 3, now=now) is None

    def test_metrics_window_is_bounded(self):
        monitoring = MonitoringService(MonitoringConfig({"max_metrics_in_memory": 3}))

        for i in range(5):
            monitoring.record_metric(MetricType.ERROR_RATE, 0, attempt=i)

        metrics = monitoring.get_metrics(MetricType.ERROR_RATE)
        assert [m.metadata["attempt"] for m in metrics] == [2, 3, 4]
