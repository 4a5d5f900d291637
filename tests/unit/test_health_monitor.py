"""Unit tests for the health monitor"""

from src.models.health import HealthScope
from src.services.health_monitor import HealthMonitor
from src.services.providers.errors import EmbeddingsProviderError, ErrorCode


class TestHealthMonitor:
    """Test per-scope failure tracking and degradation"""

    def test_initial_snapshot_is_healthy(self):
        """Test that every scope starts healthy"""
        snapshot = HealthMonitor().snapshot()

        assert snapshot.healthy is True
        assert set(snapshot.scopes) == set(HealthScope)

    def test_failures_degrade_scope(self):
        """Test that consecutive failures past the threshold degrade a scope"""
        monitor = HealthMonitor(degraded_threshold=2)
        error = EmbeddingsProviderError("gateway", code=ErrorCode.HOST_UNAVAILABLE, status=503)

        monitor.record_failure(HealthScope.VAULT, error)
        assert monitor.snapshot().healthy is True

        monitor.record_failure(HealthScope.VAULT, error, attempt=2)
        snapshot = monitor.snapshot()
        vault = snapshot.scopes[HealthScope.VAULT]

        assert snapshot.healthy is False
        assert vault.degraded is True
        assert vault.consecutive_failures == 2
        assert vault.last_error_code == "HOST_UNAVAILABLE"
        assert vault.last_attempt == 2
        assert snapshot.scopes[HealthScope.QUERY].degraded is False

    def test_success_recovers_scope(self):
        """Test that a success resets consecutive failures"""
        monitor = HealthMonitor(degraded_threshold=1)
        monitor.record_failure(HealthScope.QUERY, RuntimeError("boom"))
        monitor.record_success(HealthScope.QUERY)

        query = monitor.snapshot().scopes[HealthScope.QUERY]
        assert query.degraded is False
        assert query.consecutive_failures == 0
        assert query.total_failures == 1
        assert query.total_successes == 1
        assert query.last_error_code == "RuntimeError"

    def test_snapshot_is_a_copy(self):
        """Test that mutating a snapshot does not affect the monitor"""
        monitor = HealthMonitor()
        snapshot = monitor.snapshot()
        snapshot.scopes[HealthScope.FILE].total_failures = 99

        assert monitor.snapshot().scopes[HealthScope.FILE].total_failures == 0
