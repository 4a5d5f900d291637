"""Health tracking for processing and query scopes"""

import logging
from datetime import UTC, datetime

from src.models.health import HealthScope, HealthSnapshot, ScopeHealth

logger = logging.getLogger(__name__)

DEGRADED_THRESHOLD = 3


class HealthMonitor:
    """Track consecutive failures and successes per scope"""

    def __init__(self, degraded_threshold: int = DEGRADED_THRESHOLD):
        self.degraded_threshold = degraded_threshold
        self._scopes: dict[HealthScope, ScopeHealth] = {
            scope: ScopeHealth(scope=scope) for scope in HealthScope
        }

    def record_success(self, scope: HealthScope) -> None:
        state = self._scopes[scope]
        if state.degraded:
            logger.info(
                f"Embeddings {scope.value} scope recovered after "
                f"{state.consecutive_failures} consecutive failures"
            )
        state.consecutive_successes += 1
        state.total_successes += 1
        state.consecutive_failures = 0
        state.last_success_at = datetime.now(UTC)
        state.degraded = False

    def record_failure(self, scope: HealthScope, error: Exception, attempt: int = 0) -> None:
        """
        Record a failed attempt for a scope

        Args:
            scope: Scope that failed
            error: The error raised (its 'code' attribute is kept when present)
            attempt: Retry attempt number, for diagnostics
        """
        state = self._scopes[scope]
        state.consecutive_failures += 1
        state.total_failures += 1
        state.consecutive_successes = 0
        state.last_error_code = str(getattr(error, "code", None) or type(error).__name__)
        state.last_error_message = str(error)
        state.last_attempt = attempt
        state.last_failure_at = datetime.now(UTC)

        if not state.degraded and state.consecutive_failures >= self.degraded_threshold:
            state.degraded = True
            logger.warning(
                f"Embeddings {scope.value} scope degraded: {state.consecutive_failures} "
                f"consecutive failures (last: {state.last_error_code}: {state.last_error_message})"
            )

    def snapshot(self) -> HealthSnapshot:
        scopes = {scope: state.model_copy(deep=True) for scope, state in self._scopes.items()}
        return HealthSnapshot(
            generated_at=datetime.now(UTC),
            healthy=not any(s.degraded for s in scopes.values()),
            scopes=scopes,
        )
