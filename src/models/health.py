"""Health monitoring models"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class HealthScope(str, Enum):
    """Processing scopes tracked by the health monitor"""

    VAULT = "vault"
    FILE = "file"
    QUERY = "query"


class ScopeHealth(BaseModel):
    """Failure/success counters for one scope"""

    scope: HealthScope
    consecutive_failures: int = Field(default=0, ge=0)
    consecutive_successes: int = Field(default=0, ge=0)
    total_failures: int = Field(default=0, ge=0)
    total_successes: int = Field(default=0, ge=0)
    last_error_code: str | None = None
    last_error_message: str | None = None
    last_attempt: int | None = None
    last_failure_at: datetime | None = None
    last_success_at: datetime | None = None
    degraded: bool = Field(default=False, description="Too many consecutive failures")


class HealthSnapshot(BaseModel):
    """Point-in-time view of every scope"""

    generated_at: datetime
    healthy: bool = Field(description="No scope is degraded")
    scopes: dict[HealthScope, ScopeHealth]
