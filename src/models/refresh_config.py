"""Models for background refresh system"""

from datetime import datetime

from pydantic import BaseModel, Field

from src.models.run_result import RunStatus


class RefreshResult(BaseModel):
    """Result of a scheduled refresh operation"""

    success: bool = Field(description="Whether the refresh succeeded")
    status: RunStatus | None = Field(default=None, description="Status of the vault run")
    processed: int = Field(default=0, ge=0, description="Notes processed by the run")
    start_time: datetime = Field(description="When the refresh started")
    end_time: datetime = Field(description="When the refresh ended")
    duration_seconds: float = Field(description="Duration in seconds")
    error: str | None = Field(default=None, description="Error message if failed")
