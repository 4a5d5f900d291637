"""Models returned by the embeddings manager"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from src.services.providers.errors import EmbeddingsProviderError


class RunStatus(str, Enum):
    """Outcome of a processing request"""

    COMPLETE = "complete"
    ABORTED = "aborted"
    COOLDOWN = "cooldown"


class RunResult(BaseModel):
    """Result of a vault, file or retry run"""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    status: RunStatus
    processed: int = Field(default=0, ge=0, description="Notes completed during the run")
    failure: EmbeddingsProviderError | None = Field(
        default=None, description="Error that aborted the run"
    )
    retry_at: datetime | None = Field(default=None, description="When processing may resume")
    message: str | None = Field(default=None, description="Human-readable summary")
    partial_success: bool = Field(
        default=False, description="Run completed but some notes failed and can be retried"
    )


class PendingReason(str, Enum):
    """Why a note still needs embedding"""

    MISSING = "missing"
    MODIFIED = "modified"
    SCHEMA_MISMATCH = "schema-mismatch"
    METADATA_MISSING = "metadata-missing"
    INCOMPLETE = "incomplete"
    EMPTY = "empty"
    FAILED = "failed"


class FileState(str, Enum):
    """States a note can be in that never require work"""

    EXCLUDED = "excluded"
    UP_TO_DATE = "up-to-date"


class FailedFile(BaseModel):
    """Entry in the failed-files ledger"""

    path: str
    code: str
    message: str
    failed_at: datetime
    retryable: bool = Field(description="False when the run ended with a fatal error")


class PendingFile(BaseModel):
    """A note listed by list_pending_files"""

    path: str
    reason: PendingReason
    last_modified: float | None = None
    last_embedded: float | None = None
    size: int | None = None
    existing_namespace: str | None = None
    failure: FailedFile | None = None


class EmbeddingStats(BaseModel):
    """Index coverage for the active namespace"""

    total: int = Field(ge=0, description="Eligible notes in the vault")
    processed: int = Field(ge=0, description="Notes with a complete root in the active namespace")
    present: int = Field(ge=0, description="Notes with any root in the active namespace")
    needs_processing: int = Field(ge=0)
    failed: int = Field(ge=0, description="Entries in the failed-files ledger")


class NamespaceStats(BaseModel):
    """Vector and note counts per stored namespace"""

    namespace: str
    provider: str
    model: str
    schema_version: int
    dimension: int
    vectors: int
    files: int


class RunSummary(BaseModel):
    """Serializable view of a RunResult"""

    status: RunStatus
    processed: int = Field(default=0, ge=0)
    retry_at: datetime | None = None
    message: str | None = None
    partial_success: bool = False
    error_code: str | None = Field(default=None, description="Provider error code of the failure")

    @classmethod
    def from_result(cls, result: RunResult) -> "RunSummary":
        return cls(
            status=result.status,
            processed=result.processed,
            retry_at=result.retry_at,
            message=result.message,
            partial_success=result.partial_success,
            error_code=str(result.failure.code) if result.failure else None,
        )


class PendingFilesOutput(BaseModel):
    """Output of the list_pending_files tool"""

    files: list[PendingFile]
    total: int = Field(ge=0)


class IndexStatusOutput(BaseModel):
    """Output of the get_index_stats tool"""

    stats: EmbeddingStats
    namespaces: list[NamespaceStats]
    provider: str
    model: str
    processing: bool
    suspended: bool
    provider_ready: bool
