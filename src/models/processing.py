"""Models describing processor batches and run outcomes"""

from pydantic import BaseModel, ConfigDict, Field

from src.services.providers.errors import EmbeddingsProviderError


class BatchItemMetadata(BaseModel):
    """Diagnostic description of one text in an embedding request"""

    path: str
    chunk_id: int
    hash: str
    original_length: int = Field(ge=0)
    processed_length: int = Field(ge=0)
    original_estimated_tokens: int = Field(ge=0)
    estimated_tokens: int = Field(ge=0)
    truncated: bool = Field(description="Whether the text was cut to the token ceiling")


class BatchMetadata(BaseModel):
    """Diagnostic description of an embedding request"""

    batch_index: int = Field(ge=0)
    batch_size: int = Field(ge=0)
    estimated_total_tokens: int = Field(ge=0)
    max_estimated_tokens: int = Field(ge=0)
    truncated_count: int = Field(ge=0)
    items: list[BatchItemMetadata] = Field(default_factory=list)


class FailedChunkDetail(BaseModel):
    """Why a note (or one of its chunks) failed during a run"""

    code: str
    message: str
    status: int | None = None
    retry_in_ms: int | None = None
    chunk_id: int | None = None
    section_title: str | None = None
    heading_path: list[str] = Field(default_factory=list)
    signals: list[str] = Field(
        default_factory=list, description="Content-risk labels reported by the provider"
    )


class ProcessingProgress(BaseModel):
    """Progress checkpoint emitted after each finished note"""

    current: int = Field(ge=0)
    total: int = Field(ge=0)


class ProcessingResult(BaseModel):
    """Outcome of EmbeddingsProcessor.process_files"""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    completed: int = Field(ge=0, description="Notes finished (including skipped/empty ones)")
    failed: int = Field(ge=0, description="Number of notes with at least one failure")
    failed_paths: list[str] = Field(default_factory=list)
    fatal_error: EmbeddingsProviderError | None = Field(
        default=None, description="Error that cancelled the run"
    )
    failed_details: dict[str, FailedChunkDetail] = Field(default_factory=dict)


class ProcessorConfig(BaseModel):
    """Batching and throughput settings for the processor"""

    batch_size: int = Field(default=20, ge=1, description="Texts per embedding request")
    max_concurrency: int = Field(default=3, ge=1, description="Concurrent embedding requests")
    rate_limit_per_minute: int = Field(
        default=0, ge=0, description="Request budget per minute (0 disables rate limiting)"
    )
    max_item_tokens: int = Field(default=2048, ge=1, description="Token ceiling per text")
    max_batch_tokens: int = Field(default=24000, ge=1, description="Token budget per request")
