"""Vector embedding data model"""

import time

from pydantic import BaseModel, Field, field_validator


class VectorMetadata(BaseModel):
    """Document- and chunk-level metadata stored alongside a vector"""

    title: str = Field(description="Note title (basename without extension)")
    excerpt: str = Field(default="", description="Short preview of the chunk text")
    mtime: float = Field(description="Source file modification time (epoch seconds)")
    content_hash: str = Field(description="Hash of the chunk's final text ('empty' for sentinels)")
    provider: str = Field(description="Embedding provider id")
    model: str = Field(description="Embedding model id")
    dimension: int = Field(ge=1, description="Vector dimension")
    created_at: float = Field(
        default_factory=time.time, description="When the vector was first embedded"
    )
    namespace: str = Field(description="Namespace the vector belongs to")
    section_title: str | None = Field(
        default=None, description="Heading trail joined for display"
    )
    heading_path: list[str] = Field(
        default_factory=list, description="Heading trail of the chunk"
    )
    chunk_length: int | None = Field(default=None, ge=0, description="Chunk text length")
    is_empty: bool = Field(
        default=False, description="Sentinel for notes too small to embed"
    )
    complete: bool | None = Field(
        default=None, description="Root only: every chunk finished without failure"
    )
    chunk_count: int | None = Field(default=None, ge=0, description="Root only: chunk total")


class EmbeddingVector(BaseModel):
    """One stored vector per (namespace, path, chunk)"""

    id: str = Field(description="Deterministic id: namespace::path#chunk_id")
    path: str = Field(description="Vault-relative note path")
    chunk_id: int = Field(ge=0, description="Chunk index (0 is the root chunk)")
    vector: list[float] = Field(min_length=1, description="Unit-normalised embedding")
    metadata: VectorMetadata

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Validate that id carries a namespace and chunk suffix"""
        if "::" not in v or "#" not in v:
            raise ValueError(f"Invalid vector id: {v}")
        return v

    @property
    def is_root(self) -> bool:
        return self.chunk_id == 0


class PurgeSummary(BaseModel):
    """Outcome of a storage integrity pass"""

    removed_count: int = Field(default=0, ge=0, description="Vectors deleted as unrecoverable")
    corrected_count: int = Field(default=0, ge=0, description="Vectors rewritten in place")
    removed_paths: list[str] = Field(default_factory=list)
    corrected_paths: list[str] = Field(default_factory=list)
