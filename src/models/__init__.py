"""Data models for the semantic index"""

from src.models.chunk import PreparedChunk, ProcessedContent
from src.models.document import Document
from src.models.embedding import EmbeddingVector, PurgeSummary, VectorMetadata
from src.models.health import HealthScope, HealthSnapshot, ScopeHealth
from src.models.provider_settings import ProviderSettings
from src.models.search_result import QueryInfo, SearchResult, SimilarNotesOutput

__all__ = [
    "PreparedChunk",
    "ProcessedContent",
    "Document",
    "EmbeddingVector",
    "PurgeSummary",
    "VectorMetadata",
    "HealthScope",
    "HealthSnapshot",
    "ScopeHealth",
    "ProviderSettings",
    "QueryInfo",
    "SearchResult",
    "SimilarNotesOutput",
]
