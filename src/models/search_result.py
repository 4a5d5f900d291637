"""Search result models"""

from pydantic import BaseModel, Field

from src.models.embedding import VectorMetadata


class SearchResult(BaseModel):
    """A note returned for a similarity query"""

    path: str = Field(description="Vault-relative note path")
    chunk_id: int = Field(ge=0, description="Best-matching chunk of the note")
    score: float = Field(ge=0.0, le=1.0, description="Relevance score (0.0-1.0, higher is better)")
    metadata: VectorMetadata = Field(description="Metadata of the best-matching chunk")
    lexical_score: float | None = Field(
        default=None, ge=0.0, le=1.0, description="Literal overlap between query and note"
    )


class QueryInfo(BaseModel):
    """Metadata about the query execution"""

    original_query: str = Field(description="The query text or source path")
    total_results: int = Field(ge=0, description="Number of results returned")
    query_time_ms: float = Field(ge=0.0, description="Query execution time in milliseconds")


class SimilarNotesOutput(BaseModel):
    """Complete output from the search tools"""

    results: list[SearchResult] = Field(description="List of search results")
    query_info: QueryInfo = Field(description="Metadata about the query")
