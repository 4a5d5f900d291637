"""Centralized configuration using Pydantic BaseSettings"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Application configuration with environment variable support"""

    # Vault
    vault_path: str = Field(default="./vault", description="Root directory of the markdown vault")

    # Database
    db_path: str = Field(
        default="./data/embeddings.db", description="SQLite vector store file path"
    )

    # Embedding provider
    embeddings_provider: str = Field(
        default="local", description="Embedding provider id (local, custom)"
    )
    embedding_model: str = Field(
        default="BAAI/bge-small-en-v1.5", description="Embedding model name"
    )
    embedding_api_base: str = Field(
        default="",
        description="Embeddings endpoint for the custom provider (OpenAI-compatible or Ollama)",
    )
    embedding_api_key: str = Field(default="", description="API key for the custom provider")
    embedding_dimension: int = Field(
        default=384, ge=1, description="Fallback vector dimension used for empty-note sentinels"
    )
    fastembed_cache_dir: str = Field(
        default="./data/models", description="Directory to cache the local embedding model"
    )
    embedding_request_timeout: float = Field(
        default=30.0, gt=0, description="HTTP timeout in seconds for embedding requests"
    )

    # Batching
    embedding_batch_size: int = Field(
        default=20, ge=1, le=256, description="Texts per embedding request"
    )
    embedding_max_concurrency: int = Field(
        default=3, ge=1, le=32, description="Concurrent embedding requests"
    )
    embedding_rate_limit_per_minute: int = Field(
        default=0, ge=0, description="Request budget per minute (0 disables rate limiting)"
    )
    embedding_max_item_tokens: int = Field(
        default=2048, ge=64, description="Token ceiling for a single text sent to the provider"
    )
    embedding_max_batch_tokens: int = Field(
        default=24000, ge=256, description="Estimated token budget per embedding request"
    )

    # Chunking
    chunk_target_tokens: int = Field(
        default=600, ge=100, le=4000, description="Target chunk size in tokens"
    )
    chunk_chars_per_token: int = Field(
        default=4, ge=1, le=8, description="Average characters per token used for chunk sizing"
    )
    min_content_length: int = Field(
        default=80, ge=1, description="Notes shorter than this (cleaned chars) are stored as empty"
    )

    # Change tracking
    quiet_period_ms: int = Field(
        default=1200, ge=0, description="Debounce delay after a note is modified"
    )
    create_debounce_ms: int = Field(
        default=300, ge=0, description="Debounce delay after a note is created"
    )
    auto_process: bool = Field(
        default=True, description="Automatically schedule vault runs and retries"
    )
    auto_process_delay_ms: int = Field(
        default=3000, ge=0, description="Delay before the automatic vault run on startup"
    )
    refresh_interval_minutes: int = Field(
        default=0, ge=0, description="Periodic full vault run interval (0 disables)"
    )
    watch_vault: bool = Field(
        default=True, description="Watch the vault directory and process changed notes"
    )

    # Exclusions
    exclusion_folders: list[str] = Field(
        default_factory=list, description="Folders whose notes are never indexed"
    )
    exclusion_patterns: list[str] = Field(
        default_factory=list, description="Glob patterns (basename, or full path if '/' present)"
    )
    ignore_chat_history: bool = Field(
        default=True, description="Exclude chat history folders from indexing"
    )
    chat_history_folders: list[str] = Field(
        default_factory=lambda: ["Chats", "Saved Chats"],
        description="Folders holding chat transcripts",
    )

    # Query
    query_result_limit: int = Field(
        default=20, ge=1, le=100, description="Default maximum number of search results"
    )
    similar_result_limit: int = Field(
        default=15, ge=1, le=100, description="Default maximum number of similar notes"
    )
    query_cache_ttl_seconds: float = Field(
        default=60.0, ge=0, description="Lifetime of cached query embeddings"
    )
    query_cache_max_entries: int = Field(
        default=64, ge=1, description="Maximum cached query embeddings"
    )

    # MCP Server
    mcp_host: str = Field(default="0.0.0.0", description="MCP server bind address")
    mcp_port: int = Field(default=8080, ge=1024, le=65535, description="MCP server port")

    # OpenTelemetry
    otel_logging_enabled: bool = Field(default=True, description="Enable OpenTelemetry logging")
    otel_tracing_enabled: bool = Field(
        default=True, description="Enable OpenTelemetry tracing for HTTP requests"
    )
    otel_endpoint: str = Field(
        default="http://localhost:4318",
        description="OpenTelemetry collector endpoint (HTTP/protobuf)",
    )
    otel_service_name: str = Field(
        default="vault-semantic-index", description="Service name for OpenTelemetry"
    )
    otel_service_version: str = Field(
        default="1.0.0", description="Service version for OpenTelemetry"
    )
    otel_log_full_results: bool = Field(
        default=False,
        description="Include full query results in telemetry logs",
    )

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )


# Global config instance
config = AppConfig()
