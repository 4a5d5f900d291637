"""MCP server implementation using fastmcp"""

import asyncio
import logging
import time
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastmcp import FastMCP
from fastmcp.exceptions import McpError
from mcp.types import ErrorData
from starlette.responses import JSONResponse

from src.config import config
from src.models.run_result import IndexStatusOutput, PendingFilesOutput, RunSummary
from src.models.search_result import QueryInfo, SimilarNotesOutput
from src.services.manager import (
    EmbeddingsManager,
    EmbeddingsQueryError,
    ProcessingInProgressError,
    ProviderNotReadyError,
)
from src.services.refresh_orchestrator import RefreshOrchestrator
from src.services.telemetry import get_telemetry_service
from src.services.vault import Vault
from src.services.vault_watcher import VaultWatcher
from src.services.vector_store import VectorStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

mcp = FastMCP(name="vault-semantic-index", version="1.0.0")

_manager: EmbeddingsManager | None = None
_refresh_orchestrator: RefreshOrchestrator | None = None
_scheduler: AsyncIOScheduler | None = None
_watcher: VaultWatcher | None = None
_init_lock = asyncio.Lock()

INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
SERVICE_UNAVAILABLE = -32001
BUSY = -32002


async def _get_manager() -> EmbeddingsManager:
    """
    Get or initialize the manager and its background services

    The scheduler and watcher need the server's event loop, so they start on
    the first request rather than at import time.
    """
    global _manager, _refresh_orchestrator, _scheduler, _watcher

    async with _init_lock:
        if _manager is not None:
            return _manager

        manager = EmbeddingsManager(Vault(config.vault_path), VectorStore(config.db_path))

        _scheduler = AsyncIOScheduler()
        _refresh_orchestrator = RefreshOrchestrator(manager)
        _refresh_orchestrator.configure_scheduler(
            _scheduler, interval_minutes=config.refresh_interval_minutes
        )
        _scheduler.start()

        await manager.initialize()

        if config.watch_vault:
            _watcher = VaultWatcher(manager)
            _watcher.start()

        _manager = manager
        logger.info(f"Semantic index ready for vault {manager.vault.root}")
        return _manager


def _tool_error(code: int, message: str) -> McpError:
    return McpError(ErrorData(code=code, message=message))


@mcp.tool()
async def search_notes(query: str, limit: int = 10) -> SimilarNotesOutput:
    """Search the vault for notes semantically related to a query

    Args:
        query: Natural language query
        limit: Maximum number of notes to return (1-50, default: 10)

    Returns:
        SimilarNotesOutput: Ranked notes with their best-matching chunk
    """
    telemetry = get_telemetry_service()
    error: Exception | None = None
    response = None

    try:
        if not query.strip():
            error = ValueError("query must not be empty")
            raise _tool_error(INVALID_PARAMS, "query must not be empty")
        if not 1 <= limit <= 50:
            error = ValueError(f"limit must be between 1 and 50, got: {limit}")
            raise _tool_error(INVALID_PARAMS, str(error))

        manager = await _get_manager()
        start = time.perf_counter()
        try:
            results = await manager.search_similar(query, limit)
        except EmbeddingsQueryError as e:
            error = e
            raise _tool_error(SERVICE_UNAVAILABLE, e.message) from e
        except Exception as e:
            error = e
            raise _tool_error(INTERNAL_ERROR, f"Search failed: {str(e)}") from e

        output = SimilarNotesOutput(
            results=results,
            query_info=QueryInfo(
                original_query=query,
                total_results=len(results),
                query_time_ms=(time.perf_counter() - start) * 1000,
            ),
        )
        response = output.model_dump(mode="json")
        return output

    finally:
        telemetry.log_query(
            tool_name="search_notes",
            query=query,
            parameters={"limit": limit},
            response=response,
            error=error,
        )


@mcp.tool()
async def find_similar_notes(path: str, limit: int = 10) -> SimilarNotesOutput:
    """Find notes similar to an indexed note

    Args:
        path: Vault-relative path of the note (e.g. "Projects/Plan.md")
        limit: Maximum number of notes to return (1-50, default: 10)

    Returns:
        SimilarNotesOutput: Ranked notes, excluding the source note
    """
    telemetry = get_telemetry_service()
    error: Exception | None = None
    response = None

    try:
        if not 1 <= limit <= 50:
            error = ValueError(f"limit must be between 1 and 50, got: {limit}")
            raise _tool_error(INVALID_PARAMS, str(error))

        manager = await _get_manager()
        start = time.perf_counter()
        try:
            results = await manager.find_similar(path, limit)
        except Exception as e:
            error = e
            raise _tool_error(INTERNAL_ERROR, f"Similarity lookup failed: {str(e)}") from e

        output = SimilarNotesOutput(
            results=results,
            query_info=QueryInfo(
                original_query=path,
                total_results=len(results),
                query_time_ms=(time.perf_counter() - start) * 1000,
            ),
        )
        response = output.model_dump(mode="json")
        return output

    finally:
        telemetry.log_query(
            tool_name="find_similar_notes",
            query=None,
            parameters={"path": path, "limit": limit},
            response=response,
            error=error,
        )


@mcp.tool()
async def get_index_stats() -> IndexStatusOutput:
    """Report index coverage, stored namespaces and processing state

    Returns:
        IndexStatusOutput: Coverage of the active namespace and per-namespace counts
    """
    telemetry = get_telemetry_service()
    error: Exception | None = None
    response = None

    try:
        manager = await _get_manager()
        output = IndexStatusOutput(
            stats=manager.get_stats(),
            namespaces=await manager.get_namespace_stats(),
            provider=manager.provider.id,
            model=manager.provider.model,
            processing=manager.is_processing(),
            suspended=manager.is_suspended(),
            provider_ready=manager.is_provider_ready(),
        )
        response = output.model_dump(mode="json")
        return output
    except Exception as e:
        error = e
        raise

    finally:
        telemetry.log_query(
            tool_name="get_index_stats", query=None, parameters={}, response=response, error=error
        )


@mcp.tool()
async def list_pending_files() -> PendingFilesOutput:
    """List notes that still need embedding, failed notes first

    Returns:
        PendingFilesOutput: Pending notes with the reason each needs work
    """
    telemetry = get_telemetry_service()
    error: Exception | None = None
    response = None

    try:
        manager = await _get_manager()
        files = manager.list_pending_files()
        output = PendingFilesOutput(files=files, total=len(files))
        response = output.model_dump(mode="json")
        return output
    except Exception as e:
        error = e
        raise

    finally:
        telemetry.log_query(
            tool_name="list_pending_files", query=None, parameters={}, response=response, error=error
        )


async def _run_tool(tool_name: str, action: str) -> RunSummary:
    telemetry = get_telemetry_service()
    error: Exception | None = None
    response = None

    try:
        manager = await _get_manager()
        try:
            if action == "vault":
                result = await manager.process_vault()
            elif action == "retry":
                result = await manager.retry_failed_files()
            else:
                result = await manager.force_refresh_current_namespace()
        except ProviderNotReadyError as e:
            error = e
            raise _tool_error(SERVICE_UNAVAILABLE, str(e)) from e
        except ProcessingInProgressError as e:
            error = e
            raise _tool_error(BUSY, str(e)) from e

        output = RunSummary.from_result(result)
        response = output.model_dump(mode="json")
        return output

    finally:
        telemetry.log_query(
            tool_name=tool_name, query=None, parameters={}, response=response, error=error
        )


@mcp.tool()
async def process_vault() -> RunSummary:
    """Embed every note that is new, modified, incomplete or from another model

    Returns:
        RunSummary: complete, aborted (with retry time) or cooldown
    """
    return await _run_tool("process_vault", "vault")


@mcp.tool()
async def retry_failed_files() -> RunSummary:
    """Retry notes that failed during earlier runs

    Returns:
        RunSummary: Outcome of the retry run
    """
    return await _run_tool("retry_failed_files", "retry")


@mcp.tool()
async def force_refresh() -> RunSummary:
    """Delete the active model's vectors and rebuild them from scratch

    Returns:
        RunSummary: Outcome of the rebuild run
    """
    return await _run_tool("force_refresh", "refresh")


# Both routes (/ and /health) return the health snapshot
@mcp.custom_route("/", methods=["GET"])
@mcp.custom_route("/health", methods=["GET"])
async def health_check(request):
    manager = await _get_manager()
    snapshot = manager.get_health_snapshot()
    payload: dict[str, Any] = {
        "status": "ok" if snapshot.healthy else "degraded",
        "processing": manager.is_processing(),
        "health": snapshot.model_dump(mode="json"),
    }
    return JSONResponse(payload)


def _shutdown_sync() -> None:
    """Stop background scheduling on server shutdown"""
    if _refresh_orchestrator:
        try:
            _refresh_orchestrator.stop_scheduler()
        except Exception as e:
            logger.error(f"Error shutting down refresh orchestrator: {e}")

    if _scheduler and _scheduler.running:
        try:
            logger.info("Shutting down background scheduler")
            _scheduler.shutdown(wait=False)
        except Exception as e:
            logger.error(f"Error shutting down scheduler: {e}")

    if _manager:
        _manager.storage.close()


def main() -> None:
    """Entry point for the MCP server"""
    try:
        mcp.run(transport="streamable-http", host=config.mcp_host, port=config.mcp_port)
    finally:
        _shutdown_sync()


if __name__ == "__main__":
    main()
