"""Contract tests for MCP tool inputs, outputs and error codes"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastmcp.exceptions import McpError

from src import mcp_server
from src.models.embedding import VectorMetadata
from src.models.run_result import EmbeddingStats, RunResult, RunStatus
from src.models.search_result import SearchResult
from src.services.manager import (
    EmbeddingsQueryError,
    ProcessingInProgressError,
    ProviderNotReadyError,
)
from src.services.providers.errors import EmbeddingsProviderError, ErrorCode


def make_result(path: str, score: float) -> SearchResult:
    return SearchResult(
        path=path,
        chunk_id=0,
        score=score,
        metadata=VectorMetadata(
            title=path.removesuffix(".md"),
            excerpt="Compost keeps the raised beds loose",
            mtime=1.0,
            content_hash="h0",
            provider="custom",
            model="fake-model",
            dimension=64,
            namespace="custom:fake-model:v2:64",
        ),
    )


@pytest.fixture
def manager():
    manager = MagicMock()
    manager.search_similar = AsyncMock(return_value=[make_result("Garden.md", 0.82)])
    manager.find_similar = AsyncMock(return_value=[make_result("Soil.md", 0.64)])
    manager.process_vault = AsyncMock(return_value=RunResult(status=RunStatus.COMPLETE, processed=2))
    manager.retry_failed_files = AsyncMock(return_value=RunResult(status=RunStatus.COMPLETE))
    manager.force_refresh_current_namespace = AsyncMock(
        return_value=RunResult(status=RunStatus.COMPLETE, processed=5)
    )
    manager.get_namespace_stats = AsyncMock(return_value=[])
    manager.get_stats.return_value = EmbeddingStats(
        total=3, processed=2, present=2, needs_processing=1, failed=0
    )
    manager.list_pending_files.return_value = []
    manager.provider.id = "custom"
    manager.provider.model = "fake-model"
    manager.is_processing.return_value = False
    manager.is_suspended.return_value = False
    manager.is_provider_ready.return_value = True
    return manager


@pytest.fixture
def telemetry():
    return MagicMock()


@pytest.fixture(autouse=True)
def patched_services(manager, telemetry):
    with patch("src.mcp_server._get_manager", AsyncMock(return_value=manager)):
        with patch("src.mcp_server.get_telemetry_service", return_value=telemetry):
            yield


class TestSearchNotes:
    """Test the search_notes tool contract"""

    @pytest.mark.asyncio
    async def test_valid_query(self, manager, telemetry):
        """Test that results and query info are returned and logged"""
        output = await mcp_server.search_notes.fn(query="raised beds", limit=5)

        assert output.query_info.original_query == "raised beds"
        assert output.query_info.total_results == 1
        assert output.results[0].path == "Garden.md"
        manager.search_similar.assert_awaited_once_with("raised beds", 5)

        logged = telemetry.log_query.call_args.kwargs
        assert logged["tool_name"] == "search_notes"
        assert logged["response"]["results"][0]["path"] == "Garden.md"
        assert logged["error"] is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query, limit", [("  ", 10), ("beds", 0), ("beds", 51)])
    async def test_invalid_params(self, manager, telemetry, query, limit):
        """Test that blank queries and out-of-range limits are rejected"""
        with pytest.raises(McpError) as exc_info:
            await mcp_server.search_notes.fn(query=query, limit=limit)

        assert exc_info.value.error.code == mcp_server.INVALID_PARAMS
        manager.search_similar.assert_not_awaited()
        assert isinstance(telemetry.log_query.call_args.kwargs["error"], ValueError)

    @pytest.mark.asyncio
    async def test_query_embedding_unavailable(self, manager):
        """Test that query embedding failures map to service unavailable"""
        manager.search_similar.side_effect = EmbeddingsQueryError(
            "Embeddings are cooling down. Automatically retrying in ~12s.",
            EmbeddingsProviderError("gateway", code=ErrorCode.HOST_UNAVAILABLE, status=503),
        )

        with pytest.raises(McpError) as exc_info:
            await mcp_server.search_notes.fn(query="beds")

        assert exc_info.value.error.code == mcp_server.SERVICE_UNAVAILABLE
        assert "cooling down" in exc_info.value.error.message

    @pytest.mark.asyncio
    async def test_unexpected_failure(self, manager):
        """Test that other failures map to internal error"""
        manager.search_similar.side_effect = RuntimeError("boom")

        with pytest.raises(McpError) as exc_info:
            await mcp_server.search_notes.fn(query="beds")

        assert exc_info.value.error.code == mcp_server.INTERNAL_ERROR


class TestFindSimilarNotes:
    """Test the find_similar_notes tool contract"""

    @pytest.mark.asyncio
    async def test_similar_notes(self, manager, telemetry):
        """Test that the source path is echoed and logged as a parameter"""
        output = await mcp_server.find_similar_notes.fn(path="Garden.md", limit=3)

        assert output.query_info.original_query == "Garden.md"
        assert [r.path for r in output.results] == ["Soil.md"]
        manager.find_similar.assert_awaited_once_with("Garden.md", 3)
        assert telemetry.log_query.call_args.kwargs["parameters"] == {"path": "Garden.md", "limit": 3}

    @pytest.mark.asyncio
    async def test_invalid_limit(self):
        """Test that out-of-range limits are rejected"""
        with pytest.raises(McpError) as exc_info:
            await mcp_server.find_similar_notes.fn(path="Garden.md", limit=100)

        assert exc_info.value.error.code == mcp_server.INVALID_PARAMS


class TestStatusTools:
    """Test the reporting tools"""

    @pytest.mark.asyncio
    async def test_get_index_stats(self):
        """Test that coverage and processing state are reported"""
        output = await mcp_server.get_index_stats.fn()

        assert output.stats.total == 3
        assert output.provider == "custom"
        assert output.model == "fake-model"
        assert output.provider_ready is True
        assert output.namespaces == []

    @pytest.mark.asyncio
    async def test_list_pending_files(self):
        """Test that an empty pending list is reported with a total"""
        output = await mcp_server.list_pending_files.fn()

        assert output.total == 0
        assert output.files == []


class TestRunTools:
    """Test the processing tools"""

    @pytest.mark.asyncio
    async def test_process_vault(self, telemetry):
        """Test that a completed run is summarised and logged"""
        output = await mcp_server.process_vault.fn()

        assert output.status == RunStatus.COMPLETE
        assert output.processed == 2
        assert telemetry.log_query.call_args.kwargs["response"]["status"] == "complete"

    @pytest.mark.asyncio
    async def test_aborted_run_carries_error_code(self, manager):
        """Test that an aborted run exposes the provider error code"""
        manager.process_vault.return_value = RunResult(
            status=RunStatus.ABORTED,
            failure=EmbeddingsProviderError("bad key", code=ErrorCode.LICENSE_INVALID, status=401),
            message="Embeddings license error: bad key",
        )

        output = await mcp_server.process_vault.fn()

        assert output.status == RunStatus.ABORTED
        assert output.error_code == "LICENSE_INVALID"

    @pytest.mark.asyncio
    async def test_busy_and_not_ready(self, manager):
        """Test that lock contention and missing settings map to distinct codes"""
        manager.process_vault.side_effect = ProcessingInProgressError()
        with pytest.raises(McpError) as exc_info:
            await mcp_server.process_vault.fn()
        assert exc_info.value.error.code == mcp_server.BUSY

        manager.process_vault.side_effect = ProviderNotReadyError()
        with pytest.raises(McpError) as exc_info:
            await mcp_server.process_vault.fn()
        assert exc_info.value.error.code == mcp_server.SERVICE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_retry_and_force_refresh(self, manager):
        """Test that each run tool calls its manager operation"""
        await mcp_server.retry_failed_files.fn()
        refreshed = await mcp_server.force_refresh.fn()

        manager.retry_failed_files.assert_awaited_once()
        manager.force_refresh_current_namespace.assert_awaited_once()
        assert refreshed.processed == 5


class TestHealthRoute:
    """Test the HTTP health endpoint"""

    @pytest.mark.asyncio
    async def test_health_reports_degraded_scopes(self, manager):
        """Test that a degraded scope is reported in the status"""
        snapshot = MagicMock()
        snapshot.healthy = False
        snapshot.model_dump.return_value = {"healthy": False}
        manager.get_health_snapshot.return_value = snapshot

        response = await mcp_server.health_check(MagicMock())

        body = json.loads(response.body)
        assert body == {"status": "degraded", "processing": False, "health": {"healthy": False}}
