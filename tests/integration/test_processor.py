"""Integration tests for incremental batch processing"""

import asyncio

import pytest

from src.models.processing import ProcessorConfig
from src.services.processor import EmbeddingsProcessor, build_excerpt
from src.services.providers.errors import EmbeddingsProviderError, ErrorCode
from src.utils.namespace import build_namespace, build_vector_id
from tests.conftest import TEST_DIMENSION, html_rejection, section, write_note

NAMESPACE = build_namespace("custom", "fake-model", TEST_DIMENSION)


def garden_note(water: str = "Water deeply at dawn so leaves dry by noon.") -> str:
    return (
        section("Soil", "Compost keeps the raised beds loose and rich.")
        + section("Seeds", "Start tomato seeds indoors six weeks early.")
        + section("Water", water)
        + section("Harvest", "Pick fruit when it blushes and ripen inside.")
    )


def root_of(storage, path: str):
    return storage.get_vector_sync(build_vector_id(NAMESPACE, path, 0))


@pytest.fixture
def processor(provider, storage, chunker, processor_config):
    return EmbeddingsProcessor(
        provider=provider, storage=storage, chunker=chunker, processor_config=processor_config
    )


class TestIncrementalProcessing:
    """Test chunk reuse across runs"""

    @pytest.mark.asyncio
    async def test_first_run_embeds_every_chunk(self, processor, provider, storage, vault, vault_root):
        """Test that a new note is chunked, embedded and finalised complete"""
        write_note(vault_root, "Garden.md", garden_note())
        progress = []

        result = await processor.process_files(vault.list_documents(), vault, progress.append)

        assert result.completed == 1
        assert result.failed == 0
        assert result.fatal_error is None
        assert len(provider.document_texts()) == 4
        assert [p.current for p in progress] == [1]

        root = root_of(storage, "Garden.md")
        assert root is not None
        assert root.metadata.complete is True
        assert root.metadata.chunk_count == 4
        assert root.metadata.title == "Garden"
        assert root.metadata.heading_path == ["Soil"]
        assert len(await storage.get_vectors_by_path("Garden.md")) == 4

    @pytest.mark.asyncio
    async def test_rerun_makes_no_provider_calls(self, processor, provider, vault, vault_root):
        """Test that unchanged notes are never re-embedded"""
        write_note(vault_root, "Garden.md", garden_note())
        await processor.process_files(vault.list_documents(), vault)
        calls_after_first_run = len(provider.calls)

        result = await processor.process_files(vault.list_documents(), vault)

        assert result.completed == 1
        assert len(provider.calls) == calls_after_first_run

    @pytest.mark.asyncio
    async def test_edit_reembeds_only_changed_chunk(self, processor, provider, storage, vault, vault_root):
        """Test that editing one section sends only that section's chunk"""
        write_note(vault_root, "Garden.md", garden_note(), mtime=1000.0)
        await processor.process_files(vault.list_documents(), vault)
        provider.calls.clear()

        write_note(
            vault_root, "Garden.md", garden_note("Mulch the rows to hold moisture in July."), mtime=2000.0
        )
        result = await processor.process_files(vault.list_documents(), vault)

        texts = provider.document_texts()
        assert result.failed == 0
        assert len(texts) == 1
        assert "Mulch the rows" in texts[0]

        vectors = await storage.get_vectors_by_path("Garden.md")
        assert len(vectors) == 4
        assert all(v.metadata.mtime == 2000.0 for v in vectors)
        assert root_of(storage, "Garden.md").metadata.complete is True

    @pytest.mark.asyncio
    async def test_removed_sections_are_pruned(self, processor, storage, vault, vault_root):
        """Test that chunks beyond the new chunk count are deleted"""
        write_note(vault_root, "Garden.md", garden_note(), mtime=1000.0)
        await processor.process_files(vault.list_documents(), vault)

        write_note(
            vault_root,
            "Garden.md",
            section("Soil", "Compost keeps the raised beds loose and rich.")
            + section("Seeds", "Start tomato seeds indoors six weeks early."),
            mtime=2000.0,
        )
        await processor.process_files(vault.list_documents(), vault)

        assert sorted(v.chunk_id for v in await storage.get_vectors_by_path("Garden.md")) == [0, 1]
        assert root_of(storage, "Garden.md").metadata.chunk_count == 2


class TestSpecialNotes:
    """Test notes that are never sent to the provider"""

    @pytest.mark.asyncio
    async def test_short_note_gets_empty_sentinel(self, processor, provider, storage, vault, vault_root):
        """Test that a note below the minimum length stores a zero-vector sentinel"""
        write_note(vault_root, "Tiny.md", "Too short.")

        result = await processor.process_files(vault.list_documents(), vault)

        assert result.completed == 1
        assert provider.calls == []
        root = root_of(storage, "Tiny.md")
        assert root is not None
        assert root.metadata.is_empty is True
        assert root.metadata.complete is True
        assert root.metadata.chunk_count == 0
        assert root.metadata.content_hash == "empty"
        assert not any(root.vector)
        assert len(root.vector) == TEST_DIMENSION

    @pytest.mark.asyncio
    async def test_blocked_content_is_skipped(self, processor, provider, storage, vault, vault_root):
        """Test that notes matching skip patterns are never sent"""
        write_note(
            vault_root,
            "Scan.md",
            section("Log", "GET /vendor/phpunit/src/Util/PHP/eval-stdin.php"),
        )

        result = await processor.process_files(vault.list_documents(), vault)

        assert result.completed == 1
        assert provider.calls == []
        assert await storage.get_vectors_by_path("Scan.md") == []


class TestFailureHandling:
    """Test gateway rejections, transient errors and fatal errors"""

    @pytest.mark.asyncio
    async def test_html_rejection_is_isolated_to_one_chunk(
        self, processor, provider, storage, vault, vault_root
    ):
        """Test that a gateway-blocked chunk is skipped while its siblings are stored"""
        write_note(vault_root, "Security.md", garden_note("Block xss payloads at the proxy layer."))
        provider.failure = lambda texts: (
            html_rejection() if any("xss" in t for t in texts) else None
        )

        result = await processor.process_files(vault.list_documents(), vault)

        assert result.fatal_error is None
        assert result.failed_paths == ["Security.md"]
        detail = result.failed_details["Security.md"]
        assert detail.chunk_id == 2
        assert detail.code == ErrorCode.HOST_UNAVAILABLE
        assert "xss" in detail.signals
        assert ["hello"] in [texts for texts, _ in provider.calls]

        stored = sorted(v.chunk_id for v in await storage.get_vectors_by_path("Security.md"))
        assert stored == [0, 1, 3]
        assert root_of(storage, "Security.md").metadata.complete is False

    @pytest.mark.asyncio
    async def test_next_run_embeds_only_failed_chunk(
        self, processor, provider, storage, vault, vault_root
    ):
        """Test that a partially failed note only re-embeds the missing chunk"""
        write_note(vault_root, "Security.md", garden_note("Block xss payloads at the proxy layer."))
        provider.failure = lambda texts: (
            html_rejection() if any("xss" in t for t in texts) else None
        )
        await processor.process_files(vault.list_documents(), vault)

        provider.failure = None
        provider.calls.clear()
        result = await processor.process_files(vault.list_documents(), vault)

        assert result.failed == 0
        embedded = provider.document_texts()
        assert len(embedded) == 1
        assert "xss" in embedded[0]
        assert root_of(storage, "Security.md").metadata.complete is True
        assert len(await storage.get_vectors_by_path("Security.md")) == 4

    @pytest.mark.asyncio
    async def test_global_html_rejection_stops_run(self, processor, provider, storage, vault, vault_root):
        """Test that an HTML 403 for every request (probe included) is fatal"""
        write_note(vault_root, "Garden.md", garden_note())
        provider.failure = lambda texts: html_rejection()

        result = await processor.process_files(vault.list_documents(), vault)

        assert result.fatal_error is not None
        assert result.fatal_error.code == ErrorCode.HOST_UNAVAILABLE
        assert processor.cancelled is True
        assert await storage.get_vectors_by_path("Garden.md") == []

    @pytest.mark.asyncio
    async def test_transient_error_continues(self, provider, storage, chunker, vault, vault_root):
        """Test that a transient batch failure marks the note incomplete and continues"""
        processor = EmbeddingsProcessor(
            provider=provider,
            storage=storage,
            chunker=chunker,
            processor_config=ProcessorConfig(batch_size=2, max_concurrency=1),
        )
        write_note(vault_root, "A.md", garden_note(), mtime=1000.0)
        write_note(
            vault_root,
            "B.md",
            section("One", "Invoices are due on the first of each month.")
            + section("Two", "Quarterly budget reviews happen in March."),
            mtime=1000.0,
        )
        await processor.process_files(vault.list_documents(), vault)

        write_note(
            vault_root,
            "B.md",
            section("One", "Invoices are due on the first of each month.")
            + section("Two", "The flaky forecast sheet needs a rewrite."),
            mtime=2000.0,
        )
        provider.failure = lambda texts: (
            EmbeddingsProviderError("server error", code=ErrorCode.HTTP_ERROR, status=500, transient=True)
            if any("flaky" in t for t in texts)
            else None
        )

        result = await processor.process_files(vault.list_documents(), vault)

        assert result.fatal_error is None
        assert result.completed == 2
        assert result.failed_paths == ["B.md"]
        assert result.failed_details["B.md"].status == 500
        assert root_of(storage, "B.md").metadata.complete is False
        assert root_of(storage, "A.md").metadata.complete is True

    @pytest.mark.asyncio
    async def test_license_error_is_fatal(self, processor, provider, storage, vault, vault_root):
        """Test that a credential failure cancels the run with a fatal error"""
        write_note(vault_root, "Garden.md", garden_note())
        provider.failure = lambda texts: EmbeddingsProviderError(
            "API error 401: invalid api key",
            code=ErrorCode.LICENSE_INVALID,
            status=401,
            license_related=True,
        )

        result = await processor.process_files(vault.list_documents(), vault)

        assert result.fatal_error is not None
        assert result.fatal_error.code == ErrorCode.LICENSE_INVALID
        assert result.completed == 0
        assert await storage.get_vectors_by_path("Garden.md") == []

    @pytest.mark.asyncio
    async def test_repeated_transient_errors_escalate(self, provider, storage, chunker, vault, vault_root):
        """Test that the tenth transient failure stops the run with an aggregate error"""
        processor = EmbeddingsProcessor(
            provider=provider,
            storage=storage,
            chunker=chunker,
            processor_config=ProcessorConfig(batch_size=1, max_concurrency=1, rate_limit_per_minute=0),
        )
        for i in range(12):
            write_note(
                vault_root,
                f"Note{i:02d}.md",
                section(f"Entry {i}", f"Ledger line tag{i:02d} lists supplies."),
            )
        provider.failure = lambda texts: EmbeddingsProviderError(
            "server error", code=ErrorCode.HTTP_ERROR, status=500, transient=True
        )

        result = await processor.process_files(vault.list_documents(), vault)

        assert result.fatal_error is not None
        assert result.fatal_error.code == ErrorCode.UNEXPECTED_RESPONSE
        assert result.fatal_error.details["transient_error_count"] == 10
        assert result.failed_paths == [f"Note{i:02d}.md" for i in range(10)]

        sent = provider.document_texts()
        assert len(sent) == 10
        assert not any("tag10" in t or "tag11" in t for t in sent)

    @pytest.mark.asyncio
    async def test_cancelled_run_drops_waiting_batches(self, provider, storage, chunker, vault, vault_root):
        """Test that batches still queued when the run is cancelled are neither sent nor finalised"""
        processor = EmbeddingsProcessor(
            provider=provider,
            storage=storage,
            chunker=chunker,
            processor_config=ProcessorConfig(batch_size=1, max_concurrency=2, rate_limit_per_minute=600),
        )
        write_note(vault_root, "A.md", section("Keys", "Rotate the alpha credentials every quarter."))
        write_note(vault_root, "B.md", section("Beds", "Sketch the beta garden layout in spring."))
        provider.delay = 0.03
        provider.failure = lambda texts: (
            EmbeddingsProviderError(
                "API error 401: invalid api key",
                code=ErrorCode.LICENSE_INVALID,
                status=401,
                license_related=True,
            )
            if any("alpha" in t for t in texts)
            else None
        )

        result = await processor.process_files(vault.list_documents(), vault)

        assert result.fatal_error is not None
        assert result.fatal_error.code == ErrorCode.LICENSE_INVALID
        assert processor.cancelled is True
        assert result.completed == 0
        assert result.failed_paths == []
        assert "B.md" not in result.failed_details
        assert not any("beta" in t for t in provider.document_texts())
        assert root_of(storage, "B.md") is None

    @pytest.mark.asyncio
    async def test_results_arriving_after_cancel_are_discarded(
        self, provider, storage, chunker, vault, vault_root
    ):
        """Test that a batch in flight when the run is cancelled stores nothing"""
        processor = EmbeddingsProcessor(
            provider=provider,
            storage=storage,
            chunker=chunker,
            processor_config=ProcessorConfig(batch_size=1, max_concurrency=2, rate_limit_per_minute=0),
        )
        write_note(vault_root, "A.md", section("Keys", "Rotate the alpha credentials every quarter."))
        write_note(vault_root, "B.md", section("Beds", "Sketch the beta garden layout in spring."))
        provider.delay = 0.05

        async def cancel_once_sent():
            while len(provider.calls) < 2:
                await asyncio.sleep(0.005)
            processor.cancel()

        result, _ = await asyncio.wait_for(
            asyncio.gather(processor.process_files(vault.list_documents(), vault), cancel_once_sent()),
            timeout=5,
        )

        assert len(provider.document_texts()) == 2
        assert result.completed == 0
        assert result.failed_details == {}
        assert await storage.get_vectors_by_path("A.md") == []
        assert await storage.get_vectors_by_path("B.md") == []

    @pytest.mark.asyncio
    async def test_rate_limit_stops_for_backoff(self, processor, provider, vault, vault_root):
        """Test that a rate limit stops the run so the caller can back off"""
        write_note(vault_root, "Garden.md", garden_note())
        provider.failure = lambda texts: EmbeddingsProviderError(
            "slow down", code=ErrorCode.RATE_LIMITED, status=429, transient=True, retry_in_ms=5000
        )

        result = await processor.process_files(vault.list_documents(), vault)

        assert result.fatal_error is not None
        assert result.fatal_error.retry_in_ms == 5000


class TestExcerpt:
    """Test excerpt formatting"""

    def test_excerpt_is_collapsed_and_clipped(self):
        """Test whitespace collapsing, clipping and heading prefix"""
        excerpt = build_excerpt("word  \n" * 100, "Garden › Soil")

        assert excerpt.startswith("Garden › Soil — word word")
        assert excerpt.endswith("...")
        assert "\n" not in excerpt
