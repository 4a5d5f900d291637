"""Batch orchestrator turning changed note chunks into stored vectors"""

import asyncio
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

from src.config import config
from src.models.chunk import PreparedChunk
from src.models.document import Document
from src.models.embedding import EmbeddingVector, VectorMetadata
from src.models.processing import (
    BatchItemMetadata,
    BatchMetadata,
    FailedChunkDetail,
    ProcessingProgress,
    ProcessingResult,
    ProcessorConfig,
)
from src.services.chunker import Chunker
from src.services.providers.base import EmbeddingsProvider
from src.services.providers.content_screen import format_signals_label
from src.services.providers.errors import (
    EmbeddingsProviderError,
    ErrorCode,
    is_html_rejection,
)
from src.services.rate_limiter import RateLimiter
from src.services.vault import Vault
from src.services.vector_math import to_unit_vector
from src.services.vector_store import VectorStore
from src.utils.namespace import (
    build_namespace,
    build_vector_id,
    namespace_matches_current_version,
    normalize_model_for_namespace,
    parse_namespace,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_TEXTS_PER_REQUEST = 25
MAX_TRANSIENT_ERRORS = 10
EXCERPT_LENGTH = 220
EXCERPT_HEADING_LENGTH = 80
MAX_LOGGED_PATHS = 40

BatchOutcome = Literal["ok", "continue", "stop"]
ProbeMode = Literal["unknown", "content", "global"]


class RunCancelledError(Exception):
    """Raised inside a batch once the run has been cancelled"""


@dataclass
class PendingChunkWork:
    """A chunk waiting for an embedding"""

    document: Document
    text: str
    hash: str
    chunk_id: int
    heading_path: list[str] = field(default_factory=list)
    length: int = 0

    @property
    def path(self) -> str:
        return self.document.path

    @property
    def section_title(self) -> str | None:
        return " › ".join(self.heading_path) if self.heading_path else None


def processor_config_from_settings() -> ProcessorConfig:
    return ProcessorConfig(
        batch_size=config.embedding_batch_size,
        max_concurrency=config.embedding_max_concurrency,
        rate_limit_per_minute=config.embedding_rate_limit_per_minute,
        max_item_tokens=config.embedding_max_item_tokens,
        max_batch_tokens=config.embedding_max_batch_tokens,
    )


def build_excerpt(content: str, section_title: str | None = None) -> str:
    """Collapsed preview of chunk text, prefixed by its heading trail"""
    normalized = " ".join(content.split())
    base = f"{normalized[:EXCERPT_LENGTH]}..." if len(normalized) > EXCERPT_LENGTH else normalized
    if section_title:
        heading = (
            f"{section_title[: EXCERPT_HEADING_LENGTH - 3]}..."
            if len(section_title) > EXCERPT_HEADING_LENGTH
            else section_title
        )
        return f"{heading} — {base}"
    return base


class _RunState:
    """Per-run bookkeeping for documents with outstanding chunks"""

    def __init__(self, total: int):
        self.total = total
        self.completed = 0
        self.pending_work: list[PendingChunkWork] = []
        self.pending_by_path: dict[str, int] = {}
        self.keep_ids_by_path: dict[str, set[int]] = {}
        self.namespace_by_path: dict[str, str] = {}
        self.chunk_count_by_path: dict[str, int] = {}
        self.document_by_path: dict[str, Document] = {}
        self.next_batch_index = 0


class EmbeddingsProcessor:
    """
    Incrementally embed notes in bounded, rate-limited batches

    Unchanged chunks (same content hash, same provider/model/dimension) are
    reused without contacting the provider. Pending chunks are pooled across
    notes and flushed in token-bounded batches.
    """

    def __init__(
        self,
        provider: EmbeddingsProvider,
        storage: VectorStore,
        chunker: Chunker | None = None,
        processor_config: ProcessorConfig | None = None,
    ):
        self.provider = provider
        self.storage = storage
        self.chunker = chunker or Chunker()
        self.config = processor_config or processor_config_from_settings()
        self.rate_limiter = RateLimiter(self.config.rate_limit_per_minute)
        self.max_texts_per_request = self._resolve_provider_batch_limit(provider)

        self._cancelled = False
        self._fatal_error: EmbeddingsProviderError | None = None
        self._failed_paths: set[str] = set()
        self._failed_details: dict[str, FailedChunkDetail] = {}
        self._transient_error_count = 0
        self._probe_mode: ProbeMode = "unknown"
        self._probe_lock = asyncio.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop the current run between notes and batches"""
        self._cancelled = True

    def set_provider(self, provider: EmbeddingsProvider) -> None:
        self.provider = provider
        self.max_texts_per_request = self._resolve_provider_batch_limit(provider)

    def set_config(self, processor_config: ProcessorConfig) -> None:
        self.config = processor_config
        self.rate_limiter.set_rate(processor_config.rate_limit_per_minute)

    def _reset_run(self) -> None:
        self._cancelled = False
        self._fatal_error = None
        self._failed_paths = set()
        self._failed_details = {}
        self._transient_error_count = 0
        self._probe_mode = "unknown"

    async def process_files(
        self,
        documents: list[Document],
        vault: Vault,
        on_progress: Callable[[ProcessingProgress], None] | None = None,
    ) -> ProcessingResult:
        """
        Embed every changed chunk of the given notes

        Args:
            documents: Notes to process
            vault: Source of note text
            on_progress: Called after each finished note

        Returns:
            ProcessingResult: Completed/failed counts, failure details and the
            fatal error that cancelled the run, if any
        """
        self._reset_run()
        state = _RunState(total=len(documents))

        batch_size = max(1, min(self.config.batch_size, self.max_texts_per_request))
        concurrency = max(1, self.config.max_concurrency)
        flush_threshold = max(batch_size * concurrency * 6, batch_size * 4)

        def report_progress() -> None:
            if on_progress is not None:
                on_progress(ProcessingProgress(current=state.completed, total=state.total))

        for document in documents:
            if self._cancelled:
                break
            state.document_by_path[document.path] = document

            try:
                content = await vault.read(document.path)

                skip_signals = self.provider.screen_content(content)
                if skip_signals:
                    logger.debug(
                        f"Skipping {document.path}: content matches blocked patterns "
                        f"{format_signals_label(skip_signals)}"
                    )
                    state.document_by_path.pop(document.path, None)
                    state.completed += 1
                    report_progress()
                    continue

                processed = self.chunker.process(content)
                chunks = self.chunker.chunk(content) if processed is not None else []
                if not chunks:
                    await self._store_empty_sentinel(document, state)
                    await self._finalize_path(document.path, state, report_progress)
                    continue

                pending_count = await self._plan_document(document, chunks, state)
                if pending_count == 0:
                    await self._finalize_path(document.path, state, report_progress)
                    continue

                if len(state.pending_work) >= flush_threshold:
                    await self._flush(state, batch_size, concurrency, report_progress)
                    if self._cancelled:
                        break
            except Exception as e:
                logger.warning(f"Failed to prepare {document.path} for embedding: {e}")

        if not self._cancelled:
            await self._flush(state, batch_size, concurrency, report_progress)

        failed_paths = sorted(self._failed_paths)
        result = ProcessingResult(
            completed=state.completed,
            failed=len(failed_paths),
            failed_paths=failed_paths,
            fatal_error=self._fatal_error,
            failed_details=dict(self._failed_details),
        )
        self._fatal_error = None
        return result

    def _expected_dimension(self) -> int | None:
        dimension = getattr(self.provider, "expected_dimension", None)
        if isinstance(dimension, int) and dimension > 0:
            return dimension
        return None

    def _current_model(self) -> str:
        return normalize_model_for_namespace(getattr(self.provider, "model", None))

    async def _store_empty_sentinel(self, document: Document, state: _RunState) -> None:
        model = self._current_model()
        dimension = self._expected_dimension() or config.embedding_dimension
        namespace = build_namespace(self.provider.id, model, dimension)
        sentinel = EmbeddingVector(
            id=build_vector_id(namespace, document.path, 0),
            path=document.path,
            chunk_id=0,
            vector=[0.0] * dimension,
            metadata=VectorMetadata(
                title=document.basename,
                excerpt="",
                mtime=document.mtime or time.time(),
                content_hash="empty",
                provider=self.provider.id,
                model=model,
                dimension=dimension,
                namespace=namespace,
                is_empty=True,
                complete=True,
                chunk_count=0,
            ),
        )
        await self.storage.store_vectors([sentinel])
        state.keep_ids_by_path[document.path] = {0}
        state.namespace_by_path[document.path] = namespace
        state.pending_by_path[document.path] = 0
        state.chunk_count_by_path[document.path] = 0

    async def _plan_document(
        self, document: Document, chunks: list[PreparedChunk], state: _RunState
    ) -> int:
        """Reuse unchanged vectors, queue the rest, and return the pending count"""
        path = document.path
        existing_vectors = await self.storage.get_vectors_by_path(path)
        vectors_by_hash: dict[str, list[EmbeddingVector]] = {}
        for vector in existing_vectors:
            vectors_by_hash.setdefault(vector.metadata.content_hash, []).append(vector)

        model = self._current_model()
        expected_dimension = self._expected_dimension()
        metadata_updates: list[EmbeddingVector] = []
        ids_to_remove: list[str] = []
        keep_chunk_ids: set[int] = set()
        pending_count = 0

        for chunk in chunks:
            keep_chunk_ids.add(chunk.index)
            existing = await self._select_existing(
                path, chunk, vectors_by_hash.get(chunk.hash, []), model, expected_dimension, state
            )

            reusable = (
                existing is not None
                and existing.metadata.content_hash == chunk.hash
                and self._is_reusable(existing, model, expected_dimension)
            )
            if existing is not None and reusable:
                refresh = self._build_metadata_refresh(existing, document, chunk, model)
                if refresh is not None:
                    metadata_updates.append(refresh)
                    if refresh.id != existing.id:
                        ids_to_remove.append(existing.id)
                continue

            state.pending_work.append(
                PendingChunkWork(
                    document=document,
                    text=chunk.text,
                    hash=chunk.hash,
                    chunk_id=chunk.index,
                    heading_path=list(chunk.heading_path),
                    length=chunk.length,
                )
            )
            pending_count += 1

        if pending_count > 0:
            await self._mark_root_incomplete(path, state, metadata_updates)

        if metadata_updates:
            await self.storage.store_vectors(metadata_updates)
            if ids_to_remove:
                await self.storage.remove_ids(ids_to_remove)

        state.keep_ids_by_path[path] = keep_chunk_ids
        state.pending_by_path[path] = pending_count
        state.chunk_count_by_path[path] = len(chunks)
        return pending_count

    async def _select_existing(
        self,
        path: str,
        chunk: PreparedChunk,
        candidates: list[EmbeddingVector],
        model: str,
        expected_dimension: int | None,
        state: _RunState,
    ) -> EmbeddingVector | None:
        """Pick a stored vector for the chunk, preferring the current namespace"""
        chosen: EmbeddingVector | None = None
        for require_current in (True, False):
            for candidate in candidates:
                if not self._is_reusable(candidate, model, expected_dimension):
                    continue
                if require_current and not namespace_matches_current_version(
                    candidate.metadata.namespace, self.provider.id, model, expected_dimension
                ):
                    continue
                chosen = candidate
                break
            if chosen is not None:
                break

        if chosen is not None:
            candidates.remove(chosen)
            target_namespace = build_namespace(self.provider.id, model, len(chosen.vector))
            target_id = build_vector_id(target_namespace, path, chunk.index)
            state.namespace_by_path[path] = target_namespace
            if chosen.metadata.namespace == target_namespace and chosen.id != target_id:
                await self.storage.move_vector_id(chosen.id, target_id, chunk.index)
                chosen = chosen.model_copy(update={"id": target_id, "path": path, "chunk_id": chunk.index})
            return chosen

        if expected_dimension:
            target_namespace = build_namespace(self.provider.id, model, expected_dimension)
            state.namespace_by_path[path] = target_namespace
            return self.storage.get_vector_sync(build_vector_id(target_namespace, path, chunk.index))
        return None

    def _is_reusable(
        self, vector: EmbeddingVector, model: str, expected_dimension: int | None
    ) -> bool:
        """Same provider and model, a real vector, and the expected dimension if known"""
        if vector.metadata.is_empty:
            return False

        provider_id = (vector.metadata.provider or "").strip()
        vector_model = (vector.metadata.model or "").strip()
        if not provider_id or not vector_model:
            parsed = parse_namespace(vector.metadata.namespace)
            provider_id = provider_id or (parsed.provider if parsed else "unknown")
            vector_model = vector_model or (parsed.model if parsed else "unknown")

        if provider_id != self.provider.id:
            return False
        if normalize_model_for_namespace(vector_model) != model:
            return False

        dimension = len(vector.vector)
        if dimension <= 0:
            return False
        if expected_dimension and dimension != expected_dimension:
            return False
        return True

    def _build_metadata_refresh(
        self,
        existing: EmbeddingVector,
        document: Document,
        chunk: PreparedChunk,
        model: str,
    ) -> EmbeddingVector | None:
        """Updated copy of a reused vector, or None when nothing changed"""
        section_title = chunk.section_title
        excerpt = build_excerpt(chunk.text, section_title)
        mtime = document.mtime or time.time()
        dimension = len(existing.vector)
        namespace = build_namespace(self.provider.id, model, dimension)
        current = existing.metadata

        changed = (
            list(current.heading_path) != list(chunk.heading_path)
            or current.section_title != section_title
            or current.excerpt != excerpt
            or current.title != document.basename
            or current.chunk_length != chunk.length
            or current.mtime != mtime
            or current.provider != self.provider.id
            or current.model != model
            or current.namespace != namespace
        )
        if not changed:
            return None

        return existing.model_copy(
            update={
                "id": build_vector_id(namespace, document.path, chunk.index),
                "path": document.path,
                "chunk_id": chunk.index,
                "metadata": current.model_copy(
                    update={
                        "title": document.basename,
                        "excerpt": excerpt,
                        "mtime": mtime,
                        "content_hash": chunk.hash,
                        "provider": self.provider.id,
                        "model": model,
                        "dimension": dimension,
                        "namespace": namespace,
                        "section_title": section_title,
                        "heading_path": list(chunk.heading_path),
                        "chunk_length": chunk.length,
                    }
                ),
            }
        )

    async def _mark_root_incomplete(
        self, path: str, state: _RunState, metadata_updates: list[EmbeddingVector]
    ) -> None:
        """Flag the stored root incomplete while the note still has pending chunks"""
        namespace = state.namespace_by_path.get(path)
        if namespace is None:
            return

        root_id = build_vector_id(namespace, path, 0)
        for index, update in enumerate(metadata_updates):
            if update.id == root_id:
                metadata_updates[index] = update.model_copy(
                    update={"metadata": update.metadata.model_copy(update={"complete": False})}
                )
                return

        root = self.storage.get_vector_sync(root_id)
        if root is not None and root.metadata.complete is not False:
            metadata_updates.append(
                root.model_copy(
                    update={"metadata": root.metadata.model_copy(update={"complete": False})}
                )
            )

    async def _finalize_path(
        self, path: str, state: _RunState, report_progress: Callable[[], None]
    ) -> None:
        # Bookkeeping is removed before awaiting so a path is finalised once
        keep_chunk_ids = state.keep_ids_by_path.pop(path, None)
        namespace = state.namespace_by_path.pop(path, None)
        document = state.document_by_path.pop(path, None)
        chunk_count = state.chunk_count_by_path.pop(path, 0)
        state.pending_by_path.pop(path, None)

        if document is None or keep_chunk_ids is None or namespace is None:
            return

        had_failures = path in self._failed_paths
        await self._finalize_document(document, chunk_count, namespace, keep_chunk_ids, had_failures)
        state.completed += 1
        report_progress()

    async def _finalize_document(
        self,
        document: Document,
        chunk_count: int,
        namespace: str,
        keep_chunk_ids: set[int],
        had_failures: bool,
    ) -> None:
        """Settle the root's completion flag and prune chunks that no longer exist"""
        root_id = build_vector_id(namespace, document.path, 0)
        root = self.storage.get_vector_sync(root_id)
        if root is not None:
            mtime = document.mtime or time.time()
            complete = not had_failures
            metadata = root.metadata
            if (
                metadata.complete is not complete
                or metadata.chunk_count != chunk_count
                or metadata.title != document.basename
                or metadata.mtime != mtime
            ):
                await self.storage.store_vectors(
                    [
                        root.model_copy(
                            update={
                                "id": root_id,
                                "path": document.path,
                                "chunk_id": 0,
                                "metadata": metadata.model_copy(
                                    update={
                                        "title": document.basename,
                                        "mtime": mtime,
                                        "complete": complete,
                                        "chunk_count": chunk_count,
                                    }
                                ),
                            }
                        )
                    ]
                )

        keep_ids = {build_vector_id(namespace, document.path, chunk_id) for chunk_id in keep_chunk_ids}
        await self.storage.remove_by_path_except_ids(document.path, namespace, keep_ids)

    async def _flush(
        self,
        state: _RunState,
        batch_size: int,
        concurrency: int,
        report_progress: Callable[[], None],
    ) -> None:
        """Send all pooled work with bounded concurrency"""
        if not state.pending_work or self._cancelled:
            return

        work = state.pending_work
        state.pending_work = []
        batches = self._enforce_batch_size_limit(self._create_token_batches(work), batch_size)
        semaphore = asyncio.Semaphore(concurrency)

        async def run(batch: list[PendingChunkWork]) -> None:
            async with semaphore:
                if self._cancelled:
                    return
                batch_index = state.next_batch_index
                state.next_batch_index += 1
                outcome = await self._process_batch(batch, batch_index, state)

            # Abandoned notes keep their incomplete root
            if outcome == "stop" or self._cancelled:
                return

            decrements: dict[str, int] = {}
            for item in batch:
                decrements[item.path] = decrements.get(item.path, 0) + 1

            for path, count in decrements.items():
                if path not in state.pending_by_path:
                    continue
                remaining = state.pending_by_path[path] - count
                if remaining <= 0:
                    await self._finalize_path(path, state, report_progress)
                else:
                    state.pending_by_path[path] = remaining

        await asyncio.gather(*(run(batch) for batch in batches))

    def _create_token_batches(self, work: list[PendingChunkWork]) -> list[list[PendingChunkWork]]:
        """Group work so each batch stays within the estimated token budget"""
        batches: list[list[PendingChunkWork]] = []
        current: list[PendingChunkWork] = []
        current_tokens = 0

        for item in work:
            tokens = min(self.chunker.count_tokens(item.text), self.config.max_item_tokens)
            if current and current_tokens + tokens > self.config.max_batch_tokens:
                batches.append(current)
                current = []
                current_tokens = 0
            current.append(item)
            current_tokens += tokens

        if current:
            batches.append(current)
        return batches

    def _enforce_batch_size_limit(
        self, batches: list[list[PendingChunkWork]], limit: int
    ) -> list[list[PendingChunkWork]]:
        effective = max(1, min(limit, self.max_texts_per_request))
        bounded: list[list[PendingChunkWork]] = []
        for batch in batches:
            if len(batch) <= effective:
                bounded.append(batch)
                continue
            for i in range(0, len(batch), effective):
                bounded.append(batch[i : i + effective])
        return bounded

    def _build_batch_metadata(
        self, batch: list[PendingChunkWork], texts: list[str], batch_index: int
    ) -> BatchMetadata:
        items = []
        for item, processed in zip(batch, texts, strict=True):
            items.append(
                BatchItemMetadata(
                    path=item.path,
                    chunk_id=item.chunk_id,
                    hash=item.hash,
                    original_length=len(item.text),
                    processed_length=len(processed),
                    original_estimated_tokens=self.chunker.count_tokens(item.text),
                    estimated_tokens=self.chunker.count_tokens(processed),
                    truncated=processed != item.text,
                )
            )

        return BatchMetadata(
            batch_index=batch_index,
            batch_size=len(batch),
            estimated_total_tokens=sum(i.estimated_tokens for i in items),
            max_estimated_tokens=max((i.estimated_tokens for i in items), default=0),
            truncated_count=sum(1 for i in items if i.truncated),
            items=items,
        )

    async def _process_batch(
        self, batch: list[PendingChunkWork], batch_index: int, state: _RunState
    ) -> BatchOutcome:
        """
        Embed and store one batch

        Returns:
            'ok' when stored, 'continue' after a recoverable failure, 'stop'
            when the run was cancelled
        """
        if self._cancelled:
            return "stop"

        texts = [
            self.chunker.truncate_to_token_limit(item.text, self.config.max_item_tokens)
            for item in batch
        ]
        metadata = self._build_batch_metadata(batch, texts, batch_index)
        logger.debug(
            f"Embeddings batch {batch_index} prepared: {metadata.batch_size} texts, "
            f"~{metadata.estimated_total_tokens} tokens, {metadata.truncated_count} truncated"
        )

        try:
            embeddings = await self._embed_with_isolation(batch, texts, metadata)
            if len(embeddings) != len(texts):
                raise EmbeddingsProviderError(
                    f"Embedding count mismatch: expected {len(texts)}, got {len(embeddings)}",
                    code=ErrorCode.UNEXPECTED_RESPONSE,
                    provider_id=self.provider.id,
                )

            model = self._current_model()
            vectors: list[EmbeddingVector] = []
            for item, raw in zip(batch, embeddings, strict=True):
                if raw is None:
                    self._record_blocked_chunk(item)
                    continue

                unit = to_unit_vector(raw)
                dimension = int(unit.shape[0])
                namespace = build_namespace(self.provider.id, model, dimension)
                state.namespace_by_path[item.path] = namespace
                vectors.append(
                    EmbeddingVector(
                        id=build_vector_id(namespace, item.path, item.chunk_id),
                        path=item.path,
                        chunk_id=item.chunk_id,
                        vector=unit.tolist(),
                        metadata=VectorMetadata(
                            title=item.document.basename,
                            excerpt=build_excerpt(item.text, item.section_title),
                            mtime=item.document.mtime or time.time(),
                            content_hash=item.hash,
                            provider=self.provider.id,
                            model=model,
                            dimension=dimension,
                            namespace=namespace,
                            section_title=item.section_title,
                            heading_path=item.heading_path,
                            chunk_length=item.length,
                            complete=False if item.chunk_id == 0 else None,
                        ),
                    )
                )

            if vectors:
                await self.storage.store_vectors(vectors)
            return "ok"

        except RunCancelledError:
            logger.debug(f"Embeddings batch {batch_index} dropped: run cancelled")
            return "stop"

        except Exception as e:
            if self._cancelled:
                logger.debug(f"Embeddings batch {batch_index} failed after cancellation: {e}")
                return "stop"
            if isinstance(e, EmbeddingsProviderError):
                error = e
            else:
                error = EmbeddingsProviderError(
                    str(e) or type(e).__name__,
                    code=ErrorCode.UNEXPECTED_RESPONSE,
                    transient=False,
                    provider_id=self.provider.id,
                    details={"batch_index": batch_index, "kind": "unexpected", "error_type": type(e).__name__},
                )

            paths = list(dict.fromkeys(item.path for item in batch))
            action = self._handle_batch_error(error, paths, batch_index, metadata)
            if action == "stop":
                listed = paths[:MAX_LOGGED_PATHS]
                if len(paths) > MAX_LOGGED_PATHS:
                    listed.append(f"(+{len(paths) - MAX_LOGGED_PATHS} more)")
                logger.error(
                    f"Embeddings batch {batch_index} failed with {error.code} "
                    f"(status {error.status}); stopping. Files: {', '.join(listed)[:1400]}"
                )
            return action

    def _record_blocked_chunk(self, item: PendingChunkWork) -> None:
        self._failed_paths.add(item.path)
        if item.path not in self._failed_details:
            self._failed_details[item.path] = FailedChunkDetail(
                code=ErrorCode.HOST_UNAVAILABLE,
                message=f"Embeddings request blocked by gateway/WAF; skipped chunk {item.chunk_id}.",
                chunk_id=item.chunk_id,
                section_title=item.section_title,
                heading_path=item.heading_path,
                signals=self.provider.detect_content_signals(item.text),
            )

    async def _classify_html_rejection(self) -> Literal["content", "global"]:
        """Probe with a harmless text to tell a content block from a global outage"""
        async with self._probe_lock:
            if self._probe_mode != "unknown":
                return self._probe_mode

            await self.rate_limiter.acquire()
            if self._cancelled:
                raise RunCancelledError()
            try:
                probe = await self.provider.generate_embeddings(["hello"], input_type="document")
                self._probe_mode = "content" if len(probe) == 1 else "global"
            except Exception as e:
                logger.debug(f"HTML rejection probe failed: {e}")
                self._probe_mode = "global"
            return self._probe_mode

    async def _embed_with_isolation(
        self,
        batch: list[PendingChunkWork],
        texts: list[str],
        metadata: BatchMetadata,
    ) -> list[list[float] | None]:
        """
        Embed a batch, bisecting around chunks that an upstream gateway rejects

        Returns:
            One embedding per text, or None for each chunk that was blocked

        Raises:
            RunCancelledError: The run was cancelled before or during the request
        """
        await self.rate_limiter.acquire()
        if self._cancelled:
            raise RunCancelledError()

        try:
            embeddings = await self.provider.generate_embeddings(
                texts, input_type="document", batch_metadata=metadata
            )
            if self._cancelled:
                raise RunCancelledError()
            if len(embeddings) != len(texts):
                raise EmbeddingsProviderError(
                    f"Embedding count mismatch: expected {len(texts)}, got {len(embeddings)}",
                    code=ErrorCode.UNEXPECTED_RESPONSE,
                    provider_id=self.provider.id,
                )
            return list(embeddings)
        except EmbeddingsProviderError as e:
            if self._cancelled:
                raise RunCancelledError() from e
            if not is_html_rejection(e):
                raise
            if await self._classify_html_rejection() == "global":
                raise

            if len(batch) <= 1:
                only = batch[0]
                signals = self.provider.detect_content_signals(only.text)
                self._failed_paths.add(only.path)
                self._failed_details[only.path] = FailedChunkDetail(
                    code=e.code,
                    message=(
                        f"Embeddings request blocked by gateway/WAF (HTML 403) for chunk "
                        f"{only.chunk_id}. Consider excluding this note or removing "
                        "exploit-signature strings and retrying."
                    ),
                    status=e.status,
                    retry_in_ms=e.retry_in_ms,
                    chunk_id=only.chunk_id,
                    section_title=only.section_title,
                    heading_path=only.heading_path,
                    signals=signals,
                )
                logger.warning(
                    f"Embeddings chunk blocked by gateway/WAF; skipping "
                    f"{only.path}#{only.chunk_id}{format_signals_label(signals)}"
                )
                return [None]

            mid = math.ceil(len(batch) / 2)
            left = await self._embed_with_isolation(
                batch[:mid],
                texts[:mid],
                self._build_batch_metadata(batch[:mid], texts[:mid], metadata.batch_index),
            )
            right = await self._embed_with_isolation(
                batch[mid:],
                texts[mid:],
                self._build_batch_metadata(batch[mid:], texts[mid:], metadata.batch_index),
            )
            return left + right

    def _handle_batch_error(
        self,
        error: EmbeddingsProviderError,
        paths: list[str],
        batch_index: int,
        metadata: BatchMetadata,
    ) -> Literal["continue", "stop"]:
        if not error.transient or error.license_related:
            self._fatal_error = error
            self.cancel()
            return "stop"

        # Provider-wide backoff: the manager schedules the retry
        if (
            error.code in (ErrorCode.HOST_UNAVAILABLE, ErrorCode.RATE_LIMITED)
            or error.status == 429
            or (error.retry_in_ms is not None and error.retry_in_ms > 0)
        ):
            self._fatal_error = error
            self.cancel()
            return "stop"

        self._transient_error_count += 1
        for path in paths:
            self._failed_paths.add(path)
            if path not in self._failed_details:
                self._failed_details[path] = FailedChunkDetail(
                    code=error.code,
                    message=error.message,
                    status=error.status,
                    retry_in_ms=error.retry_in_ms,
                )

        if self._transient_error_count >= MAX_TRANSIENT_ERRORS:
            self._fatal_error = EmbeddingsProviderError(
                f"Too many transient errors ({self._transient_error_count}). "
                "Stopping to prevent further issues.",
                code=ErrorCode.UNEXPECTED_RESPONSE,
                transient=False,
                provider_id=self.provider.id,
                details={
                    "transient_error_count": self._transient_error_count,
                    "last_error_code": str(error.code),
                },
            )
            self.cancel()
            logger.error(
                f"Embeddings processing stopped after {self._transient_error_count} transient "
                f"errors ({len(self._failed_paths)} failed files, last batch {batch_index})"
            )
            return "stop"

        logger.warning(
            f"Transient error in batch {batch_index} ({error.code}: {error.message}); "
            f"continuing with remaining files ({len(paths)} affected, "
            f"batch size {metadata.batch_size})"
        )
        return "continue"

    @staticmethod
    def _resolve_provider_batch_limit(provider: EmbeddingsProvider) -> int:
        limit = provider.get_max_batch_size()
        if isinstance(limit, int) and limit > 0:
            return limit
        return DEFAULT_MAX_TEXTS_PER_REQUEST
