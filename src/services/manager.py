"""Orchestration, scheduling and retrieval for the semantic index"""

import asyncio
import hashlib
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

import numpy as np

from src.config import config
from src.models.document import Document
from src.models.embedding import EmbeddingVector
from src.models.health import HealthScope, HealthSnapshot
from src.models.processing import ProcessingProgress, ProcessingResult, ProcessorConfig
from src.models.provider_settings import ProviderSettings
from src.models.run_result import (
    EmbeddingStats,
    FailedFile,
    FileState,
    NamespaceStats,
    PendingFile,
    PendingReason,
    RunResult,
    RunStatus,
)
from src.models.search_result import SearchResult
from src.services.chunker import Chunker
from src.services.exclusions import ExclusionRules, normalize_directory
from src.services.health_monitor import HealthMonitor
from src.services.processor import EmbeddingsProcessor
from src.services.providers.base import EmbeddingsProvider
from src.services.providers.errors import (
    EmbeddingsProviderError,
    ErrorCode,
    is_license_error,
)
from src.services.providers.factory import create_provider, settings_from_config
from src.services.search import VectorSearch
from src.services.vault import Vault
from src.services.vector_math import to_unit_vector
from src.services.vector_store import VectorStore
from src.utils.namespace import (
    build_namespace,
    build_namespace_prefix,
    build_vector_id,
    namespace_matches_current_version,
    parse_namespace,
)

logger = logging.getLogger(__name__)

MAX_FILE_QUERY_VECTORS = 3
LICENSE_COOLDOWN_MS = 24 * 60 * 60 * 1000
MAX_COOLDOWN_MS = 15 * 60 * 1000
MIN_COOLDOWN_MS = 1000
GATEWAY_COOLDOWN_MS = 15 * 1000
HOST_UNAVAILABLE_COOLDOWN_MS = 2 * 60 * 1000
DEFAULT_COOLDOWN_MS = 60 * 1000


class ProcessingInProgressError(RuntimeError):
    """Raised when a vault run is requested while another run holds the lock"""

    def __init__(self, message: str = "Processing already in progress"):
        super().__init__(message)


class ProviderNotReadyError(RuntimeError):
    """Raised when the embedding provider is missing required settings"""

    def __init__(
        self,
        message: str = "Embeddings provider is not ready. Check the provider endpoint and model settings.",
    ):
        super().__init__(message)


class EmbeddingsQueryError(Exception):
    """Raised when a query embedding cannot be generated"""

    def __init__(self, message: str, error: EmbeddingsProviderError | None = None):
        self.message = message
        self.error = error
        super().__init__(message)


class VaultRunScheduler(Protocol):
    """Collaborator that runs the vault pass later"""

    def schedule_vault_run(self, delay_seconds: float) -> None: ...

    def cancel_scheduled_vault_run(self) -> None: ...


@dataclass
class FileProcessingState:
    needs_processing: bool
    reason: PendingReason | FileState
    last_embedded: float | None = None
    existing_namespace: str | None = None


def compute_cooldown_ms(error: EmbeddingsProviderError, allow_license: bool = True) -> int:
    """
    Delay before the next attempt after a provider failure

    Args:
        error: Provider failure
        allow_license: Whether license errors get the 24 hour cooldown

    Returns:
        int: Cooldown in milliseconds, clamped to [1s, 15min] (24h for license errors)
    """
    license_error = allow_license and is_license_error(error)
    if license_error:
        fallback = LICENSE_COOLDOWN_MS
    elif error.status in (502, 503, 504):
        fallback = GATEWAY_COOLDOWN_MS
    elif error.code == ErrorCode.HOST_UNAVAILABLE:
        fallback = HOST_UNAVAILABLE_COOLDOWN_MS
    else:
        fallback = DEFAULT_COOLDOWN_MS

    retry_ms = error.retry_in_ms if error.retry_in_ms is not None else fallback
    ceiling = LICENSE_COOLDOWN_MS if license_error else MAX_COOLDOWN_MS
    return min(max(retry_ms, MIN_COOLDOWN_MS), ceiling)


def build_friendly_error_message(error: EmbeddingsProviderError, retry_ms: float) -> str:
    if error.code == ErrorCode.HOST_UNAVAILABLE:
        seconds = max(1, math.ceil(retry_ms / 1000))
        return f"Embeddings are temporarily unavailable. Automatically retrying in ~{seconds}s."
    if error.code == ErrorCode.NETWORK_ERROR:
        return (
            "Network issue while contacting the embeddings provider. "
            "Check your connection and try again shortly."
        )
    if error.license_related:
        return f"Embeddings license error: {error.message}"
    if error.status == 429:
        return "Embeddings rate limit reached. Please wait a moment before retrying."
    return error.message


def build_friendly_cooldown_message(remaining_ms: float) -> str:
    seconds = max(1, math.ceil(remaining_ms / 1000))
    return f"Embeddings are cooling down. Automatically retrying in ~{seconds}s."


def select_query_vectors(
    vectors: list[EmbeddingVector], max_vectors: int = MAX_FILE_QUERY_VECTORS
) -> list[EmbeddingVector]:
    """Root chunk first, then the longest chunks, up to max_vectors"""
    if len(vectors) <= 1:
        return list(vectors)

    selected: list[EmbeddingVector] = []
    selected_ids: set[str] = set()

    def add(vector: EmbeddingVector | None) -> None:
        if vector is None or vector.id in selected_ids:
            return
        selected.append(vector)
        selected_ids.add(vector.id)

    add(next((v for v in vectors if v.chunk_id == 0), None))
    for vector in sorted(vectors, key=lambda v: v.metadata.chunk_length or 0, reverse=True):
        if len(selected) >= max_vectors:
            break
        add(vector)
    for vector in vectors:
        if len(selected) >= max_vectors:
            break
        add(vector)
    return selected[:max_vectors]


class EmbeddingsManager:
    """
    Public entry point for indexing and retrieval

    Serialises processing with one asyncio lock, tracks per-scope cooldowns
    after provider failures, keeps a ledger of failed notes, and answers
    semantic queries against the active namespace.
    """

    def __init__(
        self,
        vault: Vault,
        storage: VectorStore,
        provider_settings: ProviderSettings | None = None,
        provider: EmbeddingsProvider | None = None,
        exclusions: ExclusionRules | None = None,
        processor_config: ProcessorConfig | None = None,
        chunker: Chunker | None = None,
        health_monitor: HealthMonitor | None = None,
        scheduler: VaultRunScheduler | None = None,
        auto_process: bool | None = None,
    ):
        self.vault = vault
        self.storage = storage
        self.provider_settings = provider_settings or settings_from_config()
        self.provider = provider or create_provider(self.provider_settings)
        self.exclusions = exclusions or ExclusionRules()
        self.processor = EmbeddingsProcessor(
            self.provider, storage, chunker=chunker or Chunker(), processor_config=processor_config
        )
        self.search = VectorSearch()
        self.health_monitor = health_monitor or HealthMonitor()
        self.scheduler = scheduler
        self.auto_process = config.auto_process if auto_process is None else auto_process

        self._lock = asyncio.Lock()
        self._initialized = False
        self._suspended = False
        self._vault_cooldown_until = 0.0
        self._query_cooldown_until = 0.0
        self._failed_files: dict[str, FailedFile] = {}
        self._best_namespace_by_prefix: dict[str, str] = {}
        self._query_cache: dict[str, tuple[np.ndarray, float]] = {}
        self._query_in_flight: dict[str, asyncio.Task] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._in_flight_paths: set[str] = set()
        self._background_tasks: set[asyncio.Task] = set()

    # Lifecycle

    async def initialize(self) -> None:
        """Load the store, repair corrupted vectors, and arm automatic processing"""
        if self._initialized:
            return

        await self.storage.initialize()
        summary = await self.storage.purge_corrupted_vectors()
        if summary.removed_count or summary.corrected_count:
            logger.warning(
                f"Repaired embeddings: {summary.removed_count} removed, "
                f"{summary.corrected_count} corrected"
            )
            self._queue_reprocess(summary.removed_paths)

        self._initialized = True
        if self.auto_process:
            self._schedule_vault_processing(config.auto_process_delay_ms)

    async def close(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self.processor.cancel()
        current = asyncio.current_task()
        tasks = [task for task in self._background_tasks if task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.provider.close()
        self.storage.close()

    def attach_scheduler(self, scheduler: VaultRunScheduler) -> None:
        self.scheduler = scheduler

    # Processing

    def is_provider_ready(self) -> bool:
        return self.provider_settings.is_ready

    def is_processing(self) -> bool:
        return self._lock.locked()

    def is_suspended(self) -> bool:
        return self._suspended

    def suspend_processing(self) -> None:
        """Pause processing and cancel the in-flight run between batches"""
        self._suspended = True
        self.processor.cancel()

    def resume_processing(self) -> None:
        self._suspended = False

    def reset_license_cooldown(self) -> None:
        self._vault_cooldown_until = 0.0
        self._query_cooldown_until = 0.0

    async def process_vault(
        self, on_progress: Callable[[ProcessingProgress], None] | None = None
    ) -> RunResult:
        """
        Process every note that needs embedding

        Returns:
            RunResult: complete, aborted (with failure and retry time) or cooldown

        Raises:
            ProviderNotReadyError: If the provider is not configured
            ProcessingInProgressError: If another run holds the processing lock
        """
        cooldown = self._check_vault_gate()
        if cooldown is not None:
            return cooldown

        if not self.is_provider_ready():
            raise ProviderNotReadyError()
        if self._lock.locked():
            raise ProcessingInProgressError()

        async with self._lock:
            return await self._process_vault_internal(on_progress)

    async def run_scheduled_processing(self) -> RunResult:
        """Entry point for scheduled runs; waits for the lock instead of failing"""
        if self._suspended or not self.is_provider_ready():
            return RunResult(status=RunStatus.COMPLETE)

        now = time.time()
        if now < self._vault_cooldown_until:
            self._schedule_vault_processing((self._vault_cooldown_until - now) * 1000)
            return self._cooldown_result(now)

        async with self._lock:
            return await self._process_vault_internal()

    def _check_vault_gate(self) -> RunResult | None:
        now = time.time()
        if now < self._vault_cooldown_until:
            return self._cooldown_result(now)
        if self._suspended:
            return RunResult(
                status=RunStatus.COOLDOWN,
                retry_at=self._retry_at(self._vault_cooldown_until)
                if self._vault_cooldown_until > now
                else None,
                message="Embeddings processing is currently paused.",
            )
        return None

    def _cooldown_result(self, now: float) -> RunResult:
        return RunResult(
            status=RunStatus.COOLDOWN,
            retry_at=self._retry_at(self._vault_cooldown_until),
            message=build_friendly_cooldown_message((self._vault_cooldown_until - now) * 1000),
        )

    @staticmethod
    def _retry_at(timestamp: float) -> datetime | None:
        return datetime.fromtimestamp(timestamp, UTC) if timestamp > 0 else None

    async def _process_vault_internal(
        self, on_progress: Callable[[ProcessingProgress], None] | None = None
    ) -> RunResult:
        gate = self._check_vault_gate()
        if gate is not None:
            return gate

        documents = [d for d in self.vault.list_documents() if self.should_process(d)]
        if not documents:
            self._handle_processing_success(HealthScope.VAULT)
            return RunResult(status=RunStatus.COMPLETE)

        logger.info(f"Processing {len(documents)} notes")
        return await self._execute_run(documents, on_progress)

    async def _execute_run(
        self,
        documents: list[Document],
        on_progress: Callable[[ProcessingProgress], None] | None = None,
    ) -> RunResult:
        """Process documents under the held lock and translate the outcome"""
        processed_count = 0

        def track(progress: ProcessingProgress) -> None:
            nonlocal processed_count
            processed_count = max(processed_count, progress.current)
            if on_progress is not None:
                on_progress(progress)

        try:
            result = await self.processor.process_files(documents, self.vault, track)
            processed_count = result.completed
            self._record_failed_files(result)
            if result.fatal_error is not None:
                raise result.fatal_error
            self._handle_processing_success(HealthScope.VAULT)
        except Exception as e:
            failure = self._ensure_provider_error(e)
            self._handle_vault_failure(failure)
            logger.error(f"Embeddings run aborted after {processed_count} notes: {failure.message}")
            return RunResult(
                status=RunStatus.ABORTED,
                processed=processed_count,
                failure=failure,
                retry_at=self._retry_at(self._vault_cooldown_until),
                message=build_friendly_error_message(
                    failure, max(0.0, (self._vault_cooldown_until - time.time()) * 1000)
                ),
            )

        failed_count = len(self._failed_files)
        if failed_count:
            logger.warning(
                f"Processed {processed_count} notes. {failed_count} "
                f"note{'s' if failed_count != 1 else ''} failed and can be retried."
            )
        else:
            logger.info(f"Processed {processed_count} notes")
        return RunResult(
            status=RunStatus.COMPLETE,
            processed=processed_count,
            partial_success=failed_count > 0,
        )

    def _record_failed_files(self, result: ProcessingResult) -> None:
        failed_at = datetime.now(UTC)
        fatal = result.fatal_error
        for path in result.failed_paths:
            detail = result.failed_details.get(path)
            self._failed_files[path] = FailedFile(
                path=path,
                code=str((detail.code if detail else None) or (fatal.code if fatal else None) or "TRANSIENT_ERROR"),
                message=(detail.message if detail else None)
                or (fatal.message if fatal else None)
                or "Batch processing failed",
                failed_at=failed_at,
                retryable=fatal is None,
            )

    async def process_file(self, path: str) -> None:
        """Process one note now, honouring the vault cooldown"""
        now = time.time()
        if now < self._vault_cooldown_until:
            self._schedule_vault_processing((self._vault_cooldown_until - now) * 1000)
            return

        try:
            async with self._lock:
                if self._suspended or not self.is_provider_ready():
                    return
                if time.time() < self._vault_cooldown_until:
                    return
                document = self.vault.get_document(path)
                if document is None:
                    return

                result = await self.processor.process_files([document], self.vault)
                self._record_failed_files(result)
                if result.fatal_error is not None:
                    raise result.fatal_error
                self._handle_processing_success(HealthScope.FILE)
        except Exception as e:
            failure = self._ensure_provider_error(e)
            logger.warning(f"Embedding {path} failed: {failure.message}")
            self._handle_vault_failure(failure)

    async def retry_failed_files(self) -> RunResult:
        """Reprocess retryable entries of the failed-files ledger"""
        retryable = [entry.path for entry in self._failed_files.values() if entry.retryable]
        if not retryable:
            return RunResult(status=RunStatus.COMPLETE)

        documents = [d for d in (self.vault.get_document(p) for p in retryable) if d is not None]
        if not documents:
            self._failed_files.clear()
            return RunResult(status=RunStatus.COMPLETE)

        for path in retryable:
            self._failed_files.pop(path, None)

        async with self._lock:
            logger.info(f"Retrying {len(documents)} failed notes")
            return await self._execute_run(documents)

    async def force_refresh_current_namespace(self) -> RunResult:
        """Delete every vector of the active provider/model and reprocess the vault"""
        prefix = build_namespace_prefix(self.provider.id, self.provider.model)
        self.suspend_processing()
        try:
            async with self._lock:
                await self.storage.remove_by_namespace_prefix(prefix)
                self._clear_namespace_lookup_cache()
        finally:
            self.resume_processing()
        return await self.process_vault()

    async def switch_provider(self, settings: ProviderSettings) -> None:
        """
        Activate a different provider or model

        Stored vectors are never deleted; notes embedded under the previous
        namespace surface as schema-mismatch until reprocessed.
        """
        previous = self.provider
        self.provider_settings = settings
        self.provider = create_provider(settings)
        self.processor.set_provider(self.provider)
        self._query_cache.clear()
        self._query_in_flight.clear()
        self._clear_namespace_lookup_cache()
        await previous.close()
        logger.info(f"Switched embeddings provider to {settings.provider_id} ({settings.model})")

        if self.auto_process:
            self._schedule_vault_processing(config.auto_process_delay_ms)

    async def update_exclusions(self, exclusions: ExclusionRules) -> None:
        """Apply new exclusion rules and drop vectors of newly excluded notes"""
        self.exclusions = exclusions
        async with self._lock:
            await self._cleanup_excluded_embeddings()
        if self.auto_process:
            self._schedule_vault_processing(config.auto_process_delay_ms)

    async def _cleanup_excluded_embeddings(self) -> None:
        for directory in self.exclusions.excluded_directories():
            await self.storage.remove_by_directory(directory)
            for path in [p for p in self._failed_files if p.startswith(directory)]:
                self._failed_files.pop(path, None)

        for path in self.storage.get_distinct_paths():
            if self.exclusions.is_path_excluded(path):
                await self.storage.remove_by_path(path)
                self._failed_files.pop(path, None)

        self._clear_namespace_lookup_cache()

    # Failure handling

    def _ensure_provider_error(self, error: BaseException) -> EmbeddingsProviderError:
        if isinstance(error, EmbeddingsProviderError):
            return error
        return EmbeddingsProviderError(
            str(error) or "Embeddings processing failed",
            code=ErrorCode.HTTP_ERROR,
            provider_id=self.provider.id,
            details={"error_type": type(error).__name__},
        )

    def _handle_vault_failure(self, error: EmbeddingsProviderError) -> None:
        license_error = is_license_error(error)
        retry_ms = compute_cooldown_ms(error)
        self._vault_cooldown_until = time.time() + retry_ms / 1000
        self.health_monitor.record_failure(HealthScope.VAULT, error)

        if license_error:
            logger.error(f"Embeddings provider rejected credentials; not retrying: {error.message}")
            return
        self._schedule_vault_processing(retry_ms)

    def _query_failure(self, error: EmbeddingsProviderError) -> EmbeddingsQueryError:
        retry_ms = compute_cooldown_ms(error, allow_license=False)
        self._query_cooldown_until = time.time() + retry_ms / 1000
        self.health_monitor.record_failure(HealthScope.QUERY, error)
        return EmbeddingsQueryError(build_friendly_error_message(error, retry_ms), error)

    def _handle_processing_success(self, scope: HealthScope) -> None:
        if scope == HealthScope.QUERY:
            self._query_cooldown_until = 0.0
        else:
            self._vault_cooldown_until = 0.0
            if self.scheduler is not None:
                self.scheduler.cancel_scheduled_vault_run()
        self.health_monitor.record_success(scope)

    def _schedule_vault_processing(self, delay_ms: float) -> None:
        if not self.auto_process or self.scheduler is None:
            return
        self.scheduler.schedule_vault_run(max(0.0, delay_ms) / 1000)

    # File events

    def on_file_modified(self, path: str) -> None:
        self._debounce(path, config.quiet_period_ms)

    def on_file_created(self, path: str) -> None:
        self._debounce(path, config.create_debounce_ms)

    async def on_file_renamed(self, old_path: str, new_path: str) -> None:
        """Rewrite vector ids for a renamed note (or drop them if now excluded)"""
        self._cancel_timer(old_path)
        self._cancel_timer(new_path)
        if self.exclusions.is_path_excluded(new_path):
            await self.storage.remove_by_path(old_path)
        else:
            title = new_path.rsplit("/", 1)[-1].removesuffix(".md")
            await self.storage.rename_by_path(old_path, new_path, title)
        self._failed_files.pop(old_path, None)

    async def on_file_deleted(self, path: str) -> None:
        self._cancel_timer(path)
        await self.storage.remove_by_path(path)
        self._failed_files.pop(path, None)

    async def on_directory_renamed(self, old_dir: str, new_dir: str) -> None:
        old_prefix = normalize_directory(old_dir)
        new_prefix = normalize_directory(new_dir)
        if not old_prefix or not new_prefix:
            return
        if self.exclusions.is_directory_excluded(new_prefix):
            await self.storage.remove_by_directory(old_prefix)
        else:
            await self.storage.rename_by_directory(old_prefix, new_prefix)

    async def on_directory_deleted(self, directory: str) -> None:
        prefix = normalize_directory(directory)
        if prefix:
            await self.storage.remove_by_directory(prefix)

    def _debounce(self, path: str, delay_ms: int) -> None:
        if self._suspended or not self.is_provider_ready():
            return
        self._cancel_timer(path)
        loop = asyncio.get_running_loop()
        self._timers[path] = loop.call_later(delay_ms / 1000, self._start_debounced, path)

    def _cancel_timer(self, path: str) -> None:
        timer = self._timers.pop(path, None)
        if timer is not None:
            timer.cancel()

    def _start_debounced(self, path: str) -> None:
        self._timers.pop(path, None)
        self._spawn(self._process_debounced(path))

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _process_debounced(self, path: str) -> None:
        if self._suspended or path in self._in_flight_paths:
            return
        document = self.vault.get_document(path)
        if document is None or not self.should_process(document):
            return

        self._in_flight_paths.add(path)
        try:
            await self.process_file(path)
        finally:
            self._in_flight_paths.discard(path)

    def _queue_reprocess(self, paths: list[str]) -> None:
        for path in dict.fromkeys(p for p in paths if p):
            if path.endswith(".md") and self.vault.exists(path):
                self.on_file_created(path)
            else:
                self._spawn(self.storage.remove_by_path(path))

    # State evaluation

    def _expected_dimension(self) -> int | None:
        dimension = self.provider.expected_dimension
        return dimension if dimension and dimension > 0 else None

    def _clear_namespace_lookup_cache(self) -> None:
        self._best_namespace_by_prefix.clear()

    def _resolve_lookup_namespace(self) -> str | None:
        """Namespace queries and stats read from for the active provider/model"""
        expected_dimension = self._expected_dimension()
        if expected_dimension:
            return build_namespace(self.provider.id, self.provider.model, expected_dimension)

        prefix = build_namespace_prefix(self.provider.id, self.provider.model)
        cached = self._best_namespace_by_prefix.get(prefix)
        if cached:
            return cached
        inferred = self.storage.peek_best_namespace_for_prefix(prefix)
        if inferred:
            self._best_namespace_by_prefix[prefix] = inferred
        return inferred

    def is_path_excluded(self, path: str) -> bool:
        return self.exclusions.is_path_excluded(path)

    def should_process(self, document: Document) -> bool:
        return self.evaluate_file_state(document).needs_processing

    def evaluate_file_state(self, document: Document) -> FileProcessingState:
        """Classify a note as up to date, excluded, or pending with a reason"""
        if self.exclusions.is_path_excluded(document.path):
            return FileProcessingState(False, FileState.EXCLUDED)

        if document.mtime is None:
            return FileProcessingState(True, PendingReason.METADATA_MISSING)

        namespace = self._resolve_lookup_namespace()
        existing = (
            self.storage.get_vector_sync(build_vector_id(namespace, document.path, 0))
            if namespace
            else None
        )
        if existing is None:
            other_roots = self.storage.get_root_vectors_sync(document.path)
            if other_roots:
                newest = max(other_roots, key=lambda v: v.metadata.mtime)
                return FileProcessingState(
                    True,
                    PendingReason.SCHEMA_MISMATCH,
                    newest.metadata.mtime,
                    newest.metadata.namespace,
                )
            is_empty_file = document.size is not None and document.size <= 1
            return FileProcessingState(
                True, PendingReason.EMPTY if is_empty_file else PendingReason.MISSING
            )

        metadata = existing.metadata
        if not namespace_matches_current_version(
            metadata.namespace, self.provider.id, self.provider.model, self._expected_dimension()
        ):
            return FileProcessingState(
                True, PendingReason.SCHEMA_MISMATCH, metadata.mtime, metadata.namespace
            )

        if metadata.complete is not True:
            return FileProcessingState(
                True, PendingReason.INCOMPLETE, metadata.mtime, metadata.namespace
            )

        if metadata.mtime >= document.mtime:
            return FileProcessingState(False, FileState.UP_TO_DATE, metadata.mtime, metadata.namespace)

        return FileProcessingState(True, PendingReason.MODIFIED, metadata.mtime)

    # Reporting

    def _eligible_documents(self) -> list[Document]:
        return [d for d in self.vault.list_documents() if not self.exclusions.is_path_excluded(d.path)]

    def get_stats(self) -> EmbeddingStats:
        """Coverage of the active namespace over eligible notes"""
        documents = self._eligible_documents()
        namespace = self._resolve_lookup_namespace()
        expected_dimension = self._expected_dimension()

        processed = 0
        present = 0
        if namespace:
            for document in documents:
                root = self.storage.get_vector_sync(build_vector_id(namespace, document.path, 0))
                if root is None:
                    continue
                if not namespace_matches_current_version(
                    root.metadata.namespace, self.provider.id, self.provider.model, expected_dimension
                ):
                    continue
                present += 1
                if root.metadata.complete is True:
                    processed += 1

        return EmbeddingStats(
            total=len(documents),
            processed=processed,
            present=present,
            needs_processing=max(0, len(documents) - processed),
            failed=len(self._failed_files),
        )

    def list_pending_files(self) -> list[PendingFile]:
        """Failed notes first, then every other pending note newest first"""
        pending: list[PendingFile] = []
        added: set[str] = set()

        for path, failure in list(self._failed_files.items()):
            document = self.vault.get_document(path)
            if document is None:
                self._failed_files.pop(path, None)
                continue
            added.add(path)
            pending.append(
                PendingFile(
                    path=path,
                    reason=PendingReason.FAILED,
                    last_modified=document.mtime,
                    size=document.size,
                    failure=failure,
                )
            )

        others: list[PendingFile] = []
        for document in self.vault.list_documents():
            if document.path in added:
                continue
            state = self.evaluate_file_state(document)
            if not state.needs_processing or not isinstance(state.reason, PendingReason):
                continue
            others.append(
                PendingFile(
                    path=document.path,
                    reason=state.reason,
                    last_modified=document.mtime,
                    last_embedded=state.last_embedded,
                    size=document.size,
                    existing_namespace=state.existing_namespace,
                )
            )

        others.sort(key=lambda p: p.last_modified or 0.0, reverse=True)
        return pending + others

    def list_failed_files(self) -> list[FailedFile]:
        return list(self._failed_files.values())

    def clear_failed_files(self) -> None:
        self._failed_files.clear()

    def has_any_embeddings(self) -> bool:
        """Whether any eligible note has a non-empty root in the active namespace"""
        namespace = self._resolve_lookup_namespace()
        if not namespace:
            return False
        expected_dimension = self._expected_dimension()
        for path in self.storage.get_distinct_paths():
            if self.exclusions.is_path_excluded(path):
                continue
            root = self.storage.get_vector_sync(build_vector_id(namespace, path, 0))
            if root is None or root.metadata.is_empty:
                continue
            if namespace_matches_current_version(
                root.metadata.namespace, self.provider.id, self.provider.model, expected_dimension
            ):
                return True
        return False

    async def get_namespace_stats(self) -> list[NamespaceStats]:
        counts: dict[str, tuple[int, set[str]]] = {}
        for vector in await self.storage.get_all_vectors():
            namespace = vector.metadata.namespace
            if not namespace:
                continue
            total, paths = counts.get(namespace, (0, set()))
            paths.add(vector.path)
            counts[namespace] = (total + 1, paths)

        stats = []
        for namespace, (total, paths) in counts.items():
            parsed = parse_namespace(namespace)
            if parsed is None or parsed.dimension is None:
                continue
            stats.append(
                NamespaceStats(
                    namespace=namespace,
                    provider=parsed.provider,
                    model=parsed.model,
                    schema_version=parsed.schema_version,
                    dimension=parsed.dimension,
                    vectors=total,
                    files=len(paths),
                )
            )
        stats.sort(key=lambda s: (s.provider, s.model, s.schema_version, s.dimension))
        return stats

    def get_health_snapshot(self) -> HealthSnapshot:
        return self.health_monitor.snapshot()

    # Queries

    def _query_cache_key(self, query: str) -> str:
        raw = f"{self.provider.id}|{self.provider.model}|{query}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def _insert_query_cache(self, key: str, vector: np.ndarray, expires_at: float) -> None:
        if key not in self._query_cache and len(self._query_cache) >= config.query_cache_max_entries:
            oldest = min(self._query_cache, key=lambda k: self._query_cache[k][1])
            del self._query_cache[oldest]
        self._query_cache[key] = (vector, expires_at)

    async def _generate_query_vector(self, query: str, key: str) -> np.ndarray:
        embeddings = await self.provider.generate_embeddings([query], input_type="query")
        raw = embeddings[0] if embeddings else None
        if not raw:
            raise EmbeddingsProviderError(
                "Embedding provider returned an empty query vector.",
                code=ErrorCode.INVALID_RESPONSE,
                provider_id=self.provider.id,
            )
        vector = to_unit_vector(raw)
        self._insert_query_cache(key, vector, time.time() + config.query_cache_ttl_seconds)
        return vector

    def _release_query_task(self, key: str, task: asyncio.Future) -> None:
        if self._query_in_flight.get(key) is task:
            del self._query_in_flight[key]
        if not task.cancelled():
            # Mark the error retrieved when every caller has gone away
            task.exception()

    async def _get_query_vector(self, query: str) -> np.ndarray:
        now = time.time()
        if self._query_cooldown_until and now < self._query_cooldown_until:
            raise EmbeddingsQueryError(
                build_friendly_cooldown_message((self._query_cooldown_until - now) * 1000)
            )

        key = self._query_cache_key(query)
        cached = self._query_cache.get(key)
        if cached is not None and cached[1] > now:
            return cached[0]

        task = self._query_in_flight.get(key)
        owner = task is None
        if task is None:
            task = asyncio.ensure_future(self._generate_query_vector(query, key))
            self._query_in_flight[key] = task
            task.add_done_callback(lambda done: self._release_query_task(key, done))

        try:
            # A cancelled caller must not cancel the request other callers share
            vector = await asyncio.shield(task)
        except Exception as e:
            raise self._query_failure(self._ensure_provider_error(e)) from e

        if owner:
            self._handle_processing_success(HealthScope.QUERY)
        return vector

    def _eligible_root_paths(self, vectors: list[EmbeddingVector]) -> set[str]:
        """Paths whose root is complete, non-empty and not excluded"""
        return {
            v.path
            for v in vectors
            if v.chunk_id == 0
            and not v.metadata.is_empty
            and v.metadata.complete is True
            and not self.exclusions.is_path_excluded(v.path)
        }

    async def search_similar(self, query: str, limit: int | None = None) -> list[SearchResult]:
        """
        Semantic search over the active namespace

        Args:
            query: Free-text query
            limit: Maximum number of notes to return

        Returns:
            list[SearchResult]: One result per note, best first

        Raises:
            EmbeddingsQueryError: If the query embedding cannot be generated
        """
        limit = limit or config.query_result_limit
        prefix = build_namespace_prefix(self.provider.id, self.provider.model)
        candidates = [
            v
            for v in await self.storage.get_vectors_by_namespace_prefix(prefix)
            if not v.metadata.is_empty and not self.exclusions.is_path_excluded(v.path)
        ]
        if not candidates:
            return []

        query_vector = await self._get_query_vector(query)

        target_namespace = build_namespace(self.provider.id, self.provider.model, int(query_vector.shape[0]))
        in_namespace = [v for v in candidates if v.metadata.namespace == target_namespace]
        if not in_namespace:
            logger.info(
                f"No vectors in {target_namespace}; embeddings may be out of date for the current model"
            )
            return []

        eligible_paths = self._eligible_root_paths(in_namespace)
        eligible = [v for v in in_namespace if v.path in eligible_paths]
        if not eligible:
            return []

        raw = self.search.find_similar(query_vector, eligible, limit * 4)
        merged = self.search.merge_chunk_results([raw], limit)
        return self.search.apply_lexical_signals(query, merged)

    async def find_similar(self, path: str, limit: int | None = None) -> list[SearchResult]:
        """
        Notes similar to an indexed note

        Up to three of the note's chunk vectors are used as queries and their
        rankings are fused, excluding the note itself.
        """
        limit = limit or config.similar_result_limit
        if not path or self.exclusions.is_path_excluded(path):
            return []

        namespace = self._resolve_lookup_namespace()
        if not namespace:
            return []

        file_vectors = [
            v
            for v in await self.storage.get_vectors_by_path(path)
            if v.metadata.namespace == namespace and not v.metadata.is_empty
        ]
        if not file_vectors:
            return []

        query_vectors = select_query_vectors(file_vectors)
        namespace_vectors = await self.storage.get_vectors_by_namespace(namespace)
        eligible_paths = self._eligible_root_paths(namespace_vectors)
        candidates = [
            v
            for v in namespace_vectors
            if v.path != path and not v.metadata.is_empty and v.path in eligible_paths
        ]
        if not candidates:
            return []

        result_sets = []
        for query_vector in query_vectors:
            raw = self.search.find_similar(query_vector.vector, candidates, limit * 4)
            if raw:
                result_sets.append(raw)
        if not result_sets:
            return []
        return self.search.merge_chunk_results(result_sets, limit, exclude_path=path)
