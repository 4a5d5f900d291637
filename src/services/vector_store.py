"""SQLite vector store with an in-memory mirror for synchronous reads"""

import logging
import math
import sqlite3
import struct
from collections.abc import Iterable
from pathlib import Path

import sqlite_vec
from pydantic import ValidationError

from src.models.embedding import EmbeddingVector, PurgeSummary, VectorMetadata
from src.services.vector_math import ZeroNormVectorError, to_unit_vector
from src.utils.namespace import build_vector_id, parse_vector_id

logger = logging.getLogger(__name__)

NORM_EPSILON = 0.015


def normalize_dir_prefix(directory: str) -> str:
    """Vault-relative directory prefix ending in '/' ('' for the vault root)"""
    prefix = directory.replace("\\", "/").lstrip("/")
    if not prefix:
        return ""
    return prefix if prefix.endswith("/") else f"{prefix}/"


class VectorStore:
    """SQLite-based store for namespaced note chunk vectors"""

    def __init__(self, db_path: str):
        self.db_path = db_path
        # For :memory: databases, we need to keep a persistent connection
        # because each connection gets a separate in-memory database
        self._memory_conn: sqlite3.Connection | None = None
        self._cache: dict[str, EmbeddingVector] = {}
        self._unreadable: dict[str, str] = {}

    def _get_connection(self) -> sqlite3.Connection:
        """
        Create and configure a new database connection

        For :memory: databases, returns the persistent connection.
        For file databases, creates a new connection.

        Returns:
            Configured sqlite3.Connection with row_factory and sqlite_vec loaded
        """
        if self.db_path == ":memory:":
            if self._memory_conn is None:
                self._memory_conn = self._open(self.db_path)
            return self._memory_conn
        return self._open(self.db_path)

    def _open(self, path: str) -> sqlite3.Connection:
        conn = sqlite3.connect(path)
        conn.row_factory = sqlite3.Row
        try:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
        except (AttributeError, sqlite3.OperationalError) as e:
            # sqlite_vec might be statically linked or not needed for basic operation
            logger.warning(f"Could not load sqlite_vec extension: {e}")
        return conn

    def _ensure_connection(
        self, conn: sqlite3.Connection | None
    ) -> tuple[sqlite3.Connection, bool]:
        """
        Ensure we have a connection, creating one if needed

        Args:
            conn: Optional existing connection

        Returns:
            Tuple of (connection, should_close)
        """
        if conn is not None:
            return conn, False

        new_conn = self._get_connection()
        # Never close :memory: connections (they're persistent)
        should_close = self.db_path != ":memory:"
        return new_conn, should_close

    async def initialize(self) -> None:
        """
        Create the schema and load every stored vector into memory

        Rows that cannot be decoded are remembered so purge_corrupted_vectors can
        delete them and report their paths for reprocessing.
        """
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        conn, should_close = self._ensure_connection(None)
        try:
            with conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS vectors (
                        id TEXT PRIMARY KEY,
                        path TEXT NOT NULL,
                        chunk_id INTEGER NOT NULL,
                        namespace TEXT NOT NULL,
                        vector BLOB NOT NULL,
                        metadata TEXT NOT NULL,
                        CHECK(chunk_id >= 0)
                    )
                """)
                conn.execute("CREATE INDEX IF NOT EXISTS idx_vectors_path ON vectors(path)")
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_vectors_namespace ON vectors(namespace)"
                )

            self._cache.clear()
            self._unreadable.clear()
            cursor = conn.execute(
                "SELECT id, path, chunk_id, namespace, vector, metadata FROM vectors"
            )
            for row in cursor.fetchall():
                vector = self._row_to_vector(row)
                if vector is None:
                    self._unreadable[row["id"]] = row["path"]
                else:
                    self._cache[vector.id] = vector
        finally:
            if should_close:
                conn.close()

        logger.info(
            f"Loaded {len(self._cache)} vectors from {self.db_path}"
            + (f" ({len(self._unreadable)} unreadable)" if self._unreadable else "")
        )

    def _row_to_vector(self, row: sqlite3.Row) -> EmbeddingVector | None:
        blob = row["vector"]
        if not isinstance(blob, bytes) or len(blob) == 0 or len(blob) % 4 != 0:
            logger.warning(f"Stored vector {row['id']} has an invalid blob")
            return None
        try:
            values = list(struct.unpack(f"{len(blob) // 4}f", blob))
            return EmbeddingVector(
                id=row["id"],
                path=row["path"],
                chunk_id=row["chunk_id"],
                vector=values,
                metadata=VectorMetadata.model_validate_json(row["metadata"]),
            )
        except ValidationError as e:
            logger.warning(f"Stored vector {row['id']} failed validation: {e}")
            return None

    def _write(
        self,
        upserts: Iterable[EmbeddingVector] = (),
        deletes: Iterable[str] = (),
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """Apply deletes then upserts in a single transaction, then update the mirror"""
        upserts = list(upserts)
        deletes = [d for d in dict.fromkeys(deletes)]
        if not upserts and not deletes:
            return

        conn, should_close = self._ensure_connection(conn)
        try:
            with conn:
                if deletes:
                    conn.executemany("DELETE FROM vectors WHERE id = ?", [(d,) for d in deletes])
                if upserts:
                    conn.executemany(
                        """
                        INSERT OR REPLACE INTO vectors (
                            id, path, chunk_id, namespace, vector, metadata
                        ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                        [
                            (
                                v.id,
                                v.path,
                                v.chunk_id,
                                v.metadata.namespace,
                                sqlite_vec.serialize_float32(v.vector),
                                v.metadata.model_dump_json(),
                            )
                            for v in upserts
                        ],
                    )
        finally:
            if should_close:
                conn.close()

        for vector_id in deletes:
            self._cache.pop(vector_id, None)
            self._unreadable.pop(vector_id, None)
        for vector in upserts:
            self._cache[vector.id] = vector

    async def store_vectors(self, vectors: list[EmbeddingVector]) -> None:
        """
        Upsert vectors by id (idempotent)

        Args:
            vectors: Vectors to write in one transaction
        """
        self._write(upserts=vectors)

    async def get_vectors_by_path(self, path: str) -> list[EmbeddingVector]:
        return [v for v in self._cache.values() if v.path == path]

    def get_vector_sync(self, vector_id: str) -> EmbeddingVector | None:
        return self._cache.get(vector_id)

    def get_root_vectors_sync(self, path: str) -> list[EmbeddingVector]:
        """Root (chunk 0) vectors of a note across every namespace"""
        return [v for v in self._cache.values() if v.path == path and v.chunk_id == 0]

    async def get_vectors_by_namespace(self, namespace: str) -> list[EmbeddingVector]:
        return [v for v in self._cache.values() if v.metadata.namespace == namespace]

    async def get_vectors_by_namespace_prefix(self, prefix: str) -> list[EmbeddingVector]:
        return [v for v in self._cache.values() if v.metadata.namespace.startswith(prefix)]

    async def get_all_vectors(self) -> list[EmbeddingVector]:
        return list(self._cache.values())

    def get_distinct_paths(self) -> set[str]:
        return {v.path for v in self._cache.values()}

    def has_vectors(self) -> bool:
        return bool(self._cache)

    def peek_best_namespace_for_prefix(self, prefix: str) -> str | None:
        """
        Infer the most active namespace under a provider/model prefix

        Picks the namespace whose root vectors have the newest mtime, then the
        most roots, then the lexically smallest name.

        Args:
            prefix: Namespace prefix ('{provider}:{model}:')

        Returns:
            Namespace string, or None if no root vector matches
        """
        if not prefix:
            return None

        stats: dict[str, tuple[float, int]] = {}
        for vector in self._cache.values():
            namespace = vector.metadata.namespace
            if vector.chunk_id != 0 or not namespace.startswith(prefix):
                continue
            latest, roots = stats.get(namespace, (0.0, 0))
            stats[namespace] = (max(latest, vector.metadata.mtime), roots + 1)

        if not stats:
            return None
        return min(stats, key=lambda ns: (-stats[ns][0], -stats[ns][1], ns))

    async def count_vectors(self, conn: sqlite3.Connection | None = None) -> int:
        """
        Get total number of stored vectors

        Args:
            conn: Optional connection (for transactions)
        """
        conn, should_close = self._ensure_connection(conn)

        try:
            cursor = conn.execute("SELECT COUNT(*) FROM vectors")
            result = cursor.fetchone()
            return result[0] if result else 0
        finally:
            if should_close:
                conn.close()

    async def move_vector_id(self, old_id: str, new_id: str, chunk_id: int | None = None) -> None:
        if old_id == new_id:
            return
        existing = self._cache.get(old_id)
        if existing is None:
            return
        update = {"id": new_id}
        if chunk_id is not None:
            update["chunk_id"] = chunk_id
        self._write(upserts=[existing.model_copy(update=update)], deletes=[old_id])

    async def remove_ids(self, ids: Iterable[str]) -> None:
        self._write(deletes=ids)

    async def remove_by_path(self, path: str) -> None:
        ids = [v.id for v in self._cache.values() if v.path == path]
        ids.extend(i for i, p in self._unreadable.items() if p == path)
        self._write(deletes=ids)

    async def remove_by_path_except_ids(
        self, path: str, namespace: str, keep_ids: set[str]
    ) -> None:
        """Prune a note's vectors in one namespace, keeping only keep_ids"""
        prefix = f"{namespace}::{path}#"
        ids = [
            v.id
            for v in self._cache.values()
            if v.path == path and v.id.startswith(prefix) and v.id not in keep_ids
        ]
        self._write(deletes=ids)

    async def remove_by_directory(self, directory: str) -> None:
        prefix = normalize_dir_prefix(directory)
        if not prefix:
            return
        ids = [v.id for v in self._cache.values() if v.path.startswith(prefix)]
        self._write(deletes=ids)

    async def remove_by_namespace_prefix(self, prefix: str) -> None:
        if not prefix:
            return
        ids = [v.id for v in self._cache.values() if v.metadata.namespace.startswith(prefix)]
        self._write(deletes=ids)
        logger.info(f"Removed {len(ids)} vectors under namespace prefix {prefix}")

    async def rename_by_path(self, old_path: str, new_path: str, title: str | None = None) -> None:
        """
        Rewrite a note's vector ids and paths without re-embedding

        Args:
            old_path: Previous vault-relative path
            new_path: New vault-relative path
            title: New note title, if it changed
        """
        if not old_path or not new_path or old_path == new_path:
            return

        moved: list[EmbeddingVector] = []
        old_ids: list[str] = []
        for vector in self._cache.values():
            if vector.path != old_path:
                continue
            metadata = vector.metadata.model_copy(update={"title": title}) if title else vector.metadata
            moved.append(
                vector.model_copy(
                    update={
                        "id": build_vector_id(vector.metadata.namespace, new_path, vector.chunk_id),
                        "path": new_path,
                        "metadata": metadata,
                    }
                )
            )
            old_ids.append(vector.id)
        self._write(upserts=moved, deletes=old_ids)

    async def rename_by_directory(self, old_dir: str, new_dir: str) -> None:
        old_prefix = normalize_dir_prefix(old_dir)
        new_prefix = normalize_dir_prefix(new_dir)
        if not old_prefix or not new_prefix or old_prefix == new_prefix:
            return

        moved: list[EmbeddingVector] = []
        old_ids: list[str] = []
        for vector in self._cache.values():
            if not vector.path.startswith(old_prefix):
                continue
            new_path = f"{new_prefix}{vector.path[len(old_prefix):]}"
            moved.append(
                vector.model_copy(
                    update={
                        "id": build_vector_id(vector.metadata.namespace, new_path, vector.chunk_id),
                        "path": new_path,
                    }
                )
            )
            old_ids.append(vector.id)
        self._write(upserts=moved, deletes=old_ids)

    async def purge_corrupted_vectors(self) -> PurgeSummary:
        """
        Drop unrecoverable vectors and re-normalise drifted ones

        Vectors with non-finite values, zero norm, a missing hash/namespace, or an
        id that disagrees with their path are removed. Vectors whose norm is off by
        more than NORM_EPSILON, or whose recorded dimension is wrong, are rewritten.
        Empty-note sentinels are never normalised.

        Returns:
            PurgeSummary: Counts and affected paths
        """
        removed_ids: list[str] = list(self._unreadable)
        removed_paths: set[str] = set(self._unreadable.values())
        corrected: list[EmbeddingVector] = []
        corrected_paths: set[str] = set()

        for vector_id, vector in self._cache.items():
            metadata = vector.metadata
            parsed = parse_vector_id(vector_id)
            if (
                parsed is None
                or parsed[1] != vector.path
                or not metadata.content_hash
                or not metadata.namespace
                or not all(math.isfinite(x) for x in vector.vector)
            ):
                removed_ids.append(vector_id)
                removed_paths.add(vector.path)
                continue

            values = vector.vector
            needs_rewrite = metadata.dimension != len(values)
            if not metadata.is_empty:
                norm = math.sqrt(sum(x * x for x in values))
                if abs(norm - 1.0) > NORM_EPSILON:
                    try:
                        values = to_unit_vector(values).tolist()
                    except ZeroNormVectorError:
                        removed_ids.append(vector_id)
                        removed_paths.add(vector.path)
                        continue
                    needs_rewrite = True

            if needs_rewrite:
                corrected.append(
                    vector.model_copy(
                        update={
                            "vector": values,
                            "metadata": metadata.model_copy(update={"dimension": len(values)}),
                        }
                    )
                )
                corrected_paths.add(vector.path)

        self._write(upserts=corrected, deletes=removed_ids)

        if removed_ids or corrected:
            logger.warning(
                f"Repaired vector store: {len(removed_ids)} removed, {len(corrected)} corrected"
            )

        return PurgeSummary(
            removed_count=len(removed_ids),
            corrected_count=len(corrected),
            removed_paths=sorted(removed_paths),
            corrected_paths=sorted(corrected_paths),
        )

    def close(self) -> None:
        """
        Close database connection

        For :memory: databases, closes the persistent connection.
        For file databases, this is a no-op (connections are per-method).
        """
        if self._memory_conn is not None:
            self._memory_conn.close()
            self._memory_conn = None
