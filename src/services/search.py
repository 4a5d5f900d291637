"""Search service for ranking and fusing vector similarity results"""

import re
from collections.abc import Iterable, Sequence

import numpy as np

from src.models.embedding import EmbeddingVector
from src.models.search_result import SearchResult

RRF_K = 60
BEST_SCORE_WEIGHT = 0.65
RRF_WEIGHT = 0.35
BASE_SCORE_WEIGHT = 0.85
LEXICAL_WEIGHT = 0.15

_NON_ALNUM = re.compile(r"[^a-z0-9]", re.IGNORECASE)


class VectorSearch:
    """Brute-force cosine ranking over an in-namespace candidate set"""

    def find_similar(
        self,
        query_vector: Sequence[float] | np.ndarray,
        candidates: Iterable[EmbeddingVector],
        limit: int,
    ) -> list[SearchResult]:
        """
        Rank candidate chunks by cosine similarity to the query vector

        Args:
            query_vector: Unit-normalised query embedding
            candidates: Vectors from a single namespace
            limit: Maximum number of chunk-level results to return

        Returns:
            list[SearchResult]: Chunk-level hits, highest score first
        """
        if limit <= 0:
            return []

        query = np.asarray(query_vector, dtype=np.float32)
        query_norm = float(np.linalg.norm(query))
        if query_norm == 0.0:
            return []

        pool = [c for c in candidates if len(c.vector) == query.shape[0]]
        if not pool:
            return []

        matrix = np.asarray([c.vector for c in pool], dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0.0] = 1.0
        scores = (matrix @ query) / (norms * query_norm)

        order = np.argsort(-scores, kind="stable")[:limit]
        results: list[SearchResult] = []
        for idx in order:
            candidate = pool[int(idx)]
            score = min(1.0, max(0.0, float(scores[idx])))
            results.append(
                SearchResult(
                    path=candidate.path,
                    chunk_id=candidate.chunk_id,
                    score=score,
                    metadata=candidate.metadata,
                )
            )
        return results

    def merge_chunk_results(
        self,
        result_sets: list[list[SearchResult]],
        limit: int,
        exclude_path: str | None = None,
        k: int = RRF_K,
    ) -> list[SearchResult]:
        """
        Combine per-query rankings using Reciprocal Rank Fusion

        Each hit contributes 1 / (k + rank + 1) to its note. The sum is normalised
        by the best achievable value and blended with the note's best raw score.
        Results are deduplicated to one entry per note (best chunk wins).

        Args:
            result_sets: Ranked chunk-level results, one list per query vector
            limit: Maximum number of notes to return
            exclude_path: Note to leave out (the source of a find-similar query)
            k: RRF constant (default: 60)

        Returns:
            Merged and re-ranked results
        """
        if not result_sets:
            return []

        best: dict[str, SearchResult] = {}
        rrf_scores: dict[str, float] = {}

        for results in result_sets:
            for rank, result in enumerate(results):
                if exclude_path and result.path == exclude_path:
                    continue
                rrf_scores[result.path] = rrf_scores.get(result.path, 0.0) + 1 / (k + rank + 1)
                current = best.get(result.path)
                if current is None or result.score > current.score:
                    best[result.path] = result

        if not best:
            return []

        max_possible = len(result_sets) / (k + 1)
        merged: list[SearchResult] = []
        for path, result in best.items():
            normalized_rrf = min(1.0, rrf_scores[path] / max_possible) if max_possible > 0 else 0.0
            combined = min(1.0, BEST_SCORE_WEIGHT * result.score + RRF_WEIGHT * normalized_rrf)
            merged.append(result.model_copy(update={"score": combined}))

        merged.sort(key=lambda r: r.score, reverse=True)
        return merged[:limit]

    def apply_lexical_signals(self, query: str, results: list[SearchResult]) -> list[SearchResult]:
        """
        Nudge scores by literal overlap between the query and each note

        Full-phrase containment scores 1.0; otherwise the fraction of query
        tokens found in the note's path, title, and excerpt.
        """
        normalized = (query or "").lower().strip()
        if not normalized or not results:
            return results

        tokens = list(
            dict.fromkeys(
                t for t in (_NON_ALNUM.sub("", raw) for raw in normalized.split()) if len(t) > 1
            )
        )
        if not tokens:
            return results

        boosted: list[SearchResult] = []
        for result in results:
            haystack = " ".join(
                [result.path, result.metadata.title or "", result.metadata.excerpt or ""]
            ).lower()
            if normalized in haystack:
                lexical = 1.0
            else:
                lexical = sum(1 for t in tokens if t in haystack) / len(tokens)
            base = max(0.0, min(1.0, result.score))
            score = min(1.0, BASE_SCORE_WEIGHT * base + LEXICAL_WEIGHT * lexical)
            boosted.append(result.model_copy(update={"score": score, "lexical_score": lexical}))

        boosted.sort(key=lambda r: r.score, reverse=True)
        return boosted
