"""Shared fixtures: deterministic provider, offline chunker and a temporary vault"""

import asyncio
import os
import re
import zlib
from collections.abc import Callable
from pathlib import Path

import pytest

from src.models.processing import BatchMetadata, ProcessorConfig
from src.models.provider_settings import ProviderSettings
from src.services.chunker import Chunker
from src.services.exclusions import ExclusionRules
from src.services.providers.base import EmbeddingsProvider, InputType
from src.services.providers.errors import EmbeddingsProviderError, ErrorCode
from src.services.vault import Vault
from src.services.vector_store import VectorStore

TEST_DIMENSION = 64
_WORD = re.compile(r"[a-z0-9]+")


def embed_text(text: str, dimension: int = TEST_DIMENSION) -> list[float]:
    """Bag-of-words vector: each word adds 1.0 to a crc32-selected slot"""
    vector = [0.0] * dimension
    for word in _WORD.findall(text.lower()):
        vector[zlib.crc32(word.encode("utf-8")) % dimension] += 1.0
    if not any(vector):
        vector[0] = 1.0
    return vector


class FakeProvider(EmbeddingsProvider):
    """In-memory provider that records calls and can inject failures"""

    id = "custom"

    def __init__(self, model: str = "fake-model", dimension: int = TEST_DIMENSION):
        super().__init__(model)
        self.dimension = dimension
        self.expected_dimension = dimension
        self.calls: list[tuple[list[str], InputType]] = []
        self.failure: Callable[[list[str]], EmbeddingsProviderError | None] | None = None
        self.delay = 0.0
        self.closed = False

    async def generate_embeddings(
        self,
        texts: list[str],
        input_type: InputType = "document",
        batch_metadata: BatchMetadata | None = None,
    ) -> list[list[float]]:
        self.calls.append((list(texts), input_type))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failure is not None:
            error = self.failure(texts)
            if error is not None:
                raise error
        return [embed_text(text, self.dimension) for text in texts]

    def document_texts(self) -> list[str]:
        return [t for texts, kind in self.calls if kind == "document" for t in texts]

    def query_calls(self) -> int:
        return sum(1 for _, kind in self.calls if kind == "query")

    async def close(self) -> None:
        self.closed = True


class WordChunker(Chunker):
    """Chunker with small chunk sizes and whitespace token counts"""

    def __init__(self):
        super().__init__()
        self.min_content_length = 80
        self.target_chars = 200
        self.max_chars = 270
        self.min_chars = 100
        self.overlap_chars = 40

    def count_tokens(self, text: str) -> int:
        return max(1, len(text.split()))

    def truncate_to_token_limit(self, text: str, max_tokens: int) -> str:
        words = text.split()
        if len(words) <= max_tokens:
            return text
        return " ".join(words[:max_tokens])


def html_rejection(status: int = 403) -> EmbeddingsProviderError:
    return EmbeddingsProviderError(
        f"API error {status}: Received HTML (HTTP {status}) instead of JSON from the embeddings API.",
        code=ErrorCode.HOST_UNAVAILABLE,
        status=status,
        transient=False,
        details={"kind": "html-response", "sample": "<html><body>Forbidden</body></html>"},
    )


def section(title: str, sentence: str) -> str:
    """A heading and one paragraph sized to become exactly one WordChunker chunk"""
    body = sentence
    while len(body) < 215:
        body = f"{body} {sentence}"
    return f"## {title}\n\n{body}\n\n"


def write_note(root: Path, path: str, content: str, mtime: float | None = None) -> Path:
    file_path = root / path
    file_path.parent.mkdir(parents=True, exist_ok=True)
    file_path.write_text(content, encoding="utf-8")
    if mtime is not None:
        os.utime(file_path, (mtime, mtime))
    return file_path


@pytest.fixture
def vault_root(tmp_path):
    root = tmp_path / "vault"
    root.mkdir()
    return root


@pytest.fixture
def vault(vault_root):
    return Vault(vault_root)


@pytest.fixture
async def storage():
    store = VectorStore(db_path=":memory:")
    await store.initialize()
    yield store
    store.close()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def chunker():
    return WordChunker()


@pytest.fixture
def processor_config():
    return ProcessorConfig(batch_size=20, max_concurrency=2, rate_limit_per_minute=0)


@pytest.fixture
def provider_settings():
    return ProviderSettings(
        provider_id="custom",
        model="fake-model",
        api_base="http://embeddings.test/v1/embeddings",
        dimension=TEST_DIMENSION,
    )


@pytest.fixture
def exclusions():
    return ExclusionRules(
        folders=["Archive"],
        patterns=["*.draft.md"],
        ignore_chat_history=True,
        chat_folders=["Chats"],
    )
