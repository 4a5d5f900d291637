"""Embedding provider capability interface"""

from abc import ABC, abstractmethod
from typing import Literal

from src.models.processing import BatchMetadata
from src.services.providers.content_screen import detect_risk_signals, screen_for_skip

DEFAULT_MAX_BATCH_SIZE = 25

InputType = Literal["document", "query"]


class EmbeddingsProvider(ABC):
    """
    Capability interface for embedding generators

    Implementations must return exactly one vector per input text, in input
    order, or raise EmbeddingsProviderError.
    """

    id: str = "unknown"

    def __init__(self, model: str):
        self.model = model
        self.expected_dimension: int | None = None

    @abstractmethod
    async def generate_embeddings(
        self,
        texts: list[str],
        input_type: InputType = "document",
        batch_metadata: BatchMetadata | None = None,
    ) -> list[list[float]]:
        """
        Embed a batch of texts

        Args:
            texts: Texts to embed
            input_type: 'document' for indexed content, 'query' for search text
            batch_metadata: Diagnostic description of the batch, if available

        Returns:
            list[list[float]]: One raw (unnormalised) vector per text
        """

    def get_max_batch_size(self) -> int:
        return DEFAULT_MAX_BATCH_SIZE

    def screen_content(self, text: str) -> list[str]:
        """Skip signals for a whole note; a non-empty list means never send it"""
        return screen_for_skip(text)

    def detect_content_signals(self, text: str) -> list[str]:
        """Risk labels explaining why a chunk may have been rejected upstream"""
        return detect_risk_signals(text)

    async def close(self) -> None:
        """Release provider resources"""
        return None
