"""Embedding generation using local models via fastembed"""

import asyncio
import logging

from fastembed import TextEmbedding

from src.config import config
from src.models.processing import BatchMetadata
from src.services.providers.base import EmbeddingsProvider, InputType
from src.services.providers.errors import EmbeddingsProviderError, ErrorCode

logger = logging.getLogger(__name__)


class FastEmbedProvider(EmbeddingsProvider):
    """Generate embeddings in-process with a cached fastembed model"""

    id = "local"

    def __init__(self, model: str | None = None, cache_dir: str | None = None):
        super().__init__(model or config.embedding_model)
        self.cache_dir = cache_dir or config.fastembed_cache_dir
        self._model: TextEmbedding | None = None
        self._load_lock = asyncio.Lock()

    def _load_model(self) -> TextEmbedding:
        logger.info(f"Loading embedding model {self.model} (cache: {self.cache_dir})")
        return TextEmbedding(model_name=self.model, cache_dir=self.cache_dir, threads=6)

    async def _get_model(self) -> TextEmbedding:
        if self._model is None:
            async with self._load_lock:
                if self._model is None:
                    try:
                        self._model = await asyncio.to_thread(self._load_model)
                    except ValueError as e:
                        # fastembed raises ValueError for unsupported model names
                        raise EmbeddingsProviderError(
                            f"Local embedding model unavailable: {e}",
                            code=ErrorCode.INVALID_RESPONSE,
                            provider_id=self.id,
                        ) from e
        return self._model

    async def generate_embeddings(
        self,
        texts: list[str],
        input_type: InputType = "document",
        batch_metadata: BatchMetadata | None = None,
    ) -> list[list[float]]:
        """
        Generate embeddings for multiple texts

        Args:
            texts: List of texts to embed
            input_type: 'query' uses the model's query prefixing when it has one
            batch_metadata: Unused; accepted for interface compatibility

        Returns:
            list[list[float]]: List of embedding vectors
        """
        if not texts:
            return []

        model = await self._get_model()

        def _embed() -> list[list[float]]:
            # fastembed returns a generator of numpy arrays
            if input_type == "query":
                embeddings = model.query_embed(texts)
            else:
                embeddings = model.embed(texts, batch_size=config.embedding_batch_size)
            return [emb.tolist() for emb in embeddings]

        vectors = await asyncio.to_thread(_embed)
        if vectors and self.expected_dimension is None:
            self.expected_dimension = len(vectors[0])
        return vectors

    def get_max_batch_size(self) -> int:
        return config.embedding_batch_size

    def screen_content(self, text: str) -> list[str]:
        # No remote gateway
        return []
