"""HTTP client for OpenAI-compatible and Ollama embedding endpoints"""

import asyncio
import logging
from typing import Any

import httpx

from src.config import config
from src.models.processing import BatchMetadata
from src.services.providers.base import EmbeddingsProvider, InputType
from src.services.providers.errors import (
    EmbeddingsProviderError,
    ErrorCode,
    build_http_error,
    ensure_provider_error,
)

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100
OLLAMA_MAX_CONCURRENT = 5


class OpenAICompatibleProvider(EmbeddingsProvider):
    """Embeddings over HTTP for any OpenAI-compatible API (or Ollama's /api/embeddings)"""

    id = "custom"

    def __init__(
        self,
        api_base: str,
        model: str,
        api_key: str = "",
        max_batch_size: int = MAX_BATCH_SIZE,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize provider configuration

        Args:
            api_base: Full embeddings endpoint URL
            model: Model id sent with each request
            api_key: Bearer token, if the endpoint needs one
            max_batch_size: Texts per request before client-side splitting
            client: Preconfigured httpx client (optional)
        """
        super().__init__(model.strip())
        self.endpoint = api_base.strip()
        self.max_batch_size = max_batch_size
        self.is_ollama_style = "/api/embeddings" in self.endpoint.lower()

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.embedding_request_timeout),
            follow_redirects=True,
        )
        self.headers = headers

    async def generate_embeddings(
        self,
        texts: list[str],
        input_type: InputType = "document",
        batch_metadata: BatchMetadata | None = None,
    ) -> list[list[float]]:
        """
        Embed texts, splitting into requests of at most max_batch_size

        Raises:
            EmbeddingsProviderError: On HTTP failures or unusable responses
        """
        if not self.endpoint:
            raise EmbeddingsProviderError(
                "Custom endpoint URL is required", code=ErrorCode.HTTP_ERROR, provider_id=self.id
            )
        if not self.model:
            raise EmbeddingsProviderError(
                "Custom embeddings model is required", code=ErrorCode.HTTP_ERROR, provider_id=self.id
            )
        if not texts:
            return []

        if len(texts) > self.max_batch_size:
            results: list[list[float]] = []
            for i in range(0, len(texts), self.max_batch_size):
                batch = texts[i : i + self.max_batch_size]
                results.extend(await self.generate_embeddings(batch, input_type))
            return results

        if batch_metadata is not None:
            logger.debug(
                f"Embedding batch {batch_metadata.batch_index}: {batch_metadata.batch_size} texts, "
                f"~{batch_metadata.estimated_total_tokens} tokens"
            )

        if self.is_ollama_style:
            return await self._embed_ollama(texts, input_type)
        return await self._embed_openai(texts, input_type)

    async def _post(self, payload: dict[str, Any]) -> Any:
        try:
            response = await self.client.post(self.endpoint, json=payload, headers=self.headers)
        except httpx.HTTPError as e:
            raise ensure_provider_error(e, self.id, self.endpoint) from e

        if response.status_code != 200:
            error = build_http_error(response, self.id, self.endpoint)
            logger.warning(f"Embeddings request failed: {error.message}")
            raise error

        try:
            return response.json()
        except ValueError as e:
            raise EmbeddingsProviderError(
                "Embeddings endpoint returned a non-JSON response",
                code=ErrorCode.INVALID_RESPONSE,
                status=response.status_code,
                provider_id=self.id,
                endpoint=self.endpoint,
                details={"sample": response.text[:160]},
            ) from e

    async def _embed_openai(self, texts: list[str], input_type: InputType) -> list[list[float]]:
        data = await self._post(
            {
                "input": texts,
                "model": self.model,
                "encoding_format": "float",
                "input_type": input_type,
            }
        )

        embeddings: list[list[float]] | None = None
        if isinstance(data, dict) and isinstance(data.get("data"), list):
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            embeddings = [item.get("embedding") for item in items]
        elif isinstance(data, list) and data and isinstance(data[0], list):
            embeddings = data

        if embeddings is None or not all(isinstance(e, list) and e for e in embeddings):
            raise EmbeddingsProviderError(
                "Unsupported response format from custom endpoint",
                code=ErrorCode.UNEXPECTED_RESPONSE,
                provider_id=self.id,
                endpoint=self.endpoint,
            )

        self._learn_dimension(embeddings[0])
        return embeddings

    async def _embed_ollama(self, texts: list[str], input_type: InputType) -> list[list[float]]:
        semaphore = asyncio.Semaphore(OLLAMA_MAX_CONCURRENT)
        task_type = "retrieval_query" if input_type == "query" else "retrieval_document"

        async def embed_one(text: str) -> list[float]:
            async with semaphore:
                data = await self._post({"model": self.model, "prompt": text, "task_type": task_type})

            embedding = None
            if isinstance(data, dict):
                if isinstance(data.get("embedding"), list):
                    embedding = data["embedding"]
                elif isinstance(data.get("data"), list) and data["data"]:
                    embedding = data["data"][0].get("embedding")
            if not embedding:
                raise EmbeddingsProviderError(
                    "Unsupported response format from Ollama endpoint",
                    code=ErrorCode.UNEXPECTED_RESPONSE,
                    provider_id=self.id,
                    endpoint=self.endpoint,
                )
            self._learn_dimension(embedding)
            return embedding

        return list(await asyncio.gather(*(embed_one(text) for text in texts)))

    def _learn_dimension(self, sample: list[float]) -> None:
        if sample and self.expected_dimension is None:
            self.expected_dimension = len(sample)

    def get_max_batch_size(self) -> int:
        return self.max_batch_size

    async def close(self) -> None:
        """Close HTTP client"""
        await self.client.aclose()
