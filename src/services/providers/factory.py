"""Provider construction from settings"""

from src.config import config
from src.models.provider_settings import ProviderSettings
from src.services.providers.base import EmbeddingsProvider
from src.services.providers.local import FastEmbedProvider
from src.services.providers.openai_compatible import OpenAICompatibleProvider


def settings_from_config() -> ProviderSettings:
    """Provider settings described by the application config"""
    return ProviderSettings(
        provider_id=config.embeddings_provider,
        model=config.embedding_model,
        api_base=config.embedding_api_base,
        api_key=config.embedding_api_key,
        dimension=config.embedding_dimension if config.embeddings_provider == "local" else None,
    )


def create_provider(settings: ProviderSettings) -> EmbeddingsProvider:
    """
    Build the embedding provider described by settings

    Raises:
        ValueError: If the provider id is unknown
    """
    if settings.provider_id == "custom":
        provider: EmbeddingsProvider = OpenAICompatibleProvider(
            api_base=settings.api_base,
            model=settings.model,
            api_key=settings.api_key,
        )
    elif settings.provider_id == "local":
        provider = FastEmbedProvider(model=settings.model)
    else:
        raise ValueError(
            f"Unknown embeddings provider: {settings.provider_id}. Supported providers: local, custom."
        )

    if settings.dimension:
        provider.expected_dimension = settings.dimension
    return provider
