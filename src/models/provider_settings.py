"""Embedding provider selection model"""

from pydantic import BaseModel, Field


class ProviderSettings(BaseModel):
    """Describes which embedding provider the manager should use"""

    provider_id: str = Field(description="Provider id (local, custom)")
    model: str = Field(description="Embedding model name")
    api_base: str = Field(default="", description="Endpoint for the custom provider")
    api_key: str = Field(default="", description="API key for the custom provider")
    dimension: int | None = Field(
        default=None, ge=1, description="Known vector dimension, if any"
    )

    @property
    def is_ready(self) -> bool:
        """Whether enough is configured to issue embedding requests"""
        if self.provider_id == "custom":
            return bool(self.api_base.strip()) and bool(self.model.strip())
        return bool(self.model.strip())
