"""Vault document model"""

from pathlib import PurePosixPath

from pydantic import BaseModel, Field


class Document(BaseModel):
    """A note enumerated from the vault"""

    path: str = Field(description="Vault-relative POSIX path")
    mtime: float | None = Field(default=None, description="Modification time (epoch seconds)")
    size: int | None = Field(default=None, ge=0, description="File size in bytes")

    @property
    def basename(self) -> str:
        """File name without extension, used as the note title"""
        return PurePosixPath(self.path).stem
