"""Chunk data models"""

from pydantic import BaseModel, Field


class PreparedChunk(BaseModel):
    """A heading-aware segment of a note ready for embedding"""

    index: int = Field(ge=0, description="Sequential position within the note (0-indexed)")
    text: str = Field(min_length=1, description="Final chunk text")
    hash: str = Field(description="Stable hash of the chunk text")
    heading_path: list[str] = Field(
        default_factory=list, description="Heading trail the chunk starts under"
    )
    length: int = Field(ge=1, description="Chunk text length in characters")

    @property
    def section_title(self) -> str | None:
        """Heading trail joined for display"""
        if not self.heading_path:
            return None
        return " › ".join(self.heading_path)


class ProcessedContent(BaseModel):
    """Cleaned note content with its document-level hash"""

    content: str = Field(description="Cleaned, possibly truncated note text")
    hash: str = Field(description="Hash of the cleaned content")
    length: int = Field(ge=0, description="Cleaned content length")
    excerpt: str = Field(default="", description="First characters of the cleaned content")
    title: str | None = Field(default=None, description="Title from front matter, if any")
