"""Content chunking service with heading awareness and stable hashes"""

import hashlib
import re
from functools import cached_property

import tiktoken

from src.config import config
from src.models.chunk import PreparedChunk, ProcessedContent
from src.services.doc_parser import DocParser, Paragraph

HARD_TRUNCATE_LENGTH = 1_200_000
TINY_TRAILING_CHUNK = 180
BOUNDARY_WINDOW = 200
_BACKWARD_BOUNDARY = re.compile(r"[.!?]\s")
_FORWARD_BOUNDARY = re.compile(r"[.!?]\s")


def compute_content_hash(text: str) -> str:
    """Stable hash of chunk text; only the final text matters"""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


class Chunker:
    """Chunk note content with overlap, heading trails and token counting"""

    def __init__(self, parser: DocParser | None = None):
        self.parser = parser or DocParser()
        self.min_content_length = config.min_content_length
        self.target_chars = config.chunk_target_tokens * config.chunk_chars_per_token
        self.max_chars = round(self.target_chars * 1.35)
        self.min_chars = round(self.target_chars * 0.5)
        self.overlap_chars = max(120, int(self.target_chars * 0.2))

    @cached_property
    def encoder(self) -> tiktoken.Encoding:
        # Initialize tiktoken encoder on first use
        try:
            return tiktoken.encoding_for_model(config.embedding_model)
        except KeyError:
            # Fallback to cl100k_base (used by gpt-3.5 and gpt-4)
            return tiktoken.get_encoding("cl100k_base")

    def process(self, content: str) -> ProcessedContent | None:
        """
        Clean note content and compute its document-level hash

        Args:
            content: Raw markdown note content

        Returns:
            ProcessedContent, or None when the note is too small to embed
        """
        parsed = self.parser.parse(content)
        cleaned = parsed.text.strip()
        if len(cleaned) < self.min_content_length:
            return None

        if len(cleaned) > HARD_TRUNCATE_LENGTH:
            cleaned = self._smart_truncate(cleaned, HARD_TRUNCATE_LENGTH)

        return ProcessedContent(
            content=cleaned,
            hash=compute_content_hash(cleaned),
            length=len(cleaned),
            excerpt=cleaned[:240],
            title=parsed.title,
        )

    def chunk(self, content: str) -> list[PreparedChunk]:
        """
        Split a note into overlapping, heading-aware chunks

        Notes below the minimum size yield no chunks.

        Args:
            content: Raw markdown note content

        Returns:
            list[PreparedChunk]: Chunks in document order with stable hashes
        """
        parsed = self.parser.parse(content)
        cleaned = parsed.text.strip()
        if len(cleaned) < self.min_content_length:
            return []

        paragraphs = parsed.paragraphs or [Paragraph(cleaned, [])]
        assembled = self._assemble_chunks(paragraphs)

        chunks: list[PreparedChunk] = []
        for block in assembled:
            text = block.text.strip()
            if not text:
                continue
            chunks.append(
                PreparedChunk(
                    index=len(chunks),
                    text=text,
                    hash=compute_content_hash(text),
                    heading_path=[h for h in block.heading_trail if h],
                    length=len(text),
                )
            )
        return chunks

    def count_tokens(self, text: str) -> int:
        """
        Count tokens in text using tiktoken

        Args:
            text: Text to count tokens for

        Returns:
            int: Number of tokens
        """
        return len(self.encoder.encode(text))

    def truncate_to_token_limit(self, text: str, max_tokens: int) -> str:
        """Cut text to at most max_tokens tokens (deterministic)"""
        tokens = self.encoder.encode(text)
        if len(tokens) <= max_tokens:
            return text
        return self.encoder.decode(tokens[:max_tokens])

    def _assemble_chunks(self, paragraphs: list[Paragraph]) -> list[Paragraph]:
        """Greedily pack paragraphs into chunks between min and max size"""
        chunks: list[Paragraph] = []
        current_text = ""
        current_heading: list[str] = []

        def push(text: str, heading_trail: list[str]) -> None:
            trimmed = text.strip()
            if not trimmed:
                return
            if len(trimmed) > self.max_chars:
                chunks.extend(Paragraph(p, heading_trail) for p in self._split_with_overlap(trimmed))
            else:
                chunks.append(Paragraph(trimmed, heading_trail))

        last_index = len(paragraphs) - 1
        for idx, paragraph in enumerate(paragraphs):
            addition = paragraph.text
            if not addition:
                continue

            if not current_text:
                current_text = addition
                current_heading = paragraph.heading_trail
                if idx == last_index:
                    push(current_text, current_heading)
                    current_text = ""
                continue

            candidate = f"{current_text}\n\n{addition}"
            if len(candidate) <= self.max_chars:
                current_text = candidate
            elif len(current_text) >= self.min_chars:
                push(current_text, current_heading)
                current_text = addition
                current_heading = paragraph.heading_trail
            else:
                # Current chunk is tiny; combine and split aggressively
                trail = paragraph.heading_trail or current_heading
                for piece in self._split_with_overlap(candidate):
                    push(piece, trail)
                current_text = ""

            has_more = idx < last_index
            if current_text and (len(current_text) >= self.target_chars or not has_more):
                push(current_text, current_heading)
                current_text = ""

        if current_text:
            push(current_text, current_heading)

        return self._merge_tiny_trailing_chunks(chunks)

    def _split_with_overlap(self, text: str) -> list[str]:
        """Split long text into target-sized windows that overlap"""
        if len(text) <= self.max_chars:
            return [text.strip()]

        pieces: list[str] = []
        start = 0
        while start < len(text):
            end = min(len(text), start + self.target_chars)
            if end < len(text):
                boundary = self._find_forward_boundary(text, end)
                if boundary > end and boundary - start <= self.max_chars:
                    end = boundary

            piece = text[start:end].strip()
            if piece:
                pieces.append(piece)
            if end >= len(text):
                break
            start = max(end - self.overlap_chars, start + 1)

        return pieces

    def _find_forward_boundary(self, text: str, index: int) -> int:
        window = text[index : index + BOUNDARY_WINDOW]
        match = _FORWARD_BOUNDARY.search(window)
        if not match:
            return index
        return index + match.start() + 1

    def _merge_tiny_trailing_chunks(self, chunks: list[Paragraph]) -> list[Paragraph]:
        if len(chunks) <= 1:
            return chunks
        merged: list[Paragraph] = []
        for chunk in chunks:
            if merged and len(chunk.text) < TINY_TRAILING_CHUNK:
                previous = merged[-1]
                merged[-1] = Paragraph(f"{previous.text}\n\n{chunk.text}", previous.heading_trail)
            else:
                merged.append(chunk)
        return merged

    def _smart_truncate(self, text: str, max_length: int) -> str:
        """Truncate on a sentence boundary when one is close to the limit"""
        truncated = text[:max_length]
        boundary = -1
        for match in _BACKWARD_BOUNDARY.finditer(truncated):
            boundary = match.start() + 1
        if boundary > max_length * 0.8:
            return truncated[:boundary].strip()

        last_space = truncated.rfind(" ")
        if last_space > max_length * 0.7:
            return truncated[:last_space].strip()

        return truncated.strip()
