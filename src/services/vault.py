"""Filesystem access to the markdown vault"""

import asyncio
import logging
from pathlib import Path

from src.config import config
from src.models.document import Document

logger = logging.getLogger(__name__)

NOTE_SUFFIX = ".md"


class Vault:
    """Enumerate and read markdown notes under a root directory"""

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root or config.vault_path).expanduser().resolve()

    def _absolute(self, path: str) -> Path:
        resolved = (self.root / path).resolve()
        if not resolved.is_relative_to(self.root):
            raise ValueError(f"Path {path} is outside the vault root {self.root}")
        return resolved

    def _document_for(self, file_path: Path) -> Document | None:
        try:
            stat = file_path.stat()
        except OSError as e:
            logger.warning(f"Cannot stat {file_path}: {e}")
            return None
        return Document(
            path=file_path.relative_to(self.root).as_posix(),
            mtime=stat.st_mtime,
            size=stat.st_size,
        )

    def list_documents(self) -> list[Document]:
        """
        List every markdown note in the vault

        Returns:
            list[Document]: Notes sorted by path
        """
        if not self.root.is_dir():
            logger.warning(f"Vault directory does not exist: {self.root}")
            return []

        documents = []
        for file_path in sorted(self.root.rglob(f"*{NOTE_SUFFIX}")):
            if not file_path.is_file():
                continue
            relative = file_path.relative_to(self.root)
            if any(part.startswith(".") for part in relative.parts):
                continue
            document = self._document_for(file_path)
            if document is not None:
                documents.append(document)
        return documents

    def get_document(self, path: str) -> Document | None:
        """Current metadata for a note, or None if it no longer exists"""
        try:
            file_path = self._absolute(path)
        except ValueError:
            return None
        if not file_path.is_file():
            return None
        return self._document_for(file_path)

    def exists(self, path: str) -> bool:
        return self.get_document(path) is not None

    async def read(self, path: str) -> str:
        """
        Read a note's text

        Raises:
            FileNotFoundError: If the note does not exist
        """
        file_path = self._absolute(path)
        return await asyncio.to_thread(file_path.read_text, encoding="utf-8", errors="replace")
