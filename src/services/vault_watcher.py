"""Translate filesystem changes under the vault into manager events"""

import asyncio
import logging
from pathlib import Path

import watchfiles
from watchfiles import Change

from src.services.manager import EmbeddingsManager
from src.services.vault import NOTE_SUFFIX

logger = logging.getLogger(__name__)


class NoteFilter(watchfiles.DefaultFilter):
    """Pass markdown notes and directory changes, skip hidden directories"""

    def __init__(self, root: Path):
        super().__init__()
        self.root = root

    def __call__(self, change: Change, path: str) -> bool:
        if not super().__call__(change, path):
            return False
        try:
            relative = Path(path).relative_to(self.root)
        except ValueError:
            return False
        if any(part.startswith(".") for part in relative.parts):
            return False
        if path.endswith(NOTE_SUFFIX):
            return True
        return change == Change.deleted or Path(path).is_dir()


class VaultWatcher:
    """Watch the vault root with watchfiles.awatch and forward changes"""

    def __init__(self, manager: EmbeddingsManager):
        self.manager = manager
        self.root = manager.vault.root
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())
            logger.info(f"Watching vault for changes: {self.root}")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def _run(self) -> None:
        async for changes in watchfiles.awatch(
            self.root,
            watch_filter=NoteFilter(self.root),
            stop_event=self._stop_event,
            ignore_permission_denied=True,
        ):
            try:
                await self.dispatch(changes)
            except Exception as e:
                logger.error(f"Failed to handle vault changes: {e}", exc_info=True)

    def _relative(self, path: str) -> str | None:
        try:
            return Path(path).relative_to(self.root).as_posix()
        except ValueError:
            return None

    async def dispatch(self, changes: set[tuple[Change, str]]) -> None:
        """
        Forward one batch of changes to the manager

        A batch holding exactly one removal and one addition of the same kind
        (note or directory) is treated as a rename.
        """
        added: list[str] = []
        deleted: list[str] = []
        modified: list[str] = []
        for change, raw_path in changes:
            path = self._relative(raw_path)
            if not path:
                continue
            if change == Change.added:
                added.append(path)
            elif change == Change.deleted:
                deleted.append(path)
            else:
                modified.append(path)

        if len(added) == 1 and len(deleted) == 1:
            old_path, new_path = deleted[0], added[0]
            old_is_note = old_path.endswith(NOTE_SUFFIX)
            if old_is_note == new_path.endswith(NOTE_SUFFIX):
                if old_is_note:
                    await self.manager.on_file_renamed(old_path, new_path)
                else:
                    await self.manager.on_directory_renamed(old_path, new_path)
                return

        for path in deleted:
            if path.endswith(NOTE_SUFFIX):
                await self.manager.on_file_deleted(path)
            else:
                await self.manager.on_directory_deleted(path)

        for path in added:
            if path.endswith(NOTE_SUFFIX):
                self.manager.on_file_created(path)
                continue
            prefix = f"{path}/"
            for document in self.manager.vault.list_documents():
                if document.path.startswith(prefix):
                    self.manager.on_file_created(document.path)

        for path in modified:
            self.manager.on_file_modified(path)
