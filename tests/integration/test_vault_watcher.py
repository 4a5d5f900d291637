"""Tests for translating filesystem changes into manager events"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from watchfiles import Change

from src.services.vault_watcher import NoteFilter, VaultWatcher
from tests.conftest import write_note


@pytest.fixture
def manager(vault):
    manager = MagicMock()
    manager.vault = vault
    manager.on_file_renamed = AsyncMock()
    manager.on_file_deleted = AsyncMock()
    manager.on_directory_renamed = AsyncMock()
    manager.on_directory_deleted = AsyncMock()
    return manager


class TestNoteFilter:
    """Test which raw changes reach dispatch"""

    def test_filter(self, vault_root):
        """Test notes pass while hidden folders and other files are skipped"""
        (vault_root / "Projects").mkdir()
        note_filter = NoteFilter(vault_root)

        assert note_filter(Change.modified, str(vault_root / "Garden.md"))
        assert note_filter(Change.added, str(vault_root / "Projects"))
        assert note_filter(Change.deleted, str(vault_root / "Gone"))
        assert not note_filter(Change.modified, str(vault_root / "image.png"))
        assert not note_filter(Change.modified, str(vault_root / ".obsidian" / "workspace.md"))
        assert not note_filter(Change.modified, "/elsewhere/Garden.md")


class TestDispatch:
    """Test event classification"""

    @pytest.mark.asyncio
    async def test_note_rename(self, manager, vault_root):
        """Test that one delete plus one add of a note is a rename"""
        watcher = VaultWatcher(manager)

        await watcher.dispatch(
            {
                (Change.deleted, str(vault_root / "Old.md")),
                (Change.added, str(vault_root / "Folder" / "New.md")),
            }
        )

        manager.on_file_renamed.assert_awaited_once_with("Old.md", "Folder/New.md")
        manager.on_file_deleted.assert_not_awaited()
        manager.on_file_created.assert_not_called()

    @pytest.mark.asyncio
    async def test_directory_rename(self, manager, vault_root):
        """Test that a directory delete plus add is a directory rename"""
        await VaultWatcher(manager).dispatch(
            {(Change.deleted, str(vault_root / "Old")), (Change.added, str(vault_root / "New"))}
        )

        manager.on_directory_renamed.assert_awaited_once_with("Old", "New")

    @pytest.mark.asyncio
    async def test_deletes_and_modifications(self, manager, vault_root):
        """Test that deletions and edits are forwarded individually"""
        await VaultWatcher(manager).dispatch(
            {
                (Change.deleted, str(vault_root / "A.md")),
                (Change.deleted, str(vault_root / "Trash")),
                (Change.modified, str(vault_root / "B.md")),
            }
        )

        manager.on_file_deleted.assert_awaited_once_with("A.md")
        manager.on_directory_deleted.assert_awaited_once_with("Trash")
        manager.on_file_modified.assert_called_once_with("B.md")
        manager.on_file_renamed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_added_directory_queues_its_notes(self, manager, vault_root):
        """Test that notes inside a newly added folder are queued as created"""
        write_note(vault_root, "Imported/One.md", "one")
        write_note(vault_root, "Imported/Sub/Two.md", "two")
        write_note(vault_root, "Other.md", "other")

        await VaultWatcher(manager).dispatch({(Change.added, str(vault_root / "Imported"))})

        created = sorted(call.args[0] for call in manager.on_file_created.call_args_list)
        assert created == ["Imported/One.md", "Imported/Sub/Two.md"]

    @pytest.mark.asyncio
    async def test_start_and_stop(self, manager):
        """Test that the watch task stops when asked"""
        watcher = VaultWatcher(manager)

        watcher.start()
        await watcher.stop()

        assert watcher._task is None
