"""Unit tests for exclusion rules"""

import pytest

from src.services.exclusions import ExclusionRules, matches_glob, normalize_directory


class TestGlobMatching:
    """Test glob translation"""

    @pytest.mark.parametrize(
        "target, pattern, expected",
        [
            ("notes.draft.md", "*.draft.md", True),
            ("Daily/2024-01-01.md", "Daily/*.md", True),
            ("Daily/2024/01.md", "Daily/*.md", False),
            ("Daily/2024/01.md", "Daily/**", True),
            ("Daily/2024/01.md", "**/01.md", True),
            ("note1.md", "note?.md", True),
            ("NOTE1.MD", "note?.md", True),
            ("a+b.md", "a+b.md", True),
            ("anything.md", "", False),
        ],
    )
    def test_matches_glob(self, target, pattern, expected):
        """Test '*', '**' and '?' semantics"""
        assert matches_glob(target, pattern) is expected

    def test_normalize_directory(self):
        """Test trailing slash and blank handling"""
        assert normalize_directory("Archive") == "Archive/"
        assert normalize_directory("/Archive/") == "Archive/"
        assert normalize_directory("  ") is None
        assert normalize_directory(None) is None


class TestExclusionRules:
    """Test folder, pattern and chat history exclusions"""

    def test_folder_excludes_descendants(self, exclusions):
        """Test that a folder rule covers every nested note"""
        assert exclusions.is_path_excluded("Archive/2020/old.md")
        assert not exclusions.is_path_excluded("Archived.md")

    def test_pattern_matches_basename(self, exclusions):
        """Test that slash-free patterns match the note name anywhere"""
        assert exclusions.is_path_excluded("Projects/plan.draft.md")
        assert not exclusions.is_path_excluded("Projects/plan.md")

    def test_chat_history_is_case_insensitive(self, exclusions):
        """Test that chat folders are excluded regardless of case"""
        assert exclusions.is_path_excluded("chats/session.md")
        assert exclusions.is_directory_excluded("Chats/2024")

    def test_chat_history_can_be_included(self):
        """Test that chat folders are indexed when the toggle is off"""
        rules = ExclusionRules(folders=[], patterns=[], ignore_chat_history=False, chat_folders=["Chats"])

        assert not rules.is_path_excluded("Chats/session.md")
        assert rules.excluded_directories() == []

    def test_excluded_directories(self, exclusions):
        """Test the directory list used for wholesale cleanup"""
        assert exclusions.excluded_directories() == ["Archive/", "Chats/"]

    def test_blank_path_is_not_excluded(self, exclusions):
        """Test that an empty path is never excluded"""
        assert not exclusions.is_path_excluded("")
