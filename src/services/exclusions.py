"""Path exclusion rules for vault indexing"""

import re
from functools import lru_cache

from src.config import config

_GLOB_TOKEN = re.compile(r"\*\*|\*|\?")


def normalize_path(path: str) -> str:
    return (path or "").replace("\\", "/").lstrip("/")


def normalize_directory(directory: str | None) -> str | None:
    """Directory with a trailing slash, or None when blank"""
    if not directory:
        return None
    trimmed = normalize_path(directory.strip())
    if not trimmed:
        return None
    return trimmed if trimmed.endswith("/") else f"{trimmed}/"


@lru_cache(maxsize=256)
def compile_glob(pattern: str) -> re.Pattern[str]:
    """
    Translate a glob pattern to a case-insensitive regex

    '**' matches across directories, '*' stays within one path segment and '?'
    matches a single character.
    """
    parts: list[str] = []
    position = 0
    for match in _GLOB_TOKEN.finditer(pattern):
        parts.append(re.escape(pattern[position : match.start()]))
        token = match.group(0)
        if token == "**":
            parts.append(".*")
        elif token == "*":
            parts.append("[^/]*")
        else:
            parts.append(".")
        position = match.end()
    parts.append(re.escape(pattern[position:]))
    return re.compile(f"^{''.join(parts)}$", re.IGNORECASE)


def matches_glob(target: str, pattern: str) -> bool:
    if not pattern:
        return False
    return compile_glob(pattern).match(target) is not None


class ExclusionRules:
    """Decide which vault paths are never indexed"""

    def __init__(
        self,
        folders: list[str] | None = None,
        patterns: list[str] | None = None,
        ignore_chat_history: bool | None = None,
        chat_folders: list[str] | None = None,
    ):
        self.folders = [
            d
            for d in (normalize_directory(f) for f in (folders if folders is not None else config.exclusion_folders))
            if d
        ]
        self.patterns = [p for p in (patterns if patterns is not None else config.exclusion_patterns) if p]
        self.ignore_chat_history = (
            config.ignore_chat_history if ignore_chat_history is None else ignore_chat_history
        )
        self.chat_folders = [
            d
            for d in (
                normalize_directory(f)
                for f in (chat_folders if chat_folders is not None else config.chat_history_folders)
            )
            if d
        ]

    def is_path_excluded(self, path: str) -> bool:
        """
        Check whether a note path is excluded

        Folder rules cover every descendant. Patterns containing '/' match the
        full path; other patterns match the basename.
        """
        file_path = normalize_path(path)
        if not file_path:
            return False

        if any(file_path.startswith(folder) for folder in self.folders):
            return True

        basename = file_path.rsplit("/", 1)[-1]
        for pattern in self.patterns:
            target = file_path if "/" in pattern else basename
            if matches_glob(target, pattern):
                return True

        return self._in_chat_history(file_path)

    def is_directory_excluded(self, directory: str) -> bool:
        prefix = normalize_directory(directory)
        if not prefix:
            return False
        if any(prefix.startswith(folder) for folder in self.folders):
            return True
        return self._in_chat_history(prefix)

    def excluded_directories(self) -> list[str]:
        """Directories whose vectors can be dropped wholesale"""
        directories = list(self.folders)
        if self.ignore_chat_history:
            directories.extend(d for d in self.chat_folders if d not in directories)
        return directories

    def _in_chat_history(self, path: str) -> bool:
        if not self.ignore_chat_history:
            return False
        lower = path.lower()
        return any(lower.startswith(folder.lower()) for folder in self.chat_folders)
