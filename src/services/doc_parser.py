"""Markdown note parser"""

import logging
import re
from dataclasses import dataclass, field

import yaml
from markdown_it import MarkdownIt
from markdown_it.token import Token
from mdit_py_plugins.front_matter import front_matter_plugin

logger = logging.getLogger(__name__)

_EMBED_WIKI = re.compile(r"!\[\[.*?\]\]")
_WIKI_ALIAS = re.compile(r"\[\[([^|\]]+)\|([^\]]+)\]\]")
_WIKI_LINK = re.compile(r"\[\[([^\]]+)\]\]")
_HTML_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")
_TRAILING_COLONS = re.compile(r":+\s*$")


@dataclass
class Paragraph:
    """A block of cleaned text and the heading trail it sits under"""

    text: str
    heading_trail: list[str] = field(default_factory=list)


@dataclass
class ParsedNote:
    """Structured content extracted from a markdown note"""

    text: str
    title: str | None = None
    paragraphs: list[Paragraph] = field(default_factory=list)


def clean_inline_text(text: str) -> str:
    """Unwrap wiki links, drop embeds and tags, and collapse whitespace"""
    result = _EMBED_WIKI.sub(" ", text)
    result = _WIKI_ALIAS.sub(r"\2", result)
    result = _WIKI_LINK.sub(r"\1", result)
    result = _HTML_TAG.sub(" ", result)
    result = result.replace("||", " ")
    return _WHITESPACE.sub(" ", result).strip()


class DocParser:
    """Parse markdown notes into paragraphs with heading context"""

    def __init__(self):
        # Initialize markdown-it parser with plugins
        self.md = MarkdownIt("commonmark", {"breaks": True, "html": True})
        self.md.use(front_matter_plugin)
        self.md.enable("table")
        self.md.enable("strikethrough")

    def parse(self, content: str) -> ParsedNote:
        """
        Parse markdown content and extract cleaned text with structure

        Args:
            content: Raw markdown note content

        Returns:
            ParsedNote: Cleaned full text, front matter title, and paragraphs
        """
        normalized = content.replace("\r\n", "\n").replace("\r", "\n")
        tokens = self.md.parse(normalized)
        paragraphs, text_parts, title = self._process_tokens(tokens)
        return ParsedNote(text="\n\n".join(text_parts), title=title, paragraphs=paragraphs)

    def _process_tokens(
        self, tokens: list[Token]
    ) -> tuple[list[Paragraph], list[str], str | None]:
        """Walk block tokens, tracking the heading trail"""
        paragraphs: list[Paragraph] = []
        text_parts: list[str] = []
        heading_trail: list[str] = []
        title = None
        heading_level: int | None = None
        table_cells: list[str] | None = None

        for token in tokens:
            if token.type == "front_matter":
                title = self._parse_front_matter_title(token.content)
            elif token.type == "heading_open":
                heading_level = int(token.tag[1:])
            elif token.type == "heading_close":
                heading_level = None
            elif token.type == "table_open":
                table_cells = []
            elif token.type == "table_close":
                if table_cells:
                    table_text = " ".join(table_cells)
                    text_parts.append(table_text)
                    paragraphs.append(Paragraph(table_text, list(heading_trail)))
                table_cells = None
            elif token.type == "inline":
                text = clean_inline_text(self._flatten_inline(token))
                if not text:
                    continue
                if heading_level is not None:
                    heading = _TRAILING_COLONS.sub("", text)
                    heading_trail = heading_trail[: heading_level - 1]
                    # Skipped levels keep an empty slot so depth stays aligned
                    heading_trail.extend([""] * (heading_level - 1 - len(heading_trail)))
                    heading_trail.append(heading)
                    text_parts.append(text)
                elif table_cells is not None:
                    table_cells.append(text)
                else:
                    text_parts.append(text)
                    paragraphs.append(Paragraph(text, [h for h in heading_trail if h]))
            elif token.type in ("code_block", "fence", "html_block") and token.content:
                text = clean_inline_text(token.content)
                if text:
                    text_parts.append(text)
                    paragraphs.append(Paragraph(text, [h for h in heading_trail if h]))

        return paragraphs, text_parts, title

    def _flatten_inline(self, token: Token) -> str:
        """Join the visible text of an inline token, dropping images and markup"""
        if not token.children:
            return token.content
        parts: list[str] = []
        for child in token.children:
            if child.type in ("text", "code_inline"):
                parts.append(child.content)
            elif child.type in ("softbreak", "hardbreak"):
                parts.append(" ")
        return "".join(parts)

    def _parse_front_matter_title(self, content: str) -> str | None:
        """Read a 'title' key from YAML front matter"""
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            logger.debug(f"Ignoring unparsable front matter: {e}")
            return None
        if isinstance(data, dict):
            title = data.get("title")
            if isinstance(title, str) and title.strip():
                return title.strip()
        return None
