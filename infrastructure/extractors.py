# infrastructure/extractors.py
"""Content extractors: normalized text, outline, metadata and code blocks per content category"""
import json
import logging
import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import fitz  # PyMuPDF
import yaml

from config import settings
from core.domain import (
    CodeBlock, DocumentStructure, ExtractedMetadata, Heading, RawDocument, Section
)
from core.enums import DocumentType
from core.errors import ExtractionError
from core.interfaces import IContentExtractor
from utils.detection import get_code_language

logger = logging.getLogger(settings.LOGGER_NAME)

MAX_LEAF_DEPTH = 10
MAX_KEY_DEPTH = 3

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")
_LIST_ITEM = re.compile(r"^\s*(?:[-*+]|\d+\.)\s+", re.MULTILINE)
_ENGLISH_MARKERS = {"the", "and", "is", "of", "to", "in", "a", "for", "this", "that", "with"}


# ============= Shared helpers =============

def build_sections(source: str, headings: List[Heading]) -> List[Section]:
    """
    Partition source lines into sections, one per heading line.

    Sections are consecutive and together cover every line, so joining their
    content gives back the source. A blank preamble is folded into the first
    section; a non-blank one becomes a heading-less section.
    """
    lines = source.splitlines(keepends=True)
    if not lines or not headings:
        return []

    by_line: Dict[int, Heading] = {}
    for heading in headings:
        if 1 <= heading.start_line <= len(lines):
            by_line.setdefault(heading.start_line, heading)
    starts = sorted(by_line)
    if not starts:
        return []

    sections: List[Section] = []
    first = 1
    if starts[0] > 1:
        preamble = "".join(lines[:starts[0] - 1])
        if preamble.strip():
            sections.append(Section(
                heading=None, content=preamble, start_line=1, end_line=starts[0] - 1
            ))
            first = starts[0]

    path: List[Heading] = []
    for i, line_no in enumerate(starts):
        heading = by_line[line_no]
        begin = first if i == 0 else line_no
        end = starts[i + 1] - 1 if i + 1 < len(starts) else len(lines)
        while path and path[-1].level >= heading.level:
            path.pop()
        path.append(heading)
        sections.append(Section(
            heading=heading.text,
            content="".join(lines[begin - 1:end]),
            start_line=begin,
            end_line=end,
            level=heading.level,
            heading_path=[h.text for h in path],
        ))
    return sections


def close_headings(headings: List[Heading], total_lines: int) -> List[Heading]:
    """A heading spans until the next heading of the same or a higher level."""
    for i, heading in enumerate(headings):
        heading.end_line = total_lines
        for later in headings[i + 1:]:
            if later.level <= heading.level and later.start_line > heading.start_line:
                heading.end_line = later.start_line - 1
                break
    return headings


def collect_strings(value: Any, depth: int = 0) -> List[str]:
    """String leaves of a parsed JSON/YAML tree, depth limited."""
    if depth > MAX_LEAF_DEPTH:
        return []
    if isinstance(value, str):
        return [value]
    strings: List[str] = []
    if isinstance(value, dict):
        for item in value.values():
            strings.extend(collect_strings(item, depth + 1))
    elif isinstance(value, list):
        for item in value:
            strings.extend(collect_strings(item, depth + 1))
    return strings


def count_words(text: str) -> int:
    return len(text.split())


def count_paragraphs(text: str) -> int:
    return len([p for p in _PARAGRAPH_SPLIT.split(text) if p.strip()])


def count_lists(text: str) -> int:
    return len(_LIST_ITEM.findall(text))


def detect_language(text: str) -> Optional[str]:
    words = re.findall(r"[^\W\d_]+", text.lower())
    if not words:
        return None
    hits = sum(1 for w in words if w in _ENGLISH_MARKERS)
    return "en" if hits / len(words) >= 0.05 else None


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


class BaseExtractor(IContentExtractor):
    """Defaults shared by the concrete extractors"""

    def get_code_blocks(self, source: str, document: RawDocument) -> List[CodeBlock]:
        return []

    def _whole_file_block(self, source: str, language: Optional[str]) -> List[CodeBlock]:
        if not source.strip():
            return []
        return [CodeBlock(
            language=language,
            content=source,
            start_line=1,
            end_line=len(source.splitlines()) or 1,
        )]


# ============= Markdown =============

class MarkdownExtractor(BaseExtractor):
    """Markdown with optional YAML front matter"""

    supported_types = (DocumentType.MARKDOWN,)

    FRONTMATTER = re.compile(r"^---\r?\n(.*?)\r?\n---(?:\r?\n|$)", re.DOTALL)
    HEADING = re.compile(r"^(#{1,6})\s+(.+)$")
    FENCE = re.compile(r"^\s*```(\w*)")

    def get_text(self, source: str, document: RawDocument) -> str:
        text = self.FRONTMATTER.sub("", source, count=1)
        text = re.sub(r"```[\s\S]*?```", "", text)
        text = re.sub(r"`[^`]+`", "", text)
        text = re.sub(r"!\[.*?\]\(.*?\)", "", text)
        text = re.sub(r"\[([^\]]+)\]\([^)]+\)", r"\1", text)
        text = re.sub(r"<[^>]+>", "", text)
        text = re.sub(r"^#+\s*", "", text, flags=re.MULTILINE)
        text = re.sub(r"^\s*[-*+]\s+", "", text, flags=re.MULTILINE)
        text = re.sub(r"^\s*\d+\.\s+", "", text, flags=re.MULTILINE)
        text = re.sub(r"\*\*([^*]+)\*\*", r"\1", text)
        text = re.sub(r"\*([^*]+)\*", r"\1", text)
        text = re.sub(r"__([^_]+)__", r"\1", text)
        text = re.sub(r"\b_([^_]+)_\b", r"\1", text)
        return re.sub(r"\n{3,}", "\n\n", text).strip()

    def get_structure(self, source: str, document: RawDocument) -> DocumentStructure:
        lines = source.splitlines()
        headings = close_headings(self._headings(lines), len(lines))
        return DocumentStructure(
            has_headings=bool(headings),
            headings=headings,
            sections=build_sections(source, headings),
            paragraph_count=count_paragraphs(source),
            list_count=count_lists(source),
        )

    def get_metadata(self, source: str, document: RawDocument) -> ExtractedMetadata:
        frontmatter = self.frontmatter(source)
        text = self.get_text(source, document)
        first_heading = re.search(r"^#\s+(.+)$", source, re.MULTILINE)
        title = frontmatter.get("title") or (first_heading.group(1).strip() if first_heading else None)
        return ExtractedMetadata(
            title=str(title) if title else None,
            author=str(frontmatter["author"]) if frontmatter.get("author") else None,
            created_at=_as_datetime(frontmatter.get("date")) or document.created_at,
            modified_at=document.modified_at,
            word_count=count_words(text),
            language=detect_language(text),
            frontmatter=frontmatter,
        )

    def get_code_blocks(self, source: str, document: RawDocument) -> List[CodeBlock]:
        """Fenced blocks; line spans include both fence lines."""
        blocks: List[CodeBlock] = []
        language, body, start = None, [], 0
        in_block = False
        for i, line in enumerate(source.splitlines(), start=1):
            match = self.FENCE.match(line)
            if not in_block and match:
                in_block, language, body, start = True, match.group(1) or None, [], i
            elif in_block and line.strip().startswith("```"):
                blocks.append(CodeBlock(language=language, content="\n".join(body),
                                        start_line=start, end_line=i))
                in_block = False
            elif in_block:
                body.append(line)
        return blocks

    def frontmatter(self, source: str) -> Dict[str, Any]:
        match = self.FRONTMATTER.match(source)
        if not match:
            return {}
        try:
            parsed = yaml.safe_load(match.group(1))
        except yaml.YAMLError as e:
            logger.warning(f"Ignoring malformed front matter: {e}")
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def _headings(self, lines: List[str]) -> List[Heading]:
        headings: List[Heading] = []
        in_fence = False
        for i, line in enumerate(lines, start=1):
            if self.FENCE.match(line):
                in_fence = not in_fence
                continue
            if in_fence:
                continue
            match = self.HEADING.match(line)
            if match:
                headings.append(Heading(level=len(match.group(1)), text=match.group(2).strip(),
                                        start_line=i, end_line=i))
        return headings


# ============= Source code =============

# (pattern, level); first match per line wins
_DECLARATIONS: Dict[str, List[tuple]] = {
    "typescript": [
        (r"^export\s+(?:default\s+)?(?:abstract\s+)?class\s+(\w+)", 1),
        (r"^(?:abstract\s+)?class\s+(\w+)", 1),
        (r"^export\s+(?:default\s+)?interface\s+(\w+)", 2),
        (r"^interface\s+(\w+)", 2),
        (r"^export\s+(?:default\s+)?(?:async\s+)?function\s+(\w+)", 2),
        (r"^(?:async\s+)?function\s+(\w+)", 2),
        (r"^\s+(?:public\s+|private\s+|protected\s+|static\s+)*(?:async\s+)?(\w+)\s*\([^)]*\)\s*[:{]", 3),
    ],
    "python": [
        (r"^class\s+(\w+)", 1),
        (r"^(?:async\s+)?def\s+(\w+)", 2),
        (r"^\s+(?:async\s+)?def\s+(\w+)", 3),
    ],
    "go": [
        (r"^type\s+(\w+)\s+struct", 1),
        (r"^type\s+(\w+)\s+interface", 1),
        (r"^func\s+\([^)]+\)\s+(\w+)", 2),
        (r"^func\s+(\w+)", 2),
    ],
    "rust": [
        (r"^(?:pub\s+)?struct\s+(\w+)", 1),
        (r"^impl(?:<[^>]*>)?\s+(\w+)", 1),
        (r"^(?:pub\s+)?fn\s+(\w+)", 2),
        (r"^\s+(?:pub\s+)?fn\s+(\w+)", 3),
    ],
    "default": [
        (r"^class\s+(\w+)", 1),
        (r"^function\s+(\w+)", 2),
        (r"^def\s+(\w+)", 2),
    ],
}
_DECLARATIONS["javascript"] = _DECLARATIONS["typescript"]

_TEST_MARKERS: Dict[str, List[str]] = {
    "typescript": [r"describe\(", r"\bit\(", r"\btest\(", r"expect\("],
    "python": [r"def test_", r"class Test", r"unittest", r"pytest"],
    "go": [r"func Test", r"testing\.T"],
    "rust": [r"#\[test\]", r"#\[cfg\(test\)\]"],
}
_TEST_MARKERS["javascript"] = _TEST_MARKERS["typescript"]

_HASH_COMMENT_LANGUAGES = {"python", "ruby", "shell"}
_SLASH_COMMENT_LANGUAGES = {
    "typescript", "javascript", "go", "rust", "java", "c", "cpp", "csharp",
    "swift", "kotlin", "scala", "php", "scss", "less",
}


class CodeExtractor(BaseExtractor):
    """Source files; declarations act as headings"""

    supported_types = (DocumentType.CODE,)

    def get_text(self, source: str, document: RawDocument) -> str:
        language = get_code_language(document.filename)
        text = source
        if language not in _HASH_COMMENT_LANGUAGES:
            text = re.sub(r"//.*$", "", text, flags=re.MULTILINE)
            text = re.sub(r"/\*[\s\S]*?\*/", "", text)
        if language not in _SLASH_COMMENT_LANGUAGES:
            text = re.sub(r"#.*$", "", text, flags=re.MULTILINE)
        return text

    def get_structure(self, source: str, document: RawDocument) -> DocumentStructure:
        lines = source.splitlines()
        language = get_code_language(document.filename)
        patterns = _DECLARATIONS.get(language or "", _DECLARATIONS["default"])

        headings: List[Heading] = []
        for i, line in enumerate(lines, start=1):
            for pattern, level in patterns:
                match = re.match(pattern, line)
                if match:
                    headings.append(Heading(level=level, text=match.group(1),
                                            start_line=i, end_line=i))
                    break

        headings = close_headings(headings, len(lines))
        return DocumentStructure(
            has_headings=bool(headings),
            headings=headings,
            sections=build_sections(source, headings),
        )

    def get_metadata(self, source: str, document: RawDocument) -> ExtractedMetadata:
        language = get_code_language(document.filename)
        return ExtractedMetadata(
            title=document.filename,
            created_at=document.created_at,
            modified_at=document.modified_at,
            word_count=count_words(source),
            language=language,
            frontmatter={
                "code_language": language,
                "line_count": len(source.splitlines()),
                "has_tests": self._has_tests(source, language),
                "has_types": self._has_types(source, language),
            },
        )

    def get_code_blocks(self, source: str, document: RawDocument) -> List[CodeBlock]:
        return self._whole_file_block(source, get_code_language(document.filename))

    @staticmethod
    def _has_tests(source: str, language: Optional[str]) -> bool:
        return any(re.search(p, source) for p in _TEST_MARKERS.get(language or "", []))

    @staticmethod
    def _has_types(source: str, language: Optional[str]) -> bool:
        if language == "typescript":
            return bool(re.search(r":\s*\w+", source) or re.search(r"interface\s+", source))
        if language == "python":
            return bool(re.search(r":\s*\w+\s*[=)]", source) or "->" in source)
        return language in ("rust", "go", "java", "csharp", "kotlin", "swift", "scala", "c", "cpp")


# ============= JSON / YAML =============

class JsonExtractor(BaseExtractor):
    """JSON documents; invalid JSON falls back to raw text"""

    supported_types = (DocumentType.JSON,)

    def get_text(self, source: str, document: RawDocument) -> str:
        parsed = self._parse(source)
        if parsed is None:
            return source
        return "\n".join(collect_strings(parsed))

    def get_structure(self, source: str, document: RawDocument) -> DocumentStructure:
        parsed = self._parse(source)
        if parsed is None:
            return DocumentStructure()
        lines = source.splitlines()
        headings = close_headings(self._key_headings(parsed, lines), len(lines))
        return DocumentStructure(
            has_headings=bool(headings),
            headings=headings,
            sections=build_sections(source, headings),
        )

    def get_metadata(self, source: str, document: RawDocument) -> ExtractedMetadata:
        parsed = self._parse(source)
        mapping = parsed if isinstance(parsed, dict) else {}
        title = mapping.get("name") or mapping.get("title")
        author = mapping.get("author")
        return ExtractedMetadata(
            title=title if isinstance(title, str) else None,
            author=author if isinstance(author, str) else None,
            created_at=document.created_at,
            modified_at=document.modified_at,
            word_count=count_words(self.get_text(source, document)),
            frontmatter={"type": "json", "keys": list(mapping)} if parsed is not None else {},
        )

    def get_code_blocks(self, source: str, document: RawDocument) -> List[CodeBlock]:
        return self._whole_file_block(source, "json")

    @staticmethod
    def _parse(source: str) -> Any:
        try:
            return json.loads(source)
        except ValueError:
            logger.debug("Content is not valid JSON, using raw text")
            return None

    def _key_headings(self, value: Any, lines: List[str], prefix: str = "",
                      depth: int = 0, cursor: int = 0) -> List[Heading]:
        if depth >= MAX_KEY_DEPTH or not isinstance(value, dict):
            return []
        headings: List[Heading] = []
        for key, child in value.items():
            path = f"{prefix}.{key}" if prefix else str(key)
            found = self._find_key_line(lines, str(key), cursor)
            if found is not None:
                cursor = found
            headings.append(Heading(level=depth + 1, text=path,
                                    start_line=cursor + 1, end_line=cursor + 1))
            nested = self._key_headings(child, lines, path, depth + 1, cursor)
            if nested:
                headings.extend(nested)
                cursor = nested[-1].start_line - 1
        return headings

    @staticmethod
    def _find_key_line(lines: List[str], key: str, start: int) -> Optional[int]:
        pattern = re.compile(re.escape(json.dumps(key)) + r"\s*:")
        for index in range(start, len(lines)):
            if pattern.search(lines[index]):
                return index
        return None


class YamlExtractor(BaseExtractor):
    """YAML documents; unparsable YAML falls back to a line scan"""

    supported_types = (DocumentType.YAML,)

    KEY = re.compile(r"^(\s*)([\w-]+):")
    VALUE = re.compile(r":\s*[\"']?(.+?)[\"']?\s*$")

    def get_text(self, source: str, document: RawDocument) -> str:
        parsed = self._parse(source)
        if parsed is not None:
            return "\n".join(collect_strings(parsed))

        values = []
        for line in source.splitlines():
            match = self.VALUE.search(line)
            if match and not match.group(1).startswith(("{", "[")):
                values.append(match.group(1))
        return "\n".join(values)

    def get_structure(self, source: str, document: RawDocument) -> DocumentStructure:
        lines = source.splitlines()
        headings = []
        for i, line in enumerate(lines, start=1):
            match = self.KEY.match(line)
            if match:
                level = min(len(match.group(1)) // 2 + 1, 6)
                headings.append(Heading(level=level, text=match.group(2), start_line=i, end_line=i))
        headings = close_headings(headings, len(lines))
        return DocumentStructure(
            has_headings=bool(headings),
            headings=headings,
            sections=build_sections(source, headings),
        )

    def get_metadata(self, source: str, document: RawDocument) -> ExtractedMetadata:
        parsed = self._parse(source)
        mapping = parsed if isinstance(parsed, dict) else {}
        title = mapping.get("name") or mapping.get("title")
        author = mapping.get("author")
        return ExtractedMetadata(
            title=str(title) if title else None,
            author=str(author) if author else None,
            created_at=document.created_at,
            modified_at=document.modified_at,
            word_count=count_words(source),
            frontmatter={"type": "yaml"},
        )

    def get_code_blocks(self, source: str, document: RawDocument) -> List[CodeBlock]:
        return self._whole_file_block(source, "yaml")

    @staticmethod
    def _parse(source: str) -> Any:
        try:
            return yaml.safe_load(source)
        except yaml.YAMLError:
            logger.debug("Content is not valid YAML, scanning lines")
            return None


# ============= Plain text =============

class PlainTextExtractor(BaseExtractor):
    supported_types = (DocumentType.PLAINTEXT,)

    def get_text(self, source: str, document: RawDocument) -> str:
        return source

    def get_structure(self, source: str, document: RawDocument) -> DocumentStructure:
        return DocumentStructure(
            paragraph_count=count_paragraphs(source),
            list_count=count_lists(source),
        )

    def get_metadata(self, source: str, document: RawDocument) -> ExtractedMetadata:
        return ExtractedMetadata(
            created_at=document.created_at,
            modified_at=document.modified_at,
            word_count=count_words(source),
            language=detect_language(source),
        )


# ============= PDF =============

class PdfExtractor(PlainTextExtractor):
    """
    PDF text layer via PyMuPDF. Pages are joined with blank lines.

    Scanned PDFs without a text layer come out empty and index as
    degenerate documents with zero chunks.
    """

    supported_types = (DocumentType.PDF,)

    def read(self, document: RawDocument) -> str:
        with self._open(document) as pdf:
            pages = [page.get_text("text").strip() for page in pdf]
        return "\n\n".join(page for page in pages if page)

    def get_metadata(self, source: str, document: RawDocument) -> ExtractedMetadata:
        metadata = super().get_metadata(source, document)
        with self._open(document) as pdf:
            info = pdf.metadata or {}
            metadata.title = info.get("title") or None
            metadata.author = info.get("author") or None
            metadata.frontmatter = {"page_count": pdf.page_count}
        return metadata

    @staticmethod
    def _open(document: RawDocument):
        data = document.content
        if isinstance(data, str):
            data = data.encode("latin-1", errors="replace")
        try:
            return fitz.open(stream=data, filetype="pdf")
        except Exception as e:
            raise ExtractionError(f"Cannot read PDF '{document.filename}': {e}") from e
