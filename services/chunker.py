# services/chunker.py
"""Semantic chunking: section, code-block and paragraph strategies with sentence-aware overlap"""
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from langchain_text_splitters import RecursiveCharacterTextSplitter

from config import settings
from core.domain import ChunkMetadata, ChunkPosition, CodeBlock, ExtractedContent, IndexingConfig

logger = logging.getLogger(settings.LOGGER_NAME)

CHARS_PER_TOKEN = 4

STRATEGY_SECTIONS = "sections"
STRATEGY_CODE = "code"
STRATEGY_PARAGRAPHS = "paragraphs"

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")

DECISION_PATTERNS = [
    re.compile(r"\b(decided|decided to|decision|chose|chosen|selected|picked)\b", re.IGNORECASE),
    re.compile(r"\b(we will|we'll|going with|go with|using|use)\b", re.IGNORECASE),
    re.compile(r"\b(approach is|solution is|answer is|conclusion)\b", re.IGNORECASE),
]
QUESTION_PATTERNS = [
    re.compile(r"\?"),
    re.compile(r"\b(should we|how do|what if|why|when|where|which|could we)\b", re.IGNORECASE),
    re.compile(r"\b(question|ask|wondering|unsure|unclear)\b", re.IGNORECASE),
]
ACTION_PATTERNS = [
    re.compile(r"\b(todo|to-do|action item|next step|follow up|follow-up)\b", re.IGNORECASE),
    re.compile(r"\b(need to|must|should|will|have to|going to)\b", re.IGNORECASE),
    re.compile(r"\b(deadline|due|by|before|until)\b", re.IGNORECASE),
    re.compile(r"\[\s*\]"),
]


def estimate_tokens(text: str, chars_per_token: int = CHARS_PER_TOKEN) -> int:
    """Token estimate from a fixed characters-per-token ratio."""
    return math.ceil(len(text) / chars_per_token)


def detect_semantic_flags(text: str) -> Dict[str, bool]:
    return {
        "is_decision": any(p.search(text) for p in DECISION_PATTERNS),
        "is_question": any(p.search(text) for p in QUESTION_PATTERNS),
        "is_action": any(p.search(text) for p in ACTION_PATTERNS),
    }


@dataclass
class ChunkCandidate:
    """A chunk before it is bound to a document id and embedded."""
    content: str
    position: ChunkPosition
    metadata: ChunkMetadata

    @property
    def body(self) -> str:
        return self.content[self.metadata.overlap_chars:]


@dataclass
class _Piece:
    text: str
    start_line: int
    # True when the piece opens a section or code block
    boundary: bool = False
    section: Optional[str] = None
    heading_path: List[str] = field(default_factory=list)


class SemanticChunker:
    """
    Splits extracted content into bounded chunks along semantic boundaries.

    Strategy: sections when the document has headings, code blocks when it
    has code, paragraphs otherwise. Units larger than the limit are split
    with a recursive character splitter (paragraph > line > sentence > word).
    Small units are merged with their neighbours, never dropped.

    Every chunk after a soft boundary starts with a copy of the previous
    chunk's tail; metadata.overlap_chars records its length so the bodies
    concatenate back to the chunked text.
    """

    def __init__(self, config: Optional[IndexingConfig] = None):
        self.config = config or IndexingConfig()
        self.chars_per_token = self.config.chars_per_token or CHARS_PER_TOKEN
        max_tokens = self.config.max_chunk_tokens
        overlap_tokens = self.config.chunk_overlap_tokens
        if overlap_tokens >= max_tokens:
            overlap_tokens = 0

        self.overlap_chars = overlap_tokens * self.chars_per_token
        # Body plus overlap stays within max_chunk_tokens
        self.body_limit = (max_tokens - overlap_tokens) * self.chars_per_token
        self.min_chars = min(self.config.min_chunk_tokens * self.chars_per_token, self.body_limit)

        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=self.body_limit,
            chunk_overlap=0,
            separators=["\n\n", "\n", ". ", " ", ""],
            keep_separator="end",
            strip_whitespace=False,
        )

    # ============= Public API =============

    def select_strategy(self, extracted: ExtractedContent) -> str:
        if extracted.structure.has_headings and extracted.structure.sections:
            return STRATEGY_SECTIONS
        if extracted.code_blocks:
            return STRATEGY_CODE
        return STRATEGY_PARAGRAPHS

    def chunked_text(self, extracted: ExtractedContent) -> str:
        """The text whose chunk bodies concatenate back exactly."""
        if self.select_strategy(extracted) == STRATEGY_PARAGRAPHS:
            return extracted.text
        return extracted.source

    def chunk(self, extracted: ExtractedContent) -> List[ChunkCandidate]:
        if not self.chunked_text(extracted).strip():
            return []

        strategy = self.select_strategy(extracted)
        if strategy == STRATEGY_SECTIONS:
            units = self._section_units(extracted)
        elif strategy == STRATEGY_CODE:
            units = self._code_units(extracted)
        else:
            units = self._paragraph_units(extracted.text, start_line=1)

        pieces = self._split_units(self._fold_blank(units))
        groups = self._pack(pieces)
        chunks = self._build(groups, extracted.code_blocks)
        logger.debug(f"Chunked document into {len(chunks)} chunks using '{strategy}' strategy")
        return chunks

    # ============= Units =============

    def _section_units(self, extracted: ExtractedContent) -> List[_Piece]:
        return [
            _Piece(text=section.content, start_line=section.start_line, boundary=True,
                   section=section.heading, heading_path=list(section.heading_path))
            for section in extracted.structure.sections
        ]

    def _code_units(self, extracted: ExtractedContent) -> List[_Piece]:
        lines = extracted.source.splitlines(keepends=True)
        units: List[_Piece] = []
        cursor = 1
        for block in sorted(extracted.code_blocks, key=lambda b: b.start_line):
            start = max(block.start_line, 1)
            end = min(block.end_line, len(lines))
            if start < cursor or start > end:
                continue
            if start > cursor:
                units.extend(self._paragraph_units("".join(lines[cursor - 1:start - 1]), cursor))
            units.append(_Piece(text="".join(lines[start - 1:end]), start_line=start, boundary=True))
            cursor = end + 1
        if cursor <= len(lines):
            units.extend(self._paragraph_units("".join(lines[cursor - 1:]), cursor))
        return units

    def _paragraph_units(self, text: str, start_line: int) -> List[_Piece]:
        """Paragraphs with their trailing blank lines; only the first is a hard boundary."""
        parts: List[str] = []
        position = 0
        for match in _PARAGRAPH_BREAK.finditer(text):
            parts.append(text[position:match.end()])
            position = match.end()
        if position < len(text):
            parts.append(text[position:])

        units = []
        line = start_line
        for index, part in enumerate(parts):
            units.append(_Piece(text=part, start_line=line, boundary=index == 0))
            line += part.count("\n")
        return units

    @staticmethod
    def _fold_blank(units: List[_Piece]) -> List[_Piece]:
        """Attach whitespace-only units to a neighbour."""
        folded: List[_Piece] = []
        pending = ""
        pending_line = None
        for unit in units:
            if not unit.text.strip():
                if folded:
                    folded[-1].text += unit.text
                else:
                    pending += unit.text
                    pending_line = pending_line or unit.start_line
                continue
            if pending:
                unit.text = pending + unit.text
                unit.start_line = pending_line
                pending, pending_line = "", None
            folded.append(unit)
        return folded

    # ============= Splitting & packing =============

    def _split(self, text: str) -> List[str]:
        pieces = self._splitter.split_text(text)
        if "".join(pieces) != text or any(len(p) > self.body_limit for p in pieces):
            logger.debug("Splitter output does not tile the unit, using fixed windows")
            pieces = [text[i:i + self.body_limit] for i in range(0, len(text), self.body_limit)]
        return pieces

    def _split_units(self, units: List[_Piece]) -> List[_Piece]:
        pieces: List[_Piece] = []
        for unit in units:
            if len(unit.text) <= self.body_limit:
                pieces.append(unit)
                continue
            line = unit.start_line
            for index, text in enumerate(self._split(unit.text)):
                pieces.append(_Piece(
                    text=text,
                    start_line=line,
                    boundary=unit.boundary and index == 0,
                    section=unit.section,
                    heading_path=list(unit.heading_path),
                ))
                line += text.count("\n")
        return pieces

    def _pack(self, pieces: List[_Piece]) -> List[List[_Piece]]:
        groups: List[List[_Piece]] = []
        current: List[_Piece] = []
        size = 0
        for piece in pieces:
            length = len(piece.text)
            too_big = size + length > self.body_limit
            at_boundary = piece.boundary and size >= self.min_chars
            if current and (too_big or at_boundary):
                groups.append(current)
                current, size = [], 0
            current.append(piece)
            size += length

        if current:
            previous_size = sum(len(p.text) for p in groups[-1]) if groups else 0
            if groups and size < self.min_chars and previous_size + size <= self.body_limit:
                groups[-1].extend(current)
            else:
                groups.append(current)
        return groups

    # ============= Chunk assembly =============

    def _overlap(self, previous_body: str) -> str:
        if self.overlap_chars <= 0:
            return ""
        window = previous_body[-self.overlap_chars:]
        if len(window) < len(previous_body):
            sentence = _SENTENCE_BREAK.search(window)
            if sentence:
                window = window[sentence.end():]
            else:
                space = re.search(r"\s+", window)
                if space:
                    window = window[space.end():]
        return window if window.strip() else ""

    def _build(self, groups: List[List[_Piece]], code_blocks: List[CodeBlock]) -> List[ChunkCandidate]:
        chunks: List[ChunkCandidate] = []
        previous_body = ""
        for order, group in enumerate(groups):
            body = "".join(p.text for p in group)
            first = group[0]
            prefix = self._overlap(previous_body) if chunks and not first.boundary else ""
            content = prefix + body

            start_line = first.start_line
            end_line = start_line + body.rstrip("\n").count("\n")
            flags = detect_semantic_flags(content)
            chunks.append(ChunkCandidate(
                content=content,
                position=ChunkPosition(
                    start_line=start_line,
                    end_line=end_line,
                    section=first.section,
                    order=order,
                ),
                metadata=ChunkMetadata(
                    heading_context=list(first.heading_path),
                    code_language=self._code_language(code_blocks, start_line, end_line),
                    token_count=estimate_tokens(content, self.chars_per_token),
                    overlap_chars=len(prefix),
                    **flags,
                ),
            ))
            previous_body = body
        return chunks

    @staticmethod
    def _code_language(code_blocks: List[CodeBlock], start_line: int, end_line: int) -> Optional[str]:
        for block in code_blocks:
            if block.language and block.start_line <= end_line and block.end_line >= start_line:
                return block.language
        return None


def chunk_content(extracted: ExtractedContent, config: Optional[IndexingConfig] = None) -> List[ChunkCandidate]:
    """Chunk with a one-off SemanticChunker."""
    return SemanticChunker(config).chunk(extracted)
