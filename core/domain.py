# core/domain.py
"""Domain models for the indexing pipeline."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from core.enums import (
    ChangeType, DocumentType, EntityType, ErrorCode, EventKind,
    IndexingStage, InterfaceType, LinkType, QueryMode
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(moment: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC."""
    if moment is None or moment.tzinfo is not None:
        return moment
    return moment.replace(tzinfo=timezone.utc)


# ============= Raw input =============

@dataclass
class RawDocument:
    """Document as supplied by the caller. The pipeline never owns its lifecycle."""
    path: str
    filename: str
    content: Union[str, bytes]
    declared_type: Optional[DocumentType] = None
    size: Optional[int] = None
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None

    def text(self) -> str:
        if isinstance(self.content, bytes):
            return self.content.decode("utf-8", errors="replace")
        return self.content


# ============= Extraction =============

@dataclass
class Heading:
    level: int
    text: str
    start_line: int
    end_line: int


@dataclass
class Section:
    """Consecutive source lines owned by one heading (or the preamble)."""
    heading: Optional[str]
    content: str
    start_line: int
    end_line: int
    level: int = 0
    heading_path: List[str] = field(default_factory=list)


@dataclass
class DocumentStructure:
    has_headings: bool = False
    headings: List[Heading] = field(default_factory=list)
    sections: List[Section] = field(default_factory=list)
    paragraph_count: int = 0
    list_count: int = 0


@dataclass
class ExtractedMetadata:
    title: Optional[str] = None
    author: Optional[str] = None
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
    word_count: int = 0
    language: Optional[str] = None
    frontmatter: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CodeBlock:
    language: Optional[str]
    content: str
    start_line: int
    end_line: int


@dataclass
class ExtractedContent:
    """
    Ephemeral extraction output, consumed by the chunker and summarization.

    source is the decoded document that line numbers, sections and code
    blocks refer to; text is the normalized prose view of it.
    """
    source: str
    text: str
    structure: DocumentStructure
    metadata: ExtractedMetadata
    code_blocks: List[CodeBlock] = field(default_factory=list)


# ============= Chunks =============

@dataclass
class ChunkPosition:
    start_line: int
    end_line: int
    section: Optional[str] = None
    order: int = 0


@dataclass
class ChunkMetadata:
    heading_context: List[str] = field(default_factory=list)
    code_language: Optional[str] = None
    is_decision: bool = False
    is_question: bool = False
    is_action: bool = False
    token_count: int = 0
    # Leading characters copied from the previous chunk
    overlap_chars: int = 0
    embedding_source: Optional[str] = None


@dataclass
class ChunkEmbeddings:
    content: List[float]
    contextual: List[float]
    queryable: List[float]


@dataclass
class DocumentChunk:
    """Domain model for document chunks"""
    id: str
    document_id: str
    content: str
    position: ChunkPosition
    metadata: ChunkMetadata
    embedding: Optional[List[float]] = None
    embeddings: Optional[ChunkEmbeddings] = None

    @property
    def body(self) -> str:
        """Chunk text without the overlap copied from its predecessor."""
        return self.content[self.metadata.overlap_chars:]


# ============= Relationships =============

@dataclass
class EntityReference:
    type: EntityType
    name: str
    mentions: int = 1
    positions: List[int] = field(default_factory=list)


@dataclass
class ConversationLink:
    id: str
    mentions: int
    relevance: float
    timestamp: datetime


@dataclass
class DocumentSimilarity:
    document_id: str
    similarity: float
    shared_topics: List[str] = field(default_factory=list)
    shared_entities: List[str] = field(default_factory=list)


@dataclass
class ExplicitLink:
    type: LinkType
    target: str
    context: str
    position: int


@dataclass
class RelationshipMap:
    conversations: List[ConversationLink] = field(default_factory=list)
    documents: List[DocumentSimilarity] = field(default_factory=list)
    entities: List[EntityReference] = field(default_factory=list)
    explicit_links: List[ExplicitLink] = field(default_factory=list)


@dataclass
class ConversationRecord:
    """A prior conversation, as supplied by the caller for reference detection."""
    id: str
    content: str
    timestamp: datetime


# ============= Indexed documents =============

@dataclass
class DocumentVersion:
    id: str
    document_id: str
    content: str
    created_at: datetime
    change_type: ChangeType
    change_summary: Optional[str] = None


@dataclass
class IndexedDocument:
    """Domain model for an indexed document and everything derived from it"""
    id: str
    user_id: str
    filename: str
    filetype: DocumentType
    content: str
    chunks: List[DocumentChunk] = field(default_factory=list)

    source_interface: InterfaceType = InterfaceType.API
    source_conversation_id: Optional[str] = None
    source_project_id: Optional[str] = None
    source_path: Optional[str] = None

    related_documents: List[str] = field(default_factory=list)
    related_conversations: List[str] = field(default_factory=list)
    parent_document: Optional[str] = None

    created_at: datetime = field(default_factory=utc_now)
    modified_at: datetime = field(default_factory=utc_now)
    last_accessed_at: datetime = field(default_factory=utc_now)
    version_history: List[DocumentVersion] = field(default_factory=list)

    topics: List[str] = field(default_factory=list)
    entities: List[EntityReference] = field(default_factory=list)
    summary: str = ""

    retrieval_count: int = 0
    utility_score: float = 0.5

    def __post_init__(self):
        self.utility_score = min(1.0, max(0.0, self.utility_score))


# ============= Progress =============

@dataclass
class IndexingProgress:
    document_id: str
    stage: IndexingStage = IndexingStage.PENDING
    progress: int = 0
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    filename: Optional[str] = None
    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


# ============= Configuration =============

@dataclass
class IndexingConfig:
    max_chunk_tokens: int = 500
    chunk_overlap_tokens: int = 50
    min_chunk_tokens: int = 100
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    generate_questions: bool = True
    extract_entities: bool = True
    chars_per_token: int = 4

    @classmethod
    def from_settings(cls, settings) -> "IndexingConfig":
        return cls(
            max_chunk_tokens=settings.MAX_CHUNK_TOKENS,
            chunk_overlap_tokens=settings.CHUNK_OVERLAP_TOKENS,
            min_chunk_tokens=settings.MIN_CHUNK_TOKENS,
            embedding_model=settings.EMBEDDING_MODEL_NAME,
            embedding_dimensions=settings.EMBEDDING_DIMENSIONS,
            generate_questions=settings.GENERATE_QUESTIONS,
            extract_entities=settings.EXTRACT_ENTITIES,
            chars_per_token=settings.CHARS_PER_TOKEN,
        )


@dataclass
class EmbeddingContext:
    """Document-level context used to compose contextual chunk vectors."""
    title: Optional[str] = None
    summary: Optional[str] = None
    heading_context: List[str] = field(default_factory=list)


# ============= Queries & storage results =============

@dataclass
class TimeRange:
    start: datetime
    end: datetime

    def __post_init__(self):
        self.start = ensure_utc(self.start)
        self.end = ensure_utc(self.end)

    def contains(self, moment: Optional[datetime]) -> bool:
        moment = ensure_utc(moment)
        return moment is not None and self.start <= moment <= self.end


@dataclass
class QueryRequest:
    mode: QueryMode
    user_id: str
    query: Optional[str] = None
    time_range: Optional[TimeRange] = None
    projects: Optional[List[str]] = None
    topic: Optional[str] = None
    project_id: Optional[str] = None
    limit: Optional[int] = None


@dataclass
class StorageSearchOptions:
    user_id: str
    limit: int = 10
    similarity_threshold: float = 0.5
    project_id: Optional[str] = None
    source_interface: Optional[InterfaceType] = None
    document_type: Optional[DocumentType] = None
    decisions_only: bool = False
    time_range: Optional[TimeRange] = None


@dataclass
class StorageSearchResult:
    id: str
    document_id: str
    content: str
    similarity: float
    document_title: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StorageStats:
    document_count: int = 0
    chunk_count: int = 0
    total_tokens: int = 0
    last_indexed_at: Optional[datetime] = None


@dataclass
class RetrievalResult:
    document: IndexedDocument
    relevant_chunks: List[DocumentChunk]
    score: float


@dataclass
class TimeQueryResult:
    documents: List[IndexedDocument] = field(default_factory=list)
    conversations: List[str] = field(default_factory=list)


@dataclass
class Difference:
    topic: str
    project_a: str
    project_b: str
    description_a: str
    description_b: str


@dataclass
class ComparisonResult:
    by_project: Dict[str, List[RetrievalResult]] = field(default_factory=dict)
    common_themes: List[str] = field(default_factory=list)
    differences: List[Difference] = field(default_factory=list)


# ============= Events =============

@dataclass
class DocumentEvent:
    kind: EventKind
    document_path: str
    interface: InterfaceType
    document_id: Optional[str] = None
    conversation_id: Optional[str] = None
    project_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)
