# api/schemas.py
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from core.domain import (
    ComparisonResult, DocumentChunk, IndexedDocument, IndexingProgress,
    RetrievalResult, StorageStats
)
from core.enums import DocumentType, ErrorCode, IndexingStage, InterfaceType, QueryMode


# ============= Requests =============

class IndexDocumentRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    filename: str = Field(..., min_length=1)
    content: str
    path: Optional[str] = None
    document_type: Optional[DocumentType] = None
    interface: InterfaceType = InterfaceType.API
    conversation_id: Optional[str] = None
    project_id: Optional[str] = None


class ReindexDocumentRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    filename: str = Field(..., min_length=1)
    content: str
    path: Optional[str] = None
    interface: Optional[InterfaceType] = None
    conversation_id: Optional[str] = None
    project_id: Optional[str] = None


class QueryRequestModel(BaseModel):
    mode: QueryMode
    user_id: str
    query: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    projects: Optional[List[str]] = None
    topic: Optional[str] = None
    project_id: Optional[str] = None
    limit: Optional[int] = None


# ============= Responses =============

class IndexDocumentResponse(BaseModel):
    status: str
    document_id: str
    filename: str
    message: Optional[str] = None


class IndexingProgressResponse(BaseModel):
    document_id: str
    filename: Optional[str] = None
    stage: IndexingStage
    progress: int  # 0-100
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    started_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, progress: IndexingProgress) -> "IndexingProgressResponse":
        return cls(
            document_id=progress.document_id,
            filename=progress.filename,
            stage=progress.stage,
            progress=progress.progress,
            error=progress.error,
            error_code=progress.error_code,
            started_at=progress.started_at,
            completed_at=progress.completed_at,
        )


class ChunkResponse(BaseModel):
    id: str
    content: str
    order: int
    start_line: int
    end_line: int
    section: Optional[str] = None
    heading_context: List[str] = []
    token_count: int
    is_decision: bool
    is_question: bool
    is_action: bool

    @classmethod
    def from_domain(cls, chunk: DocumentChunk) -> "ChunkResponse":
        return cls(
            id=chunk.id,
            content=chunk.content,
            order=chunk.position.order,
            start_line=chunk.position.start_line,
            end_line=chunk.position.end_line,
            section=chunk.position.section,
            heading_context=chunk.metadata.heading_context,
            token_count=chunk.metadata.token_count,
            is_decision=chunk.metadata.is_decision,
            is_question=chunk.metadata.is_question,
            is_action=chunk.metadata.is_action,
        )


class DocumentResponse(BaseModel):
    id: str
    filename: str
    filetype: DocumentType
    summary: str
    topics: List[str]
    source_interface: InterfaceType
    source_project_id: Optional[str] = None
    source_conversation_id: Optional[str] = None
    source_path: Optional[str] = None
    related_documents: List[str] = []
    created_at: datetime
    modified_at: datetime
    last_accessed_at: datetime
    version_count: int
    retrieval_count: int
    utility_score: float
    chunk_count: int
    chunks: List[ChunkResponse] = []

    @classmethod
    def from_domain(cls, document: IndexedDocument, include_chunks: bool = False) -> "DocumentResponse":
        return cls(
            id=document.id,
            filename=document.filename,
            filetype=document.filetype,
            summary=document.summary,
            topics=document.topics,
            source_interface=document.source_interface,
            source_project_id=document.source_project_id,
            source_conversation_id=document.source_conversation_id,
            source_path=document.source_path,
            related_documents=document.related_documents,
            created_at=document.created_at,
            modified_at=document.modified_at,
            last_accessed_at=document.last_accessed_at,
            version_count=len(document.version_history),
            retrieval_count=document.retrieval_count,
            utility_score=document.utility_score,
            chunk_count=len(document.chunks),
            chunks=[ChunkResponse.from_domain(c) for c in document.chunks] if include_chunks else [],
        )


class RetrievalResultItem(BaseModel):
    document: DocumentResponse
    score: float
    chunks: List[ChunkResponse]

    @classmethod
    def from_domain(cls, result: RetrievalResult) -> "RetrievalResultItem":
        return cls(
            document=DocumentResponse.from_domain(result.document),
            score=result.score,
            chunks=[ChunkResponse.from_domain(c) for c in result.relevant_chunks],
        )


class DifferenceItem(BaseModel):
    topic: str
    project_a: str
    project_b: str
    description_a: str
    description_b: str


class ComparisonResponse(BaseModel):
    by_project: Dict[str, List[RetrievalResultItem]]
    common_themes: List[str]
    differences: List[DifferenceItem]

    @classmethod
    def from_domain(cls, comparison: ComparisonResult) -> "ComparisonResponse":
        return cls(
            by_project={
                project: [RetrievalResultItem.from_domain(r) for r in results]
                for project, results in comparison.by_project.items()
            },
            common_themes=comparison.common_themes,
            differences=[DifferenceItem(**vars(d)) for d in comparison.differences],
        )


class QueryResponse(BaseModel):
    mode: QueryMode
    results: List[RetrievalResultItem] = []
    documents: List[DocumentResponse] = []
    comparison: Optional[ComparisonResponse] = None


class DeleteResponse(BaseModel):
    status: str
    message: str


class StatsResponse(BaseModel):
    user_id: str
    document_count: int
    chunk_count: int
    total_tokens: int
    last_indexed_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, user_id: str, stats: StorageStats) -> "StatsResponse":
        return cls(user_id=user_id, **vars(stats))
