# api/endpoints.py
"""
API endpoints for the document indexing service.

Thin layer over IndexingPipeline. There is no authentication: the caller
supplies user_id and every read is scoped to it.
"""
import logging
from typing import List
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request

from api.schemas import (
    ComparisonResponse, DeleteResponse, DocumentResponse, IndexDocumentRequest,
    IndexDocumentResponse, IndexingProgressResponse, QueryRequestModel, QueryResponse,
    ReindexDocumentRequest, RetrievalResultItem, StatsResponse
)
from config import settings
from core.domain import ComparisonResult, QueryRequest, RawDocument, TimeQueryResult, TimeRange
from core.enums import DocumentType, ErrorCode
from core.errors import IndexingError
from services.async_processor import AsyncIndexingProcessor
from services.pipeline import IndexingPipeline
from utils.common import validate_document_id
from utils.detection import detect_document_type

logger = logging.getLogger(settings.LOGGER_NAME)

router = APIRouter()

ERROR_STATUS = {
    ErrorCode.UNSUPPORTED_TYPE: 415,
    ErrorCode.INVALID_QUERY: 422,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.ID_CONFLICT: 409,
    ErrorCode.STORAGE_FAILED: 503,
    ErrorCode.ADAPTER_FAILED: 502,
}


# ---------- Dependencies ----------
def get_pipeline(request: Request) -> IndexingPipeline:
    return request.app.state.pipeline


def get_processor(request: Request) -> AsyncIndexingProcessor:
    return request.app.state.processor


def to_http_error(error: IndexingError) -> HTTPException:
    return HTTPException(status_code=ERROR_STATUS.get(error.error_code, 500), detail=str(error))


def _check_document_id(document_id: str) -> None:
    if not validate_document_id(document_id):
        raise HTTPException(status_code=422, detail="Invalid document ID format")


def _raw_document(body) -> RawDocument:
    if len(body.content.encode("utf-8")) > settings.MAX_FILE_SIZE:
        raise HTTPException(status_code=413, detail="Document exceeds the maximum size")
    return RawDocument(
        path=body.path or body.filename,
        filename=body.filename,
        content=body.content,
        declared_type=getattr(body, "document_type", None),
        size=len(body.content),
    )


# ---------- Indexing ----------
@router.post("/documents", response_model=IndexDocumentResponse, status_code=202)
async def index_document(
    body: IndexDocumentRequest,
    pipeline: IndexingPipeline = Depends(get_pipeline),
    processor: AsyncIndexingProcessor = Depends(get_processor),
) -> IndexDocumentResponse:
    """Accept a text document and index it in the background. Poll /progress for the outcome."""
    raw = _raw_document(body)
    if (raw.declared_type or detect_document_type(raw.filename)) == DocumentType.UNSUPPORTED:
        raise HTTPException(status_code=415, detail=f"Unsupported document type: {raw.filename}")

    document_id = str(uuid4())
    pipeline.progress_store.start(document_id, raw.filename)
    processor.submit(pipeline.index_document(
        raw, body.user_id,
        interface=body.interface,
        conversation_id=body.conversation_id,
        project_id=body.project_id,
        document_id=document_id,
    ))
    return IndexDocumentResponse(
        status="accepted", document_id=document_id, filename=raw.filename,
        message="Indexing started",
    )


@router.put("/documents/{document_id}", response_model=IndexDocumentResponse, status_code=202)
async def reindex_document(
    document_id: str,
    body: ReindexDocumentRequest,
    pipeline: IndexingPipeline = Depends(get_pipeline),
    processor: AsyncIndexingProcessor = Depends(get_processor),
) -> IndexDocumentResponse:
    _check_document_id(document_id)
    raw = _raw_document(body)
    if await pipeline.get_document(document_id, body.user_id) is None:
        raise HTTPException(status_code=404, detail="Document not found")

    pipeline.progress_store.start(document_id, raw.filename)
    processor.submit(pipeline.reindex_document(
        document_id, raw, body.user_id,
        interface=body.interface,
        conversation_id=body.conversation_id,
        project_id=body.project_id,
    ))
    return IndexDocumentResponse(
        status="accepted", document_id=document_id, filename=raw.filename,
        message="Re-indexing started",
    )


@router.get("/documents/{document_id}/progress", response_model=IndexingProgressResponse)
async def get_progress(document_id: str, pipeline: IndexingPipeline = Depends(get_pipeline)):
    """Get real-time indexing progress for a document"""
    progress = pipeline.get_progress(document_id)
    if not progress:
        raise HTTPException(status_code=404, detail="No indexing status found for this document")
    return IndexingProgressResponse.from_domain(progress)


# ---------- Documents ----------
@router.get("/documents/{document_id}", response_model=DocumentResponse)
async def get_document(document_id: str, user_id: str, pipeline: IndexingPipeline = Depends(get_pipeline)):
    _check_document_id(document_id)
    try:
        document = await pipeline.get_document(document_id, user_id)
    except IndexingError as e:
        raise to_http_error(e)
    if document is None:
        raise HTTPException(status_code=404, detail="Document not found")
    return DocumentResponse.from_domain(document, include_chunks=True)


@router.delete("/documents/{document_id}", response_model=DeleteResponse)
async def delete_document(document_id: str, user_id: str, pipeline: IndexingPipeline = Depends(get_pipeline)):
    _check_document_id(document_id)
    try:
        removed = await pipeline.remove_document(document_id, user_id)
    except IndexingError as e:
        raise to_http_error(e)
    if not removed:
        raise HTTPException(status_code=404, detail="Document not found")
    return DeleteResponse(status="success", message=f"Document {document_id} deleted")


@router.get("/documents/{document_id}/related", response_model=List[DocumentResponse])
async def get_related(
    document_id: str, user_id: str, limit: int = settings.MAX_RELATED_DOCUMENTS,
    pipeline: IndexingPipeline = Depends(get_pipeline),
):
    _check_document_id(document_id)
    try:
        related = await pipeline.get_related(document_id, user_id, limit)
    except IndexingError as e:
        raise to_http_error(e)
    return [DocumentResponse.from_domain(d) for d in related]


# ---------- Retrieval ----------
@router.post("/query", response_model=QueryResponse)
async def query_documents(body: QueryRequestModel, pipeline: IndexingPipeline = Depends(get_pipeline)):
    time_range = None
    if body.start is not None and body.end is not None:
        time_range = TimeRange(start=body.start, end=body.end)

    request = QueryRequest(
        mode=body.mode,
        user_id=body.user_id,
        query=body.query,
        time_range=time_range,
        projects=body.projects,
        topic=body.topic,
        project_id=body.project_id,
        limit=body.limit,
    )
    try:
        result = await pipeline.query(request)
    except IndexingError as e:
        raise to_http_error(e)

    if isinstance(result, TimeQueryResult):
        return QueryResponse(mode=body.mode, documents=[DocumentResponse.from_domain(d) for d in result.documents])
    if isinstance(result, ComparisonResult):
        return QueryResponse(mode=body.mode, comparison=ComparisonResponse.from_domain(result))
    return QueryResponse(mode=body.mode, results=[RetrievalResultItem.from_domain(r) for r in result])


@router.get("/stats/{user_id}", response_model=StatsResponse)
async def get_stats(user_id: str, pipeline: IndexingPipeline = Depends(get_pipeline)):
    try:
        stats = await pipeline.get_stats(user_id)
    except IndexingError as e:
        raise to_http_error(e)
    return StatsResponse.from_domain(user_id, stats)


@router.get("/health")
async def health_check():
    return {"status": "ok", "version": settings.APP_VERSION}
