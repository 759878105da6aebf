# core/enums.py
"""Shared enumerations used across the application."""
from enum import Enum


class ErrorCode(str, Enum):
    """Error codes carried by indexing failures and progress records."""
    UNSUPPORTED_TYPE = "UNSUPPORTED_TYPE"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    STORAGE_FAILED = "STORAGE_FAILED"
    ADAPTER_FAILED = "ADAPTER_FAILED"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    INVALID_QUERY = "INVALID_QUERY"
    NOT_FOUND = "NOT_FOUND"
    CANCELLED = "CANCELLED"
    PROCESSING_FAILED = "PROCESSING_FAILED"
    ID_CONFLICT = "ID_CONFLICT"


class DocumentType(str, Enum):
    """Content categories recognized by the type detector."""
    MARKDOWN = "markdown"
    PLAINTEXT = "plaintext"
    CODE = "code"
    JSON = "json"
    YAML = "yaml"
    HTML = "html"
    PDF = "pdf"
    DOCX = "docx"
    UNSUPPORTED = "unsupported"


class InterfaceType(str, Enum):
    """Client surface a document originated from."""
    WEB = "web"
    VSCODE = "vscode"
    MOBILE = "mobile"
    VOICE = "voice"
    API = "api"


class IndexingStage(str, Enum):
    """Indexing pipeline stages, in execution order."""
    PENDING = "pending"
    DETECTION = "detection"
    EXTRACTION = "extraction"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    RELATIONSHIPS = "relationships"
    STORAGE = "storage"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def progress(self) -> int:
        return STAGE_PROGRESS[self]

    @property
    def is_terminal(self) -> bool:
        return self in (IndexingStage.COMPLETE, IndexingStage.FAILED)


STAGE_PROGRESS = {
    IndexingStage.PENDING: 0,
    IndexingStage.DETECTION: 10,
    IndexingStage.EXTRACTION: 20,
    IndexingStage.CHUNKING: 40,
    IndexingStage.EMBEDDING: 60,
    IndexingStage.RELATIONSHIPS: 80,
    IndexingStage.STORAGE: 90,
    IndexingStage.COMPLETE: 100,
    IndexingStage.FAILED: 0,
}


class EventKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


class ChangeType(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"


class EntityType(str, Enum):
    PERSON = "person"
    COMPANY = "company"
    CONCEPT = "concept"
    TECHNOLOGY = "technology"
    PLACE = "place"


class LinkType(str, Enum):
    URL = "url"
    FILE_REFERENCE = "file_reference"
    MENTION = "mention"


class QueryMode(str, Enum):
    """Retrieval modes accepted by the query facade."""
    NAME = "name"
    CONCEPT = "concept"
    TIME = "time"
    CROSS_PROJECT = "cross-project"
