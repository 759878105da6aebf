# config.py
"""Indexing pipeline configuration"""
from pydantic_settings import BaseSettings
from utils.common import get_log_file_path

class Settings(BaseSettings):
    """Application configuration"""

    # Logger configuration
    LOG_FILE_PATH: str = get_log_file_path()
    LOGGER_NAME: str = "docindex"
    LOG_LEVEL: str = "INFO"
    LOG_MAX_BYTES: int = 5 * 1024 * 1024
    LOG_BACKUP_COUNT: int = 5

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./docindex.db"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE: int = 3600  # Recycle connections after 1 hour

    # Storage backend: "sql" (SQLAlchemy engine) or "memory" (development)
    STORAGE_BACKEND: str = "sql"

    # Embedding backend: "sentence-transformers" or "none" (offline mock vectors)
    EMBEDDING_PROVIDER: str = "sentence-transformers"
    EMBEDDING_MODEL_NAME: str = "paraphrase-multilingual-mpnet-base-v2"
    EMBEDDING_DIMENSIONS: int = 1536
    EMBEDDING_BATCH_SIZE: int = 32
    EMBEDDING_MAX_CONCURRENCY: int = 4

    # Chunking (token sizes are estimates, CHARS_PER_TOKEN chars per token)
    MAX_CHUNK_TOKENS: int = 500
    CHUNK_OVERLAP_TOKENS: int = 50
    MIN_CHUNK_TOKENS: int = 100
    CHARS_PER_TOKEN: int = 4
    GENERATE_QUESTIONS: bool = True
    EXTRACT_ENTITIES: bool = True

    # Language model backend: "ollama", "heuristic" (offline rules) or "none"
    LLM_PROVIDER: str = "none"
    LLM_MODEL_NAME: str = "llama3.1"
    LLM_BASE_URL: str = "http://localhost:11434"
    REQUEST_TIMEOUT: int = 60

    # Relationship mapping
    DOCUMENT_SIMILARITY_THRESHOLD: float = 0.7
    MAX_RELATED_DOCUMENTS: int = 10
    RELATIONSHIP_MAX_WORKERS: int = 8

    # Query defaults
    CONCEPT_SIMILARITY_THRESHOLD: float = 0.5
    DEFAULT_QUERY_LIMIT: int = 10

    # Progress tracking / background work
    PROGRESS_MAX_ENTRIES: int = 500
    BACKGROUND_WORKERS: int = 3
    MAX_FILE_SIZE: int = 10 * 1024 * 1024

    # App metadata
    APP_TITLE: str = "Document Indexing Service"
    APP_VERSION: str = "1.0.0"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

settings = Settings()
