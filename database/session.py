# database/session.py

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional, Tuple

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings

logger = logging.getLogger(settings.LOGGER_NAME)

Base = declarative_base()

# ============= Models =============
# Datetimes are stored naive, in UTC.

class DocumentEntity(Base):
    __tablename__ = "documents"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    filename = Column(String, nullable=False, index=True)
    filetype = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    summary = Column(Text, nullable=False, default="")

    source_interface = Column(String, nullable=False)
    source_conversation_id = Column(String, nullable=True)
    source_project_id = Column(String, nullable=True, index=True)
    source_path = Column(String, nullable=True)
    parent_document = Column(String, nullable=True)

    related_documents = Column(JSON, nullable=False, default=list)
    related_conversations = Column(JSON, nullable=False, default=list)
    version_history = Column(JSON, nullable=False, default=list)
    topics = Column(JSON, nullable=False, default=list)
    entities = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, nullable=False)
    modified_at = Column(DateTime, nullable=False, index=True)
    last_accessed_at = Column(DateTime, nullable=False)

    retrieval_count = Column(Integer, nullable=False, default=0)
    utility_score = Column(Float, nullable=False, default=0.5)


class ChunkEntity(Base):
    __tablename__ = "chunks"
    id = Column(String, primary_key=True)
    document_id = Column(String, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    chunk_order = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    start_line = Column(Integer, nullable=False)
    end_line = Column(Integer, nullable=False)
    section = Column(String, nullable=True)
    chunk_metadata = Column(JSON, nullable=False, default=dict)
    embedding = Column(JSON, nullable=True)
    embeddings = Column(JSON, nullable=True)


class RelationshipEntity(Base):
    __tablename__ = "relationships"
    document_id = Column(String, ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True)
    payload = Column(JSON, nullable=False, default=dict)


# ============= Engine =============

def create_engine_and_sessionmaker(database_url: Optional[str] = None) -> Tuple[AsyncEngine, async_sessionmaker]:
    """Async engine and session maker for the given URL (settings.DATABASE_URL by default)"""
    database_url = database_url or settings.DATABASE_URL
    options = {"echo": False, "pool_pre_ping": True}
    if not database_url.startswith("sqlite"):
        options.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_recycle=settings.DB_POOL_RECYCLE,
        )
    engine = create_async_engine(database_url, **options)
    return engine, async_sessionmaker(engine, expire_on_commit=False)


# ============= Session Factory =============

@asynccontextmanager
async def transaction(session_maker: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """
    Session wrapped in a single transaction.

    Commits on success; rolls back on any error and re-raises.
    """
    async with session_maker() as session:
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()
