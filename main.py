# main.py
"""Main application with background processing cleanup"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from api.endpoints import router
from config import settings
from services.async_processor import AsyncIndexingProcessor
from services.factory import build_pipeline
from services.logger_config import setup_logging
from services.pipeline import IndexingPipeline

setup_logging()
logger = logging.getLogger(settings.LOGGER_NAME)


def create_app(pipeline: Optional[IndexingPipeline] = None) -> FastAPI:
    """Build the FastAPI app. A pipeline passed in replaces the configured one."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager"""
        logger.info("Starting application...")

        app.state.pipeline = pipeline or build_pipeline()
        await app.state.pipeline.storage.initialize()
        logger.info("Storage initialized")

        app.state.processor = AsyncIndexingProcessor(max_workers=settings.BACKGROUND_WORKERS)
        logger.info("Services initialized")
        yield

        # Cleanup background tasks on shutdown
        logger.info("Shutting down background processor...")
        await app.state.processor.shutdown()
        close = getattr(app.state.pipeline.storage, "close", None)
        if close is not None:
            await close()

        logger.info("Application shutdown complete")

    app = FastAPI(title=settings.APP_TITLE, version=settings.APP_VERSION, lifespan=lifespan)
    app.include_router(router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
