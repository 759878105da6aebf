# services/events.py
"""Document change events from client surfaces"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from config import settings
from core.domain import DocumentEvent
from services.extractor_factory import ExtractorFactory
from utils.detection import detect_document_type, is_supported

logger = logging.getLogger(settings.LOGGER_NAME)

EventHandler = Callable[[DocumentEvent], Awaitable[object]]


def should_index(path: str, extractor_factory: Optional[ExtractorFactory] = None) -> bool:
    """True when the path's type is detected and an extractor is registered for it."""
    if not is_supported(path):
        return False
    factory = extractor_factory or ExtractorFactory()
    return factory.supports(detect_document_type(path))


class EventDispatcher:
    """
    Fans each event out to every subscribed handler concurrently.

    A failing handler is logged; it never stops its siblings and never
    reaches the emitter. emit() returns one outcome per handler (None on
    success, the exception otherwise) in subscription order.
    """

    def __init__(self):
        self._handlers: List[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    async def emit(self, event: DocumentEvent) -> List[Optional[BaseException]]:
        handlers = list(self._handlers)
        if not handlers:
            return []

        results = await asyncio.gather(*(handler(event) for handler in handlers), return_exceptions=True)
        outcomes: List[Optional[BaseException]] = []
        for handler, result in zip(handlers, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                name = getattr(handler, "__name__", repr(handler))
                logger.error(
                    f"Event handler {name} failed for {event.kind.value} {event.document_path}: {result}",
                    exc_info=result,
                )
                outcomes.append(result)
            else:
                outcomes.append(None)
        return outcomes


def create_event_handler(pipeline, user_id: str, loader) -> EventHandler:
    """Bind a pipeline to one user's events; loader(path) returns the RawDocument."""

    async def handle(event: DocumentEvent):
        if not should_index(event.document_path, pipeline.extractor_factory):
            logger.debug(f"Ignoring {event.kind.value} event for {event.document_path}")
            return None
        return await pipeline.handle_event(event, user_id, loader)

    handle.__name__ = f"index_events_for_{user_id}"
    return handle
