# infrastructure/progress_store.py
"""Simple in-memory progress tracking with size limit"""
import threading
from dataclasses import replace
from typing import Dict, Optional

from core.domain import IndexingProgress, utc_now
from core.enums import ErrorCode, IndexingStage

FINISHED_STAGES = (IndexingStage.COMPLETE, IndexingStage.FAILED)


class ProgressStore:
    """
    In-memory indexing progress, keyed by document id (polling endpoint).

    Auto-cleanup above max_entries shrinks the store to half, dropping
    finished (complete or failed) records before in-flight ones, oldest
    first. Lost on restart.
    Usage: start() → update() → complete()/fail(). Clients poll get(), which
    returns a copy.
    """

    def __init__(self, max_entries: int = 500):
        self.max_entries = max_entries
        self._progress: Dict[str, IndexingProgress] = {}
        self._lock = threading.Lock()

    def _cleanup_if_full(self) -> None:
        """Remove finished, then oldest, entries when limit reached"""
        if len(self._progress) < self.max_entries:
            return
        by_age = sorted(
            self._progress.values(),
            key=lambda p: (p.stage not in FINISHED_STAGES, p.started_at),
        )
        to_remove = len(self._progress) - self.max_entries // 2
        for record in by_age[:to_remove]:
            del self._progress[record.document_id]

    def start(self, document_id: str, filename: Optional[str] = None) -> None:
        with self._lock:
            self._progress.pop(document_id, None)
            self._cleanup_if_full()
            self._progress[document_id] = IndexingProgress(document_id=document_id, filename=filename)

    def update(self, document_id: str, stage: IndexingStage) -> None:
        with self._lock:
            record = self._progress.get(document_id)
            if record:
                record.stage = stage
                record.progress = stage.progress

    def fail(self, document_id: str, error: str, error_code: ErrorCode) -> None:
        with self._lock:
            record = self._progress.get(document_id)
            if record:
                record.stage = IndexingStage.FAILED
                record.progress = IndexingStage.FAILED.progress
                record.error = error
                record.error_code = error_code
                record.completed_at = utc_now()

    def complete(self, document_id: str) -> None:
        with self._lock:
            record = self._progress.get(document_id)
            if record:
                record.stage = IndexingStage.COMPLETE
                record.progress = IndexingStage.COMPLETE.progress
                record.completed_at = utc_now()

    def get(self, document_id: str) -> Optional[IndexingProgress]:
        with self._lock:
            record = self._progress.get(document_id)
            return replace(record) if record else None

    def remove(self, document_id: str) -> None:
        with self._lock:
            self._progress.pop(document_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._progress)
