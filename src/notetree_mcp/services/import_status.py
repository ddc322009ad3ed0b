"""Pollable status of running and recently finished imports."""
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from notetree_mcp.config import config
from notetree_mcp.models.schema import ImportPhase, ImportResult

logger = logging.getLogger(__name__)

# Share of the progress bar owned by each running phase: (start, span)
PHASE_PROGRESS = {
    ImportPhase.PENDING: (0, 0),
    ImportPhase.CREATING: (0, 60),
    ImportPhase.RELINKING: (60, 30),
    ImportPhase.NORMALIZING: (90, 9),
}


def phase_progress(phase: ImportPhase, done: int, of: int) -> int:
    """Overall percentage for ``done`` of ``of`` steps within ``phase``."""
    if phase == ImportPhase.COMPLETED:
        return 100
    start, span = PHASE_PROGRESS.get(phase, (0, 0))
    if of <= 0:
        return start + span
    return start + min(span, int(span * done / of))


@dataclass
class ImportStatus:
    """Mutable status record; the registry hands out dict snapshots only."""

    import_id: str
    project_id: str
    total: int = 0
    processed: int = 0
    phase: ImportPhase = ImportPhase.PENDING
    progress: int = 0
    status_log: List[str] = field(default_factory=list)
    started_at: float = 0.0
    finished_at: Optional[float] = None
    result: Optional[ImportResult] = None
    error: Optional[str] = None

    def to_dict(self, now: float) -> Dict[str, Any]:
        end = self.finished_at if self.finished_at is not None else now
        return {
            "import_id": self.import_id,
            "project_id": self.project_id,
            "phase": self.phase.value,
            "completed": self.phase.finished,
            "progress": self.progress,
            "processed": self.processed,
            "total": self.total,
            "status": self.status_log[-1] if self.status_log else "Import pending",
            "status_log": list(self.status_log),
            "elapsed_seconds": round(end - self.started_at, 1),
            "error": self.error,
            "result": self.result.model_dump() if self.result else None,
        }


class ImportStatusRegistry:
    """Thread-safe store of import statuses keyed by import handle.

    Finished entries are dropped ``retention`` seconds after they finish.
    Running entries never expire.
    """

    def __init__(
        self,
        retention: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retention = config.import_status_retention if retention is None else retention
        self._clock = clock
        self._entries: Dict[str, ImportStatus] = {}
        self._lock = threading.Lock()

    def create(self, project_id: str, total: int = 0, import_id: Optional[str] = None) -> str:
        """Register a new import and return its handle."""
        import_id = import_id or uuid.uuid4().hex
        with self._lock:
            self._purge_unlocked()
            self._entries[import_id] = ImportStatus(
                import_id=import_id,
                project_id=project_id,
                total=total,
                started_at=self._clock(),
            )
        return import_id

    def _purge_unlocked(self) -> int:
        now = self._clock()
        expired = [
            key for key, entry in self._entries.items()
            if entry.finished_at is not None and now - entry.finished_at >= self.retention
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def purge_expired(self) -> int:
        """Drop finished entries older than the retention window."""
        with self._lock:
            removed = self._purge_unlocked()
        if removed:
            logger.debug(f"Dropped {removed} expired import statuses")
        return removed

    def get(self, import_id: str) -> Optional[Dict[str, Any]]:
        """Snapshot of an import's status, or None if unknown or expired."""
        with self._lock:
            self._purge_unlocked()
            entry = self._entries.get(import_id)
            return entry.to_dict(self._clock()) if entry else None

    def log(self, import_id: str, message: str) -> None:
        with self._lock:
            entry = self._entries.get(import_id)
            if entry is not None:
                entry.status_log.append(message)

    def set_total(self, import_id: str, total: int) -> None:
        with self._lock:
            entry = self._entries.get(import_id)
            if entry is not None:
                entry.total = total

    def advance(
        self,
        import_id: str,
        phase: ImportPhase,
        done: int,
        of: int,
        processed: Optional[int] = None,
    ) -> None:
        """Record progress of ``done``/``of`` steps in ``phase``."""
        with self._lock:
            entry = self._entries.get(import_id)
            if entry is None:
                return
            entry.phase = phase
            # Never move the bar backwards
            entry.progress = max(entry.progress, phase_progress(phase, done, of))
            if processed is not None:
                entry.processed = processed

    def finish(
        self,
        import_id: str,
        phase: ImportPhase,
        result: Optional[ImportResult] = None,
        error: Optional[str] = None,
    ) -> None:
        """Mark an import as completed, cancelled or failed."""
        with self._lock:
            entry = self._entries.get(import_id)
            if entry is None:
                return
            entry.phase = phase
            entry.result = result
            entry.error = error
            entry.finished_at = self._clock()
            if phase == ImportPhase.COMPLETED:
                entry.progress = 100

    def __contains__(self, import_id: object) -> bool:
        with self._lock:
            return import_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
