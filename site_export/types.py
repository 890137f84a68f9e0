"""
Type definitions for the site export engine.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ExportPhase(str, Enum):
    """Phases of an export session, in execution order."""
    INIT = "init"
    ENUMERATE = "enumerate"
    ARCHIVE = "archive"
    DATABASE = "database"
    METADATA = "metadata"
    FINALIZE = "finalize"
    DONE = "done"

    @property
    def order(self) -> int:
        return PHASE_ORDER.index(self)

    def next(self) -> Optional["ExportPhase"]:
        """Return the phase that follows this one, or None after DONE."""
        if self is ExportPhase.DONE:
            return None
        return PHASE_ORDER[self.order + 1]


PHASE_ORDER: List[ExportPhase] = [
    ExportPhase.INIT,
    ExportPhase.ENUMERATE,
    ExportPhase.ARCHIVE,
    ExportPhase.DATABASE,
    ExportPhase.METADATA,
    ExportPhase.FINALIZE,
    ExportPhase.DONE,
]


class ExportStatus(str, Enum):
    """Status tokens written to the status file."""
    STARTING = "starting"
    ENUMERATING = "enumerating"
    ARCHIVING = "archiving"
    EXPORTING_DATABASE = "exporting_database"
    GENERATING_METADATA = "generating_metadata"
    FINALIZING = "finalizing"
    PAUSED = "paused"
    DONE = "done"
    ERROR = "error"


PHASE_STATUS: Dict[ExportPhase, ExportStatus] = {
    ExportPhase.INIT: ExportStatus.STARTING,
    ExportPhase.ENUMERATE: ExportStatus.ENUMERATING,
    ExportPhase.ARCHIVE: ExportStatus.ARCHIVING,
    ExportPhase.DATABASE: ExportStatus.EXPORTING_DATABASE,
    ExportPhase.METADATA: ExportStatus.GENERATING_METADATA,
    ExportPhase.FINALIZE: ExportStatus.FINALIZING,
    ExportPhase.DONE: ExportStatus.DONE,
}


class ExportMode(str, Enum):
    """How the next slice of a session gets triggered."""
    SCHEDULED = "scheduled"
    STEP = "step"


class SliceOutcome(str, Enum):
    """Outcome of one bounded slice of work."""
    COMPLETED = "completed"
    PAUSED = "paused"
    BUSY = "busy"
    ERROR = "error"


@dataclass
class CatalogEntry:
    """One row of the file catalog."""
    absolute_path: str
    relative_path: str
    size: int
    mtime: int
    # Byte offset in the catalog just past this row
    offset: int = 0

    def to_row(self) -> List[str]:
        return [self.absolute_path, self.relative_path, str(self.size), str(self.mtime)]


@dataclass
class EnumerationStats:
    """Aggregate counts produced by a catalog walk."""
    files_found: int = 0
    files_excluded: int = 0
    files_excluded_by_size: int = 0
    errors: int = 0
    total_size: int = 0
    elapsed: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnumerationStats":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class SessionCheckpoint:
    """Persisted progress of the active session."""
    session_id: str
    phase: ExportPhase = ExportPhase.INIT
    csv_cursor: int = 0
    archive_cursor: int = 0
    files_processed: int = 0
    bytes_processed: int = 0
    files_failed: int = 0
    bytes_failed: int = 0
    catalog_total: int = 0
    enumeration: Dict[str, Any] = field(default_factory=dict)
    table_cursor: int = 0
    tables: List[str] = field(default_factory=list)
    total_tables: int = 0
    table_rows: Dict[str, int] = field(default_factory=dict)
    rows_exported: int = 0
    db_bytes_written: int = 0
    db_temp_path: Optional[str] = None
    db_batches_failed: int = 0
    dialect: Optional[str] = None
    server_version: Optional[List[int]] = None
    database_artifact: Optional[str] = None
    restart_count: int = 0
    last_update_time: Optional[float] = None

    def touch(self) -> None:
        self.last_update_time = time.time()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-compatible dictionary."""
        data = asdict(self)
        data["phase"] = self.phase.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionCheckpoint":
        """Create from dictionary, ignoring unknown keys."""
        values = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        values["phase"] = ExportPhase(values.get("phase", ExportPhase.INIT.value))
        return cls(**values)


@dataclass
class ArtifactNames:
    """Randomized file names of a session's artifacts, relative to the export dir."""
    archive: str
    sql: str
    metadata: str
    log: str
    catalog: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArtifactNames":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__})


@dataclass
class SliceResult:
    """Result of running one slice against a session."""
    session_id: str
    phase: Optional[ExportPhase]
    outcome: SliceOutcome
    next_phase: Optional[ExportPhase] = None
    status: Optional[str] = None
    message: str = ""
    checkpoint: Optional[Dict[str, Any]] = None

    @property
    def completed(self) -> bool:
        return self.outcome == SliceOutcome.COMPLETED

    @property
    def paused(self) -> bool:
        return self.outcome in (SliceOutcome.PAUSED, SliceOutcome.BUSY)

    @property
    def finished(self) -> bool:
        """True once the session needs no further slices."""
        return self.outcome == SliceOutcome.ERROR or (self.completed and self.next_phase is None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "phase": self.phase.value if self.phase else None,
            "outcome": self.outcome.value,
            "next_phase": self.next_phase.value if self.next_phase else None,
            "status": self.status,
            "message": self.message,
            "checkpoint": self.checkpoint,
        }

    def to_step_response(self) -> Dict[str, Any]:
        """Shape returned to an external step caller."""
        return {
            "session_id": self.session_id,
            "completed": self.completed,
            "next_phase": self.next_phase.value if self.next_phase else None,
            "checkpoint": self.checkpoint,
            "paused": self.paused,
            "status": self.status,
            "message": self.message,
            "error": self.message if self.outcome == SliceOutcome.ERROR else None,
        }
