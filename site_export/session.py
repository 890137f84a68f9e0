"""
Session records and artifact naming.

An export directory holds at most one session record. It names the
session's randomized artifact files and carries the session-scoped
configuration every slice is run with.
"""

from __future__ import annotations

import glob
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .config import ExportConfig
from .errors import OutputUnavailableError, SessionNotFoundError
from .types import ArtifactNames, ExportMode
from .utils import atomic_write_json, now_iso, random_token, read_json, remove_file

logger = logging.getLogger(__name__)

SESSION_FILENAME = "session.json"
CATALOG_PREFIX = "catalog_"
DB_TEMP_PREFIX = "db_export_temp_"

# Artifact patterns left behind by earlier sessions
STALE_PATTERNS = (
    "content_*",
    "db_*.sql",
    "db_*.sql.gz",
    "db_*.sql.gz.part",
    "meta_*.json",
    "log_*.txt",
    "log_*.txt.1",
    f"{CATALOG_PREFIX}*.csv",
    f"{DB_TEMP_PREFIX}*.sql",
)


def artifact_names(archive_extension: str = "archive") -> ArtifactNames:
    """
    Generate randomized artifact file names for a new session.

    Names follow ``<kind>_<16 hex>_<unix ts>_<pid>_<YYYYMMDD-HHMMSS>``.
    """
    stem = f"{random_token(8)}_{int(time.time())}_{os.getpid()}_{datetime.now().strftime('%Y%m%d-%H%M%S')}"
    return ArtifactNames(
        archive=f"content_{stem}.{archive_extension}",
        sql=f"db_{stem}.sql",
        metadata=f"meta_{stem}.json",
        log=f"log_{stem}.txt",
        catalog=f"{CATALOG_PREFIX}{stem}.csv",
    )


@dataclass
class ExportSession:
    """One end-to-end export attempt."""
    session_id: str
    created_at: str
    mode: ExportMode
    config: ExportConfig
    artifacts: ArtifactNames

    @property
    def export_dir(self) -> Path:
        return Path(self.config.export_dir)

    def path(self, name: str) -> str:
        return str(self.export_dir / name)

    @property
    def archive_path(self) -> str:
        return self.path(self.artifacts.archive)

    @property
    def sql_path(self) -> str:
        return self.path(self.artifacts.sql)

    @property
    def metadata_path(self) -> str:
        return self.path(self.artifacts.metadata)

    @property
    def log_path(self) -> str:
        return self.path(self.artifacts.log)

    @property
    def catalog_path(self) -> str:
        return self.path(self.artifacts.catalog)

    def artifact_paths(self) -> Dict[str, str]:
        return {
            "archive": self.archive_path,
            "sql": self.sql_path,
            "metadata": self.metadata_path,
            "log": self.log_path,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "created_at": self.created_at,
            "mode": self.mode.value,
            "config": self.config.to_dict(),
            "artifacts": self.artifacts.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExportSession":
        return cls(
            session_id=data["session_id"],
            created_at=data["created_at"],
            mode=ExportMode(data.get("mode", ExportMode.SCHEDULED.value)),
            config=ExportConfig.from_dict(data["config"]),
            artifacts=ArtifactNames.from_dict(data["artifacts"]),
        )


class SessionStore:
    """Persist the session record of an export directory."""

    def __init__(self, export_dir: Union[str, Path]):
        self.export_dir = Path(export_dir)
        self.session_file = self.export_dir / SESSION_FILENAME
        self.logger = logging.getLogger(f"{__name__}.SessionStore")

    def new(self, config: ExportConfig, mode: ExportMode = ExportMode.SCHEDULED) -> ExportSession:
        """Build a session with fresh artifact names without persisting it."""
        try:
            self.export_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OutputUnavailableError(f"Cannot create export directory {self.export_dir}", technical=str(e))

        session = ExportSession(
            session_id=uuid.uuid4().hex,
            created_at=now_iso(),
            mode=mode,
            config=config,
            artifacts=artifact_names(config.archive_extension),
        )
        return session

    def save(self, session: ExportSession) -> None:
        atomic_write_json(self.session_file, session.to_dict())

    def load(self) -> Optional[ExportSession]:
        if not self.session_file.exists():
            return None
        try:
            return ExportSession.from_dict(read_json(self.session_file))
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            self.logger.error(f"Unreadable session record {self.session_file}: {e}")
            return None

    def get(self, session_id: str) -> ExportSession:
        """
        Load the session record and check it belongs to ``session_id``.

        Raises:
            SessionNotFoundError: If the directory holds no such session
        """
        session = self.load()
        if session is None or session.session_id != session_id:
            raise SessionNotFoundError(f"Unknown export session: {session_id}")
        return session

    def cleanup_previous(self, keep: Optional[ExportSession] = None) -> List[str]:
        """
        Delete artifacts left by earlier sessions.

        Args:
            keep: Session whose artifacts must survive

        Returns:
            Names of deleted files
        """
        keep_names = set()
        if keep is not None:
            keep_names = {
                keep.artifacts.archive,
                keep.artifacts.sql,
                keep.artifacts.sql + ".gz",
                keep.artifacts.metadata,
                keep.artifacts.log,
                keep.artifacts.catalog,
            }

        removed = []
        for pattern in STALE_PATTERNS:
            for path in glob.glob(str(self.export_dir / pattern)):
                name = os.path.basename(path)
                if name in keep_names or name.startswith(tuple(keep_names)):
                    continue
                if remove_file(path):
                    removed.append(name)

        if removed:
            self.logger.info(f"Removed {len(removed)} artifacts of previous sessions")
        return removed
