"""
Checkpoint store for resumable export sessions.

Persists the session checkpoint as JSON so any later slice can resume
exactly where the previous one stopped.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Union

from .errors import CheckpointCorruptedError
from .types import SessionCheckpoint
from .utils import atomic_write_json, read_json, remove_file

logger = logging.getLogger(__name__)

CHECKPOINT_FILENAME = "checkpoint.json"


class CheckpointStore:
    """Load and atomically save the active session's checkpoint."""

    def __init__(self, export_dir: Union[str, Path]):
        """
        Initialize checkpoint store.

        Args:
            export_dir: Directory holding the session's state files
        """
        self.export_dir = Path(export_dir)
        self.checkpoint_file = self.export_dir / CHECKPOINT_FILENAME
        self.logger = logging.getLogger(f"{__name__}.CheckpointStore")

    def exists(self) -> bool:
        return self.checkpoint_file.exists()

    def load(self, session_id: Optional[str] = None) -> Optional[SessionCheckpoint]:
        """
        Load the checkpoint from disk.

        Args:
            session_id: When given, a checkpoint for another session is ignored

        Returns:
            The checkpoint, or None if there is none for this session

        Raises:
            CheckpointCorruptedError: If the file exists but cannot be parsed
        """
        if not self.checkpoint_file.exists():
            return None

        try:
            data = read_json(self.checkpoint_file)
            checkpoint = SessionCheckpoint.from_dict(data)
        except (OSError, json.JSONDecodeError, TypeError, ValueError) as e:
            raise CheckpointCorruptedError(
                f"Cannot read checkpoint {self.checkpoint_file}", technical=str(e)
            )

        if session_id is not None and checkpoint.session_id != session_id:
            self.logger.warning(
                f"Ignoring checkpoint of session {checkpoint.session_id} (expected {session_id})"
            )
            return None
        return checkpoint

    def save(self, checkpoint: SessionCheckpoint) -> None:
        """Write the checkpoint atomically, stamping ``last_update_time``."""
        checkpoint.touch()
        atomic_write_json(self.checkpoint_file, checkpoint.to_dict())
        self.logger.debug(
            f"Saved checkpoint: phase={checkpoint.phase.value} csv={checkpoint.csv_cursor} "
            f"archive={checkpoint.archive_cursor} tables={checkpoint.table_cursor}"
        )

    def delete(self) -> bool:
        removed = remove_file(self.checkpoint_file)
        if removed:
            self.logger.info("Checkpoint cleared")
        return removed
