"""
Export status token.

A single line of text holding the current phase token or ``error:<msg>``.
The file's modification time doubles as the session heartbeat.
"""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Callable, Optional, Union

from .types import ExportStatus
from .utils import atomic_write_text

STATUS_FILENAME = "status.txt"
ERROR_PREFIX = "error:"

# Tokens of a session that is still doing work
ACTIVE_TOKENS = frozenset(
    status.value
    for status in ExportStatus
    if status not in (ExportStatus.DONE, ExportStatus.ERROR)
)


def error_token(message: str) -> str:
    return f"{ERROR_PREFIX} {message}"


def is_error(token: Optional[str]) -> bool:
    return bool(token) and token.startswith(ERROR_PREFIX)


def is_terminal(token: Optional[str]) -> bool:
    return token == ExportStatus.DONE.value or is_error(token)


def error_message(token: str) -> str:
    return token[len(ERROR_PREFIX):].strip() if is_error(token) else ""


class StatusStore:
    """Read and write the status token of an export directory."""

    def __init__(self, export_dir: Union[str, Path], clock: Callable[[], float] = time.time):
        self.status_file = Path(export_dir) / STATUS_FILENAME
        self.clock = clock

    def write(self, token: Union[str, ExportStatus]) -> None:
        if isinstance(token, ExportStatus):
            token = token.value
        atomic_write_text(self.status_file, " ".join(token.split()) + "\n")

    def read(self) -> Optional[str]:
        try:
            return self.status_file.read_text(encoding="utf-8").strip() or None
        except FileNotFoundError:
            return None

    def last_heartbeat(self) -> Optional[float]:
        try:
            return os.stat(self.status_file).st_mtime
        except FileNotFoundError:
            return None

    def heartbeat_age(self) -> Optional[float]:
        """Seconds since the status was last written, or None without a status."""
        heartbeat = self.last_heartbeat()
        if heartbeat is None:
            return None
        return max(0.0, self.clock() - heartbeat)
