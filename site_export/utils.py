"""
Utility functions for the site export engine.

Common helpers for time, atomic file writes and formatting.
"""

from __future__ import annotations

import json
import os
import secrets
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Union


PathLike = Union[str, Path]


def now_iso() -> str:
    """Get current time as ISO8601 string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def random_token(nbytes: int = 8) -> str:
    """Return a random lowercase hex token of ``2 * nbytes`` characters."""
    return secrets.token_hex(nbytes)


def atomic_write_text(path: PathLike, text: str) -> None:
    """
    Write text so readers never observe a partially written file.

    The content goes to a sibling temp file which is fsynced and then
    renamed over the target.

    Args:
        path: Destination file
        text: Content to write
    """
    path = Path(path)
    temp_file = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    with open(temp_file, "w", encoding="utf-8") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    temp_file.replace(path)


def atomic_write_json(path: PathLike, data: Any, indent: int = 2) -> None:
    """Serialize data as JSON and write it atomically."""
    atomic_write_text(path, json.dumps(data, indent=indent, ensure_ascii=False))


def read_json(path: PathLike) -> Any:
    """
    Read JSON file.

    Args:
        path: File path

    Returns:
        Parsed JSON data
    """
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def remove_file(path: PathLike) -> bool:
    """Delete a file if it exists; return True when something was removed."""
    try:
        os.unlink(path)
        return True
    except FileNotFoundError:
        return False


def format_bytes(size: int) -> str:
    """Format a byte count for log messages."""
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.2f} {unit}"
        value /= 1024
    return f"{value:.2f} GB"
