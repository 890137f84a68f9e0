"""
Metadata artifact describing a finished export.
"""

from __future__ import annotations

import logging
import os
import platform
import socket
import sys
from typing import Any, Dict

from sqlalchemy.engine import make_url

from . import __version__
from .archive import HEADER_SIZE
from .session import ExportSession
from .types import SessionCheckpoint
from .utils import atomic_write_json, now_iso

logger = logging.getLogger(__name__)

ARCHIVE_FORMAT = "site-export-archive/1"


def build_metadata(session: ExportSession, checkpoint: SessionCheckpoint) -> Dict[str, Any]:
    """
    Collect site, runtime and database facts plus export provenance.

    Args:
        session: The session being exported
        checkpoint: Checkpoint after the database phase

    Returns:
        JSON-compatible metadata document
    """
    config = session.config
    enumeration = checkpoint.enumeration or {}

    database_url = None
    if config.database_url:
        database_url = make_url(config.database_url).render_as_string(hide_password=True)

    return {
        "site_info": {
            "name": config.site_name,
            "url": config.site_url,
            "source_path": config.source_dir,
            "base_path_name": config.base_path_name,
            "content_size": enumeration.get("total_size", 0),
        },
        "export_info": {
            "session_id": session.session_id,
            "created_at": session.created_at,
            "completed_at": now_iso(),
            "exporter_version": __version__,
            "export_type": "full",
            "export_mode": session.mode.value,
            "archive_format": ARCHIVE_FORMAT,
            "archive_header_size": HEADER_SIZE,
            "files": {
                "archive": session.artifacts.archive,
                "database": checkpoint.database_artifact,
                "log": session.artifacts.log,
            },
            "file_count": checkpoint.files_processed,
            "files_cataloged": checkpoint.catalog_total,
            "files_failed": checkpoint.files_failed,
            "bytes_archived": checkpoint.bytes_processed,
            "archive_size": checkpoint.archive_cursor,
            "restart_count": checkpoint.restart_count,
        },
        "database": {
            "url": database_url,
            "dialect": checkpoint.dialect,
            "server_version": ".".join(str(part) for part in checkpoint.server_version or []) or None,
            "charset": config.db_charset,
            "tables_count": checkpoint.total_tables,
            "tables": checkpoint.table_rows,
            "rows_exported": checkpoint.rows_exported,
            "batches_failed": checkpoint.db_batches_failed,
            "compressed": bool(checkpoint.database_artifact and checkpoint.database_artifact.endswith(".gz")),
        },
        "system_info": {
            "python_version": platform.python_version(),
            "platform": platform.platform(),
            "hostname": socket.gethostname(),
            "pid": os.getpid(),
            "executable": sys.executable,
        },
        "enumeration": enumeration,
    }


def write_metadata(session: ExportSession, checkpoint: SessionCheckpoint) -> str:
    """Write the metadata artifact and return its path."""
    metadata = build_metadata(session, checkpoint)
    atomic_write_json(session.metadata_path, metadata)
    logger.info(f"Metadata written to {session.metadata_path}")
    return session.metadata_path
