"""
Completion checks run before a session is marked done.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List

from .archive import verify_archive
from .database import dump_is_complete
from .session import ExportSession
from .types import SessionCheckpoint

logger = logging.getLogger(__name__)


@dataclass
class ValidationReport:
    """Problems found in the finished artifacts."""
    problems: List[str] = field(default_factory=list)
    archived: int = 0
    cataloged: int = 0

    @property
    def valid(self) -> bool:
        return not self.problems


def archived_ratio_ok(archived: int, cataloged: int, min_percent: int) -> bool:
    """
    Check the archived-vs-cataloged ratio with integer arithmetic.

    The session passes only while the missing share stays strictly below
    ``100 - min_percent`` percent.
    """
    if cataloged <= 0:
        return True
    missing = max(0, cataloged - archived)
    return missing * 100 < cataloged * (100 - min_percent)


class CompletionValidator:
    """Final correctness gate for an export session."""

    def __init__(self, session: ExportSession):
        self.session = session
        self.config = session.config
        self.logger = logging.getLogger(f"{__name__}.CompletionValidator")

    def validate(self, checkpoint: SessionCheckpoint) -> ValidationReport:
        report = ValidationReport(archived=checkpoint.files_processed, cataloged=checkpoint.catalog_total)

        if not archived_ratio_ok(checkpoint.files_processed, checkpoint.catalog_total, self.config.min_archived_percent):
            report.problems.append(
                f"only {checkpoint.files_processed} of {checkpoint.catalog_total} cataloged files were archived "
                f"(minimum {self.config.min_archived_percent}%)"
            )

        self._check_archive(checkpoint, report)
        self._check_database(checkpoint, report)
        self._check_file(self.session.metadata_path, "metadata", report)

        if report.valid:
            self.logger.info(
                f"Validation passed: {report.archived}/{report.cataloged} files archived, "
                f"{checkpoint.total_tables} tables dumped"
            )
        else:
            self.logger.error(f"Validation failed: {'; '.join(report.problems)}")
        return report

    def _check_file(self, path: str, label: str, report: ValidationReport, allow_empty: bool = False) -> bool:
        if not os.path.isfile(path):
            report.problems.append(f"{label} artifact is missing: {os.path.basename(path)}")
            return False
        if not allow_empty and os.path.getsize(path) == 0:
            report.problems.append(f"{label} artifact is empty: {os.path.basename(path)}")
            return False
        return True

    def _check_archive(self, checkpoint: SessionCheckpoint, report: ValidationReport) -> None:
        path = self.session.archive_path
        if not self._check_file(path, "archive", report, allow_empty=checkpoint.catalog_total == 0):
            return

        scan = verify_archive(path)
        if not scan.valid:
            report.problems.append(f"archive is damaged: {scan.error}")
            return
        if scan.length != checkpoint.archive_cursor:
            report.problems.append(
                f"archive is {scan.length} bytes but {checkpoint.archive_cursor} were recorded"
            )
        if scan.entries != checkpoint.files_processed:
            report.problems.append(
                f"archive holds {scan.entries} entries but {checkpoint.files_processed} files were recorded"
            )

    def _check_database(self, checkpoint: SessionCheckpoint, report: ValidationReport) -> None:
        if not checkpoint.database_artifact:
            report.problems.append("database dump was never finalized")
            return
        path = self.session.path(checkpoint.database_artifact)
        if not self._check_file(path, "database", report):
            return
        try:
            complete = dump_is_complete(path)
        except (OSError, EOFError) as e:
            report.problems.append(f"database dump is unreadable: {e}")
            return
        if not complete:
            report.problems.append("database dump has no completion marker")
        if checkpoint.table_cursor < checkpoint.total_tables:
            report.problems.append(
                f"only {checkpoint.table_cursor} of {checkpoint.total_tables} tables were dumped"
            )
