"""
Phase state machine shared by every driver.

One call to ``run_one_slice`` performs one bounded unit of work for the
session's current phase, persists the checkpoint and returns. The engine
does not know which trigger invoked it; drivers decide when the next slice
runs.
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from celery.exceptions import SoftTimeLimitExceeded

from .archive import ArchivePacker
from .catalog import CatalogEnumerator
from .checkpoint import CheckpointStore
from .config import ExportConfig, Settings, settings
from .database import DatabaseDumper
from .errors import (
    ExportError,
    IncompleteArchiveError,
    LeaseHeldError,
    OutputUnavailableError,
    SessionNotFoundError,
    ValidationFailedError,
    format_status_message,
)
from .lease import Lease
from .logging_config import session_log
from .metadata import write_metadata
from .session import DB_TEMP_PREFIX, ExportSession, SessionStore
from .status import StatusStore, error_message, error_token, is_error
from .types import (
    PHASE_STATUS,
    ExportMode,
    ExportPhase,
    ExportStatus,
    SessionCheckpoint,
    SliceOutcome,
    SliceResult,
)
from .utils import remove_file
from .validator import CompletionValidator, archived_ratio_ok

logger = logging.getLogger(__name__)

SESSION_LEASE_FILENAME = "export.lock"
SLICE_LEASE_FILENAME = "slice.lock"

DumperFactory = Callable[[ExportConfig], DatabaseDumper]


class ExportEngine:
    """Run export sessions one slice at a time."""

    def __init__(
        self,
        app_settings: Optional[Settings] = None,
        export_dir: Optional[Union[str, Path]] = None,
        clock: Callable[[], float] = time.time,
        dumper_factory: Optional[DumperFactory] = None,
    ):
        """
        Initialize the engine for one export directory.

        Args:
            app_settings: Process settings; the global settings when omitted
            export_dir: Directory holding state files and artifacts
            clock: Wall clock used for leases and heartbeats
            dumper_factory: Builds the database dumper for a session configuration
        """
        self.settings = app_settings or settings
        self.export_dir = Path(export_dir or self.settings.EXPORT_DIR).resolve()
        self.clock = clock
        self.dumper_factory = dumper_factory or DatabaseDumper

        self.sessions = SessionStore(self.export_dir)
        self.checkpoints = CheckpointStore(self.export_dir)
        self.status_store = StatusStore(self.export_dir, clock)
        self.session_lease = Lease(
            self.export_dir / SESSION_LEASE_FILENAME, self.settings.LOCK_STALE_AFTER_SECONDS, clock
        )
        self.slice_lease = Lease(
            self.export_dir / SLICE_LEASE_FILENAME, self.settings.SLICE_STALE_AFTER_SECONDS, clock
        )
        self.logger = logging.getLogger(f"{__name__}.ExportEngine")

        self._handlers: Dict[ExportPhase, Callable[[ExportSession, SessionCheckpoint], bool]] = {
            ExportPhase.INIT: self._run_init,
            ExportPhase.ENUMERATE: self._run_enumerate,
            ExportPhase.ARCHIVE: self._run_archive,
            ExportPhase.DATABASE: self._run_database,
            ExportPhase.METADATA: self._run_metadata,
            ExportPhase.FINALIZE: self._run_finalize,
        }

    # Session lifecycle

    def start(self, config: Optional[ExportConfig] = None, mode: ExportMode = ExportMode.SCHEDULED) -> ExportSession:
        """
        Start a fresh session.

        Args:
            config: Session configuration; built from settings when omitted
            mode: How the session's slices will be triggered

        Returns:
            The new session

        Raises:
            LeaseHeldError: If another unexpired session is active
            OutputUnavailableError: If the export directory cannot be created
        """
        if config is None:
            config = ExportConfig.from_settings(self.settings, export_dir=str(self.export_dir))
        if Path(config.export_dir).resolve() != self.export_dir:
            raise ValueError(f"Session export_dir {config.export_dir} does not match engine {self.export_dir}")

        session = self.sessions.new(config, mode)
        self.session_lease.acquire(session.session_id)

        # Nothing of an earlier session may leak into this one
        self.slice_lease.release()
        self.checkpoints.delete()
        self.sessions.save(session)

        self.checkpoints.save(SessionCheckpoint(session_id=session.session_id))
        self.status_store.write(ExportStatus.STARTING)
        self.logger.info(
            f"Started export session {session.session_id} ({mode.value}) "
            f"for {config.source_dir} into {self.export_dir}"
        )
        return session

    def current_session(self) -> Optional[ExportSession]:
        return self.sessions.load()

    def abort(self, session_id: str) -> None:
        """Cancel a session by removing its lease and checkpoint."""
        session = self.sessions.get(session_id)
        self.checkpoints.delete()
        self.session_lease.release()
        self.slice_lease.release()
        self.status_store.write(error_token("aborted"))
        self.logger.warning(f"Export session {session.session_id} aborted")

    def restart(self, session_id: str) -> ExportSession:
        """Abort a session and start a new one with the same configuration and mode."""
        session = self.sessions.get(session_id)
        self.abort(session_id)
        return self.start(session.config, session.mode)

    def status(self, session_id: str) -> Dict[str, Any]:
        """Report the status token, heartbeat and progress of a session."""
        session = self.sessions.get(session_id)
        token = self.status_store.read()
        report: Dict[str, Any] = {
            "session_id": session.session_id,
            "mode": session.mode.value,
            "status": token,
            "heartbeat_age": self.status_store.heartbeat_age(),
            "phase": None,
            "finished": token == ExportStatus.DONE.value or is_error(token),
            "error": error_message(token) if is_error(token) else None,
        }
        checkpoint = self.checkpoints.load(session_id)
        if checkpoint is not None:
            report["phase"] = checkpoint.phase.value
            report["progress"] = {
                "files_processed": checkpoint.files_processed,
                "files_failed": checkpoint.files_failed,
                "catalog_total": checkpoint.catalog_total,
                "tables_done": checkpoint.table_cursor,
                "total_tables": checkpoint.total_tables,
                "rows_exported": checkpoint.rows_exported,
            }
        elif token == ExportStatus.DONE.value:
            report["phase"] = ExportPhase.DONE.value
            report["artifacts"] = self._final_artifacts(session)
        return report

    # Slices

    def run_one_slice(self, session_id: str) -> SliceResult:
        """
        Run one bounded slice of the session's current phase.

        Concurrent callers collapse into one: a slice that finds another
        slice in flight returns ``busy`` without doing any work.
        """
        try:
            session = self.sessions.get(session_id)
        except SessionNotFoundError as e:
            return SliceResult(session_id, None, SliceOutcome.ERROR, status=self.status_store.read(), message=e.message)

        terminal = self._terminal_result(session_id)
        if terminal is not None:
            return terminal

        slice_token = uuid.uuid4().hex
        try:
            self.slice_lease.acquire(slice_token)
        except LeaseHeldError:
            self.logger.info(f"Slice already running for session {session_id}; skipping duplicate trigger")
            return SliceResult(
                session_id, None, SliceOutcome.BUSY, status=self.status_store.read(),
                message="Another slice is in progress",
            )

        try:
            # The slice we waited on may have finished the session
            terminal = self._terminal_result(session_id)
            if terminal is not None:
                return terminal
            with session_log(session.log_path, self.settings.RUN_LOG_MAX_BYTES):
                return self._run_phase(session)
        finally:
            self.slice_lease.release(slice_token)

    def step(
        self,
        session_id: str,
        phase: Union[str, ExportPhase],
        checkpoint: Optional[Dict[str, Any]] = None,
    ) -> SliceResult:
        """
        Run the requested phase for an external caller.

        A request for a phase that already completed is answered from the
        persisted state without redoing any work.

        Args:
            session_id: Session to advance
            phase: Phase the caller believes is current
            checkpoint: Checkpoint echoed back by the caller; informational only
        """
        try:
            requested = ExportPhase(phase)
        except ValueError:
            return SliceResult(session_id, None, SliceOutcome.ERROR, message=f"Unknown phase: {phase}")

        try:
            self.sessions.get(session_id)
        except SessionNotFoundError as e:
            return SliceResult(session_id, requested, SliceOutcome.ERROR, status=self.status_store.read(), message=e.message)

        terminal = self._terminal_result(session_id, requested)
        if terminal is not None:
            return terminal

        try:
            current = self.checkpoints.load(session_id)
        except ExportError as e:
            return SliceResult(session_id, requested, SliceOutcome.ERROR, message=e.message)
        if current is None:
            return SliceResult(
                session_id, requested, SliceOutcome.ERROR, status=self.status_store.read(),
                message="Session has no checkpoint; it was aborted",
            )

        if checkpoint and checkpoint.get("phase") not in (None, current.phase.value):
            self.logger.debug(
                f"Caller checkpoint is at {checkpoint.get('phase')}, persisted checkpoint at {current.phase.value}"
            )

        if requested.order < current.phase.order:
            return SliceResult(
                session_id, requested, SliceOutcome.COMPLETED, next_phase=current.phase,
                status=self.status_store.read(), checkpoint=current.to_dict(),
                message=f"Phase {requested.value} already complete",
            )
        if requested.order > current.phase.order:
            return SliceResult(
                session_id, current.phase, SliceOutcome.PAUSED, next_phase=current.phase,
                status=self.status_store.read(), checkpoint=current.to_dict(),
                message=f"Session is still in phase {current.phase.value}",
            )
        return self.run_one_slice(session_id)

    def _terminal_result(self, session_id: str, phase: Optional[ExportPhase] = None) -> Optional[SliceResult]:
        token = self.status_store.read()
        if token == ExportStatus.DONE.value:
            return SliceResult(
                session_id, phase or ExportPhase.DONE, SliceOutcome.COMPLETED, next_phase=None,
                status=token, message="Export already complete",
            )
        if is_error(token):
            return SliceResult(session_id, phase, SliceOutcome.ERROR, status=token, message=error_message(token))
        return None

    def _run_phase(self, session: ExportSession) -> SliceResult:
        session_id = session.session_id
        phase: Optional[ExportPhase] = None
        try:
            checkpoint = self.checkpoints.load(session_id)
            if checkpoint is None:
                raise SessionNotFoundError(f"Session {session_id} has no checkpoint; it was aborted")
            phase = checkpoint.phase

            self.session_lease.acquire(session_id)
            self.status_store.write(PHASE_STATUS[phase])
            self.logger.info(f"Running phase {phase.value} of session {session_id}")

            finished = self._handlers[phase](session, checkpoint)

            if not finished:
                checkpoint.restart_count += 1
                self.checkpoints.save(checkpoint)
                self.status_store.write(ExportStatus.PAUSED)
                return SliceResult(
                    session_id, phase, SliceOutcome.PAUSED, next_phase=phase,
                    status=ExportStatus.PAUSED.value, checkpoint=checkpoint.to_dict(),
                    message=f"Phase {phase.value} paused",
                )

            next_phase = phase.next()
            if next_phase is ExportPhase.DONE:
                return SliceResult(
                    session_id, phase, SliceOutcome.COMPLETED, next_phase=None,
                    status=ExportStatus.DONE.value, message="Export complete",
                )

            checkpoint.phase = next_phase
            self.checkpoints.save(checkpoint)
            self.session_lease.renew(session_id)
            self.status_store.write(PHASE_STATUS[next_phase])
            return SliceResult(
                session_id, phase, SliceOutcome.COMPLETED, next_phase=next_phase,
                status=PHASE_STATUS[next_phase].value, checkpoint=checkpoint.to_dict(),
                message=f"Phase {phase.value} complete",
            )
        except SoftTimeLimitExceeded:
            # The worker is about to be killed; the last saved checkpoint stays authoritative
            self.logger.warning(
                f"Slice of session {session_id} hit the worker time limit in phase "
                f"{phase.value if phase else 'unknown'}; resuming from the last checkpoint"
            )
            self.status_store.write(ExportStatus.PAUSED)
            return SliceResult(
                session_id, phase, SliceOutcome.PAUSED, next_phase=phase,
                status=ExportStatus.PAUSED.value,
                message="Slice interrupted by the worker time limit",
            )
        except LeaseHeldError as e:
            # Another session owns the export directory now; leave its state alone
            self.logger.error(f"Session {session_id} lost its lease: {e.message}")
            return SliceResult(session_id, phase, SliceOutcome.ERROR, message=e.message)
        except Exception as e:
            return self._fail(session, phase, e)

    def _fail(self, session: ExportSession, phase: Optional[ExportPhase], exc: Exception) -> SliceResult:
        message = format_status_message(exc)
        token = error_token(message)
        self.logger.error(
            f"Export session {session.session_id} failed in phase {phase.value if phase else 'unknown'}: {message}",
            exc_info=not isinstance(exc, ExportError),
        )
        self.status_store.write(token)
        self.session_lease.release(session.session_id)
        return SliceResult(session.session_id, phase, SliceOutcome.ERROR, status=token, message=message)

    # Phase handlers; each returns True when the phase completed

    def _run_init(self, session: ExportSession, checkpoint: SessionCheckpoint) -> bool:
        if not os.access(self.export_dir, os.W_OK):
            raise OutputUnavailableError(f"Export directory is not writable: {self.export_dir}")
        self.sessions.cleanup_previous(keep=session)
        return True

    def _run_enumerate(self, session: ExportSession, checkpoint: SessionCheckpoint) -> bool:
        stats = CatalogEnumerator(session.config).enumerate(session.catalog_path)
        checkpoint.catalog_total = stats.files_found
        checkpoint.enumeration = stats.to_dict()
        checkpoint.csv_cursor = 0
        checkpoint.archive_cursor = 0
        remove_file(session.archive_path)
        return True

    def _run_archive(self, session: ExportSession, checkpoint: SessionCheckpoint) -> bool:
        config = session.config
        result = ArchivePacker(config).pack(session.catalog_path, session.archive_path, checkpoint)
        if not result.completed:
            return False
        if not archived_ratio_ok(checkpoint.files_processed, checkpoint.catalog_total, config.min_archived_percent):
            raise IncompleteArchiveError(
                f"Only {checkpoint.files_processed} of {checkpoint.catalog_total} files were archived "
                f"(minimum {config.min_archived_percent}%)"
            )
        return True

    def _run_database(self, session: ExportSession, checkpoint: SessionCheckpoint) -> bool:
        temp_path = str(self.export_dir / f"{DB_TEMP_PREFIX}{session.session_id[:16]}.sql")
        dumper = self.dumper_factory(session.config)
        try:
            result = dumper.dump(checkpoint, temp_path, session.sql_path)
        finally:
            dumper.dispose()
        return result.completed

    def _run_metadata(self, session: ExportSession, checkpoint: SessionCheckpoint) -> bool:
        write_metadata(session, checkpoint)
        return True

    def _run_finalize(self, session: ExportSession, checkpoint: SessionCheckpoint) -> bool:
        report = CompletionValidator(session).validate(checkpoint)
        if not report.valid:
            raise ValidationFailedError(report.problems)

        remove_file(session.catalog_path)
        self.checkpoints.delete()
        self.status_store.write(ExportStatus.DONE)
        self.session_lease.release(session.session_id)
        self.logger.info(
            f"Export session {session.session_id} done: {checkpoint.files_processed} files, "
            f"{checkpoint.total_tables} tables, {checkpoint.restart_count} resumed slices"
        )
        return True

    def _final_artifacts(self, session: ExportSession) -> Dict[str, str]:
        artifacts = session.artifact_paths()
        # The dump name depends on whether it was compressed
        if not os.path.exists(artifacts["sql"]) and os.path.exists(artifacts["sql"] + ".gz"):
            artifacts["sql"] = artifacts["sql"] + ".gz"
        return artifacts
