"""
Drivers: the two ways a session's slices get run.

Both drive the same engine; they differ only in who triggers the next slice.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

from .config import ExportConfig, Settings, settings
from .engine import ExportEngine
from .session import ExportSession
from .triggers import ExternalTrigger, SchedulerTrigger, Trigger
from .types import ExportMode, ExportPhase, SliceOutcome, SliceResult

logger = logging.getLogger(__name__)


class ScheduledDriver:
    """Re-invokes itself through the delayed-task trigger after every unfinished slice."""

    mode = ExportMode.SCHEDULED

    def __init__(self, engine: ExportEngine, trigger: Optional[Trigger] = None):
        self.engine = engine
        self.trigger = trigger or SchedulerTrigger(engine.settings)

    def start(self, config: Optional[ExportConfig] = None) -> ExportSession:
        session = self.engine.start(config, self.mode)
        self.trigger.schedule_next(session.session_id, delay=0)
        return session

    def run_one_slice(self, session_id: str) -> SliceResult:
        result = self.engine.run_one_slice(session_id)

        # A busy slice belongs to a running continuation that schedules itself
        if not result.finished and result.outcome != SliceOutcome.BUSY:
            self.trigger.schedule_next(session_id)
        elif result.finished:
            logger.info(f"Session {session_id} finished: {result.status}")
        return result


class StepDriver:
    """
    Runs one slice per external request.

    The caller loops, passing back the previous response's ``next_phase``
    until a response is completed with no next phase.
    """

    mode = ExportMode.STEP

    def __init__(self, engine: ExportEngine, trigger: Optional[Trigger] = None):
        self.engine = engine
        self.trigger = trigger or ExternalTrigger()

    def start(self, config: Optional[ExportConfig] = None) -> Dict[str, Any]:
        session = self.engine.start(config, self.mode)
        return {
            "session_id": session.session_id,
            "completed": False,
            "next_phase": ExportPhase.INIT.value,
            "checkpoint": None,
            "paused": False,
            "status": self.engine.status_store.read(),
            "message": "Export started",
            "error": None,
        }

    def step(self, session_id: str, phase: str, checkpoint: Optional[Dict[str, Any]] = None) -> SliceResult:
        result = self.engine.step(session_id, phase, checkpoint)
        if not result.finished:
            self.trigger.schedule_next(session_id)
        return result

    def run_to_completion(
        self,
        session_id: str,
        phase: str = ExportPhase.INIT.value,
        max_steps: Optional[int] = None,
        delay: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> SliceResult:
        """
        Drive a session in-process, the way an external caller would.

        Args:
            session_id: Session to run
            phase: Phase to begin with
            max_steps: Stop after this many steps (None for no limit)
            delay: Seconds to wait between steps
            sleep: Sleep function

        Returns:
            The last step's result
        """
        steps = 0
        checkpoint = None
        while True:
            result = self.step(session_id, phase, checkpoint)
            steps += 1
            if result.finished:
                return result
            if max_steps is not None and steps >= max_steps:
                return result
            phase = (result.next_phase or ExportPhase(phase)).value
            checkpoint = result.checkpoint
            if delay:
                sleep(delay)


def build_engine(app_settings: Optional[Settings] = None) -> ExportEngine:
    return ExportEngine(app_settings or settings)


def build_scheduled_driver(app_settings: Optional[Settings] = None) -> ScheduledDriver:
    engine = build_engine(app_settings)
    return ScheduledDriver(engine, SchedulerTrigger(engine.settings))