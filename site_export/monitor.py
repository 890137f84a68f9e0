"""
Stuck-session detection for scheduled exports.

The status file's modification time is the session heartbeat. A session
whose heartbeat stops advancing is first re-triggered and, past a larger
threshold, restarted from scratch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .config import Settings
from .engine import ExportEngine
from .errors import LeaseHeldError, SessionNotFoundError
from .status import ACTIVE_TOKENS
from .triggers import Trigger
from .types import ExportMode, ExportStatus

logger = logging.getLogger(__name__)


class MonitorAction(str, Enum):
    """What the monitor did about the current session."""
    NONE = "none"
    RETRIGGER = "retrigger"
    RESTART = "restart"


@dataclass
class MonitorReport:
    action: MonitorAction
    session_id: Optional[str] = None
    status: Optional[str] = None
    heartbeat_age: Optional[float] = None
    new_session_id: Optional[str] = None
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "session_id": self.session_id,
            "status": self.status,
            "heartbeat_age": self.heartbeat_age,
            "new_session_id": self.new_session_id,
            "reason": self.reason,
        }


class ExportMonitor:
    """Periodic supervisor for the scheduled driver."""

    def __init__(self, engine: ExportEngine, trigger: Trigger, app_settings: Optional[Settings] = None):
        self.engine = engine
        self.trigger = trigger
        s = app_settings or engine.settings
        self.retrigger_after = s.STUCK_RETRIGGER_AFTER_SECONDS
        self.restart_after = s.STUCK_RESTART_AFTER_SECONDS
        self.paused_retrigger_after = s.PAUSED_RETRIGGER_AFTER_SECONDS
        self.logger = logging.getLogger(f"{__name__}.ExportMonitor")

    def check(self) -> MonitorReport:
        session = self.engine.current_session()
        if session is None:
            return MonitorReport(MonitorAction.NONE, reason="no session")

        token = self.engine.status_store.read()
        age = self.engine.status_store.heartbeat_age()
        report = MonitorReport(MonitorAction.NONE, session.session_id, token, age)

        if session.mode == ExportMode.STEP:
            report.reason = "step sessions are driven by their caller"
            return report
        if token not in ACTIVE_TOKENS or age is None:
            report.reason = "session is not running"
            return report

        if age > self.restart_after:
            self.logger.error(
                f"Session {session.session_id} has been stuck in '{token}' for {age:.0f}s; restarting"
            )
            try:
                new_session = self.engine.restart(session.session_id)
            except (LeaseHeldError, SessionNotFoundError) as e:
                report.reason = f"restart refused: {e.message}"
                return report
            self.trigger.schedule_next(new_session.session_id, delay=0)
            report.action = MonitorAction.RESTART
            report.new_session_id = new_session.session_id
            report.reason = f"no heartbeat for {age:.0f}s"
            return report

        threshold = self.paused_retrigger_after if token == ExportStatus.PAUSED.value else self.retrigger_after
        if age > threshold:
            self.logger.warning(f"Session {session.session_id} idle in '{token}' for {age:.0f}s; re-triggering")
            self.trigger.schedule_next(session.session_id, delay=0)
            report.action = MonitorAction.RETRIGGER
            report.reason = f"no heartbeat for {age:.0f}s"
        return report
