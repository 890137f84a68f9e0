"""
Strategies for triggering the next slice of a session.

Triggering is at-least-once: a trigger may fire more than once for the
same continuation, and the engine turns duplicates into no-ops.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from .config import Settings, settings

logger = logging.getLogger(__name__)

SLICE_ENDPOINT = "/export/slice"


class Trigger(ABC):
    """Decides how the next slice of a session gets started."""

    name = "trigger"

    @abstractmethod
    def schedule_next(self, session_id: str, delay: Optional[float] = None) -> bool:
        """
        Arrange for another slice of ``session_id`` to run.

        Returns:
            True if at least one wake-up signal was sent
        """


class ExternalTrigger(Trigger):
    """Pull-based triggering: an external caller loops over ``step``."""

    name = "external"

    def schedule_next(self, session_id: str, delay: Optional[float] = None) -> bool:
        logger.debug(f"Session {session_id} continues when the external caller steps again")
        return False


class SchedulerTrigger(Trigger):
    """
    Push-based triggering through the delayed-task queue.

    Each continuation is enqueued as a Celery task with a short countdown.
    When a self-call URL is configured, a fire-and-forget HTTP request is
    sent as well, to cover a slow or disabled queue.
    """

    name = "scheduler"

    def __init__(
        self,
        app_settings: Optional[Settings] = None,
        task: Any = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.settings = app_settings or settings
        self._task = task
        self._http_client = http_client
        self.logger = logging.getLogger(f"{__name__}.SchedulerTrigger")

    @property
    def task(self):
        if self._task is None:
            from .workers.tasks import run_export_slice
            self._task = run_export_slice
        return self._task

    def schedule_next(self, session_id: str, delay: Optional[float] = None) -> bool:
        countdown = self.settings.RESUME_DELAY_SECONDS if delay is None else delay
        queued = self._enqueue(session_id, countdown)
        pinged = self._ping_self(session_id)
        if not queued and not pinged:
            self.logger.warning(
                f"No wake-up signal reached session {session_id}; the monitor will resume it"
            )
        return queued or pinged

    def _enqueue(self, session_id: str, countdown: float) -> bool:
        try:
            self.task.apply_async(args=[session_id], countdown=countdown)
            self.logger.debug(f"Queued next slice of {session_id} in {countdown}s")
            return True
        except Exception as e:
            self.logger.warning(f"Failed to queue next slice of {session_id}: {e}")
            return False

    def _ping_self(self, session_id: str) -> bool:
        base_url = self.settings.SELF_TRIGGER_URL
        if not base_url:
            return False

        url = base_url.rstrip("/") + SLICE_ENDPOINT
        client = self._http_client or httpx.Client(timeout=self.settings.SELF_TRIGGER_TIMEOUT)
        try:
            client.post(url, json={"session_id": session_id})
            return True
        except httpx.ReadTimeout:
            # The request was sent; the slice keeps running server-side
            return True
        except httpx.HTTPError as e:
            self.logger.debug(f"Self-call to {url} failed: {e}")
            return False
        finally:
            if self._http_client is None:
                client.close()
