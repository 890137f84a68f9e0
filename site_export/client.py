"""HTTP client that drives a step-mode export session"""

import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx

from site_export.types import ExportMode, ExportPhase

logger = logging.getLogger(__name__)


class StepClientError(Exception):
    """Raised when the export service rejects a request or a session fails."""

    def __init__(self, message: str, response: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.response = response


class StepClient:
    """
    Polling client for the step endpoints.

    Starts a session in step mode, then posts ``/export/step`` with the
    previous response's ``next_phase`` until the session finishes.
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.Client] = None,
        delay: float = 1.0,
        timeout: float = 120.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the client.

        Args:
            base_url: Export service URL (e.g., http://localhost:8000)
            client: Preconfigured httpx client; one is created when omitted
            delay: Seconds to wait between steps
            timeout: Request timeout in seconds
            sleep: Sleep function
        """
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout)
        self.delay = delay
        self.sleep = sleep
        self.logger = logging.getLogger(f"{__name__}.StepClient")

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/export{path}"
        try:
            response = self.client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise StepClientError(f"{url} returned {e.response.status_code}: {e.response.text}")
        except httpx.RequestError as e:
            raise StepClientError(f"Request to {url} failed: {e}")
        return response.json()

    def start(self, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Start a step-mode session"""
        payload: Dict[str, Any] = {"mode": ExportMode.STEP.value}
        if overrides:
            payload["overrides"] = overrides
        return self._post("/start", payload)

    def step(self, session_id: str, phase: str, checkpoint: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run one step of a session"""
        return self._post("/step", {"session_id": session_id, "phase": phase, "checkpoint": checkpoint})

    def run(
        self,
        overrides: Optional[Dict[str, Any]] = None,
        max_steps: Optional[int] = None,
        on_step: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> Dict[str, Any]:
        """
        Start a session and step it until it finishes.

        Args:
            overrides: Session configuration overrides
            max_steps: Give up after this many steps (None for no limit)
            on_step: Called with every step response

        Returns:
            The final step response

        Raises:
            StepClientError: If a request fails, the session ends in error,
                or ``max_steps`` is reached
        """
        started = self.start(overrides)
        session_id = started["session_id"]
        phase = started.get("next_phase") or ExportPhase.INIT.value
        checkpoint = None
        self.logger.info(f"Started step session {session_id}")

        steps = 0
        while True:
            response = self.step(session_id, phase, checkpoint)
            steps += 1
            if on_step:
                on_step(response)

            if response.get("error"):
                raise StepClientError(f"Session {session_id} failed: {response['error']}", response)
            if response.get("completed") and not response.get("next_phase"):
                self.logger.info(f"Session {session_id} finished after {steps} steps")
                return response
            if max_steps is not None and steps >= max_steps:
                raise StepClientError(f"Session {session_id} not finished after {steps} steps", response)

            # A busy or paused step keeps the phase it asked for
            phase = response.get("next_phase") or phase
            checkpoint = response.get("checkpoint")
            self.logger.debug(f"Session {session_id}: {response.get('message')} (next: {phase})")
            if self.delay:
                self.sleep(self.delay)

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "StepClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
