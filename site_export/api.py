"""Export session endpoints"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from pydantic import BaseModel

from site_export.config import ExportConfig, settings
from site_export.drivers import ScheduledDriver, StepDriver
from site_export.engine import ExportEngine
from site_export.errors import ExportError, LeaseHeldError, SessionNotFoundError
from site_export.triggers import SchedulerTrigger, Trigger
from site_export.types import ExportMode

logger = logging.getLogger(__name__)

router = APIRouter()


class StartRequest(BaseModel):
    mode: ExportMode = ExportMode.SCHEDULED
    overrides: Optional[Dict[str, Any]] = None


class StepRequest(BaseModel):
    session_id: str
    phase: str
    checkpoint: Optional[Dict[str, Any]] = None


class SliceRequest(BaseModel):
    session_id: str


class StepResponse(BaseModel):
    session_id: str
    completed: bool
    next_phase: Optional[str] = None
    checkpoint: Optional[Dict[str, Any]] = None
    paused: bool
    status: Optional[str] = None
    message: str = ""
    error: Optional[str] = None


def get_engine() -> ExportEngine:
    """Engine bound to the configured export directory"""
    return ExportEngine(settings)


def get_trigger() -> Trigger:
    """Trigger used to schedule continuations of scheduled sessions"""
    return SchedulerTrigger(settings)


def _config_from_request(engine: ExportEngine, overrides: Optional[Dict[str, Any]]) -> ExportConfig:
    values = dict(overrides or {})
    # Sessions always live in the engine's export directory
    values["export_dir"] = str(engine.export_dir)
    try:
        return ExportConfig.from_settings(engine.settings, **values)
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.post("/start", response_model=StepResponse)
def start_export(
    request: StartRequest,
    engine: ExportEngine = Depends(get_engine),
    trigger: Trigger = Depends(get_trigger),
):
    """Start a new export session"""
    config = _config_from_request(engine, request.overrides)
    try:
        if request.mode == ExportMode.STEP:
            return StepDriver(engine).start(config)

        session = ScheduledDriver(engine, trigger).start(config)
    except LeaseHeldError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    except ExportError as e:
        logger.error(f"Failed to start export: {e.message}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.to_dict())

    return StepResponse(
        session_id=session.session_id,
        completed=False,
        next_phase=None,
        paused=False,
        status=engine.status_store.read(),
        message="Export scheduled",
    )


@router.post("/step", response_model=StepResponse)
def step_export(request: StepRequest, engine: ExportEngine = Depends(get_engine)):
    """Run one step of a session driven by the caller"""
    result = StepDriver(engine).step(request.session_id, request.phase, request.checkpoint)
    return result.to_step_response()


@router.post("/slice", status_code=status.HTTP_202_ACCEPTED)
def trigger_slice(
    request: SliceRequest,
    background_tasks: BackgroundTasks,
    engine: ExportEngine = Depends(get_engine),
    trigger: Trigger = Depends(get_trigger),
):
    """Wake-up endpoint for scheduled sessions; the slice runs after the response"""
    driver = ScheduledDriver(engine, trigger)
    background_tasks.add_task(driver.run_one_slice, request.session_id)
    return {"accepted": True, "session_id": request.session_id}


@router.get("/status/{session_id}")
def get_status(session_id: str, engine: ExportEngine = Depends(get_engine)):
    """Get the status token and progress of a session"""
    try:
        return engine.status(session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)


@router.post("/abort/{session_id}")
def abort_export(session_id: str, engine: ExportEngine = Depends(get_engine)):
    """Abort a session"""
    try:
        engine.abort(session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    return {"session_id": session_id, "status": engine.status_store.read()}
