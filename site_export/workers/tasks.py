"""Celery tasks driving scheduled export sessions"""

from site_export.drivers import build_scheduled_driver
from site_export.logging_config import get_logger
from site_export.monitor import ExportMonitor
from site_export.workers.celery_app import celery_app

logger = get_logger(__name__)


@celery_app.task(name='site_export.workers.tasks.run_export_slice')
def run_export_slice(session_id: str):
    """
    Run one slice of a scheduled export session.

    The driver queues the next slice itself when the session is unfinished.
    Duplicate deliveries are answered with a busy result by the engine.

    Args:
        session_id: Session to advance
    """
    driver = build_scheduled_driver()
    result = driver.run_one_slice(session_id)
    logger.info(
        f"Slice of {session_id}: {result.outcome.value} "
        f"(phase={result.phase.value if result.phase else None}, "
        f"next={result.next_phase.value if result.next_phase else None})"
    )
    return result.to_dict()


@celery_app.task(name='site_export.workers.tasks.monitor_export')
def monitor_export():
    """Re-trigger or restart a scheduled session whose heartbeat stopped"""
    driver = build_scheduled_driver()
    report = ExportMonitor(driver.engine, driver.trigger).check()
    if report.action.value != "none":
        logger.warning(f"Monitor action {report.action.value} for {report.session_id}: {report.reason}")
    return report.to_dict()
