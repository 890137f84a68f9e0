"""
Site Export - resumable export of a content tree and its database.

Each export session enumerates the tree, packs it into a single archive,
dumps the database and writes a metadata document, one time-bounded slice
at a time so that a session survives short-lived request workers.
"""

__version__ = "0.1.0"

from .config import ExportConfig, Settings, settings
from .drivers import ScheduledDriver, StepDriver
from .engine import ExportEngine
from .errors import ExportError
from .types import ExportMode, ExportPhase, ExportStatus, SliceOutcome, SliceResult

__all__ = [
    "ExportConfig",
    "ExportEngine",
    "ExportError",
    "ExportMode",
    "ExportPhase",
    "ExportStatus",
    "ScheduledDriver",
    "Settings",
    "SliceOutcome",
    "SliceResult",
    "StepDriver",
    "settings",
    "__version__",
]
