"""Configuration management for the site export engine"""

import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from pydantic_settings import BaseSettings


MIB = 1024 * 1024


class Settings(BaseSettings):
    """Process settings loaded from environment variables"""

    # Application
    APP_NAME: str = "site-export"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Source and destination
    SOURCE_DIR: str = "./content"
    EXPORT_DIR: str = "./exports"
    BASE_PATH_NAME: Optional[str] = None
    SITE_NAME: Optional[str] = None
    SITE_URL: Optional[str] = None

    # Database
    DATABASE_URL: Optional[str] = None
    DB_BATCH_SIZE: int = 500
    DB_TRANSACTION_SIZE: int = 100
    DB_TABLES_PER_SLICE: int = 5
    DB_MAX_FAILED_BATCHES: int = 10
    DB_COMPRESSION: str = "auto"
    DB_CHARSET: str = "utf8mb4"

    # Slices
    TIME_BUDGET_SECONDS: float = 10.0
    DB_TIME_BUDGET_SECONDS: float = 23.0
    FILES_PER_SLICE: int = 0
    CHUNK_SIZE: int = 256 * 1024
    RESUME_DELAY_SECONDS: int = 1

    # Archive limits
    MAX_FILE_SIZE: int = 500 * MIB
    MAX_FAILED_FILES: int = 100
    MIN_ARCHIVED_PERCENT: int = 99
    EXTRA_EXCLUSIONS: List[str] = []

    # Leases and stuck detection
    LOCK_STALE_AFTER_SECONDS: int = 1200
    SLICE_STALE_AFTER_SECONDS: int = 120
    STUCK_RETRIGGER_AFTER_SECONDS: int = 600
    STUCK_RESTART_AFTER_SECONDS: int = 1200
    PAUSED_RETRIGGER_AFTER_SECONDS: int = 30

    # Redis / Celery
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"
    SLICE_TASK_TIME_LIMIT: int = 60
    MONITOR_INTERVAL_SECONDS: int = 60

    # Self-call wake-up
    SELF_TRIGGER_URL: Optional[str] = None
    SELF_TRIGGER_TIMEOUT: float = 0.5

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    RUN_LOG_MAX_BYTES: int = 10 * MIB

    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()


@dataclass
class ExportConfig:
    """
    Session-scoped configuration.

    Built once when a session starts, stored in the session record and
    handed to every component on every slice.
    """

    source_dir: str
    export_dir: str
    database_url: Optional[str] = None
    base_path_name: Optional[str] = None
    site_name: Optional[str] = None
    site_url: Optional[str] = None

    time_budget: float = 10.0
    files_per_slice: int = 0
    chunk_size: int = 256 * 1024
    max_file_size: int = 500 * MIB
    max_failed_files: int = 100
    min_archived_percent: int = 99
    use_default_exclusions: bool = True
    extra_exclusions: List[str] = field(default_factory=list)
    archive_extension: str = "archive"

    db_time_budget: float = 23.0
    db_batch_size: int = 500
    db_transaction_size: int = 100
    db_tables_per_slice: int = 5
    db_max_failed_batches: int = 10
    db_compression: str = "auto"
    db_charset: str = "utf8mb4"

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not self.source_dir:
            raise ValueError("source_dir is required")
        if not self.export_dir:
            raise ValueError("export_dir is required")

        self.source_dir = os.path.abspath(os.path.expanduser(self.source_dir))
        self.export_dir = os.path.abspath(os.path.expanduser(self.export_dir))
        if self.export_dir == self.source_dir:
            raise ValueError("export_dir must differ from source_dir")

        if not self.base_path_name:
            self.base_path_name = os.path.basename(self.source_dir.rstrip(os.sep)) or "content"
        self.base_path_name = self.base_path_name.strip("/")

        if self.db_compression not in ("auto", "gzip", "none"):
            raise ValueError(f"Unsupported db_compression: {self.db_compression}")
        if not 0 < self.min_archived_percent <= 100:
            raise ValueError("min_archived_percent must be between 1 and 100")
        for name in ("chunk_size", "db_batch_size", "db_transaction_size", "db_tables_per_slice"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.time_budget <= 0 or self.db_time_budget <= 0:
            raise ValueError("time budgets must be positive")

    @property
    def compress_dump(self) -> bool:
        return self.db_compression != "none"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExportConfig":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @classmethod
    def from_settings(cls, app_settings: Optional[Settings] = None, **overrides) -> "ExportConfig":
        """Create a session configuration from process settings with optional overrides."""
        s = app_settings or settings

        config_dict = {
            "source_dir": s.SOURCE_DIR,
            "export_dir": s.EXPORT_DIR,
            "database_url": s.DATABASE_URL,
            "base_path_name": s.BASE_PATH_NAME,
            "site_name": s.SITE_NAME,
            "site_url": s.SITE_URL,
            "time_budget": s.TIME_BUDGET_SECONDS,
            "files_per_slice": s.FILES_PER_SLICE,
            "chunk_size": s.CHUNK_SIZE,
            "max_file_size": s.MAX_FILE_SIZE,
            "max_failed_files": s.MAX_FAILED_FILES,
            "min_archived_percent": s.MIN_ARCHIVED_PERCENT,
            "extra_exclusions": list(s.EXTRA_EXCLUSIONS),
            "db_time_budget": s.DB_TIME_BUDGET_SECONDS,
            "db_batch_size": s.DB_BATCH_SIZE,
            "db_transaction_size": s.DB_TRANSACTION_SIZE,
            "db_tables_per_slice": s.DB_TABLES_PER_SLICE,
            "db_max_failed_batches": s.DB_MAX_FAILED_BATCHES,
            "db_compression": s.DB_COMPRESSION,
            "db_charset": s.DB_CHARSET,
        }

        # Apply overrides (filter out None values from CLI)
        for key, value in overrides.items():
            if value is not None:
                config_dict[key] = value

        return cls(**config_dict)
