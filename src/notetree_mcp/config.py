"""Configuration module for the NoteTree MCP server."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notetree_mcp import __version__

# Project root .env, anchored to __file__ so the process CWD does not matter.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level overrides
_USER_ENV = Path.home() / ".notetree" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class NoteTreeConfig(BaseModel):
    """Configuration for the NoteTree server."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTETREE_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTETREE_DATABASE_PATH", "data/db/notetree.db")
        )
    )
    # When True, the tree lives in an in-memory SQLite database (tests, demos)
    in_memory_db: bool = Field(
        default_factory=lambda: _env_bool("NOTETREE_IN_MEMORY_DB", "false")
    )
    # Upper bound (seconds) for any single storage call
    store_timeout: float = Field(
        default_factory=lambda: float(os.getenv("NOTETREE_STORE_TIMEOUT", "30"))
    )
    # Import phase 1: records created per batch and worker threads per batch
    import_batch_size: int = Field(
        default_factory=lambda: int(os.getenv("NOTETREE_IMPORT_BATCH_SIZE", "10"))
    )
    import_max_workers: int = Field(
        default_factory=lambda: int(os.getenv("NOTETREE_IMPORT_MAX_WORKERS", "4"))
    )
    # Import phase 2: relink batch size and retry policy for transient failures
    relink_batch_size: int = Field(
        default_factory=lambda: int(os.getenv("NOTETREE_RELINK_BATCH_SIZE", "5"))
    )
    relink_max_attempts: int = Field(
        default_factory=lambda: int(os.getenv("NOTETREE_RELINK_MAX_ATTEMPTS", "3"))
    )
    relink_retry_delay: float = Field(
        default_factory=lambda: float(
            os.getenv("NOTETREE_RELINK_RETRY_DELAY", "0.1")
        )
    )
    # How long a finished import's status stays pollable (seconds)
    import_status_retention: float = Field(
        default_factory=lambda: float(
            os.getenv("NOTETREE_IMPORT_STATUS_RETENTION", "300")
        )
    )
    # Server configuration
    server_name: str = Field(default=os.getenv("NOTETREE_SERVER_NAME", "notetree-mcp"))
    server_version: str = Field(default=__version__)
    log_level: str = Field(
        default_factory=lambda: os.getenv("NOTETREE_LOG_LEVEL", "INFO").upper()
    )

    @model_validator(mode="after")
    def _validate_limits(self) -> "NoteTreeConfig":
        """Reject batch and retry settings that would stall the import pipeline."""
        if self.import_batch_size < 1:
            raise ValueError("import_batch_size must be >= 1")
        if self.import_max_workers < 1:
            raise ValueError("import_max_workers must be >= 1")
        if self.relink_batch_size < 1:
            raise ValueError("relink_batch_size must be >= 1")
        if self.relink_max_attempts < 1:
            raise ValueError("relink_max_attempts must be >= 1")
        if self.relink_retry_delay < 0:
            raise ValueError("relink_retry_delay must be >= 0")
        if self.store_timeout <= 0:
            raise ValueError("store_timeout must be > 0")

        if self.import_max_workers > self.import_batch_size:
            logger.warning(
                "import_max_workers (%d) exceeds import_batch_size (%d); "
                "extra workers will sit idle.",
                self.import_max_workers,
                self.import_batch_size,
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        if self.in_memory_db:
            return "sqlite://"
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"

    def get_log_dir(self) -> Optional[Path]:
        """Directory for rotating log files, from NOTETREE_LOG_DIR if set."""
        log_dir = os.getenv("NOTETREE_LOG_DIR")
        return Path(log_dir) if log_dir else None


# Create a global config instance
config = NoteTreeConfig()
