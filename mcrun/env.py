import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

DEFAULT_DB = "data/jobs.db"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def load_env() -> None:
    """Load .env from the working directory if present.

    Variables already set in the environment take precedence.
    """
    env_path = Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(dotenv_path=env_path)


@dataclass
class Settings:
    db_path: Path = Path(DEFAULT_DB)
    schema_path: Optional[Path] = None
    log_level: str = "INFO"
    log_dir: Optional[Path] = None
    lock_retries: int = 3


def load_settings() -> Settings:
    """Build settings from MCRUN_* environment variables."""
    schema = os.getenv("MCRUN_SCHEMA")
    log_dir = os.getenv("MCRUN_LOG_DIR")
    retries = os.getenv("MCRUN_LOCK_RETRIES", "3")
    try:
        lock_retries = max(0, int(retries))
    except ValueError:
        raise SystemExit(f"MCRUN_LOCK_RETRIES must be an integer, got {retries!r}")
    log_level = os.getenv("MCRUN_LOG_LEVEL", "INFO").upper()
    if log_level not in LOG_LEVELS:
        raise SystemExit(f"MCRUN_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {log_level!r}")
    return Settings(
        db_path=Path(os.getenv("MCRUN_DB", DEFAULT_DB)),
        schema_path=Path(schema) if schema else None,
        log_level=log_level,
        log_dir=Path(log_dir) if log_dir else None,
        lock_retries=lock_retries,
    )
