"""
Runtime configuration.

Settings come from the process environment, optionally seeded from a
``.env`` file in the working directory.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError
from .state import LIST_QUERY_CONTRACT_BACKFILL_STATE_DOC_ID

DEFAULT_DATABASE_URL = "sqlite:///data/denormsync.db"
DEFAULT_BATCH_LIMIT = 450
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def load_env() -> None:
    """Load .env from project root if present."""
    env_path = Path.cwd() / ".env"
    if not env_path.exists():
        return
    load_dotenv(dotenv_path=env_path)


def _parse_bool(name: str, raw: Optional[str], default: bool) -> bool:
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def _parse_int(name: str, raw: Optional[str]) -> Optional[int]:
    if raw is None or raw.strip() == "":
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    sync_enabled: bool = True
    batch_limit: int = DEFAULT_BATCH_LIMIT
    denormalization_page_size: Optional[int] = None
    denormalization_dry_run: bool = False
    list_query_page_size: Optional[int] = None
    list_query_dry_run: bool = False
    log_level: str = "INFO"
    log_dir: Optional[Path] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.

        Raises:
            ConfigurationError: If a variable is present but malformed
        """
        env = os.environ if environ is None else environ
        # Only an explicit "false" turns live propagation off.
        sync_enabled = env.get("DENORMALIZATION_SYNC_ENABLED", "").strip().lower() != "false"
        log_dir = env.get("DENORMSYNC_LOG_DIR")
        log_level = (env.get("DENORMSYNC_LOG_LEVEL") or "INFO").strip().upper()
        if log_level not in LOG_LEVELS:
            raise ConfigurationError(
                f"DENORMSYNC_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {log_level!r}"
            )

        return cls(
            database_url=env.get("DENORMSYNC_DATABASE_URL") or DEFAULT_DATABASE_URL,
            sync_enabled=sync_enabled,
            batch_limit=_parse_int("DENORMSYNC_BATCH_LIMIT", env.get("DENORMSYNC_BATCH_LIMIT"))
            or DEFAULT_BATCH_LIMIT,
            denormalization_page_size=_parse_int(
                "DENORMALIZATION_BACKFILL_PAGE_SIZE",
                env.get("DENORMALIZATION_BACKFILL_PAGE_SIZE"),
            ),
            denormalization_dry_run=_parse_bool(
                "DENORMALIZATION_BACKFILL_DRY_RUN",
                env.get("DENORMALIZATION_BACKFILL_DRY_RUN"),
                False,
            ),
            list_query_page_size=_parse_int(
                "LIST_QUERY_CONTRACT_BACKFILL_PAGE_SIZE",
                env.get("LIST_QUERY_CONTRACT_BACKFILL_PAGE_SIZE"),
            ),
            list_query_dry_run=_parse_bool(
                "LIST_QUERY_CONTRACT_BACKFILL_DRY_RUN",
                env.get("LIST_QUERY_CONTRACT_BACKFILL_DRY_RUN"),
                False,
            ),
            log_level=log_level,
            log_dir=Path(log_dir) if log_dir else None,
        )

    def backfill_options(self, job_id: str):
        """Return (page_size, dry_run) configured for a backfill job."""
        if job_id == LIST_QUERY_CONTRACT_BACKFILL_STATE_DOC_ID:
            return self.list_query_page_size, self.list_query_dry_run
        return self.denormalization_page_size, self.denormalization_dry_run
