"""Process-wide engine settings.

Values come from ``ARTIST_SYNC_*`` variables. A ``.env`` file in the working
directory may supply defaults, but never overrides a variable that is already
exported in the process environment.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Mapping, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field

from artistsync.db.session import DEFAULT_DB_PATH
from artistsync.services.retry_policy import RetryPolicy

ENV_PREFIX = "ARTIST_SYNC_"

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class EngineSettings(BaseModel):
    """Read-only configuration built once at startup."""

    model_config = ConfigDict(frozen=True)

    database_path: Path = DEFAULT_DB_PATH
    scheduler_enabled: bool = True
    tick_interval_seconds: float = Field(default=30.0, gt=0)
    max_global_concurrency: int = Field(default=8, ge=1)
    max_per_source_concurrency: int = Field(default=2, ge=1)
    attempt_timeout_seconds: float = Field(default=30.0, gt=0)

    backoff_base_seconds: float = Field(default=60.0, gt=0)
    backoff_cap_seconds: float = Field(default=3600.0, gt=0)
    max_attempts: int = Field(default=5, ge=1)
    rate_limit_backoff_factor: float = Field(default=4.0, ge=1.0)
    not_found_max_attempts: int = Field(default=3, ge=1)
    mapping_retry_delay_seconds: float = Field(default=86400.0, gt=0)

    log_level: str = "INFO"
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://127.0.0.1:5173"]
    )

    http_timeout_seconds: float = Field(default=20.0, gt=0)
    spotify_token: Optional[str] = None
    genius_token: Optional[str] = None
    lastfm_api_key: Optional[str] = None

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            base_delay_seconds=self.backoff_base_seconds,
            max_delay_seconds=self.backoff_cap_seconds,
            max_attempts=self.max_attempts,
            rate_limit_factor=self.rate_limit_backoff_factor,
            not_found_max_attempts=self.not_found_max_attempts,
            mapping_retry_delay_seconds=self.mapping_retry_delay_seconds,
        )


def _read_env_file(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}
    out: dict[str, str] = {}
    for k, v in dotenv_values(path).items():
        if k is None or v is None:
            continue
        out[str(k)] = str(v)
    return out


def load_settings(
    environ: Mapping[str, str] | None = None,
    env_file: Path | None = None,
) -> EngineSettings:
    """Build settings from ``ARTIST_SYNC_*`` variables.

    Args:
        environ: variables to read (defaults to ``os.environ``)
        env_file: optional dotenv file with lower precedence (defaults to ``./.env``)
    """
    merged = _read_env_file(env_file or Path.cwd() / ".env")
    merged.update(os.environ if environ is None else environ)

    values: dict[str, object] = {}
    for name in EngineSettings.model_fields:
        raw = merged.get(ENV_PREFIX + name.upper())
        if raw is None:
            continue
        if name == "cors_origins":
            values[name] = [origin.strip() for origin in raw.split(",") if origin.strip()]
        else:
            values[name] = raw

    return EngineSettings.model_validate(values)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=_LOG_FORMAT)
    logging.getLogger("artistsync").setLevel(level.upper())
