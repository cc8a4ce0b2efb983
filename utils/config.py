from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

from dotenv import load_dotenv

from services.http_client import RetryPolicy
from services.streaming import DEFAULT_CAPACITY, DEFAULT_HYDRATE_WIDTH


PROJECT_ROOT = Path(__file__).resolve().parent.parent


@dataclass(slots=True)
class AppConfig:
    secrets_file: Path
    db_path: Path
    log_dir: Path
    log_level: str
    user_id: str
    concurrency: int
    stream_capacity: int
    http_timeout: float
    retry_policy: RetryPolicy

    def with_overrides(self, **changes) -> "AppConfig":
        """Return a copy with every non-None keyword applied."""

        return replace(self, **{key: value for key, value in changes.items() if value is not None})


def _resolve_path(value: str | None, fallback: str) -> Path:
    candidate = Path(value or fallback)
    if not candidate.is_absolute():
        candidate = PROJECT_ROOT / candidate
    return candidate


def _number(name: str, default: str, kind=float, minimum: float | None = None):
    raw = os.getenv(name, default)
    try:
        value = kind(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def load_config(env_file: str | os.PathLike[str] | None = None) -> AppConfig:
    """Load configuration values from a .env file and environment variables."""

    if env_file:
        load_dotenv(env_file, override=False)
    else:
        load_dotenv(override=False)

    retry_policy = RetryPolicy(
        initial_delay=_number("RETRY_INITIAL_DELAY", "1", minimum=0),
        max_delay=_number("RETRY_MAX_DELAY", "32", minimum=0),
        max_elapsed=_number("RETRY_MAX_ELAPSED", "300", minimum=0),
    )

    return AppConfig(
        secrets_file=_resolve_path(os.getenv("GOOGLE_CLIENT_SECRETS"), "credentials.json"),
        db_path=_resolve_path(os.getenv("DB_PATH"), "data/gmail_archive.db"),
        log_dir=_resolve_path(os.getenv("LOG_DIR"), "logs"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        user_id=os.getenv("GMAIL_USER_ID", "me"),
        concurrency=_number("ARCHIVE_CONCURRENCY", str(DEFAULT_HYDRATE_WIDTH), kind=int, minimum=1),
        stream_capacity=_number("STREAM_CAPACITY", str(DEFAULT_CAPACITY), kind=int, minimum=1),
        http_timeout=_number("HTTP_TIMEOUT", "30", minimum=0),
        retry_policy=retry_policy,
    )
