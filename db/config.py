"""
Environment-driven database settings.

The catalog lives in PostgreSQL in deployed environments. A ``sqlite:///``
URL is accepted for single-process local runs and the test suite.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
_ENV_FILES = (".env", ".env.local")
_CLOUD_LIKE_ENVS = {"prod", "production", "staging", "cloud"}
_TRUTHY = {"1", "true", "yes", "on"}


def _parse_env_line(raw_line: str) -> tuple[str, str] | None:
    line = raw_line.strip()
    if not line or line.startswith("#"):
        return None
    if line.startswith("export "):
        line = line[len("export ") :].lstrip()
    key, separator, value = line.partition("=")
    key = key.strip()
    if not separator or not key:
        return None
    return key, value.strip().strip('"').strip("'")


def load_env_files(root: Path | None = None) -> None:
    """
    Copy ``KEY=VALUE`` pairs from ``.env`` then ``.env.local`` into the
    process environment. Variables that are already set win.
    """

    base = root or _PROJECT_ROOT
    for filename in _ENV_FILES:
        env_path = base / filename
        if not env_path.is_file():
            continue
        for raw_line in env_path.read_text(encoding="utf-8").splitlines():
            parsed = _parse_env_line(raw_line)
            if parsed is not None:
                os.environ.setdefault(*parsed)


def normalize_database_url(url: str) -> str:
    """
    Rewrite bare postgres schemes to the psycopg 3 driver. SQLite URLs pass through.
    """

    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix) :]
    return url


def is_sqlite_url(url: str) -> bool:
    return url.startswith("sqlite")


def resolve_database_url() -> str:
    """
    Pick the database URL, first match wins:

    1) DATABASE_URL
    2) CLOUD_DATABASE_URL when ENVIRONMENT is cloud-like
    3) LOCAL_DATABASE_URL
    """

    load_env_files()

    environment = os.getenv("ENVIRONMENT", "local").strip().lower()
    candidates = [os.getenv("DATABASE_URL")]
    if environment in _CLOUD_LIKE_ENVS:
        candidates.append(os.getenv("CLOUD_DATABASE_URL"))
    candidates.append(os.getenv("LOCAL_DATABASE_URL"))

    for candidate in candidates:
        if candidate and candidate.strip():
            return normalize_database_url(candidate.strip())

    raise RuntimeError(
        "No database URL configured. Set DATABASE_URL, or configure "
        "LOCAL_DATABASE_URL / CLOUD_DATABASE_URL."
    )


def _env_int(name: str, default: int) -> int:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except ValueError:
        return default


@dataclass(frozen=True)
class DatabaseSettings:
    """
    Engine settings. Pool sizes apply to PostgreSQL only; SQLite uses the
    busy timeout so concurrent writers queue instead of failing.
    """

    url: str
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10
    pool_recycle_seconds: int = 1800
    sqlite_busy_timeout_seconds: int = 30

    @property
    def is_sqlite(self) -> bool:
        return is_sqlite_url(self.url)


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
    url = resolve_database_url()
    if not (url.startswith("postgresql") or is_sqlite_url(url)):
        raise RuntimeError("Only PostgreSQL and SQLite URLs are supported.")

    return DatabaseSettings(
        url=url,
        echo=os.getenv("SQL_ECHO", "").strip().lower() in _TRUTHY,
        pool_size=max(1, _env_int("DB_POOL_SIZE", 5)),
        max_overflow=max(0, _env_int("DB_MAX_OVERFLOW", 10)),
        pool_recycle_seconds=max(0, _env_int("DB_POOL_RECYCLE", 1800)),
        sqlite_busy_timeout_seconds=max(1, _env_int("DB_SQLITE_BUSY_TIMEOUT_SECONDS", 30)),
    )
