"""
app/config.py

Application-level configuration helpers.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, TypeVar

from db.config import load_env_files

_ALLOWED_LEDGER_BACKENDS = {"database", "json"}
_ALLOWED_TAG_POLICIES = {"reconcile", "append_only"}
_ALLOWED_TAG_SCOPES = {"global", "source"}
_TRUTHY = {"1", "true", "yes", "on"}

_Number = TypeVar("_Number", int, float)


@lru_cache(maxsize=1)
def _load_env_once() -> None:
    load_env_files()


def _raw_env(name: str) -> str | None:
    """
    Stripped value of ``name`` after the project ``.env`` files are applied.
    Blank values read as unset.
    """

    _load_env_once()
    value = (os.getenv(name) or "").strip()
    return value or None


def _get_bool_env(name: str, default: bool) -> bool:
    raw_value = _raw_env(name)
    return default if raw_value is None else raw_value.lower() in _TRUTHY


def _get_number_env(name: str, default: _Number, cast: Callable[[str], _Number]) -> _Number:
    raw_value = _raw_env(name)
    if raw_value is None:
        return default
    try:
        return cast(raw_value)
    except ValueError:
        return default


def _get_int_env(name: str, default: int) -> int:
    return _get_number_env(name, default, int)


def _get_float_env(name: str, default: float) -> float:
    return _get_number_env(name, default, float)


def _get_optional_int_env(name: str) -> int | None:
    """
    Optional positive integer. Unset, invalid or non-positive values mean None.
    """

    value = _get_int_env(name, 0)
    return value if value > 0 else None


def _get_str_env(name: str, default: str) -> str:
    return _raw_env(name) or default


def _get_optional_str_env(name: str) -> str | None:
    return _raw_env(name)


def _get_list_env(name: str, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    """
    Read a comma-separated list from environment variables.
    """

    value = _get_optional_str_env(name)
    if value is None:
        return default
    items = tuple(item.strip() for item in value.split(",") if item.strip())
    return items or default


def _get_choice_env(name: str, default: str, allowed: set[str]) -> str:
    """
    Read a string constrained to ``allowed``. Raises RuntimeError on any other value.
    """

    value = _get_str_env(name, default).lower()
    if value not in allowed:
        raise RuntimeError(f"{name} '{value}' is not valid. Allowed values: {sorted(allowed)}.")
    return value


@dataclass(frozen=True)
class ExternalHTTPSettings:
    """
    Shared HTTP behavior settings for external connectors.
    """

    timeout_seconds: float = 30.0
    max_retries: int = 3
    backoff_initial_seconds: float = 0.5
    backoff_multiplier: float = 2.0
    jitter_seconds: float = 0.25
    rate_limit_per_second: float = 5.0
    user_agent: str = "catalog-ingestor/1.0"


@dataclass(frozen=True)
class CircuitBreakerSettings:
    """
    Failure-ratio circuit breaker settings, one breaker per source.
    """

    failure_ratio: float = 0.5
    minimum_throughput: int = 5
    sampling_window_seconds: float = 30.0
    break_duration_seconds: float = 60.0


@dataclass(frozen=True)
class IngestionSettings:
    """
    Runtime settings for ingestion orchestration.
    """

    page_delay_seconds: float = 0.1
    ledger_backend: str = "database"
    json_ledger_path: str = "data/fetch_runs.json"
    abandoned_run_minutes: int = 120
    scheduler_enabled: bool = True
    scheduler_max_workers: int = 4
    misfire_grace_seconds: int = 300


@dataclass(frozen=True)
class CivitAISettings:
    """
    CivitAI model registry connector settings.
    """

    enabled: bool = True
    schedule: str = "0 */6 * * *"
    base_url: str = "https://civitai.com/api/v1"
    api_key: str | None = None
    page_size: int = 100
    start_page: int = 1
    max_pages: int | None = None
    tag_policy: str = "reconcile"
    tag_scope: str = "global"
    resume_from_cursor: bool = False


@dataclass(frozen=True)
class DanbooruSettings:
    """
    Danbooru image board connector settings.
    """

    enabled: bool = True
    schedule: str = "30 */2 * * *"
    base_url: str = "https://danbooru.donmai.us"
    username: str | None = None
    api_key: str | None = None
    page_size: int = 100
    max_pages: int | None = 10
    tags: str | None = None
    tag_policy: str = "reconcile"
    tag_scope: str = "global"
    resume_from_cursor: bool = False


@dataclass(frozen=True)
class E621Settings:
    """
    e621 image board connector settings. e621 asks every client to send a
    User-Agent naming the project and its operator.
    """

    enabled: bool = False
    schedule: str = "15 */4 * * *"
    base_url: str = "https://e621.net"
    user_agent: str = "catalog-ingestor/1.0 (by unknown on e621)"
    login: str | None = None
    api_key: str | None = None
    page_size: int = 100
    max_pages: int | None = 10
    tags: str | None = None
    tag_policy: str = "reconcile"
    tag_scope: str = "global"
    resume_from_cursor: bool = False


@dataclass(frozen=True)
class OllamaSettings:
    """
    Local Ollama model server connector settings.
    """

    enabled: bool = False
    schedule: str = "interval:3600"
    base_url: str = "http://localhost:11434"
    tag_policy: str = "reconcile"
    tag_scope: str = "global"


@dataclass(frozen=True)
class ComfyUISettings:
    """
    ComfyUI workflow directory connector settings.
    """

    enabled: bool = False
    schedule: str = "interval:3600"
    base_directories: tuple[str, ...] = ()
    include_patterns: tuple[str, ...] = ("*.json",)
    exclude_patterns: tuple[str, ...] = ()
    page_size: int = 100
    tag_policy: str = "reconcile"
    tag_scope: str = "global"


@lru_cache(maxsize=1)
def get_external_http_settings() -> ExternalHTTPSettings:
    """
    Return shared connector HTTP settings from environment variables.
    """

    return ExternalHTTPSettings(
        timeout_seconds=max(1.0, _get_float_env("EXTERNAL_HTTP_TIMEOUT_SECONDS", 30.0)),
        max_retries=max(0, _get_int_env("EXTERNAL_HTTP_MAX_RETRIES", 3)),
        backoff_initial_seconds=max(0.1, _get_float_env("EXTERNAL_HTTP_BACKOFF_INITIAL_SECONDS", 0.5)),
        backoff_multiplier=max(1.0, _get_float_env("EXTERNAL_HTTP_BACKOFF_MULTIPLIER", 2.0)),
        jitter_seconds=max(0.0, _get_float_env("EXTERNAL_HTTP_JITTER_SECONDS", 0.25)),
        rate_limit_per_second=max(0.1, _get_float_env("EXTERNAL_HTTP_RATE_LIMIT_PER_SECOND", 5.0)),
        user_agent=_get_str_env("EXTERNAL_HTTP_USER_AGENT", "catalog-ingestor/1.0"),
    )


@lru_cache(maxsize=1)
def get_circuit_breaker_settings() -> CircuitBreakerSettings:
    """
    Return circuit breaker settings from environment variables.
    """

    return CircuitBreakerSettings(
        failure_ratio=min(1.0, max(0.01, _get_float_env("CIRCUIT_BREAKER_FAILURE_RATIO", 0.5))),
        minimum_throughput=max(1, _get_int_env("CIRCUIT_BREAKER_MINIMUM_THROUGHPUT", 5)),
        sampling_window_seconds=max(1.0, _get_float_env("CIRCUIT_BREAKER_SAMPLING_WINDOW_SECONDS", 30.0)),
        break_duration_seconds=max(1.0, _get_float_env("CIRCUIT_BREAKER_BREAK_SECONDS", 60.0)),
    )


@lru_cache(maxsize=1)
def get_ingestion_settings() -> IngestionSettings:
    """
    Return ingestion orchestration settings from environment variables.
    """

    return IngestionSettings(
        page_delay_seconds=max(0.0, _get_float_env("INGEST_PAGE_DELAY_SECONDS", 0.1)),
        ledger_backend=_get_choice_env("INGEST_LEDGER_BACKEND", "database", _ALLOWED_LEDGER_BACKENDS),
        json_ledger_path=_get_str_env("INGEST_JSON_LEDGER_PATH", "data/fetch_runs.json"),
        abandoned_run_minutes=max(1, _get_int_env("INGEST_ABANDONED_RUN_MINUTES", 120)),
        scheduler_enabled=_get_bool_env("INGEST_SCHEDULER_ENABLED", True),
        scheduler_max_workers=max(1, _get_int_env("INGEST_SCHEDULER_MAX_WORKERS", 4)),
        misfire_grace_seconds=max(1, _get_int_env("INGEST_MISFIRE_GRACE_SECONDS", 300)),
    )


@lru_cache(maxsize=1)
def get_civitai_settings() -> CivitAISettings:
    """
    Return CivitAI connector settings from environment variables.
    """

    return CivitAISettings(
        enabled=_get_bool_env("CIVITAI_ENABLED", True),
        schedule=_get_str_env("CIVITAI_SCHEDULE", "0 */6 * * *"),
        base_url=_get_str_env("CIVITAI_BASE_URL", "https://civitai.com/api/v1"),
        api_key=_get_optional_str_env("CIVITAI_API_KEY"),
        page_size=min(100, max(1, _get_int_env("CIVITAI_PAGE_SIZE", 100))),
        start_page=max(1, _get_int_env("CIVITAI_START_PAGE", 1)),
        max_pages=_get_optional_int_env("CIVITAI_MAX_PAGES"),
        tag_policy=_get_choice_env("CIVITAI_TAG_POLICY", "reconcile", _ALLOWED_TAG_POLICIES),
        tag_scope=_get_choice_env("CIVITAI_TAG_SCOPE", "global", _ALLOWED_TAG_SCOPES),
        resume_from_cursor=_get_bool_env("CIVITAI_RESUME_FROM_CURSOR", False),
    )


@lru_cache(maxsize=1)
def get_danbooru_settings() -> DanbooruSettings:
    """
    Return Danbooru connector settings from environment variables.
    """

    return DanbooruSettings(
        enabled=_get_bool_env("DANBOORU_ENABLED", True),
        schedule=_get_str_env("DANBOORU_SCHEDULE", "30 */2 * * *"),
        base_url=_get_str_env("DANBOORU_BASE_URL", "https://danbooru.donmai.us"),
        username=_get_optional_str_env("DANBOORU_USERNAME"),
        api_key=_get_optional_str_env("DANBOORU_API_KEY"),
        page_size=min(200, max(1, _get_int_env("DANBOORU_PAGE_SIZE", 100))),
        max_pages=_get_optional_int_env("DANBOORU_MAX_PAGES") or 10,
        tags=_get_optional_str_env("DANBOORU_TAGS"),
        tag_policy=_get_choice_env("DANBOORU_TAG_POLICY", "reconcile", _ALLOWED_TAG_POLICIES),
        tag_scope=_get_choice_env("DANBOORU_TAG_SCOPE", "global", _ALLOWED_TAG_SCOPES),
        resume_from_cursor=_get_bool_env("DANBOORU_RESUME_FROM_CURSOR", False),
    )


@lru_cache(maxsize=1)
def get_e621_settings() -> E621Settings:
    return E621Settings(
        enabled=_get_bool_env("E621_ENABLED", False),
        schedule=_get_str_env("E621_SCHEDULE", "15 */4 * * *"),
        base_url=_get_str_env("E621_BASE_URL", "https://e621.net"),
        user_agent=_get_str_env("E621_USER_AGENT", "catalog-ingestor/1.0 (by unknown on e621)"),
        login=_get_optional_str_env("E621_LOGIN"),
        api_key=_get_optional_str_env("E621_API_KEY"),
        page_size=min(320, max(1, _get_int_env("E621_PAGE_SIZE", 100))),
        max_pages=_get_optional_int_env("E621_MAX_PAGES") or 10,
        tags=_get_optional_str_env("E621_TAGS"),
        tag_policy=_get_choice_env("E621_TAG_POLICY", "reconcile", _ALLOWED_TAG_POLICIES),
        tag_scope=_get_choice_env("E621_TAG_SCOPE", "global", _ALLOWED_TAG_SCOPES),
        resume_from_cursor=_get_bool_env("E621_RESUME_FROM_CURSOR", False),
    )


@lru_cache(maxsize=1)
def get_ollama_settings() -> OllamaSettings:
    """
    Return Ollama connector settings from environment variables.
    """

    return OllamaSettings(
        enabled=_get_bool_env("OLLAMA_ENABLED", False),
        schedule=_get_str_env("OLLAMA_SCHEDULE", "interval:3600"),
        base_url=_get_str_env("OLLAMA_BASE_URL", "http://localhost:11434"),
        tag_policy=_get_choice_env("OLLAMA_TAG_POLICY", "reconcile", _ALLOWED_TAG_POLICIES),
        tag_scope=_get_choice_env("OLLAMA_TAG_SCOPE", "global", _ALLOWED_TAG_SCOPES),
    )


@lru_cache(maxsize=1)
def get_comfyui_settings() -> ComfyUISettings:
    """
    Return ComfyUI workflow connector settings from environment variables.
    """

    return ComfyUISettings(
        enabled=_get_bool_env("COMFYUI_ENABLED", False),
        schedule=_get_str_env("COMFYUI_SCHEDULE", "interval:3600"),
        base_directories=_get_list_env("COMFYUI_BASE_DIRECTORIES"),
        include_patterns=_get_list_env("COMFYUI_INCLUDE_PATTERNS", ("*.json",)),
        exclude_patterns=_get_list_env("COMFYUI_EXCLUDE_PATTERNS"),
        page_size=max(1, _get_int_env("COMFYUI_PAGE_SIZE", 100)),
        tag_policy=_get_choice_env("COMFYUI_TAG_POLICY", "reconcile", _ALLOWED_TAG_POLICIES),
        tag_scope=_get_choice_env("COMFYUI_TAG_SCOPE", "global", _ALLOWED_TAG_SCOPES),
    )
