"""
app/services/ingestion_service.py

Builds the ingestion coordinator from environment settings.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from functools import lru_cache
from pathlib import Path

from sqlalchemy.orm import Session

from app.config import (
    CircuitBreakerSettings,
    ExternalHTTPSettings,
    IngestionSettings,
    get_circuit_breaker_settings,
    get_civitai_settings,
    get_comfyui_settings,
    get_danbooru_settings,
    get_e621_settings,
    get_external_http_settings,
    get_ingestion_settings,
    get_ollama_settings,
)
from app.connectors.civitai_connector import CivitAIConnector
from app.connectors.comfyui_connector import ComfyUIWorkflowConnector
from app.connectors.danbooru_connector import DanbooruConnector
from app.connectors.e621_connector import E621Connector
from app.connectors.ollama_connector import OllamaConnector
from app.mappers.civitai_mapper import CivitAIModelMapper
from app.mappers.comfyui_mapper import ComfyUIWorkflowMapper
from app.mappers.danbooru_mapper import DanbooruPostMapper
from app.mappers.e621_mapper import E621PostMapper
from app.mappers.ollama_mapper import OllamaModelMapper
from db.models.tag import GLOBAL_TAG_SCOPE
from ingestion.coordinator import IngestionCoordinator, SourceDefinition
from ingestion.ledger import DatabaseFetchRunLedger, FetchRunLedger, JsonFileFetchRunLedger
from ingestion.resilience import CircuitBreaker, ResilientCaller, RetryPolicy

logger = logging.getLogger(__name__)


def build_caller(
    source: str,
    *,
    http_settings: ExternalHTTPSettings,
    breaker_settings: CircuitBreakerSettings,
) -> ResilientCaller:
    """
    One retry policy and one circuit breaker per source.
    """

    return ResilientCaller(
        retry_policy=RetryPolicy(
            max_retries=http_settings.max_retries,
            backoff_initial_seconds=http_settings.backoff_initial_seconds,
            backoff_multiplier=http_settings.backoff_multiplier,
            jitter_seconds=http_settings.jitter_seconds,
        ),
        circuit_breaker=CircuitBreaker(
            name=source,
            failure_ratio=breaker_settings.failure_ratio,
            minimum_throughput=breaker_settings.minimum_throughput,
            sampling_window_seconds=breaker_settings.sampling_window_seconds,
            break_duration_seconds=breaker_settings.break_duration_seconds,
        ),
    )


def _tag_scope(source: str, configured: str) -> str:
    return source if configured == "source" else GLOBAL_TAG_SCOPE


def build_source_definitions(
    *,
    ingestion_settings: IngestionSettings,
    http_settings: ExternalHTTPSettings,
    breaker_settings: CircuitBreakerSettings,
) -> list[SourceDefinition]:
    """
    Build one definition per enabled source.
    """

    definitions: list[SourceDefinition] = []

    def caller_for(source: str) -> ResilientCaller:
        return build_caller(source, http_settings=http_settings, breaker_settings=breaker_settings)

    civitai = get_civitai_settings()
    if civitai.enabled:
        definitions.append(
            SourceDefinition(
                name="civitai",
                connector=CivitAIConnector(settings=civitai, http_settings=http_settings),
                mapper=CivitAIModelMapper(
                    tag_policy=civitai.tag_policy,
                    tag_scope=_tag_scope("civitai", civitai.tag_scope),
                ),
                caller=caller_for("civitai"),
                max_pages=civitai.max_pages,
                page_delay_seconds=ingestion_settings.page_delay_seconds,
                resume_from_cursor=civitai.resume_from_cursor,
            )
        )

    danbooru = get_danbooru_settings()
    if danbooru.enabled:
        definitions.append(
            SourceDefinition(
                name="danbooru",
                connector=DanbooruConnector(settings=danbooru, http_settings=http_settings),
                mapper=DanbooruPostMapper(
                    tag_policy=danbooru.tag_policy,
                    tag_scope=_tag_scope("danbooru", danbooru.tag_scope),
                ),
                caller=caller_for("danbooru"),
                max_pages=danbooru.max_pages,
                page_delay_seconds=ingestion_settings.page_delay_seconds,
                resume_from_cursor=danbooru.resume_from_cursor,
            )
        )

    e621 = get_e621_settings()
    if e621.enabled:
        definitions.append(
            SourceDefinition(
                name="e621",
                connector=E621Connector(settings=e621, http_settings=http_settings),
                mapper=E621PostMapper(
                    tag_policy=e621.tag_policy,
                    tag_scope=_tag_scope("e621", e621.tag_scope),
                ),
                caller=caller_for("e621"),
                max_pages=e621.max_pages,
                page_delay_seconds=ingestion_settings.page_delay_seconds,
                resume_from_cursor=e621.resume_from_cursor,
            )
        )

    ollama = get_ollama_settings()
    if ollama.enabled:
        definitions.append(
            SourceDefinition(
                name="ollama",
                connector=OllamaConnector(settings=ollama, http_settings=http_settings),
                mapper=OllamaModelMapper(
                    tag_policy=ollama.tag_policy,
                    tag_scope=_tag_scope("ollama", ollama.tag_scope),
                ),
                caller=caller_for("ollama"),
                max_pages=1,
                page_delay_seconds=ingestion_settings.page_delay_seconds,
            )
        )

    comfyui = get_comfyui_settings()
    if comfyui.enabled:
        if not comfyui.base_directories:
            logger.warning("ComfyUI ingestion enabled without COMFYUI_BASE_DIRECTORIES; skipping.")
        else:
            definitions.append(
                SourceDefinition(
                    name="comfyui",
                    connector=ComfyUIWorkflowConnector(settings=comfyui),
                    mapper=ComfyUIWorkflowMapper(
                        tag_policy=comfyui.tag_policy,
                        tag_scope=_tag_scope("comfyui", comfyui.tag_scope),
                    ),
                    caller=caller_for("comfyui"),
                    page_delay_seconds=0.0,
                )
            )

    return definitions


def build_ledger(
    settings: IngestionSettings,
    session_factory: Callable[[], Session],
) -> FetchRunLedger:
    if settings.ledger_backend == "json":
        logger.info("Using JSON fetch run ledger path=%s", settings.json_ledger_path)
        return JsonFileFetchRunLedger(Path(settings.json_ledger_path))
    return DatabaseFetchRunLedger(session_factory)


@lru_cache(maxsize=1)
def get_ingestion_coordinator() -> IngestionCoordinator:
    """
    Return the process-wide coordinator built from environment settings.
    """

    from db.session import SessionLocal

    ingestion_settings = get_ingestion_settings()
    definitions = build_source_definitions(
        ingestion_settings=ingestion_settings,
        http_settings=get_external_http_settings(),
        breaker_settings=get_circuit_breaker_settings(),
    )
    logger.info("Ingestion sources registered sources=%s", [d.name for d in definitions])
    return IngestionCoordinator(
        ledger=build_ledger(ingestion_settings, SessionLocal),
        session_factory=SessionLocal,
        definitions=definitions,
    )
