from __future__ import annotations

from functools import lru_cache

from backend.app.config import AppSettings, load_settings
from backend.app.repositories.database import Database
from backend.app.repositories.video_repository import VideoRepository
from backend.app.services.catalog_reconciler import CatalogReconciler
from backend.app.services.classifier import VideoClassifier, build_classifier
from backend.app.services.gmail_service import GmailNewsletterSource
from backend.app.services.transcript_service import (
    NullTranscriptSource,
    SupadataTranscriptSource,
    TranscriptSource,
)
from backend.app.services.youtube_service import YouTubeMetadataService
from backend.app.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_video_repository() -> VideoRepository:
    return VideoRepository(get_database())


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_classifier() -> VideoClassifier:
    settings = get_settings()
    return build_classifier(
        google_api_key=settings.google_api_key,
        gemini_model=settings.gemini_model,
        description_excerpt_chars=settings.description_excerpt_chars,
        transcript_excerpt_chars=settings.transcript_excerpt_chars,
    )


def _build_transcript_source(settings: AppSettings) -> TranscriptSource:
    if settings.supadata_api_key is None:
        return NullTranscriptSource()
    return SupadataTranscriptSource(
        api_key=settings.supadata_api_key,
        base_url=settings.supadata_base_url,
        timeout_seconds=settings.supadata_http_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_reconciler() -> CatalogReconciler:
    settings = get_settings()
    return CatalogReconciler(
        repository=get_video_repository(),
        metadata_source=YouTubeMetadataService(
            api_key=settings.resolved_youtube_api_key,
            batch_size=settings.metadata_batch_size,
        ),
        email_source=GmailNewsletterSource(
            token_path=settings.gmail_token_path,
            client_secret_path=settings.gmail_client_secret_path,
            senders=settings.newsletter_sender_list,
            max_results=settings.gmail_max_results,
        ),
        classifier=get_classifier(),
        transcript_source=_build_transcript_source(settings),
        telemetry=get_telemetry(),
        discovery_weeks=settings.discovery_weeks,
        slice_days=settings.discovery_slice_days,
        pause_seconds=settings.discovery_pause_seconds,
        max_workers=settings.classification_max_workers,
        repair_max_attempts=settings.repair_max_attempts,
        resurrect_deleted=settings.resurrect_deleted_videos,
    )


def reset_cached_dependencies() -> None:
    get_reconciler.cache_clear()
    get_classifier.cache_clear()
    get_telemetry.cache_clear()
    get_video_repository.cache_clear()
    get_database.cache_clear()
    get_settings.cache_clear()
