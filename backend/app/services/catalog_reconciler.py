from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Protocol, cast

from backend.app.repositories.video_repository import VideoRecord, VideoRepository
from backend.app.services.catalog_grouping import VideoGroup, group_videos
from backend.app.services.classifier import (
    RANDOM_CATEGORY,
    BlocklistStrategy,
    Classification,
    ClassificationInput,
    HeuristicStrategy,
    VibeCategory,
    VideoClassifier,
    is_vibe_category,
)
from backend.app.services.errors import CatalogLoadError, ReconciliationInProgressError
from backend.app.services.gmail_service import EmailSource, NewsletterEmail
from backend.app.services.transcript_service import NullTranscriptSource, TranscriptSource
from backend.app.services.video_ids import (
    canonical_watch_url,
    default_thumbnail_url,
    extract_video_ids,
)
from backend.app.services.youtube_service import ResolvedVideo, format_duration
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("vibe_digest.reconciler")

PLACEHOLDER_TITLE_PREFIX = "AI Video"
UNKNOWN_CHANNEL = "Unknown Channel"
DEGRADED_DURATION_SECONDS = 300
DEGRADED_REASON = "metadata unavailable"


class MetadataSource(Protocol):
    def resolve(self, video_ids: list[str]) -> list[ResolvedVideo]:
        ...


@dataclass(frozen=True)
class EmailItem:
    url: str
    video_id: str
    source: str
    date: datetime


@dataclass
class ReconciliationContext:
    persisted: list[VideoRecord]
    deleted_ids: set[str]
    known_ids: set[str] = field(default_factory=set)
    existing_classifications: dict[str, Classification] = field(default_factory=dict)
    new_seen_ids: set[str] = field(default_factory=set)
    catalog_load_failed: bool = False

    def __post_init__(self) -> None:
        for record in self.persisted:
            self.known_ids.add(record.video_id)
            if is_vibe_category(record.vibe):
                self.existing_classifications[record.video_id] = Classification(
                    category=cast(VibeCategory, record.vibe),
                    reason=record.reason or "",
                )


@dataclass(frozen=True)
class ReconciliationStats:
    catalog_size: int = 0
    catalog_load_failed: bool = False
    repair_candidates: int = 0
    repaired: int = 0
    repair_failed: int = 0
    needs_review: int = 0
    slices_requested: int = 0
    slices_failed: int = 0
    discovered: int = 0
    skipped_deleted: int = 0
    resolved: int = 0
    degraded: int = 0
    classified: int = 0
    reused_classifications: int = 0
    persisted: bool = True


@dataclass(frozen=True)
class ReconciliationResult:
    videos: list[VideoRecord]
    groups: list[VideoGroup]
    emails_processed: int
    sources: list[str]
    last_updated: str
    stats: ReconciliationStats


@dataclass(frozen=True)
class _RepairOutcome:
    records: list[VideoRecord]
    candidates: int
    repaired: int
    failed: int
    persisted: bool


@dataclass(frozen=True)
class _DiscoveryOutcome:
    items: list[EmailItem]
    emails: list[NewsletterEmail]
    slices_failed: int
    skipped_deleted: int


def is_healthy(record: VideoRecord) -> bool:
    return (
        record.duration_seconds > 0
        and not record.title.startswith(PLACEHOLDER_TITLE_PREFIX)
        and record.channel != UNKNOWN_CHANNEL
    )


def build_degraded_record(item: EmailItem) -> VideoRecord:
    return VideoRecord(
        video_id=item.video_id,
        url=item.url,
        title=f"{PLACEHOLDER_TITLE_PREFIX} {item.video_id}",
        channel=UNKNOWN_CHANNEL,
        shared_at=_to_iso(item.date),
        duration_seconds=DEGRADED_DURATION_SECONDS,
        formatted_duration=format_duration(DEGRADED_DURATION_SECONDS),
        vibe=RANDOM_CATEGORY,
        reason=DEGRADED_REASON,
        source=item.source,
        thumbnail=default_thumbnail_url(item.video_id),
    )


class CatalogReconciler:
    """Merges newsletter discoveries into the persisted video catalog.

    One ``run`` repairs degraded records, scans a trailing window of newsletter email,
    resolves and classifies ids never seen before, and persists the outcome. Remote failures
    degrade the affected item only. Overlapping runs in one process are rejected.
    """

    def __init__(
        self,
        *,
        repository: VideoRepository,
        metadata_source: MetadataSource,
        email_source: EmailSource,
        classifier: VideoClassifier,
        transcript_source: TranscriptSource | None = None,
        telemetry: TelemetryClient | None = None,
        discovery_weeks: int = 12,
        slice_days: int = 7,
        pause_seconds: float = 0.5,
        max_workers: int = 4,
        repair_max_attempts: int = 5,
        resurrect_deleted: bool = False,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._repository = repository
        self._metadata_source = metadata_source
        self._email_source = email_source
        self._classifier = classifier
        self._transcript_source = transcript_source or NullTranscriptSource()
        self._telemetry = telemetry or TelemetryClient.disabled()
        self._discovery_weeks = max(1, discovery_weeks)
        self._slice_days = max(1, slice_days)
        self._pause_seconds = max(0.0, pause_seconds)
        self._max_workers = max(1, max_workers)
        self._repair_max_attempts = max(1, repair_max_attempts)
        self._resurrect_deleted = resurrect_deleted
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sleep = sleep
        self._run_lock = threading.Lock()
        self._fallback_strategies = (BlocklistStrategy(), HeuristicStrategy())

    def run(self) -> ReconciliationResult:
        if not self._run_lock.acquire(blocking=False):
            raise ReconciliationInProgressError("A catalog reconciliation is already running")
        try:
            return self._run_locked()
        finally:
            self._run_lock.release()

    def _run_locked(self) -> ReconciliationResult:
        started = time.monotonic()
        context = self._load_context()
        self._telemetry.emit(
            "reconcile.run.start",
            catalog_size=len(context.persisted),
            catalog_load_failed=context.catalog_load_failed,
        )

        repair = self._repair(context)
        discovery = self._discover(context)
        new_records, resolved_count, classified, reused = self._resolve_new(
            discovery.items, context
        )

        persisted_ok = repair.persisted
        if new_records:
            persisted_ok = (
                self._persist(new_records, label="new", write=self._repository.upsert)
                and persisted_ok
            )

        videos = [*repair.records, *new_records]
        stats = ReconciliationStats(
            catalog_size=len(videos),
            catalog_load_failed=context.catalog_load_failed,
            repair_candidates=repair.candidates,
            repaired=repair.repaired,
            repair_failed=repair.failed,
            needs_review=sum(1 for record in videos if self._needs_review(record)),
            slices_requested=self._discovery_weeks,
            slices_failed=discovery.slices_failed,
            discovered=len(discovery.items),
            skipped_deleted=discovery.skipped_deleted,
            resolved=resolved_count,
            degraded=len(discovery.items) - resolved_count,
            classified=classified,
            reused_classifications=reused,
            persisted=persisted_ok,
        )
        result = ReconciliationResult(
            videos=videos,
            groups=group_videos(videos),
            emails_processed=len(discovery.emails),
            sources=list(dict.fromkeys(email.sender for email in discovery.emails if email.sender)),
            last_updated=_to_iso(self._clock()),
            stats=stats,
        )

        duration_ms = int((time.monotonic() - started) * 1000)
        LOGGER.info(
            "reconcile finished videos=%s new=%s repaired=%s degraded=%s duration_ms=%s",
            len(videos),
            len(new_records),
            repair.repaired,
            stats.degraded,
            duration_ms,
        )
        self._telemetry.emit(
            "reconcile.run.finish",
            videos=len(videos),
            new_videos=len(new_records),
            emails_processed=result.emails_processed,
            persisted=persisted_ok,
            duration_ms=duration_ms,
        )
        return result

    def _load_context(self) -> ReconciliationContext:
        try:
            persisted = self._load_catalog()
        except CatalogLoadError as exc:
            LOGGER.warning("reconcile catalog_load_failed starting_empty error=%s", exc)
            return ReconciliationContext(persisted=[], deleted_ids=set(), catalog_load_failed=True)
        try:
            deleted_ids = self._repository.list_deleted_ids()
        except sqlite3.Error as exc:
            LOGGER.warning("reconcile tombstones_load_failed error=%s", exc)
            deleted_ids = set()
        LOGGER.info(
            "reconcile catalog_loaded videos=%s tombstones=%s", len(persisted), len(deleted_ids)
        )
        return ReconciliationContext(persisted=persisted, deleted_ids=deleted_ids)

    def _load_catalog(self) -> list[VideoRecord]:
        try:
            return self._repository.list_all()
        except sqlite3.Error as exc:
            raise CatalogLoadError(f"Failed to load video catalog: {exc}") from exc

    def _repair(self, context: ReconciliationContext) -> _RepairOutcome:
        candidates = [
            record
            for record in context.persisted
            if not is_healthy(record) and record.repair_attempts < self._repair_max_attempts
        ]
        if not candidates:
            return _RepairOutcome(
                records=list(context.persisted), candidates=0, repaired=0, failed=0, persisted=True
            )

        LOGGER.info("reconcile repair start candidates=%s", len(candidates))
        resolved = self._resolve_metadata(
            [record.video_id for record in candidates], stage="repair"
        )

        updates: dict[str, VideoRecord] = {}
        repaired = 0
        for record in candidates:
            video = resolved.get(record.video_id)
            updated = _apply_metadata(record, video) if video is not None else record
            if is_healthy(updated):
                repaired += 1
                updates[record.video_id] = updated
            else:
                updates[record.video_id] = replace(
                    updated, repair_attempts=record.repair_attempts + 1
                )
        failed = len(updates) - repaired
        persisted_ok = self._persist(
            list(updates.values()), label="repair", write=self._repository.apply_repairs
        )
        self._telemetry.emit(
            "reconcile.repair.finish",
            candidates=len(candidates),
            repaired=repaired,
            failed=failed,
        )
        return _RepairOutcome(
            records=[updates.get(record.video_id, record) for record in context.persisted],
            candidates=len(candidates),
            repaired=repaired,
            failed=failed,
            persisted=persisted_ok,
        )

    def _discover(self, context: ReconciliationContext) -> _DiscoveryOutcome:
        now = self._clock()
        emails: list[NewsletterEmail] = []
        slices_failed = 0
        for index in range(self._discovery_weeks):
            if index > 0 and self._pause_seconds > 0:
                self._sleep(self._pause_seconds)
            to_date = now - timedelta(days=index * self._slice_days)
            from_date = to_date - timedelta(days=self._slice_days)
            try:
                batch = self._email_source.fetch(from_date, to_date)
            except Exception as exc:
                slices_failed += 1
                LOGGER.warning(
                    "reconcile discovery slice_failed slice=%s from=%s to=%s error=%s",
                    index + 1,
                    from_date.date().isoformat(),
                    to_date.date().isoformat(),
                    exc,
                )
                continue
            emails.extend(batch)

        items: list[EmailItem] = []
        skipped_deleted = 0
        for email in emails:
            for video_id in extract_video_ids(email.content):
                if video_id in context.known_ids or video_id in context.new_seen_ids:
                    continue
                if video_id in context.deleted_ids and not self._resurrect_deleted:
                    skipped_deleted += 1
                    continue
                context.new_seen_ids.add(video_id)
                items.append(
                    EmailItem(
                        url=canonical_watch_url(video_id),
                        video_id=video_id,
                        source=email.sender,
                        date=email.date,
                    )
                )

        LOGGER.info(
            "reconcile discovery emails=%s new_ids=%s slices_failed=%s",
            len(emails),
            len(items),
            slices_failed,
        )
        self._telemetry.emit(
            "reconcile.discovery.finish",
            emails=len(emails),
            new_ids=len(items),
            slices_failed=slices_failed,
            skipped_deleted=skipped_deleted,
        )
        return _DiscoveryOutcome(
            items=items,
            emails=emails,
            slices_failed=slices_failed,
            skipped_deleted=skipped_deleted,
        )

    def _resolve_new(
        self,
        items: Sequence[EmailItem],
        context: ReconciliationContext,
    ) -> tuple[list[VideoRecord], int, int, int]:
        if not items:
            return [], 0, 0, 0

        resolved = self._resolve_metadata([item.video_id for item in items], stage="discovery")

        def build(item: EmailItem) -> VideoRecord:
            video = resolved.get(item.video_id)
            if video is None:
                return build_degraded_record(item)
            # Discovery drops known ids, so this only applies to callers passing catalog items.
            cached = context.existing_classifications.get(item.video_id)
            if cached is not None:
                return _record_from_resolved(item, video, cached, transcript=None)
            transcript = self._fetch_transcript(item.video_id)
            classification = self._classify(video, transcript)
            return _record_from_resolved(item, video, classification, transcript=transcript)

        with ThreadPoolExecutor(
            max_workers=min(self._max_workers, len(items)),
            thread_name_prefix="vibe-digest-classify",
        ) as executor:
            records = list(executor.map(build, items))

        resolved_count = sum(1 for item in items if item.video_id in resolved)
        reused = sum(
            1
            for item in items
            if item.video_id in resolved and item.video_id in context.existing_classifications
        )
        return records, resolved_count, resolved_count - reused, reused

    def _fetch_transcript(self, video_id: str) -> str | None:
        try:
            return self._transcript_source.fetch(video_id)
        except Exception as exc:
            LOGGER.warning("reconcile transcript_failed video_id=%s error=%s", video_id, exc)
            return None

    def _classify(self, video: ResolvedVideo, transcript: str | None) -> Classification:
        try:
            return self._classifier.classify(
                video.title,
                video.description,
                video.tags,
                transcript,
            )
        except Exception:
            LOGGER.warning(
                "reconcile classify_failed video_id=%s falling_back=blocklist,heuristic",
                video.video_id,
                exc_info=True,
            )
            item = ClassificationInput(
                title=video.title, description=video.description, tags=video.tags
            )
            blocklist, heuristic = self._fallback_strategies
            return blocklist.decide(item) or heuristic.decide(item)

    def _resolve_metadata(self, video_ids: list[str], *, stage: str) -> dict[str, ResolvedVideo]:
        try:
            videos = self._metadata_source.resolve(video_ids)
        except Exception as exc:
            LOGGER.warning(
                "reconcile metadata_failed stage=%s ids=%s error=%s", stage, len(video_ids), exc
            )
            return {}
        return {video.video_id: video for video in videos}

    def _persist(
        self,
        records: list[VideoRecord],
        *,
        label: str,
        write: Callable[[list[VideoRecord]], int],
    ) -> bool:
        try:
            written = write(records)
        except sqlite3.Error as exc:
            LOGGER.error("reconcile persist_failed batch=%s size=%s error=%s", label, len(records), exc)
            return False
        LOGGER.info("reconcile persisted batch=%s size=%s", label, written)
        return True

    def _needs_review(self, record: VideoRecord) -> bool:
        return not is_healthy(record) and record.repair_attempts >= self._repair_max_attempts


def _apply_metadata(record: VideoRecord, video: ResolvedVideo) -> VideoRecord:
    return replace(
        record,
        title=video.title,
        description=video.description,
        channel=video.channel_title or UNKNOWN_CHANNEL,
        channel_id=video.channel_id,
        published_at=video.published_at,
        duration_seconds=video.duration_seconds,
        formatted_duration=format_duration(video.duration_seconds),
        thumbnail=video.thumbnail or record.thumbnail or default_thumbnail_url(record.video_id),
        thumbnails=video.thumbnails,
        tags=video.tags,
        view_count=video.view_count,
        like_count=video.like_count,
        comment_count=video.comment_count,
        category_id=video.category_id,
        default_language=video.default_language,
        live_broadcast_content=video.live_broadcast_content,
        repair_attempts=0,
    )


def _record_from_resolved(
    item: EmailItem,
    video: ResolvedVideo,
    classification: Classification,
    *,
    transcript: str | None,
) -> VideoRecord:
    return VideoRecord(
        video_id=item.video_id,
        url=item.url,
        title=video.title,
        channel=video.channel_title or UNKNOWN_CHANNEL,
        shared_at=_to_iso(item.date),
        description=video.description,
        channel_id=video.channel_id,
        tags=video.tags,
        duration_seconds=video.duration_seconds,
        formatted_duration=format_duration(video.duration_seconds),
        published_at=video.published_at,
        vibe=classification.category,
        reason=classification.reason,
        source=item.source,
        transcript=transcript,
        thumbnail=video.thumbnail or default_thumbnail_url(item.video_id),
        thumbnails=video.thumbnails,
        view_count=video.view_count,
        like_count=video.like_count,
        comment_count=video.comment_count,
        category_id=video.category_id,
        default_language=video.default_language,
        live_broadcast_content=video.live_broadcast_content,
    )


def _to_iso(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat()
