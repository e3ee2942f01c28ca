from __future__ import annotations

from dataclasses import asdict

from pydantic import BaseModel, ConfigDict, Field, field_validator

from backend.app.repositories.video_repository import VideoRecord
from backend.app.services.catalog_grouping import VideoGroup
from backend.app.services.catalog_reconciler import ReconciliationResult
from backend.app.services.classifier import VIBE_CATEGORIES, VibeCategory
from backend.app.services.video_ids import default_thumbnail_url


class VideoPayload(BaseModel):
    id: str
    url: str
    title: str
    channel: str
    channel_id: str | None = None
    description: str = ""
    duration_sec: int
    formatted_duration: str
    thumbnail: str
    thumbnails: dict[str, str] | None = None
    shared_at: str | None = None
    published_at: str | None = None
    vibe: str | None = None
    reason: str | None = None
    source: str | None = None
    tags: list[str] = Field(default_factory=list)
    view_count: int | None = None
    like_count: int | None = None
    comment_count: int | None = None
    category_id: str | None = None
    default_language: str | None = None
    live_broadcast_content: str | None = None
    has_transcript: bool = False

    @classmethod
    def from_record(cls, record: VideoRecord) -> VideoPayload:
        return cls(
            id=record.video_id,
            url=record.url,
            title=record.title,
            channel=record.channel,
            channel_id=record.channel_id,
            description=record.description,
            duration_sec=record.duration_seconds,
            formatted_duration=record.formatted_duration,
            thumbnail=record.thumbnail or default_thumbnail_url(record.video_id),
            thumbnails=record.thumbnails,
            shared_at=record.shared_at,
            published_at=record.published_at,
            vibe=record.vibe,
            reason=record.reason,
            source=record.source,
            tags=list(record.tags),
            view_count=record.view_count,
            like_count=record.like_count,
            comment_count=record.comment_count,
            category_id=record.category_id,
            default_language=record.default_language,
            live_broadcast_content=record.live_broadcast_content,
            has_transcript=bool(record.transcript),
        )


class GroupPayload(BaseModel):
    name: str
    start_date: str
    video_ids: list[str]
    count: int

    @classmethod
    def from_group(cls, group: VideoGroup) -> GroupPayload:
        return cls(
            name=group.name,
            start_date=group.start_date,
            video_ids=list(group.video_ids),
            count=group.count,
        )


class CatalogRunMetadata(BaseModel):
    emails_processed: int
    unique_videos: int
    last_updated: str
    sources: list[str]
    stats: dict[str, int | bool]


class NewsletterCatalogResponse(BaseModel):
    videos: list[VideoPayload]
    groups: list[GroupPayload]
    metadata: CatalogRunMetadata

    @classmethod
    def from_result(cls, result: ReconciliationResult) -> NewsletterCatalogResponse:
        return cls(
            videos=[VideoPayload.from_record(record) for record in result.videos],
            groups=[GroupPayload.from_group(group) for group in result.groups],
            metadata=CatalogRunMetadata(
                emails_processed=result.emails_processed,
                unique_videos=len(result.videos),
                last_updated=result.last_updated,
                sources=result.sources,
                stats=asdict(result.stats),
            ),
        )


class RecategorizeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str = Field(min_length=1, max_length=64)
    vibe: VibeCategory

    @field_validator("video_id")
    @classmethod
    def _strip_video_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("video_id must not be blank")
        return normalized


class RecategorizeResponse(BaseModel):
    ok: bool
    video_id: str
    vibe: str
    reason: str


class DeleteVideoResponse(BaseModel):
    ok: bool
    video_id: str


def vibe_categories() -> list[str]:
    return list(VIBE_CATEGORIES)
