from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from importlib import import_module
from typing import Any, cast

from backend.app.services.errors import TransientRemoteError


@dataclass(frozen=True)
class ResolvedVideo:
    video_id: str
    title: str
    description: str
    channel_title: str
    channel_id: str | None
    published_at: str | None
    duration_seconds: int
    thumbnail: str | None = None
    thumbnails: dict[str, str] | None = None
    view_count: int | None = None
    like_count: int | None = None
    comment_count: int | None = None
    tags: tuple[str, ...] = ()
    category_id: str | None = None
    default_language: str | None = None
    live_broadcast_content: str | None = None


LOGGER = logging.getLogger("vibe_digest.youtube")

YOUTUBE_VIDEOS_MAX_IDS_PER_CALL = 50
ISO8601_DURATION_PATTERN = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)
THUMBNAIL_PREFERENCE: tuple[str, ...] = ("high", "medium", "default")


class YouTubeMetadataService:
    """Resolves video ids through the YouTube Data API ``videos.list`` endpoint.

    Ids the provider does not know are simply missing from the result. A failing batch is
    logged and skipped, so callers must treat absence as "unresolved", never as an error.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        batch_size: int = YOUTUBE_VIDEOS_MAX_IDS_PER_CALL,
        client_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._api_key = api_key.strip() if api_key and api_key.strip() else None
        self._batch_size = max(1, min(YOUTUBE_VIDEOS_MAX_IDS_PER_CALL, batch_size))
        self._client_factory = client_factory
        self._client: Any | None = None

    @property
    def configured(self) -> bool:
        return self._api_key is not None or self._client_factory is not None

    def resolve(self, video_ids: list[str]) -> list[ResolvedVideo]:
        unique_ids = list(dict.fromkeys(video_id for video_id in video_ids if video_id))
        if not unique_ids:
            return []
        if not self.configured:
            LOGGER.warning(
                "youtube metadata skipped reason=missing_api_key requested=%s",
                len(unique_ids),
            )
            return []

        resolved: dict[str, ResolvedVideo] = {}
        for index in range(0, len(unique_ids), self._batch_size):
            chunk = unique_ids[index : index + self._batch_size]
            try:
                response = self._list_videos(chunk)
            except Exception as exc:
                LOGGER.warning(
                    "youtube metadata chunk_failed size=%s first_id=%s error=%s",
                    len(chunk),
                    chunk[0],
                    _summarize_exception_message(exc),
                )
                continue

            for item in _as_list(response.get("items")):
                video = _parse_video_item(_as_dict(item))
                if video is not None:
                    resolved[video.video_id] = video

        LOGGER.info(
            "youtube metadata resolved requested=%s resolved=%s",
            len(unique_ids),
            len(resolved),
        )
        return list(resolved.values())

    def _list_videos(self, chunk: list[str]) -> dict[str, Any]:
        client = self._get_client()
        return cast(
            dict[str, Any],
            client.videos()
            .list(
                part="snippet,contentDetails,statistics",
                id=",".join(chunk),
                maxResults=len(chunk),
            )
            .execute(),
        )

    def _get_client(self) -> Any:
        if self._client is None:
            if self._client_factory is not None:
                self._client = self._client_factory()
            else:
                self._client = _build_youtube_client(self._api_key or "")
        return self._client


def format_duration(seconds: int) -> str:
    clamped = max(0, seconds)
    hours, remainder = divmod(clamped, 3_600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def _build_youtube_client(api_key: str) -> Any:
    try:
        discovery_module = import_module("googleapiclient.discovery")
    except ImportError as exc:  # pragma: no cover - dependency controlled at runtime
        raise TransientRemoteError(
            "YouTube metadata requires the google-api-python-client dependency"
        ) from exc

    build_fn: Any = discovery_module.build
    return build_fn("youtube", "v3", developerKey=api_key, cache_discovery=False)


def _parse_video_item(item: dict[str, Any]) -> ResolvedVideo | None:
    raw_video_id = item.get("id")
    if not isinstance(raw_video_id, str) or not raw_video_id.strip():
        return None

    snippet = _as_dict(item.get("snippet"))
    content_details = _as_dict(item.get("contentDetails"))
    statistics = _as_dict(item.get("statistics"))

    thumbnails = _extract_thumbnail_urls(snippet)
    return ResolvedVideo(
        video_id=raw_video_id,
        title=_coerce_nonempty_string(snippet.get("title")) or raw_video_id,
        description=_coerce_string(snippet.get("description")),
        channel_title=_coerce_string(snippet.get("channelTitle")),
        channel_id=_coerce_nonempty_string(snippet.get("channelId")),
        published_at=_coerce_nonempty_string(snippet.get("publishedAt")),
        duration_seconds=_parse_iso8601_duration_seconds(content_details.get("duration")) or 0,
        thumbnail=_preferred_thumbnail(thumbnails),
        thumbnails=thumbnails or None,
        view_count=_coerce_int(statistics.get("viewCount")),
        like_count=_coerce_int(statistics.get("likeCount")),
        comment_count=_coerce_int(statistics.get("commentCount")),
        tags=_extract_string_list(snippet.get("tags")),
        category_id=_coerce_nonempty_string(snippet.get("categoryId")),
        default_language=_coerce_nonempty_string(snippet.get("defaultLanguage")),
        live_broadcast_content=_coerce_nonempty_string(snippet.get("liveBroadcastContent")),
    )


def _parse_iso8601_duration_seconds(raw_value: object) -> int | None:
    if not isinstance(raw_value, str):
        return None
    matched = ISO8601_DURATION_PATTERN.match(raw_value.strip())
    if matched is None:
        return None

    days = int(matched.group("days") or 0)
    hours = int(matched.group("hours") or 0)
    minutes = int(matched.group("minutes") or 0)
    seconds = int(matched.group("seconds") or 0)
    return days * 86_400 + hours * 3_600 + minutes * 60 + seconds


def _extract_thumbnail_urls(snippet: dict[str, Any]) -> dict[str, str]:
    thumbnails = _as_dict(snippet.get("thumbnails"))
    urls: dict[str, str] = {}
    for quality, payload in thumbnails.items():
        url_value = _as_dict(payload).get("url")
        if isinstance(url_value, str) and url_value.strip():
            urls[quality] = url_value
    return urls


def _preferred_thumbnail(thumbnails: dict[str, str]) -> str | None:
    for quality in THUMBNAIL_PREFERENCE:
        url = thumbnails.get(quality)
        if url:
            return url
    return None


def _extract_string_list(raw_value: object) -> tuple[str, ...]:
    if not isinstance(raw_value, list):
        return ()
    values: list[str] = []
    for raw_item in cast(list[Any], raw_value):
        if isinstance(raw_item, str) and raw_item.strip():
            values.append(raw_item)
    return tuple(values)


def _coerce_string(raw_value: object) -> str:
    if isinstance(raw_value, str):
        return raw_value
    return ""


def _coerce_nonempty_string(raw_value: object) -> str | None:
    if isinstance(raw_value, str) and raw_value.strip():
        return raw_value
    return None


def _coerce_int(raw_value: object) -> int | None:
    if isinstance(raw_value, bool):
        return int(raw_value)
    if isinstance(raw_value, int):
        return raw_value
    if isinstance(raw_value, float):
        return int(raw_value)
    if isinstance(raw_value, str):
        try:
            return int(raw_value)
        except ValueError:
            return None
    return None


def _summarize_exception_message(exc: Exception, *, max_length: int = 400) -> str:
    raw = str(exc).strip()
    if not raw:
        raw = repr(exc)
    if len(raw) <= max_length:
        return raw
    return f"{raw[: max_length - 3]}..."


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return list(cast(list[Any], value))
    return []
