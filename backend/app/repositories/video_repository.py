from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, cast

from backend.app.repositories.common import utc_now_iso
from backend.app.repositories.database import Database

MANUAL_RECATEGORIZATION_REASON = "manually recategorized"


@dataclass(frozen=True)
class VideoRecord:
    video_id: str
    url: str
    title: str
    channel: str
    shared_at: str | None
    description: str = ""
    channel_id: str | None = None
    tags: tuple[str, ...] = ()
    duration_seconds: int = 0
    formatted_duration: str = "0:00"
    published_at: str | None = None
    vibe: str | None = None
    reason: str | None = None
    source: str | None = None
    transcript: str | None = None
    thumbnail: str | None = None
    thumbnails: dict[str, str] | None = None
    view_count: int | None = None
    like_count: int | None = None
    comment_count: int | None = None
    category_id: str | None = None
    default_language: str | None = None
    live_broadcast_content: str | None = None
    repair_attempts: int = 0


class VideoRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def list_all(self) -> list[VideoRecord]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT
                    id,
                    url,
                    title,
                    description,
                    channel,
                    published_at,
                    shared_at,
                    vibe,
                    reason,
                    source,
                    metadata_json,
                    repair_attempts
                FROM videos
                ORDER BY rowid ASC
                """
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def get(self, video_id: str) -> VideoRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT
                    id,
                    url,
                    title,
                    description,
                    channel,
                    published_at,
                    shared_at,
                    vibe,
                    reason,
                    source,
                    metadata_json,
                    repair_attempts
                FROM videos
                WHERE id = ?
                """,
                (video_id,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_record(row)

    def upsert(self, records: Iterable[VideoRecord]) -> int:
        now_iso = utc_now_iso()
        written = 0
        with self._db.connection() as conn:
            for record in records:
                conn.execute(
                    """
                    INSERT INTO videos
                    (
                        id,
                        url,
                        title,
                        description,
                        channel,
                        published_at,
                        shared_at,
                        vibe,
                        reason,
                        source,
                        metadata_json,
                        repair_attempts,
                        created_at,
                        updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        url = excluded.url,
                        title = excluded.title,
                        description = excluded.description,
                        channel = excluded.channel,
                        published_at = excluded.published_at,
                        shared_at = excluded.shared_at,
                        vibe = excluded.vibe,
                        reason = excluded.reason,
                        source = excluded.source,
                        metadata_json = excluded.metadata_json,
                        repair_attempts = excluded.repair_attempts,
                        updated_at = excluded.updated_at
                    """,
                    (
                        record.video_id,
                        record.url,
                        record.title,
                        record.description,
                        record.channel,
                        record.published_at,
                        record.shared_at,
                        record.vibe,
                        record.reason,
                        record.source,
                        json.dumps(_record_metadata(record), sort_keys=True),
                        max(0, record.repair_attempts),
                        now_iso,
                        now_iso,
                    ),
                )
                written += 1
        return written

    def apply_repairs(self, records: Iterable[VideoRecord]) -> int:
        """Write refreshed provider metadata onto rows that still exist.

        Only descriptive metadata and the repair counter change. Category, reason, discovery
        facts and the stored transcript are left as they are in the database, and rows deleted
        since the catalog was read stay deleted.
        """
        now_iso = utc_now_iso()
        written = 0
        with self._db.connection() as conn:
            for record in records:
                row = conn.execute(
                    "SELECT metadata_json FROM videos WHERE id = ?",
                    (record.video_id,),
                ).fetchone()
                if row is None:
                    continue
                metadata = _record_metadata(record)
                metadata["transcript"] = _decode_metadata(row["metadata_json"]).get("transcript")
                cursor = conn.execute(
                    """
                    UPDATE videos
                    SET
                        title = ?,
                        description = ?,
                        channel = ?,
                        published_at = ?,
                        metadata_json = ?,
                        repair_attempts = ?,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        record.title,
                        record.description,
                        record.channel,
                        record.published_at,
                        json.dumps(metadata, sort_keys=True),
                        max(0, record.repair_attempts),
                        now_iso,
                        record.video_id,
                    ),
                )
                written += cursor.rowcount
        return written

    def update_category(self, *, video_id: str, vibe: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE videos
                SET vibe = ?, reason = ?, updated_at = ?
                WHERE id = ?
                """,
                (vibe, MANUAL_RECATEGORIZATION_REASON, utc_now_iso(), video_id),
            )
            return cursor.rowcount > 0

    def delete(self, video_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute("DELETE FROM videos WHERE id = ?", (video_id,))
            deleted = cursor.rowcount > 0
            if deleted:
                conn.execute(
                    """
                    INSERT INTO deleted_videos (video_id, deleted_at)
                    VALUES (?, ?)
                    ON CONFLICT(video_id) DO UPDATE SET deleted_at = excluded.deleted_at
                    """,
                    (video_id, utc_now_iso()),
                )
            return deleted

    def list_deleted_ids(self) -> set[str]:
        with self._db.connection() as conn:
            rows = conn.execute("SELECT video_id FROM deleted_videos").fetchall()
        return {str(row["video_id"]) for row in rows}


def _record_metadata(record: VideoRecord) -> dict[str, Any]:
    return {
        "channel_id": record.channel_id,
        "tags": list(record.tags),
        "duration_seconds": record.duration_seconds,
        "formatted_duration": record.formatted_duration,
        "thumbnail": record.thumbnail,
        "thumbnails": dict(record.thumbnails or {}),
        "view_count": record.view_count,
        "like_count": record.like_count,
        "comment_count": record.comment_count,
        "category_id": record.category_id,
        "default_language": record.default_language,
        "live_broadcast_content": record.live_broadcast_content,
        "transcript": record.transcript,
    }


def _row_to_record(row: Any) -> VideoRecord:
    metadata = _decode_metadata(row["metadata_json"])
    return VideoRecord(
        video_id=str(row["id"]),
        url=str(row["url"]),
        title=str(row["title"]),
        channel=str(row["channel"]),
        shared_at=_to_optional_str(row["shared_at"]),
        description=str(row["description"] or ""),
        channel_id=_to_optional_str(metadata.get("channel_id")),
        tags=_decode_tags(metadata.get("tags")),
        duration_seconds=_to_int(metadata.get("duration_seconds")),
        formatted_duration=_to_optional_str(metadata.get("formatted_duration")) or "0:00",
        published_at=_to_optional_str(row["published_at"]),
        vibe=_to_optional_str(row["vibe"]),
        reason=_to_optional_str(row["reason"]),
        source=_to_optional_str(row["source"]),
        transcript=_to_optional_str(metadata.get("transcript")),
        thumbnail=_to_optional_str(metadata.get("thumbnail")),
        thumbnails=_decode_thumbnails(metadata.get("thumbnails")),
        view_count=_to_optional_int(metadata.get("view_count")),
        like_count=_to_optional_int(metadata.get("like_count")),
        comment_count=_to_optional_int(metadata.get("comment_count")),
        category_id=_to_optional_str(metadata.get("category_id")),
        default_language=_to_optional_str(metadata.get("default_language")),
        live_broadcast_content=_to_optional_str(metadata.get("live_broadcast_content")),
        repair_attempts=_to_int(row["repair_attempts"]),
    )


def _decode_metadata(raw_value: object) -> dict[str, Any]:
    if not isinstance(raw_value, str):
        return {}
    try:
        parsed = cast(object, json.loads(raw_value))
    except json.JSONDecodeError:
        return {}
    if not isinstance(parsed, dict):
        return {}
    return {str(key): value for key, value in cast(dict[object, Any], parsed).items()}


def _decode_tags(raw_value: object) -> tuple[str, ...]:
    if not isinstance(raw_value, list):
        return ()
    return tuple(item for item in cast(list[object], raw_value) if isinstance(item, str))


def _decode_thumbnails(raw_value: object) -> dict[str, str] | None:
    if not isinstance(raw_value, dict):
        return None
    thumbnails: dict[str, str] = {}
    for key, value in cast(dict[object, object], raw_value).items():
        if isinstance(key, str) and isinstance(value, str) and value.strip():
            thumbnails[key] = value
    return thumbnails or None


def _to_optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _to_optional_int(value: object) -> int | None:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def _to_int(value: object) -> int:
    parsed = _to_optional_int(value)
    if parsed is None:
        return 0
    return max(0, parsed)
