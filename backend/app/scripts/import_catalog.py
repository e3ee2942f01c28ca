from __future__ import annotations

import argparse
import json
import logging
import sqlite3
import sys
from pathlib import Path
from typing import Any, cast

from backend.app.config import load_settings
from backend.app.repositories.database import Database
from backend.app.repositories.video_repository import VideoRecord, VideoRepository
from backend.app.services.video_ids import canonical_watch_url, default_thumbnail_url
from backend.app.services.youtube_service import format_duration

LOGGER = logging.getLogger("vibe_digest.import")

IMPORT_BATCH_SIZE = 50


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Seed the video catalog from a legacy JSON export ({\"videos\": [...]}).",
    )
    parser.add_argument("export_path", type=Path, help="Path to the JSON export file.")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=IMPORT_BATCH_SIZE,
        help="Records written per upsert batch.",
    )
    return parser.parse_args()


def load_export(path: Path) -> list[dict[str, Any]]:
    payload = cast(object, json.loads(path.read_text(encoding="utf-8")))
    if not isinstance(payload, dict):
        raise ValueError("Export must be a JSON object with a `videos` list.")
    videos = cast(dict[str, object], payload).get("videos")
    if not isinstance(videos, list):
        raise ValueError("Export must be a JSON object with a `videos` list.")
    return [
        {str(key): value for key, value in cast(dict[object, Any], item).items()}
        for item in cast(list[object], videos)
        if isinstance(item, dict)
    ]


def parse_legacy_video(item: dict[str, Any]) -> VideoRecord | None:
    video_id = _text(item.get("id"))
    if video_id is None:
        return None

    duration_seconds = _int(item.get("durationSec")) or 0
    thumbnails = _legacy_thumbnails(item.get("thumbnails"))
    tags = item.get("tags")
    return VideoRecord(
        video_id=video_id,
        url=_text(item.get("url")) or canonical_watch_url(video_id),
        title=_text(item.get("title")) or video_id,
        channel=_text(item.get("channel")) or "",
        shared_at=_text(item.get("sharedAt")),
        description=_text(item.get("description")) or "",
        channel_id=_text(item.get("channelId")),
        tags=tuple(tag for tag in cast(list[object], tags) if isinstance(tag, str))
        if isinstance(tags, list)
        else (),
        duration_seconds=duration_seconds,
        formatted_duration=format_duration(duration_seconds),
        published_at=_text(item.get("publishedAt")),
        vibe=_text(item.get("vibe")),
        reason=_text(item.get("reason")),
        source=_text(item.get("source")),
        thumbnail=thumbnails.get("medium")
        or thumbnails.get("default")
        or _text(item.get("thumbnail"))
        or default_thumbnail_url(video_id),
        thumbnails=thumbnails or None,
        view_count=_int(item.get("viewCount")),
        like_count=_int(item.get("likeCount")),
        comment_count=_int(item.get("commentCount")),
    )


def import_records(
    repository: VideoRepository,
    records: list[VideoRecord],
    *,
    batch_size: int = IMPORT_BATCH_SIZE,
) -> tuple[int, int]:
    """Upsert ``records`` in batches; returns ``(written, failed_batches)``."""
    written = 0
    failed_batches = 0
    step = max(1, batch_size)
    for index in range(0, len(records), step):
        batch = records[index : index + step]
        try:
            written += repository.upsert(batch)
        except sqlite3.Error as exc:
            failed_batches += 1
            LOGGER.error("import batch_failed offset=%s size=%s error=%s", index, len(batch), exc)
    return written, failed_batches


def _legacy_thumbnails(raw_value: object) -> dict[str, str]:
    if not isinstance(raw_value, dict):
        return {}
    urls: dict[str, str] = {}
    for quality, entry in cast(dict[object, object], raw_value).items():
        if not isinstance(quality, str):
            continue
        if isinstance(entry, dict):
            entry = cast(dict[str, object], entry).get("url")
        if isinstance(entry, str) and entry.strip():
            urls[quality] = entry
    return urls


def _text(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def main() -> None:
    args = _parse_args()
    settings = load_settings()
    database = Database(settings.db_path)
    database.initialize()

    try:
        items = load_export(args.export_path)
    except (OSError, ValueError) as exc:
        print(f"Cannot read export: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc

    records = [record for record in (parse_legacy_video(item) for item in items) if record]
    written, failed_batches = import_records(
        VideoRepository(database), records, batch_size=args.batch_size
    )
    print(f"Imported {written} of {len(items)} videos into {settings.db_path}")
    if failed_batches:
        print(f"Failed batches: {failed_batches}", file=sys.stderr)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
