from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta

from backend.app.repositories.video_repository import VideoRecord

LOGGER = logging.getLogger("vibe_digest.grouping")


@dataclass(frozen=True)
class VideoGroup:
    name: str
    start_date: str
    video_ids: tuple[str, ...]

    @property
    def count(self) -> int:
        return len(self.video_ids)


def week_start(moment: datetime) -> date:
    """Monday of the week containing ``moment``, evaluated in UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    day = moment.astimezone(UTC).date()
    return day - timedelta(days=day.weekday())


def week_name(start: date) -> str:
    return f"Week of {start.strftime('%m/%d/%y')}"


def group_videos(records: Iterable[VideoRecord]) -> list[VideoGroup]:
    buckets: dict[date, list[str]] = {}
    skipped = 0
    for record in records:
        moment = parse_timestamp(record.shared_at) or parse_timestamp(record.published_at)
        if moment is None:
            skipped += 1
            continue
        buckets.setdefault(week_start(moment), []).append(record.video_id)

    if skipped:
        LOGGER.info("grouping skipped_undated count=%s", skipped)

    return [
        VideoGroup(name=week_name(start), start_date=start.isoformat(), video_ids=tuple(ids))
        for start, ids in sorted(buckets.items(), key=lambda item: item[0], reverse=True)
    ]


def parse_timestamp(raw_value: str | None) -> datetime | None:
    if raw_value is None or not raw_value.strip():
        return None
    normalized = raw_value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed
