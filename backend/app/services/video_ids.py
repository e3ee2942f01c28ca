from __future__ import annotations

import re

VIDEO_ID_PATTERN = re.compile(
    r"(?:https?://)?(?:www\.|m\.)?"
    r"(?:youtube\.com/(?:watch\?(?:[^\s\"'<>#]*?&(?:amp;)?)?v=|embed/|live/)|youtu\.be/)"
    r"(?P<video_id>[A-Za-z0-9_-]{11})(?![A-Za-z0-9_-])"
)


def extract_video_ids(text: str) -> list[str]:
    """Return video ids referenced in ``text`` in first-occurrence order, without repeats.

    Recognizes watch, ``youtu.be`` short-link, embed and live URL shapes. The same id
    appearing in several of those shapes is reported once.
    """
    if not text:
        return []

    seen: set[str] = set()
    video_ids: list[str] = []
    for match in VIDEO_ID_PATTERN.finditer(text):
        video_id = match.group("video_id")
        if video_id in seen:
            continue
        seen.add(video_id)
        video_ids.append(video_id)
    return video_ids


def extract_video_id(url: str) -> str | None:
    matched = VIDEO_ID_PATTERN.search(url)
    if matched is None:
        return None
    return matched.group("video_id")


def canonical_watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def default_thumbnail_url(video_id: str) -> str:
    return f"https://i.ytimg.com/vi/{video_id}/mqdefault.jpg"
