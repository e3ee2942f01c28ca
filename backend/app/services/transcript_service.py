from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol, cast
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from backend.app.services.errors import MalformedResponseError, TransientRemoteError
from backend.app.services.video_ids import canonical_watch_url

LOGGER = logging.getLogger("vibe_digest.transcripts")

SUPADATA_PENDING_JOB_STATUSES: frozenset[str] = frozenset(
    {"queued", "pending", "processing", "running", "in_progress", "in progress"}
)


class TranscriptSource(Protocol):
    def fetch(self, video_id: str) -> str | None:
        ...


class NullTranscriptSource:
    def fetch(self, video_id: str) -> str | None:
        _ = video_id
        return None


FetchJson = Callable[[str, dict[str, str] | None], tuple[int, dict[str, Any]]]


class SupadataTranscriptSource:
    """Best-effort transcript text through the Supadata transcript API.

    Any provider failure is logged and reported as "no transcript".
    """

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.supadata.ai/v1",
        timeout_seconds: float = 30.0,
        poll_interval_seconds: float = 1.0,
        poll_max_attempts: int = 30,
        fetch_json: FetchJson | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.strip().rstrip("/")
        self._timeout_seconds = max(1.0, timeout_seconds)
        self._poll_interval_seconds = max(0.0, poll_interval_seconds)
        self._poll_max_attempts = max(1, poll_max_attempts)
        self._fetch_json = fetch_json or self._default_fetch_json
        self._sleep = sleep

    def fetch(self, video_id: str) -> str | None:
        try:
            transcript = self._fetch_transcript(video_id)
        except TransientRemoteError as exc:
            LOGGER.info("transcript unavailable video_id=%s reason=%s", video_id, exc)
            return None
        if transcript is None:
            LOGGER.info("transcript unavailable video_id=%s reason=empty", video_id)
        return transcript

    def _fetch_transcript(self, video_id: str) -> str | None:
        status_code, payload = self._fetch_json(
            f"{self._base_url}/transcript",
            {"url": canonical_watch_url(video_id), "text": "true"},
        )
        if status_code == 202:
            job_id = _extract_job_id(payload)
            if job_id is None:
                raise MalformedResponseError("Transcript job accepted without a job id")
            status_code, payload = self._poll_job(job_id)

        if status_code >= 400:
            message = _extract_error_message(payload) or f"status {status_code}"
            raise TransientRemoteError(f"Transcript request failed: {message}")

        return _extract_transcript_text(payload)

    def _poll_job(self, job_id: str) -> tuple[int, dict[str, Any]]:
        for _ in range(self._poll_max_attempts):
            status_code, payload = self._fetch_json(f"{self._base_url}/transcript/{job_id}", None)
            if status_code >= 400:
                return status_code, payload
            status = payload.get("status")
            if isinstance(status, str) and status.strip().lower() in SUPADATA_PENDING_JOB_STATUSES:
                self._sleep(self._poll_interval_seconds)
                continue
            if isinstance(status, str) and status.strip().lower() == "failed":
                message = _extract_error_message(payload) or "job failed"
                raise TransientRemoteError(f"Transcript job {job_id} failed: {message}")
            return status_code, payload
        raise TransientRemoteError(f"Transcript job {job_id} did not finish in time")

    def _default_fetch_json(
        self,
        url: str,
        params: dict[str, str] | None,
    ) -> tuple[int, dict[str, Any]]:
        query = urlencode(params or {})
        request = Request(
            f"{url}?{query}" if query else url,
            headers={
                "x-api-key": self._api_key,
                "accept": "application/json",
                "user-agent": "vibe-digest/1.0",
            },
            method="GET",
        )
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                status_code = int(response.getcode() or 0)
                raw_body = response.read().decode("utf-8", errors="replace")
        except HTTPError as exc:
            status_code = int(exc.code)
            raw_body = exc.read().decode("utf-8", errors="replace")
        except (URLError, TimeoutError, OSError) as exc:
            raise TransientRemoteError(f"Transcript request failed: {exc}") from exc
        return status_code, _parse_json_dict(raw_body)


def _parse_json_dict(raw_body: str) -> dict[str, Any]:
    try:
        parsed = cast(object, json.loads(raw_body))
    except json.JSONDecodeError:
        return {}
    if isinstance(parsed, dict):
        return {str(key): value for key, value in cast(dict[object, Any], parsed).items()}
    return {}


def _extract_job_id(payload: dict[str, Any]) -> str | None:
    for key in ("jobId", "job_id", "id"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _extract_error_message(payload: dict[str, Any]) -> str | None:
    for key in ("message", "error", "details"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _extract_transcript_text(payload: dict[str, Any]) -> str | None:
    content = payload.get("content")
    if isinstance(content, str):
        normalized = " ".join(content.split())
        return normalized or None
    if isinstance(content, list):
        # Segment lists arrive when the provider ignores text=true.
        parts: list[str] = []
        for segment in cast(list[object], content):
            if isinstance(segment, dict):
                text = cast(dict[str, object], segment).get("text")
                if isinstance(text, str) and text.strip():
                    parts.append(text.strip())
        return " ".join(parts) or None
    return None
