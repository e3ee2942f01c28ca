from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any, cast

import pytest

from backend.app.repositories.video_repository import VideoRecord, VideoRepository
from backend.app.services.catalog_reconciler import (
    DEGRADED_REASON,
    CatalogReconciler,
    ReconciliationContext,
    is_healthy,
)
from backend.app.services.classifier import (
    Classification,
    ClassificationInput,
    VideoClassifier,
    build_classifier,
)
from backend.app.services.errors import ReconciliationInProgressError, TransientRemoteError
from backend.app.services.gmail_service import NewsletterEmail
from backend.app.services.youtube_service import ResolvedVideo

NOW = datetime(2024, 6, 12, 12, 0, tzinfo=UTC)


class _FakeMetadataSource:
    def __init__(self, videos: Iterable[ResolvedVideo] = ()) -> None:
        self.videos = {video.video_id: video for video in videos}
        self.calls: list[list[str]] = []

    def resolve(self, video_ids: list[str]) -> list[ResolvedVideo]:
        self.calls.append(list(video_ids))
        return [self.videos[video_id] for video_id in video_ids if video_id in self.videos]


class _FakeEmailSource:
    """Returns the queued batches slice by slice, then nothing."""

    def __init__(self, batches: list[list[NewsletterEmail] | Exception]) -> None:
        self._batches = list(batches)
        self.calls: list[tuple[datetime, datetime]] = []

    def fetch(self, from_date: datetime, to_date: datetime) -> list[NewsletterEmail]:
        self.calls.append((from_date, to_date))
        if not self._batches:
            return []
        batch = self._batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        return batch


class _FakeTranscriptSource:
    def __init__(self, transcripts: dict[str, str] | None = None) -> None:
        self._transcripts = transcripts or {}
        self.calls: list[str] = []

    def fetch(self, video_id: str) -> str | None:
        self.calls.append(video_id)
        return self._transcripts.get(video_id)


class _CountingStrategy:
    name = "counting"

    def __init__(self, category: str = "Model Upgrades") -> None:
        self._category = category
        self.inputs: list[ClassificationInput] = []

    def decide(self, item: ClassificationInput) -> Classification | None:
        self.inputs.append(item)
        return Classification(category=cast(Any, self._category), reason="counted")


def _email(content: str, *, sender: str = "dan@tldrnewsletter.com", days_ago: int = 1) -> NewsletterEmail:
    return NewsletterEmail(
        message_id=f"msg-{abs(hash((content, sender, days_ago)))}",
        sender=sender,
        subject="Newsletter",
        date=NOW - timedelta(days=days_ago),
        content=content,
    )


def _resolved(video_id: str, *, duration_seconds: int = 754, title: str | None = None) -> ResolvedVideo:
    return ResolvedVideo(
        video_id=video_id,
        title=title or f"Resolved {video_id}",
        description="An MCP server demo",
        channel_title="AI Channel",
        channel_id="UC123",
        published_at="2024-06-01T00:00:00Z",
        duration_seconds=duration_seconds,
        thumbnail=f"https://i.ytimg.com/vi/{video_id}/hqdefault.jpg",
        thumbnails={"high": f"https://i.ytimg.com/vi/{video_id}/hqdefault.jpg"},
        view_count=10,
        tags=("mcp",),
    )


def _reconciler(
    repository: VideoRepository,
    *,
    metadata: _FakeMetadataSource | None = None,
    emails: _FakeEmailSource | None = None,
    transcripts: _FakeTranscriptSource | None = None,
    classifier: VideoClassifier | None = None,
    sleeps: list[float] | None = None,
    **kwargs: Any,
) -> CatalogReconciler:
    recorded_sleeps = sleeps if sleeps is not None else []
    return CatalogReconciler(
        repository=repository,
        metadata_source=metadata or _FakeMetadataSource(),
        email_source=emails or _FakeEmailSource([]),
        classifier=classifier or build_classifier(google_api_key=None),
        transcript_source=transcripts or _FakeTranscriptSource(),
        clock=lambda: NOW,
        sleep=recorded_sleeps.append,
        **kwargs,
    )


def test_unresolved_video_becomes_degraded_random_record(repository: VideoRepository) -> None:
    reconciler = _reconciler(
        repository,
        emails=_FakeEmailSource([[_email("check this out https://youtu.be/abc12345678")]]),
    )

    result = reconciler.run()

    [record] = result.videos
    assert record.video_id == "abc12345678"
    assert record.title == "AI Video abc12345678"
    assert record.channel == "Unknown Channel"
    assert record.vibe == "Random"
    assert record.reason == DEGRADED_REASON == "metadata unavailable"
    assert record.duration_seconds == 300
    assert record.formatted_duration == "5:00"
    assert record.thumbnail == "https://i.ytimg.com/vi/abc12345678/mqdefault.jpg"
    assert record.source == "dan@tldrnewsletter.com"
    assert is_healthy(record) is False
    assert result.stats.degraded == 1
    assert repository.get("abc12345678") == record


def test_new_video_is_transcribed_classified_and_persisted(repository: VideoRepository) -> None:
    strategy = _CountingStrategy()
    transcripts = _FakeTranscriptSource({"abc12345678": "full transcript"})
    reconciler = _reconciler(
        repository,
        metadata=_FakeMetadataSource([_resolved("abc12345678")]),
        emails=_FakeEmailSource(
            [[_email("https://www.youtube.com/watch?v=abc12345678", sender="The Neuron")]]
        ),
        transcripts=transcripts,
        classifier=VideoClassifier([strategy]),
    )

    result = reconciler.run()

    [record] = result.videos
    assert record.title == "Resolved abc12345678"
    assert record.formatted_duration == "12:34"
    assert record.shared_at == (NOW - timedelta(days=1)).isoformat()
    assert record.vibe == "Model Upgrades"
    assert record.reason == "counted"
    assert record.transcript == "full transcript"
    assert strategy.inputs[0].transcript == "full transcript"
    assert strategy.inputs[0].tags == ("mcp",)
    assert result.emails_processed == 1
    assert result.sources == ["The Neuron"]
    assert [group.video_ids for group in result.groups] == [("abc12345678",)]
    assert repository.get("abc12345678") == record


def test_rerun_is_idempotent_and_skips_classification(repository: VideoRepository) -> None:
    strategy = _CountingStrategy()
    metadata = _FakeMetadataSource([_resolved("abc12345678"), _resolved("def12345678")])
    content = "https://youtu.be/abc12345678 https://youtu.be/def12345678"

    first = _reconciler(
        repository,
        metadata=metadata,
        emails=_FakeEmailSource([[_email(content)]]),
        classifier=VideoClassifier([strategy]),
    ).run()
    second = _reconciler(
        repository,
        metadata=metadata,
        emails=_FakeEmailSource([[_email(content)]]),
        classifier=VideoClassifier([strategy]),
    ).run()

    assert {record.video_id for record in first.videos} == {"abc12345678", "def12345678"}
    assert {record.video_id for record in second.videos} == {"abc12345678", "def12345678"}
    assert len(strategy.inputs) == 2
    assert len(metadata.calls) == 1
    assert second.stats.discovered == 0
    assert len(repository.list_all()) == 2


def test_same_id_in_two_emails_yields_one_record(repository: VideoRepository) -> None:
    reconciler = _reconciler(
        repository,
        metadata=_FakeMetadataSource([_resolved("abc12345678")]),
        emails=_FakeEmailSource(
            [
                [_email("https://youtu.be/abc12345678", sender="The Neuron")],
                [_email("https://www.youtube.com/watch?v=abc12345678", days_ago=8)],
            ]
        ),
    )

    result = reconciler.run()

    assert [record.video_id for record in result.videos] == ["abc12345678"]
    assert result.videos[0].source == "The Neuron"
    assert result.emails_processed == 2
    assert result.sources == ["The Neuron", "dan@tldrnewsletter.com"]


def test_repair_refreshes_metadata_but_keeps_discovery_facts(repository: VideoRepository) -> None:
    broken = VideoRecord(
        video_id="abc12345678",
        url="https://www.youtube.com/watch?v=abc12345678",
        title="Some title",
        channel="Some channel",
        shared_at="2024-05-01T09:00:00+00:00",
        duration_seconds=0,
        vibe="Robots",
        reason="Matched keywords for Robots (Score: 2)",
        source="The Neuron",
        transcript="kept transcript",
        repair_attempts=3,
    )
    repository.upsert([broken])
    metadata = _FakeMetadataSource([_resolved("abc12345678", duration_seconds=120)])

    result = _reconciler(repository, metadata=metadata).run()

    [record] = result.videos
    assert record.duration_seconds == 120
    assert record.formatted_duration == "2:00"
    assert record.title == "Resolved abc12345678"
    assert record.channel == "AI Channel"
    assert record.vibe == "Robots"
    assert record.reason == "Matched keywords for Robots (Score: 2)"
    assert record.shared_at == "2024-05-01T09:00:00+00:00"
    assert record.source == "The Neuron"
    assert record.transcript == "kept transcript"
    assert record.repair_attempts == 0
    assert metadata.calls == [["abc12345678"]]
    assert result.stats.repaired == 1
    assert repository.get("abc12345678") == record


def test_repeated_repair_failures_flag_record_for_review(repository: VideoRepository) -> None:
    degraded_email = _email("https://youtu.be/abc12345678")
    _reconciler(repository, emails=_FakeEmailSource([[degraded_email]])).run()

    metadata = _FakeMetadataSource()
    for _ in range(2):
        _reconciler(repository, metadata=metadata, repair_max_attempts=2).run()
    final = _reconciler(repository, metadata=metadata, repair_max_attempts=2).run()

    assert metadata.calls == [["abc12345678"], ["abc12345678"]]
    assert final.stats.repair_candidates == 0
    assert final.stats.needs_review == 1
    stored = repository.get("abc12345678")
    assert stored is not None
    assert stored.repair_attempts == 2
    assert stored.vibe == "Random"


def test_deleted_video_is_not_rediscovered_by_default(repository: VideoRepository) -> None:
    content = "https://youtu.be/abc12345678"
    metadata = _FakeMetadataSource([_resolved("abc12345678")])
    _reconciler(repository, metadata=metadata, emails=_FakeEmailSource([[_email(content)]])).run()
    assert repository.delete("abc12345678") is True

    skipped = _reconciler(
        repository, metadata=metadata, emails=_FakeEmailSource([[_email(content)]])
    ).run()
    resurrected = _reconciler(
        repository,
        metadata=metadata,
        emails=_FakeEmailSource([[_email(content)]]),
        resurrect_deleted=True,
    ).run()

    assert skipped.videos == []
    assert skipped.stats.skipped_deleted == 1
    assert [record.video_id for record in resurrected.videos] == ["abc12345678"]


def test_failing_slice_is_skipped_and_slices_are_paced(repository: VideoRepository) -> None:
    sleeps: list[float] = []
    emails = _FakeEmailSource(
        [TransientRemoteError("gmail 500"), [_email("https://youtu.be/abc12345678", days_ago=9)]]
    )

    result = _reconciler(
        repository,
        metadata=_FakeMetadataSource([_resolved("abc12345678")]),
        emails=emails,
        sleeps=sleeps,
        discovery_weeks=4,
    ).run()

    assert [record.video_id for record in result.videos] == ["abc12345678"]
    assert result.stats.slices_failed == 1
    assert result.stats.slices_requested == 4
    assert sleeps == [0.5, 0.5, 0.5]
    first_from, first_to = emails.calls[0]
    second_from, second_to = emails.calls[1]
    assert first_to == NOW
    assert first_from == NOW - timedelta(days=7)
    assert second_to == first_from
    assert second_from == NOW - timedelta(days=14)


def test_result_keeps_catalog_order_then_discovery_order(repository: VideoRepository) -> None:
    repository.upsert(
        [
            VideoRecord(
                video_id=video_id,
                url=f"https://www.youtube.com/watch?v={video_id}",
                title=f"Stored {video_id}",
                channel="Stored Channel",
                shared_at="2024-05-01T09:00:00+00:00",
                duration_seconds=60,
                vibe="Hype",
                reason="stored",
            )
            for video_id in ("old00000001", "old00000002")
        ]
    )
    content = "https://youtu.be/new00000002 then https://youtu.be/new00000001"

    result = _reconciler(
        repository,
        metadata=_FakeMetadataSource([_resolved("new00000001"), _resolved("new00000002")]),
        emails=_FakeEmailSource([[_email(content)]]),
    ).run()

    assert [record.video_id for record in result.videos] == [
        "old00000001",
        "old00000002",
        "new00000002",
        "new00000001",
    ]
    assert [group.name for group in result.groups] == ["Week of 06/10/24", "Week of 04/29/24"]


def test_catalog_load_failure_starts_from_empty_catalog(repository: VideoRepository) -> None:
    class _BrokenListRepository(VideoRepository):
        def list_all(self) -> list[VideoRecord]:
            raise sqlite3.OperationalError("database is locked")

    broken = _BrokenListRepository(cast(Any, repository)._db)

    result = _reconciler(
        broken, emails=_FakeEmailSource([[_email("https://youtu.be/abc12345678")]])
    ).run()

    assert result.stats.catalog_load_failed is True
    assert [record.video_id for record in result.videos] == ["abc12345678"]


def test_persistence_failure_still_returns_in_memory_result(repository: VideoRepository) -> None:
    class _ReadOnlyRepository(VideoRepository):
        def upsert(self, records: Iterable[VideoRecord]) -> int:
            _ = records
            raise sqlite3.OperationalError("attempt to write a readonly database")

    read_only = _ReadOnlyRepository(cast(Any, repository)._db)

    result = _reconciler(
        read_only, emails=_FakeEmailSource([[_email("https://youtu.be/abc12345678")]])
    ).run()

    assert [record.video_id for record in result.videos] == ["abc12345678"]
    assert result.stats.persisted is False
    assert repository.list_all() == []


def test_classifier_crash_degrades_to_heuristic(repository: VideoRepository) -> None:
    class _ExplodingClassifier:
        def classify(self, *args: object, **kwargs: object) -> Classification:
            _ = (args, kwargs)
            raise RuntimeError("classifier exploded")

    reconciler = _reconciler(
        repository,
        metadata=_FakeMetadataSource([_resolved("abc12345678", title="Cursor and Python tips")]),
        emails=_FakeEmailSource([[_email("https://youtu.be/abc12345678")]]),
        classifier=cast(Any, _ExplodingClassifier()),
    )

    [record] = reconciler.run().videos

    assert record.vibe == "Vibe Coding"
    assert record.reason is not None and record.reason.startswith("Matched keywords for Vibe Coding")


def test_classifier_crash_keeps_blocklist_precedence(repository: VideoRepository) -> None:
    class _ExplodingClassifier:
        def classify(self, *args: object, **kwargs: object) -> Classification:
            _ = (args, kwargs)
            raise RuntimeError("classifier exploded")

    reconciler = _reconciler(
        repository,
        metadata=_FakeMetadataSource([_resolved("abc12345678", title="Cursor and Python lyrics")]),
        emails=_FakeEmailSource([[_email("https://youtu.be/abc12345678")]]),
        classifier=cast(Any, _ExplodingClassifier()),
    )

    [record] = reconciler.run().videos

    assert record.vibe == "Random"
    assert record.reason == 'Blocked term: "lyrics" detected.'


def test_metadata_outage_degrades_items_instead_of_aborting(repository: VideoRepository) -> None:
    class _RaisingMetadataSource:
        def __init__(self) -> None:
            self.calls = 0

        def resolve(self, video_ids: list[str]) -> list[ResolvedVideo]:
            _ = video_ids
            self.calls += 1
            raise RuntimeError("quota exceeded")

    repository.upsert(
        [
            VideoRecord(
                video_id="abc12345678",
                url="https://www.youtube.com/watch?v=abc12345678",
                title="Some title",
                channel="Some channel",
                shared_at="2024-05-01T09:00:00+00:00",
                duration_seconds=0,
                vibe="Robots",
                reason="stored",
            )
        ]
    )
    metadata = _RaisingMetadataSource()

    result = _reconciler(
        repository,
        metadata=cast(Any, metadata),
        emails=_FakeEmailSource([[_email("https://youtu.be/bbbbbbbbbbb")]]),
    ).run()

    assert metadata.calls == 2
    assert [record.video_id for record in result.videos] == ["abc12345678", "bbbbbbbbbbb"]
    assert result.videos[1].reason == DEGRADED_REASON
    assert result.stats.repair_failed == 1
    assert result.stats.degraded == 1
    stored = repository.get("abc12345678")
    assert stored is not None
    assert stored.repair_attempts == 1
    assert stored.vibe == "Robots"
    assert repository.get("bbbbbbbbbbb") == result.videos[1]


class _MutatingMetadataSource(_FakeMetadataSource):
    """Runs ``action`` while the reconciler is waiting on the provider."""

    def __init__(self, videos: Iterable[ResolvedVideo], action: Any) -> None:
        super().__init__(videos)
        self._action = action

    def resolve(self, video_ids: list[str]) -> list[ResolvedVideo]:
        self._action()
        return super().resolve(video_ids)


def _seed_unhealthy(repository: VideoRepository) -> None:
    repository.upsert(
        [
            VideoRecord(
                video_id="aaaaaaaaaaa",
                url="https://www.youtube.com/watch?v=aaaaaaaaaaa",
                title="AI Video aaaaaaaaaaa",
                channel="Unknown Channel",
                shared_at="2024-05-01T09:00:00+00:00",
                duration_seconds=300,
                vibe="Robots",
                reason="auto",
                transcript="stored transcript",
            )
        ]
    )


def test_repair_keeps_recategorization_made_during_the_run(repository: VideoRepository) -> None:
    _seed_unhealthy(repository)
    metadata = _MutatingMetadataSource(
        [_resolved("aaaaaaaaaaa", duration_seconds=120)],
        lambda: repository.update_category(video_id="aaaaaaaaaaa", vibe="Security"),
    )

    result = _reconciler(repository, metadata=metadata).run()

    assert result.stats.repaired == 1
    stored = repository.get("aaaaaaaaaaa")
    assert stored is not None
    assert (stored.vibe, stored.reason) == ("Security", "manually recategorized")
    assert stored.title == "Resolved aaaaaaaaaaa"
    assert stored.duration_seconds == 120
    assert stored.transcript == "stored transcript"
    assert stored.shared_at == "2024-05-01T09:00:00+00:00"


def test_repair_does_not_recreate_video_deleted_during_the_run(
    repository: VideoRepository,
) -> None:
    _seed_unhealthy(repository)
    metadata = _MutatingMetadataSource(
        [_resolved("aaaaaaaaaaa")],
        lambda: repository.delete("aaaaaaaaaaa"),
    )

    result = _reconciler(repository, metadata=metadata).run()

    assert result.stats.persisted is True
    assert repository.get("aaaaaaaaaaa") is None
    assert repository.list_deleted_ids() == {"aaaaaaaaaaa"}


def test_transcript_failure_only_affects_its_own_item(repository: VideoRepository) -> None:
    class _PartiallyFailingTranscriptSource:
        def fetch(self, video_id: str) -> str | None:
            if video_id == "abc12345678":
                raise RuntimeError("supadata 500")
            return f"transcript for {video_id}"

    strategy = _CountingStrategy()
    result = _reconciler(
        repository,
        metadata=_FakeMetadataSource([_resolved("abc12345678"), _resolved("def12345678")]),
        emails=_FakeEmailSource(
            [[_email("https://youtu.be/abc12345678 https://youtu.be/def12345678")]]
        ),
        transcripts=cast(Any, _PartiallyFailingTranscriptSource()),
        classifier=VideoClassifier([strategy]),
    ).run()

    records = {record.video_id: record for record in result.videos}
    assert set(records) == {"abc12345678", "def12345678"}
    assert records["abc12345678"].transcript is None
    assert records["def12345678"].transcript == "transcript for def12345678"
    assert all(record.vibe == "Model Upgrades" for record in records.values())
    assert len(strategy.inputs) == 2
    assert len(repository.list_all()) == 2


def test_context_only_reuses_known_categories() -> None:
    records = [
        VideoRecord(
            video_id=video_id,
            url=f"https://www.youtube.com/watch?v={video_id}",
            title="Stored",
            channel="Stored Channel",
            shared_at=None,
            duration_seconds=60,
            vibe=vibe,
            reason="legacy",
        )
        for video_id, vibe in (("old00000001", "Cooking"), ("old00000002", "Robots"))
    ]

    context = ReconciliationContext(persisted=records, deleted_ids=set())

    assert context.known_ids == {"old00000001", "old00000002"}
    assert set(context.existing_classifications) == {"old00000002"}
    assert context.existing_classifications["old00000002"].category == "Robots"


def test_overlapping_run_is_rejected(repository: VideoRepository) -> None:
    captured: list[Exception] = []
    holder: dict[str, CatalogReconciler] = {}

    class _ReentrantEmailSource:
        def fetch(self, from_date: datetime, to_date: datetime) -> list[NewsletterEmail]:
            _ = (from_date, to_date)
            try:
                holder["reconciler"].run()
            except ReconciliationInProgressError as exc:
                captured.append(exc)
            return []

    reconciler = _reconciler(repository, emails=cast(Any, _ReentrantEmailSource()), discovery_weeks=1)
    holder["reconciler"] = reconciler

    reconciler.run()

    assert len(captured) == 1
    # The lock is released once the first run finishes.
    holder["reconciler"] = _reconciler(repository)
    reconciler.run()
    assert len(captured) == 1


@pytest.mark.parametrize(
    ("title", "channel", "duration", "healthy"),
    [
        ("Real title", "Real channel", 10, True),
        ("AI Video abc12345678", "Real channel", 10, False),
        ("Real title", "Unknown Channel", 10, False),
        ("Real title", "Real channel", 0, False),
    ],
)
def test_is_healthy(title: str, channel: str, duration: int, healthy: bool) -> None:
    record = VideoRecord(
        video_id="abc12345678",
        url="https://www.youtube.com/watch?v=abc12345678",
        title=title,
        channel=channel,
        shared_at=None,
        duration_seconds=duration,
    )

    assert is_healthy(record) is healthy
