"""Tests for domain models and feed identifiers."""

from datetime import datetime, timedelta

import pytest
import pytz
from pydantic import ValidationError as PydanticValidationError

from feed_engine.domain.exceptions import ValidationError
from feed_engine.domain.models import (
    FeedId,
    FeedKind,
    LinkMetadata,
    MigrationReport,
    ScreenshotMetadata,
    SplitGroupPair,
    TextMetadata,
    parse_event_metadata,
    personal_feed_owner,
)
from feed_engine.domain.timing import FeedTiming, from_epoch_millis, to_epoch_millis
from tests.conftest import BASE_TIME, make_event


@pytest.mark.parametrize(
    ("raw", "kind", "subject"),
    [
        ("discover", FeedKind.DISCOVER, None),
        ("user_42", FeedKind.PERSONAL, "42"),
        ("user_with_underscores", FeedKind.PERSONAL, "with_underscores"),
        ("list_abc", FeedKind.LIST, "abc"),
    ],
)
def test_feed_id_parse(raw: str, kind: FeedKind, subject: str | None) -> None:
    feed_id = FeedId.parse(raw)

    assert feed_id.kind is kind
    assert feed_id.subject_id == subject
    assert str(feed_id) == raw


@pytest.mark.parametrize("raw", ["", "user_", "list_", "Discover", "feed_1"])
def test_feed_id_parse_rejects_garbage(raw: str) -> None:
    with pytest.raises(ValidationError):
        FeedId.parse(raw)


def test_personal_feed_owner() -> None:
    assert personal_feed_owner("user_bob") == "bob"
    assert personal_feed_owner("discover") is None
    assert personal_feed_owner("list_bob") is None
    assert FeedId.personal("bob").owner_user_id == "bob"
    assert FeedId.for_list("x").owner_user_id is None


def test_parse_event_metadata_variants() -> None:
    assert parse_event_metadata(None) is None
    assert isinstance(
        parse_event_metadata({"kind": "screenshot", "image_url": "s3://shot.png"}),
        ScreenshotMetadata,
    )
    assert isinstance(
        parse_event_metadata('{"kind": "link", "url": "https://example.com"}'), LinkMetadata
    )
    text = parse_event_metadata({"kind": "text", "source_text": "gig tonight"})
    assert isinstance(text, TextMetadata)
    assert text.source_text == "gig tonight"


@pytest.mark.parametrize(
    "raw",
    [
        {"kind": "video", "url": "x"},
        {"kind": "link"},
        {"kind": "text", "source_text": "x", "unexpected": True},
        {"kind": "link", "url": "x", "extraction_confidence": 3},
        "{not json",
    ],
)
def test_parse_event_metadata_rejects_invalid(raw: object) -> None:
    with pytest.raises(ValidationError):
        parse_event_metadata(raw)  # type: ignore[arg-type]


def test_event_requires_aware_datetimes() -> None:
    with pytest.raises(PydanticValidationError):
        make_event("naive", start=datetime(2026, 3, 2, 12, 0))


def test_event_normalizes_to_utc() -> None:
    berlin = pytz.timezone("Europe/Berlin").localize(datetime(2026, 3, 2, 13, 0))

    event = make_event("tz", start=berlin)

    assert event.start_date_time == BASE_TIME + timedelta(days=1)
    assert event.start_date_time.tzinfo == pytz.UTC


def test_event_rejects_end_before_start() -> None:
    with pytest.raises(PydanticValidationError):
        make_event("backwards", duration=timedelta(hours=-1))


def test_feed_timing_from_event() -> None:
    event = make_event("e1", start=BASE_TIME - timedelta(hours=3))

    timing = FeedTiming.from_event(event, BASE_TIME)

    assert timing.event_start_time == to_epoch_millis(event.start_date_time)
    assert from_epoch_millis(timing.event_end_time) == event.end_date_time
    assert timing.has_ended is True
    assert timing.refreshed(BASE_TIME - timedelta(days=1)).has_ended is False


def test_split_group_pair_key_is_order_independent() -> None:
    first = SplitGroupPair(group_id="sg_b", other_group_id="sg_a", event_id="1", other_event_id="2")
    second = SplitGroupPair(group_id="sg_a", other_group_id="sg_b", event_id="2", other_event_id="1")

    assert first.key == second.key == ("sg_a", "sg_b")


def test_migration_report_merge() -> None:
    pair = SplitGroupPair(group_id="sg_a", other_group_id="sg_b", event_id="1", other_event_id="2")
    mirrored = SplitGroupPair(
        group_id="sg_b", other_group_id="sg_a", event_id="2", other_event_id="1"
    )
    first = MigrationReport(job="j", dry_run=True, processed=2, split_groups=[pair])
    second = MigrationReport(
        job="j",
        dry_run=True,
        processed=3,
        split_groups=[mirrored],
        last_processed_key='["x"]',
        is_done=True,
    )

    total = first.merge(second)

    assert total.processed == 5
    assert total.split_groups == [pair]
    assert total.last_processed_key == '["x"]'
    assert total.is_done is True
    assert total.changed == 0
