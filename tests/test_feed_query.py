"""Tests for cursor-paginated feed reads."""

from datetime import timedelta

import pytest
from structlog.testing import capture_logs

from feed_engine.config.settings import Settings
from feed_engine.domain.exceptions import AuthorizationError, NotFoundError, ValidationError
from feed_engine.domain.models import Event, FeedDirection, ListVisibility
from feed_engine.domain.protocols import FeedRepositoryProtocol
from feed_engine.domain.timing import to_epoch_millis
from feed_engine.services.feed_query import FeedCursor, FeedQueryService
from feed_engine.use_cases.create_event import create_event_use_case
from feed_engine.use_cases.query_feed import query_feed_use_case
from tests.conftest import (
    BASE_TIME,
    FakeClock,
    grouped_entries,
    make_event,
    memberships,
    seed_list,
    seed_user,
)

NAMES = ["Alpha", "Bravo", "Charlie", "Delta", "Echo"]


def _create(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock, event: Event
) -> Event:
    return create_event_use_case(repo, settings, event, clock=clock).event


def _seed_upcoming(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock
) -> list[Event]:
    """Five unrelated events starting hourly after BASE_TIME, 30 minutes each."""
    seed_user(repo, "alice")
    return [
        _create(
            repo,
            settings,
            clock,
            make_event(
                f"e{i + 1}",
                name=name,
                start=BASE_TIME + timedelta(hours=i + 1),
                duration=timedelta(minutes=30),
            ),
        )
        for i, name in enumerate(NAMES)
    ]


def test_pagination_is_stable_while_events_end(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock
) -> None:
    _seed_upcoming(repo, settings, clock)

    first = query_feed_use_case(
        repo, settings, "alice", "user_alice", "upcoming", 2, clock=clock
    )
    assert [item.event.id for item in first.items] == ["e1", "e2"]
    assert first.is_done is False
    assert first.before_this_date_time == BASE_TIME

    # e1 and e2 have ended by now; the session keeps its original boundary
    clock.advance(hours=2, minutes=45)
    second = query_feed_use_case(
        repo, settings, "alice", "user_alice", "upcoming", 2, cursor=first.next_cursor, clock=clock
    )
    third = query_feed_use_case(
        repo, settings, "alice", "user_alice", "upcoming", 2, cursor=second.next_cursor, clock=clock
    )

    assert [item.event.id for item in second.items] == ["e3", "e4"]
    assert [item.event.id for item in third.items] == ["e5"]
    assert third.is_done is True
    assert third.next_cursor is None


def test_pagination_with_explicit_boundary_is_stable_while_events_end(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock
) -> None:
    _seed_upcoming(repo, settings, clock)
    boundary = BASE_TIME + timedelta(minutes=30)
    service = FeedQueryService(repo, settings, clock=clock)

    first = service.query_feed(
        "alice", "user_alice", "upcoming", 2, before_this_date_time=boundary
    )
    clock.advance(hours=2)
    second = service.query_feed(
        "alice",
        "user_alice",
        "upcoming",
        2,
        cursor=first.next_cursor,
        before_this_date_time=boundary,
    )
    # e1 through e3 have ended by the time the last page is read
    clock.advance(hours=2)
    third = service.query_feed(
        "alice",
        "user_alice",
        "upcoming",
        2,
        cursor=second.next_cursor,
        before_this_date_time=boundary,
    )

    pages = [first, second, third]
    assert [[item.event.id for item in page.items] for page in pages] == [
        ["e1", "e2"],
        ["e3", "e4"],
        ["e5"],
    ]
    assert all(page.before_this_date_time == boundary for page in pages)
    assert third.is_done is True


def test_explicit_boundary_splits_upcoming_and_past(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock
) -> None:
    _seed_upcoming(repo, settings, clock)
    boundary = BASE_TIME + timedelta(hours=3)
    service = FeedQueryService(repo, settings, clock=clock)

    upcoming = service.query_feed(
        "alice", "user_alice", FeedDirection.UPCOMING, 10, before_this_date_time=boundary
    )
    past = service.query_feed(
        "alice", "user_alice", FeedDirection.PAST, 10, before_this_date_time=boundary
    )

    assert [item.event.id for item in upcoming.items] == ["e3", "e4", "e5"]
    assert [item.event.id for item in past.items] == ["e2", "e1"]
    assert upcoming.is_done and past.is_done


def test_cursor_rejects_different_snapshot(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock
) -> None:
    _seed_upcoming(repo, settings, clock)
    service = FeedQueryService(repo, settings, clock=clock)
    first = service.query_feed("alice", "user_alice", "upcoming", 2)

    with pytest.raises(ValidationError):
        service.query_feed(
            "alice",
            "user_alice",
            "upcoming",
            2,
            cursor=first.next_cursor,
            before_this_date_time=BASE_TIME + timedelta(hours=1),
        )


def test_cursor_rejects_other_feed_or_mode(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock
) -> None:
    _seed_upcoming(repo, settings, clock)
    service = FeedQueryService(repo, settings, clock=clock)
    first = service.query_feed("alice", "user_alice", "upcoming", 2)

    with pytest.raises(ValidationError):
        service.query_feed("alice", "discover", "upcoming", 2, cursor=first.next_cursor)
    with pytest.raises(ValidationError):
        service.query_feed("alice", "user_alice", "past", 2, cursor=first.next_cursor)
    with pytest.raises(ValidationError):
        service.query_feed(
            "alice", "user_alice", "upcoming", 2, cursor=first.next_cursor, grouped=False
        )


def test_malformed_cursor_is_validation_error(
    repo: FeedRepositoryProtocol, settings: Settings
) -> None:
    service = FeedQueryService(repo, settings)

    with pytest.raises(ValidationError):
        service.query_feed(None, "discover", "upcoming", cursor="not-a-cursor")


def test_cursor_round_trip() -> None:
    cursor = FeedCursor(
        feed_id="discover",
        direction=FeedDirection.PAST,
        grouped=True,
        boundary_ms=1,
        last_start_time=2,
        last_key="sg_x",
    )

    assert FeedCursor.decode(cursor.encode()) == cursor


@pytest.mark.parametrize(
    ("feed_id", "direction", "page_size"),
    [
        ("bogus", "upcoming", 10),
        ("user_", "upcoming", 10),
        ("discover", "sideways", 10),
        ("discover", "upcoming", 0),
        ("discover", "upcoming", -3),
    ],
)
def test_invalid_arguments_are_rejected(
    repo: FeedRepositoryProtocol,
    settings: Settings,
    feed_id: str,
    direction: str,
    page_size: int,
) -> None:
    with pytest.raises(ValidationError):
        FeedQueryService(repo, settings).query_feed(None, feed_id, direction, page_size)


def test_page_size_is_clamped(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock
) -> None:
    _seed_upcoming(repo, settings, clock)
    capped = settings.model_copy(update={"feed_max_page_size": 3, "feed_default_page_size": 3})

    page = FeedQueryService(repo, capped, clock=clock).query_feed(
        "alice", "user_alice", "upcoming", 50
    )

    assert len(page.items) == 3
    assert page.is_done is False


def test_default_page_size_from_settings(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock
) -> None:
    _seed_upcoming(repo, settings, clock)
    small = settings.model_copy(update={"feed_default_page_size": 4})

    page = FeedQueryService(repo, small, clock=clock).query_feed("alice", "user_alice", "upcoming")

    assert len(page.items) == 4


def test_personal_feed_authorization(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock
) -> None:
    _seed_upcoming(repo, settings, clock)
    service = FeedQueryService(repo, settings, clock=clock)

    with pytest.raises(AuthorizationError):
        service.query_feed("mallory", "user_alice", "upcoming")
    with pytest.raises(AuthorizationError):
        service.query_feed(None, "user_alice", "upcoming")

    seed_user(repo, "alice", public_list_enabled=True)
    page = service.query_feed("mallory", "user_alice", "upcoming", 10)
    assert len(page.items) == 5


def test_discover_is_public(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock
) -> None:
    _seed_upcoming(repo, settings, clock)

    page = FeedQueryService(repo, settings, clock=clock).query_feed(None, "discover", "upcoming", 10)

    assert [item.event.id for item in page.items] == ["e1", "e2", "e3", "e4", "e5"]
    assert page.items[0].author is not None
    assert page.items[0].author.username == "alice_handle"


def test_list_feed_authorization(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock
) -> None:
    seed_user(repo, "alice")
    seed_list(repo, "secret", "alice", members=("bob",))
    seed_list(repo, "shared", "alice", visibility=ListVisibility.UNLISTED)
    service = FeedQueryService(repo, settings, clock=clock)

    assert service.query_feed("alice", "list_secret", "upcoming").items == []
    assert service.query_feed("bob", "list_secret", "upcoming").items == []
    assert service.query_feed(None, "list_shared", "upcoming").items == []
    with pytest.raises(AuthorizationError):
        service.query_feed("mallory", "list_secret", "upcoming")
    with pytest.raises(NotFoundError):
        service.query_feed("alice", "list_missing", "upcoming")


def test_grouped_mode_collapses_similar_events(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock
) -> None:
    seed_user(repo, "alice")
    seed_user(repo, "bob")
    start = BASE_TIME + timedelta(days=1)
    first = _create(repo, settings, clock, make_event("jazz1", user_id="alice", start=start))
    second = _create(
        repo,
        settings,
        clock,
        make_event(
            "jazz2",
            user_id="bob",
            start=start + timedelta(minutes=15),
            created_at=BASE_TIME + timedelta(minutes=1),
        ),
    )
    service = FeedQueryService(repo, settings, clock=clock)

    grouped = service.query_feed(None, "discover", "upcoming", 10)
    raw = service.query_feed(None, "discover", "upcoming", 10, grouped=False)

    assert first.similarity_group_id == second.similarity_group_id
    assert len(grouped.items) == 1
    assert grouped.items[0].event.id == "jazz1"
    assert grouped.items[0].similar_events_count == 1
    assert grouped.items[0].similarity_group_id == first.similarity_group_id
    assert [item.event.id for item in raw.items] == ["jazz1", "jazz2"]
    assert all(item.similar_events_count == 0 for item in raw.items)


def test_rows_of_deleted_events_are_skipped(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock
) -> None:
    _seed_upcoming(repo, settings, clock)
    with repo.transaction() as tx:
        tx.delete_event("e2")

    page = FeedQueryService(repo, settings, clock=clock).query_feed(
        "alice", "user_alice", "upcoming", 2, grouped=False
    )

    assert [item.event.id for item in page.items] == ["e1", "e3"]
    assert page.is_done is False


def test_timing_drift_rows_are_dropped_with_warning(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock
) -> None:
    events = _seed_upcoming(repo, settings, clock)
    moved = events[0].model_copy(
        update={
            "start_date_time": BASE_TIME - timedelta(hours=2),
            "end_date_time": BASE_TIME - timedelta(hours=1),
        }
    )
    with repo.transaction() as tx:
        # Event row changes without the feed rows being patched
        tx.update_event_details(moved)

    service = FeedQueryService(repo, settings, clock=clock)

    with capture_logs() as logs:
        page = service.query_feed("alice", "user_alice", "upcoming", 10)

    assert [item.event.id for item in page.items] == ["e2", "e3", "e4", "e5"]
    kinds = [log.get("kind") for log in logs if log["event"] == "consistency_warning"]
    assert kinds == ["denormalized_timing_drift"]

    # The drifted rows were re-derived after the read
    (row,) = [m for m in memberships(repo, "user_alice") if m.event_id == "e1"]
    assert row.event_end_time == to_epoch_millis(moved.end_date_time)
    assert row.has_ended is True
    with capture_logs() as logs:
        past = service.query_feed("alice", "user_alice", "past", 10)
        raw_past = service.query_feed("alice", "user_alice", "past", 10, grouped=False)

    assert [item.event.id for item in past.items] == ["e1"]
    assert [item.event.id for item in raw_past.items] == ["e1"]
    assert [log for log in logs if log["event"] == "consistency_warning"] == []


def test_drifted_grouped_row_is_rederived_after_read(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock
) -> None:
    _seed_upcoming(repo, settings, clock)
    (entry,) = [e for e in grouped_entries(repo, "user_alice") if e.primary_event_id == "e1"]
    stale = entry.model_copy(
        update={
            "event_start_time": to_epoch_millis(BASE_TIME - timedelta(hours=3)),
            "event_end_time": to_epoch_millis(BASE_TIME - timedelta(hours=2)),
            "has_ended": True,
        }
    )
    with repo.transaction() as tx:
        tx.upsert_grouped_entry(stale)
    service = FeedQueryService(repo, settings, clock=clock)

    with capture_logs() as logs:
        past = service.query_feed("alice", "user_alice", "past", 10)
        upcoming = service.query_feed("alice", "user_alice", "upcoming", 10)

    assert past.items == []
    assert [item.event.id for item in upcoming.items] == ["e1", "e2", "e3", "e4", "e5"]
    warnings = [log for log in logs if log["event"] == "consistency_warning"]
    assert [log["kind"] for log in warnings] == ["denormalized_timing_drift"]
    assert warnings[0]["group_id"] == entry.similarity_group_id
    (restored,) = [
        e for e in grouped_entries(repo, "user_alice") if e.primary_event_id == "e1"
    ]
    assert restored == entry
