"""Tests for the event lifecycle flows that keep feeds in step."""

from datetime import timedelta

import pytest

from feed_engine.config.settings import Settings
from feed_engine.domain.exceptions import AuthorizationError, NotFoundError, ValidationError
from feed_engine.domain.models import ListVisibility, Visibility
from feed_engine.domain.protocols import FeedRepositoryProtocol
from feed_engine.domain.timing import to_epoch_millis
from feed_engine.use_cases.create_event import create_event_use_case, parse_event_payload
from feed_engine.use_cases.event_updates import (
    delete_event_use_case,
    set_event_visibility_use_case,
    update_event_details_use_case,
)
from feed_engine.use_cases.follow_events import follow_event_use_case, unfollow_event_use_case
from feed_engine.use_cases.list_membership import (
    add_event_to_list_use_case,
    remove_event_from_list_use_case,
)
from tests.conftest import (
    BASE_TIME,
    FakeClock,
    grouped_entries,
    make_event,
    make_unrelated_event,
    memberships,
    seed_list,
    seed_user,
    stored_event,
)


@pytest.fixture
def people(repo: FeedRepositoryProtocol) -> None:
    seed_user(repo, "alice")
    seed_user(repo, "bob", show_discover=False)
    seed_user(repo, "carol")


def _feed_event_ids(repo: FeedRepositoryProtocol, feed_id: str) -> list[str]:
    return sorted(row.event_id for row in memberships(repo, feed_id))


def _all_feed_ids(repo: FeedRepositoryProtocol) -> set[str]:
    with repo.transaction(read_only=True) as tx:
        return {row.feed_id for row in tx.scan_memberships(None, 10_000)}


def _assert_grouped_rows_match_memberships(repo: FeedRepositoryProtocol) -> None:
    with repo.transaction(read_only=True) as tx:
        rows = tx.scan_memberships(None, 10_000)
    expected: dict[tuple[str, str], int] = {}
    for row in rows:
        if row.similarity_group_id is not None:
            key = (row.feed_id, row.similarity_group_id)
            expected[key] = expected.get(key, 0) + 1
    actual = {
        (entry.feed_id, entry.similarity_group_id): entry.similar_events_count + 1
        for entry in grouped_entries(repo)
    }
    assert actual == expected


def test_parse_event_payload_validates() -> None:
    event = parse_event_payload(
        {
            "id": "e1",
            "user_id": "alice",
            "name": "Jazz night",
            "start_date_time": "2026-03-02T20:00:00+01:00",
            "end_date_time": "2026-03-02T23:00:00+01:00",
            "metadata": {"kind": "link", "url": "https://example.com/jazz"},
        }
    )

    assert event.start_date_time.utcoffset() == timedelta(0)
    assert event.metadata is not None and event.metadata.kind == "link"

    with pytest.raises(ValidationError):
        parse_event_payload({"id": "e2", "user_id": "alice"})
    with pytest.raises(ValidationError):
        parse_event_payload(
            {
                "user_id": "alice",
                "start_date_time": "2026-03-02T20:00:00+00:00",
                "end_date_time": "2026-03-02T19:00:00+00:00",
            }
        )


def test_create_public_event_fans_out(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock, people: None
) -> None:
    seed_list(repo, "picks", "alice", visibility=ListVisibility.PUBLIC)

    result = create_event_use_case(
        repo, settings, make_event("e1"), list_ids=["picks"], clock=clock
    )

    assert result.joined_existing_group is False
    assert result.feed_ids == ["user_alice", "discover", "list_picks"]
    assert _all_feed_ids(repo) == {"user_alice", "discover", "list_picks"}
    row = memberships(repo, "discover")[0]
    assert row.added_at == to_epoch_millis(BASE_TIME)
    assert row.similarity_group_id == result.event.similarity_group_id
    _assert_grouped_rows_match_memberships(repo)


def test_create_respects_discover_opt_out_and_privacy(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock, people: None
) -> None:
    create_event_use_case(repo, settings, make_event("bobs", user_id="bob"), clock=clock)
    create_event_use_case(
        repo,
        settings,
        make_unrelated_event("private", visibility=Visibility.PRIVATE),
        clock=clock,
    )

    assert _feed_event_ids(repo, "discover") == []
    assert _feed_event_ids(repo, "user_bob") == ["bobs"]
    assert _feed_event_ids(repo, "user_alice") == ["private"]


def test_create_joins_similar_group(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock, people: None
) -> None:
    first = create_event_use_case(repo, settings, make_event("e1"), clock=clock)
    second = create_event_use_case(
        repo, settings, make_event("e2", user_id="carol"), clock=clock
    )

    assert second.joined_existing_group is True
    assert second.event.similarity_group_id == first.event.similarity_group_id
    (entry,) = grouped_entries(repo, "discover")
    assert entry.similar_events_count == 1
    assert entry.primary_event_id == "e1"
    _assert_grouped_rows_match_memberships(repo)


def test_create_rejects_duplicates_and_unknown_lists(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock, people: None
) -> None:
    create_event_use_case(repo, settings, make_event("e1"), clock=clock)

    with pytest.raises(ValidationError):
        create_event_use_case(repo, settings, make_event("e1"), clock=clock)
    with pytest.raises(NotFoundError):
        create_event_use_case(
            repo, settings, make_event("e2"), list_ids=["nope"], clock=clock
        )
    assert stored_event(repo, "e2") is None


def test_follow_and_unfollow(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock, people: None
) -> None:
    create_event_use_case(repo, settings, make_event("e1"), clock=clock)

    followed = follow_event_use_case(repo, settings, "carol", "e1", clock=clock)
    again = follow_event_use_case(repo, settings, "carol", "e1", clock=clock)

    assert followed.added_to == ["user_carol"]
    assert again.added_to == []
    assert _feed_event_ids(repo, "user_carol") == ["e1"]

    unfollowed = unfollow_event_use_case(repo, settings, "carol", "e1", clock=clock)
    creator = unfollow_event_use_case(repo, settings, "alice", "e1", clock=clock)

    assert unfollowed.removed_from == ["user_carol"]
    assert creator.removed_from == []
    assert _feed_event_ids(repo, "user_carol") == []
    assert _feed_event_ids(repo, "user_alice") == ["e1"]
    _assert_grouped_rows_match_memberships(repo)


def test_follow_private_event_of_other_user_is_not_found(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock, people: None
) -> None:
    create_event_use_case(
        repo, settings, make_event("e1", visibility=Visibility.PRIVATE), clock=clock
    )

    with pytest.raises(NotFoundError):
        follow_event_use_case(repo, settings, "carol", "e1", clock=clock)
    with pytest.raises(NotFoundError):
        follow_event_use_case(repo, settings, "carol", "missing", clock=clock)


def test_visibility_round_trip_restores_follower_feed(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock, people: None
) -> None:
    create_event_use_case(repo, settings, make_event("e1"), clock=clock)
    follow_event_use_case(repo, settings, "carol", "e1", clock=clock)

    set_event_visibility_use_case(repo, settings, "alice", "e1", "private", clock=clock)
    assert _feed_event_ids(repo, "user_carol") == []

    result = set_event_visibility_use_case(repo, settings, "alice", "e1", "public", clock=clock)
    assert sorted(result.added_to) == ["discover", "user_carol"]
    _assert_grouped_rows_match_memberships(repo)


def test_list_membership(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock, people: None
) -> None:
    seed_list(repo, "club", "alice", members=("carol",))
    create_event_use_case(repo, settings, make_event("e1"), clock=clock)
    create_event_use_case(
        repo,
        settings,
        make_unrelated_event("hidden", visibility=Visibility.PRIVATE),
        clock=clock,
    )

    added = add_event_to_list_use_case(repo, settings, "carol", "club", "e1", clock=clock)
    private = add_event_to_list_use_case(repo, settings, "alice", "club", "hidden", clock=clock)

    assert added.added_to == ["list_club"]
    assert private.added_to == []
    assert _feed_event_ids(repo, "list_club") == ["e1"]

    with pytest.raises(AuthorizationError):
        add_event_to_list_use_case(repo, settings, "bob", "club", "e1", clock=clock)
    with pytest.raises(NotFoundError):
        add_event_to_list_use_case(repo, settings, "alice", "nope", "e1", clock=clock)

    removed = remove_event_from_list_use_case(repo, settings, "alice", "club", "e1", clock=clock)
    assert removed.removed_from == ["list_club"]
    assert _feed_event_ids(repo, "list_club") == []
    assert grouped_entries(repo, "list_club") == []


def test_make_private_keeps_only_creator_feed(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock, people: None
) -> None:
    create_event_use_case(repo, settings, make_event("e1"), clock=clock)
    follow_event_use_case(repo, settings, "carol", "e1", clock=clock)

    result = set_event_visibility_use_case(
        repo, settings, "alice", "e1", Visibility.PRIVATE, clock=clock
    )

    assert sorted(result.removed_from) == ["discover", "user_carol"]
    assert _all_feed_ids(repo) == {"user_alice"}
    assert {entry.feed_id for entry in grouped_entries(repo)} == {"user_alice"}


def test_visibility_requires_owner_and_valid_value(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock, people: None
) -> None:
    create_event_use_case(repo, settings, make_event("e1"), clock=clock)

    with pytest.raises(AuthorizationError):
        set_event_visibility_use_case(repo, settings, "bob", "e1", "private", clock=clock)
    with pytest.raises(ValidationError):
        set_event_visibility_use_case(repo, settings, "alice", "e1", "secret", clock=clock)
    with pytest.raises(NotFoundError):
        set_event_visibility_use_case(repo, settings, "alice", "nope", "private", clock=clock)


def test_update_details_patches_feed_timing(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock, people: None
) -> None:
    created = create_event_use_case(repo, settings, make_event("e1"), clock=clock).event
    new_start = created.start_date_time + timedelta(days=2)

    updated = update_event_details_use_case(
        repo,
        settings,
        "alice",
        "e1",
        {"start_date_time": new_start, "end_date_time": new_start + timedelta(hours=1)},
        clock=clock,
    )

    assert updated.similarity_group_id == created.similarity_group_id
    for feed_id in ("user_alice", "discover"):
        (row,) = memberships(repo, feed_id)
        assert row.event_start_time == to_epoch_millis(new_start)
        (entry,) = grouped_entries(repo, feed_id)
        assert entry.event_end_time == to_epoch_millis(new_start + timedelta(hours=1))


def test_update_details_rejects_bad_changes(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock, people: None
) -> None:
    created = create_event_use_case(repo, settings, make_event("e1"), clock=clock).event

    with pytest.raises(ValidationError):
        update_event_details_use_case(
            repo, settings, "alice", "e1", {"similarity_group_id": "sg_x"}, clock=clock
        )
    with pytest.raises(ValidationError):
        update_event_details_use_case(
            repo,
            settings,
            "alice",
            "e1",
            {"end_date_time": created.start_date_time - timedelta(hours=1)},
            clock=clock,
        )
    with pytest.raises(AuthorizationError):
        update_event_details_use_case(repo, settings, "bob", "e1", {"name": "x"}, clock=clock)


def test_delete_event_removes_everything(
    repo: FeedRepositoryProtocol, settings: Settings, clock: FakeClock, people: None
) -> None:
    create_event_use_case(repo, settings, make_event("e1"), clock=clock)
    create_event_use_case(repo, settings, make_event("e2", user_id="carol"), clock=clock)
    follow_event_use_case(repo, settings, "bob", "e1", clock=clock)

    result = delete_event_use_case(repo, settings, "alice", "e1", clock=clock)

    assert sorted(result.removed_from) == ["discover", "user_alice", "user_bob"]
    assert stored_event(repo, "e1") is None
    assert _feed_event_ids(repo, "discover") == ["e2"]
    (entry,) = grouped_entries(repo, "discover")
    assert entry.primary_event_id == "e2"
    assert entry.similar_events_count == 0
    _assert_grouped_rows_match_memberships(repo)
