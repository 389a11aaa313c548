"""Tests for the SQL feed store, its query builders and the SQLite adapter."""

import sqlite3
from datetime import timedelta

import pytest

from feed_engine.adapters.query_builders import FeedQueryCriteria, KeysetScan
from feed_engine.adapters.repository_factory import create_repository
from feed_engine.adapters.sql_feed_store import (
    SqlDialect,
    datetime_from_db,
    datetime_to_db,
    decode_resume_key,
    encode_resume_key,
)
from feed_engine.adapters.sqlite_repository import SQLiteRepository, translate_sqlite_error
from feed_engine.config.settings import Settings
from feed_engine.domain.exceptions import RepositoryError, TransientStoreError
from feed_engine.domain.models import FeedDirection, FeedMembership
from feed_engine.domain.protocols import FeedRepositoryProtocol
from tests.conftest import BASE_TIME, insert_events, make_event, stored_event


def test_feed_criteria_first_upcoming_page() -> None:
    sql, params = FeedQueryCriteria(
        feed_id="user_1", direction=FeedDirection.UPCOMING, boundary_ms=500, limit=11
    ).to_sql()

    assert sql == (
        "SELECT * FROM feed_memberships WHERE feed_id = ? AND event_end_time >= ? "
        "ORDER BY event_start_time ASC, event_id ASC LIMIT ?"
    )
    assert params == ["user_1", 500, 11]


def test_feed_criteria_past_page_after_cursor() -> None:
    criteria = FeedQueryCriteria(
        feed_id="discover",
        direction=FeedDirection.PAST,
        boundary_ms=500,
        limit=3,
        grouped=True,
        after_start_time=400,
        after_key="sg_b",
    )

    where, params = criteria.to_where_clause()

    assert criteria.table == "grouped_feed_entries"
    assert where == (
        "feed_id = ? AND event_end_time < ? AND (event_start_time < ? OR "
        "(event_start_time = ? AND similarity_group_id < ?))"
    )
    assert params == ["discover", 500, 400, 400, "sg_b"]
    assert criteria.to_order_clause() == "event_start_time DESC, similarity_group_id DESC"


def test_keyset_scan_expands_tuple_comparison() -> None:
    sql, params = KeysetScan(
        table="events", key_columns=("created_at", "id"), limit=5, after=("t1", "e1")
    ).to_sql()

    assert sql == (
        "SELECT * FROM events WHERE ((created_at > ?) OR (created_at = ? AND id > ?)) "
        "ORDER BY created_at ASC, id ASC LIMIT ?"
    )
    assert params == ["t1", "t1", "e1", 5]


def test_keyset_scan_rejects_mismatched_key() -> None:
    with pytest.raises(ValueError):
        KeysetScan(table="events", key_columns=("created_at", "id"), limit=5, after=("x",)).to_sql()


def test_resume_key_helpers() -> None:
    raw = encode_resume_key(("2026-03-01T12:00:00.000000Z", "e1"))

    assert decode_resume_key(raw) == ("2026-03-01T12:00:00.000000Z", "e1")
    assert decode_resume_key(None) is None
    with pytest.raises(RepositoryError):
        decode_resume_key("not json")
    with pytest.raises(RepositoryError):
        decode_resume_key('["only-one"]')


def test_datetime_storage_format_sorts_lexically() -> None:
    earlier = datetime_to_db(BASE_TIME)
    later = datetime_to_db(BASE_TIME + timedelta(microseconds=1))

    assert earlier == "2026-03-01T12:00:00.000000Z"
    assert earlier < later
    assert datetime_from_db(later) == BASE_TIME + timedelta(microseconds=1)


def test_dialect_renders_placeholders() -> None:
    postgres = SqlDialect(name="postgres", placeholder="%s", translate_error=lambda exc: None)

    assert postgres.render("a = ? AND b = ?") == "a = %s AND b = %s"


def test_translate_sqlite_error() -> None:
    assert isinstance(
        translate_sqlite_error(sqlite3.OperationalError("database is locked")),
        TransientStoreError,
    )
    assert type(translate_sqlite_error(sqlite3.IntegrityError("UNIQUE failed"))) is RepositoryError
    assert translate_sqlite_error(ValueError("not sqlite")) is None


def test_transaction_rolls_back_on_error(repo: FeedRepositoryProtocol) -> None:
    with pytest.raises(RuntimeError):
        with repo.transaction() as tx:
            tx.insert_event(make_event("e1"))
            raise RuntimeError("boom")

    assert stored_event(repo, "e1") is None


def test_duplicate_membership_is_repository_error(repo: FeedRepositoryProtocol) -> None:
    membership = FeedMembership(
        feed_id="discover",
        event_id="e1",
        event_start_time=1,
        event_end_time=2,
        added_at=3,
        has_ended=False,
    )
    with repo.transaction() as tx:
        tx.insert_membership(membership)

    with pytest.raises(RepositoryError):
        with repo.transaction() as tx:
            tx.insert_membership(membership)


def test_assign_similarity_group_is_compare_and_set(repo: FeedRepositoryProtocol) -> None:
    insert_events(repo, make_event("e1"))

    with repo.transaction() as tx:
        first = tx.assign_similarity_group("e1", "sg_first")
        second = tx.assign_similarity_group("e1", "sg_second")
        missing = tx.assign_similarity_group("nope", "sg_first")

    assert first == "sg_first"
    assert second == "sg_first"
    assert missing is None


def test_scan_events_by_creation_pages(repo: FeedRepositoryProtocol) -> None:
    insert_events(
        repo,
        make_event("b", created_at=BASE_TIME),
        make_event("a", created_at=BASE_TIME),
        make_event("c", created_at=BASE_TIME - timedelta(minutes=1)),
    )

    with repo.transaction(read_only=True) as tx:
        first = tx.scan_events_by_creation(None, 2)
        after = (datetime_to_db(first[-1].created_at), first[-1].id)
        rest = tx.scan_events_by_creation(after, 2)

    assert [event.id for event in first] == ["c", "a"]
    assert [event.id for event in rest] == ["b"]


def test_checkpoints_upsert(repo: FeedRepositoryProtocol) -> None:
    with repo.transaction() as tx:
        assert tx.get_checkpoint("job") is None
        tx.save_checkpoint("job", '["a", "b"]')
    with repo.transaction() as tx:
        tx.save_checkpoint("job", None)
        tx.save_checkpoint("other", '["x", "y"]')

    with repo.transaction(read_only=True) as tx:
        assert tx.get_checkpoint("job") is None
        assert tx.get_checkpoint("other") == '["x", "y"]'


def test_in_memory_repository_keeps_data_between_transactions() -> None:
    repository = SQLiteRepository(":memory:")
    try:
        with repository.transaction() as tx:
            tx.insert_event(make_event("e1"))
        with repository.transaction(read_only=True) as tx:
            assert tx.get_event("e1") is not None
    finally:
        repository.close()


def test_factory_requires_postgres_password(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("POSTGRES_PASSWORD", raising=False)

    with pytest.raises(ValueError, match="POSTGRES_PASSWORD"):
        create_repository(Settings(database_type="postgres"))
