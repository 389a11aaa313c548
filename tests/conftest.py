"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import os
from collections.abc import Generator
from datetime import datetime, timedelta
from typing import Any

import pytest
import pytz

from feed_engine.adapters.repository_factory import create_repository
from feed_engine.config.logging_config import clear_context
from feed_engine.config.settings import Settings
from feed_engine.domain.models import (
    Event,
    EventList,
    FeedMembership,
    GroupedFeedEntry,
    ListVisibility,
    User,
    Visibility,
)
from feed_engine.domain.protocols import FeedRepositoryProtocol

BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=pytz.UTC)


class FakeClock:
    """Controllable clock passed to services and use cases."""

    def __init__(self, now: datetime = BASE_TIME) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def _reset_log_context() -> Generator[None, None, None]:
    yield
    clear_context()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(
    tmp_path_factory: pytest.TempPathFactory, request: pytest.FixtureRequest
) -> Settings:
    """Create settings configured for the requested database backend."""

    backend = "sqlite"
    if hasattr(request.node, "callspec"):
        backend = request.node.callspec.params.get("repo", backend)

    if request.node.get_closest_marker("postgres"):
        backend = "postgres"

    if backend == "postgres":
        if os.environ.get("TEST_POSTGRES", "0") != "1":
            pytest.skip("PostgreSQL tests disabled (TEST_POSTGRES!=1)")
        if not os.environ.get("POSTGRES_PASSWORD"):
            pytest.skip("POSTGRES_PASSWORD not set for PostgreSQL tests")
        return Settings(database_type="postgres")

    db_path = tmp_path_factory.mktemp("db") / "test.sqlite"
    return Settings(
        database_type="sqlite",
        db_path=str(db_path),
        store_retry_base_delay_seconds=0.0,
    )


@pytest.fixture
def repo(settings: Settings) -> Generator[FeedRepositoryProtocol, None, None]:
    """Provide a repository instance for the configured backend."""

    repository = create_repository(settings)
    try:
        yield repository
    finally:
        repository.close()


def make_event(
    event_id: str,
    *,
    user_id: str = "alice",
    start: datetime | None = None,
    duration: timedelta = timedelta(hours=2),
    name: str | None = "Jazz night",
    description: str | None = "Live jazz quartet at the club",
    location: str | None = "Blue Note club",
    created_at: datetime | None = None,
    visibility: Visibility = Visibility.PUBLIC,
    similarity_group_id: str | None = None,
    similar_to_event_id: str | None = None,
    **kwargs: Any,
) -> Event:
    """Build an event; defaults describe the same jazz night."""
    start = start or BASE_TIME + timedelta(days=1)
    return Event(
        id=event_id,
        user_id=user_id,
        name=name,
        description=description,
        location=location,
        start_date_time=start,
        end_date_time=start + duration,
        created_at=created_at or BASE_TIME,
        visibility=visibility,
        similarity_group_id=similarity_group_id,
        similar_to_event_id=similar_to_event_id,
        **kwargs,
    )


def make_unrelated_event(event_id: str, **kwargs: Any) -> Event:
    kwargs.setdefault("name", "Chess meetup")
    kwargs.setdefault("description", "Weekly rapid chess games")
    kwargs.setdefault("location", "Central library")
    return make_event(event_id, **kwargs)


def seed_user(
    repository: FeedRepositoryProtocol,
    user_id: str,
    *,
    show_discover: bool = True,
    public_list_enabled: bool = False,
) -> User:
    user = User(
        id=user_id,
        username=f"{user_id}_handle",
        show_discover=show_discover,
        public_list_enabled=public_list_enabled,
    )
    with repository.transaction() as tx:
        tx.upsert_user(user)
    return user


def seed_list(
    repository: FeedRepositoryProtocol,
    list_id: str,
    owner_id: str,
    *,
    visibility: ListVisibility = ListVisibility.PRIVATE,
    members: tuple[str, ...] = (),
) -> EventList:
    event_list = EventList(id=list_id, user_id=owner_id, name=list_id, visibility=visibility)
    with repository.transaction() as tx:
        tx.upsert_list(event_list)
        for member_id in members:
            tx.add_list_member(list_id, member_id)
    return event_list


def insert_events(repository: FeedRepositoryProtocol, *events: Event) -> None:
    """Store events directly, bypassing group resolution and fanout."""
    with repository.transaction() as tx:
        for event in events:
            tx.insert_event(event)


def memberships(repository: FeedRepositoryProtocol, feed_id: str) -> list[FeedMembership]:
    with repository.transaction(read_only=True) as tx:
        rows = tx.scan_memberships(None, 10_000)
    return [row for row in rows if row.feed_id == feed_id]


def grouped_entries(
    repository: FeedRepositoryProtocol, feed_id: str | None = None
) -> list[GroupedFeedEntry]:
    with repository.transaction(read_only=True) as tx:
        rows = tx.scan_grouped_entries(None, 10_000)
    return [row for row in rows if feed_id is None or row.feed_id == feed_id]


def stored_event(repository: FeedRepositoryProtocol, event_id: str) -> Event | None:
    with repository.transaction(read_only=True) as tx:
        return tx.get_event(event_id)
