"""Protocol definitions for dependency inversion.

These abstract interfaces define contracts that storage adapters must
implement. Services only ever talk to a ``FeedTransactionProtocol`` obtained
from ``FeedRepositoryProtocol.transaction()``, so a membership write and the
materialized-row update that follows it always commit together.
"""

from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from feed_engine.domain.models import (
    Event,
    EventList,
    FeedMembership,
    GroupedFeedEntry,
    User,
)
from feed_engine.domain.timing import FeedTiming

if TYPE_CHECKING:
    from feed_engine.adapters.query_builders import FeedQueryCriteria

Clock = Callable[[], datetime]
"""Returns the current time as an aware UTC datetime."""


class FeedTransactionProtocol(Protocol):
    """Unit of work bound to one database transaction."""

    # === Events ===

    def get_event(self, event_id: str) -> Event | None:
        """Fetch a single event by its public id."""
        ...

    def get_events(self, event_ids: list[str]) -> dict[str, Event]:
        """Fetch several events; missing ids are absent from the result."""
        ...

    def insert_event(self, event: Event) -> None:
        """Insert a new event row."""
        ...

    def update_event_details(self, event: Event) -> None:
        """Persist text, timing, visibility and metadata (never the group id)."""
        ...

    def delete_event(self, event_id: str) -> bool:
        """Delete an event row. Returns True if it existed."""
        ...

    def assign_similarity_group(self, event_id: str, group_id: str) -> str | None:
        """Set the group id only if still unset.

        Returns:
            The group id stored after the call (possibly one assigned earlier
            by a concurrent writer), or None if the event does not exist.
        """
        ...

    def find_events_starting_between(
        self, lower: datetime, upper: datetime
    ) -> list[Event]:
        """Range scan on the start-time index, ordered by (start, id)."""
        ...

    def scan_events_by_creation(
        self, after: tuple[str, str] | None, limit: int
    ) -> list[Event]:
        """Keyset scan ordered by (created_at, id)."""
        ...

    # === Users, lists and follows ===

    def get_user(self, user_id: str) -> User | None: ...

    def upsert_user(self, user: User) -> None: ...

    def get_list(self, list_id: str) -> EventList | None: ...

    def upsert_list(self, event_list: EventList) -> None: ...

    def add_list_member(self, list_id: str, user_id: str) -> None: ...

    def is_list_member(self, list_id: str, user_id: str) -> bool: ...

    def link_event_to_list(self, list_id: str, event_id: str) -> bool: ...

    def unlink_event_from_list(self, list_id: str, event_id: str) -> bool: ...

    def get_list_ids_for_event(self, event_id: str) -> list[str]: ...

    def add_follow(self, user_id: str, event_id: str) -> bool: ...

    def remove_follow(self, user_id: str, event_id: str) -> bool: ...

    def get_follower_ids(self, event_id: str) -> list[str]: ...

    def delete_event_links(self, event_id: str) -> None:
        """Drop follows and list links that reference an event."""
        ...

    # === Feed memberships ===

    def get_membership(self, feed_id: str, event_id: str) -> FeedMembership | None: ...

    def insert_membership(self, membership: FeedMembership) -> None: ...

    def update_membership_timing(
        self,
        feed_id: str,
        event_id: str,
        timing: FeedTiming,
        *,
        expected_start_time: int | None = None,
    ) -> bool:
        """Patch denormalized timing.

        When ``expected_start_time`` is given the patch only applies if the
        stored value still equals it (compare-and-set for backfills).
        """
        ...

    def set_membership_group(
        self, feed_id: str, event_id: str, group_id: str
    ) -> bool:
        """Set a membership's group id if it is still unset."""
        ...

    def delete_membership(self, feed_id: str, event_id: str) -> bool: ...

    def get_memberships_for_event(self, event_id: str) -> list[FeedMembership]: ...

    def get_group_members(self, feed_id: str, group_id: str) -> list[FeedMembership]: ...

    def page_feed(self, criteria: "FeedQueryCriteria") -> list[FeedMembership]: ...

    def scan_memberships(
        self,
        after: tuple[str, str] | None,
        limit: int,
        *,
        start_time_range: tuple[int, int] | None = None,
    ) -> list[FeedMembership]:
        """Keyset scan ordered by (feed_id, event_id)."""
        ...

    def scan_feed_group_pairs(
        self, after: tuple[str, str] | None, limit: int
    ) -> list[tuple[str, str]]:
        """Distinct (feed_id, group_id) pairs present in memberships."""
        ...

    # === Grouped feed entries (materializer only) ===

    def get_grouped_entry(self, feed_id: str, group_id: str) -> GroupedFeedEntry | None: ...

    def upsert_grouped_entry(self, entry: GroupedFeedEntry) -> None: ...

    def delete_grouped_entry(self, feed_id: str, group_id: str) -> bool: ...

    def page_grouped_feed(self, criteria: "FeedQueryCriteria") -> list[GroupedFeedEntry]: ...

    def scan_grouped_entries(
        self,
        after: tuple[str, str] | None,
        limit: int,
        *,
        start_time_range: tuple[int, int] | None = None,
    ) -> list[GroupedFeedEntry]:
        """Keyset scan ordered by (feed_id, similarity_group_id)."""
        ...

    # === Coordination ===

    def lock_feed_group(self, feed_id: str, group_id: str) -> None:
        """Serialize writers of one (feed, group) pair until commit."""
        ...

    def get_checkpoint(self, job_name: str) -> str | None: ...

    def save_checkpoint(self, job_name: str, last_processed_key: str | None) -> None: ...


class FeedRepositoryProtocol(Protocol):
    """Storage backend that hands out transactions."""

    def transaction(
        self, *, read_only: bool = False
    ) -> AbstractContextManager[FeedTransactionProtocol]:
        """Open a transaction that commits on success and rolls back on error.

        Raises:
            TransientStoreError: On lock contention or dropped connections
            RepositoryError: On other storage failures
        """
        ...

    def close(self) -> None: ...
