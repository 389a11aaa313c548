"""Grouped feed materializer.

Derives one ``GroupedFeedEntry`` per (feed, similarity group) from the feed's
membership rows. It runs inside the caller's transaction so a membership write
and the grouped row it implies commit together.

Primary selection order:
1. In a personal feed, the feed owner's own event
2. Otherwise the earliest created member (ties broken by event id)

Timing on the grouped row comes from the primary event; ``added_at`` is the
minimum over all members so the card keeps its position when the primary
changes.
"""

from datetime import datetime

import pytz

from feed_engine.config.logging_config import get_logger
from feed_engine.domain.models import Event, GroupedFeedEntry, personal_feed_owner
from feed_engine.domain.protocols import Clock, FeedTransactionProtocol
from feed_engine.domain.timing import FeedTiming
from feed_engine.observability.consistency import report_consistency_warning
from feed_engine.observability.metrics import GROUPED_ENTRY_WRITES_TOTAL

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def select_primary_event(feed_id: str, members: list[Event]) -> Event:
    """Pick the representative event of a group for one feed.

    Raises:
        ValueError: If ``members`` is empty
    """
    if not members:
        raise ValueError("cannot select a primary from an empty group")

    owner_id = personal_feed_owner(feed_id)
    if owner_id is not None:
        own_events = [event for event in members if event.user_id == owner_id]
        if own_events:
            members = own_events
    return min(members, key=lambda event: (event.created_at, event.id))


class GroupedFeedMaterializer:
    """Keeps grouped feed rows in step with membership rows."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or _utc_now

    def compute_entry(
        self, tx: FeedTransactionProtocol, feed_id: str, group_id: str
    ) -> GroupedFeedEntry | None:
        """Derive the grouped row for (feed, group) without writing it.

        Returns:
            The row the pair should have, or None when it should have none
        """
        members = tx.get_group_members(feed_id, group_id)
        if not members:
            return None

        events = tx.get_events([member.event_id for member in members])
        live_events = [events[m.event_id] for m in members if m.event_id in events]
        if not live_events:
            report_consistency_warning(
                "group_without_live_events",
                feed_id,
                group_id,
                member_count=len(members),
            )
            return None

        primary = select_primary_event(feed_id, live_events)
        timing = FeedTiming.from_event(primary, self._clock())
        return GroupedFeedEntry(
            feed_id=feed_id,
            similarity_group_id=group_id,
            primary_event_id=primary.id,
            event_start_time=timing.event_start_time,
            event_end_time=timing.event_end_time,
            added_at=min(member.added_at for member in members),
            has_ended=timing.has_ended,
            similar_events_count=len(members) - 1,
        )

    def upsert(
        self, tx: FeedTransactionProtocol, feed_id: str, group_id: str
    ) -> GroupedFeedEntry | None:
        """Recompute the grouped row for (feed, group).

        Idempotent: with no membership change in between, a second call writes
        nothing.

        Returns:
            The stored row, or None when the group has no members left
        """
        tx.lock_feed_group(feed_id, group_id)
        entry = self.compute_entry(tx, feed_id, group_id)
        if entry is None:
            if tx.delete_grouped_entry(feed_id, group_id):
                GROUPED_ENTRY_WRITES_TOTAL.labels(outcome="deleted").inc()
                logger.debug("grouped_entry_removed", feed_id=feed_id, group_id=group_id)
            return None

        existing = tx.get_grouped_entry(feed_id, group_id)
        if existing == entry:
            GROUPED_ENTRY_WRITES_TOTAL.labels(outcome="unchanged").inc()
            return existing

        tx.upsert_grouped_entry(entry)
        outcome = "inserted" if existing is None else "updated"
        GROUPED_ENTRY_WRITES_TOTAL.labels(outcome=outcome).inc()
        logger.debug(
            "grouped_entry_upserted",
            feed_id=feed_id,
            group_id=group_id,
            primary_event_id=entry.primary_event_id,
            similar_events_count=entry.similar_events_count,
            outcome=outcome,
        )
        return entry

    def remove_if_empty(
        self, tx: FeedTransactionProtocol, feed_id: str, group_id: str
    ) -> bool:
        """Delete the grouped row if the group has no members in this feed.

        Returns:
            True if a row was deleted
        """
        tx.lock_feed_group(feed_id, group_id)
        if tx.get_group_members(feed_id, group_id):
            return False
        deleted = tx.delete_grouped_entry(feed_id, group_id)
        if deleted:
            GROUPED_ENTRY_WRITES_TOTAL.labels(outcome="deleted").inc()
            logger.debug("grouped_entry_removed", feed_id=feed_id, group_id=group_id)
        return deleted

    def sync_all_entries_for_event(
        self, tx: FeedTransactionProtocol, event_id: str
    ) -> list[tuple[str, str]]:
        """Recompute every grouped row the event participates in.

        Used after event-level changes (timing, group id) and as a repair tool.

        Returns:
            The (feed_id, group_id) pairs that were recomputed
        """
        pairs = sorted(
            {
                (membership.feed_id, membership.similarity_group_id)
                for membership in tx.get_memberships_for_event(event_id)
                if membership.similarity_group_id is not None
            }
        )
        for feed_id, group_id in pairs:
            self.upsert(tx, feed_id, group_id)
        logger.debug("grouped_entries_synced", event_id=event_id, pair_count=len(pairs))
        return pairs
