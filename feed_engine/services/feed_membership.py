"""Feed membership store.

Membership rows are the source of truth for what a feed contains. Every
mutation here re-materializes the affected (feed, group) pair before
returning, inside the same transaction.
"""

from datetime import datetime

import pytz

from feed_engine.config.logging_config import get_logger
from feed_engine.domain.models import Event, FeedId, FeedMembership
from feed_engine.domain.protocols import Clock, FeedTransactionProtocol
from feed_engine.domain.timing import FeedTiming, to_epoch_millis
from feed_engine.observability.metrics import FEED_MEMBERSHIP_MUTATIONS_TOTAL
from feed_engine.services.materializer import GroupedFeedMaterializer

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(pytz.UTC)


class FeedMembershipService:
    """Adds and removes events from feeds."""

    def __init__(
        self,
        materializer: GroupedFeedMaterializer | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._clock = clock or _utc_now
        self._materializer = materializer or GroupedFeedMaterializer(self._clock)

    @property
    def materializer(self) -> GroupedFeedMaterializer:
        return self._materializer

    def upsert_membership(
        self,
        tx: FeedTransactionProtocol,
        feed_id: str,
        event: Event,
        added_at: int | None = None,
    ) -> bool:
        """Put an event in a feed, or refresh its denormalized timing.

        An existing row keeps its original ``added_at`` and group id.

        Args:
            tx: Open write transaction
            feed_id: Target feed (validated)
            event: Event being added
            added_at: Epoch millis the event entered the feed; defaults to now

        Returns:
            True if a new row was inserted

        Raises:
            ValidationError: If ``feed_id`` is malformed
        """
        FeedId.parse(feed_id)
        now = self._clock()
        timing = FeedTiming.from_event(event, now)

        existing = tx.get_membership(feed_id, event.id)
        if existing is None:
            tx.insert_membership(
                FeedMembership(
                    feed_id=feed_id,
                    event_id=event.id,
                    similarity_group_id=event.similarity_group_id,
                    event_start_time=timing.event_start_time,
                    event_end_time=timing.event_end_time,
                    added_at=added_at if added_at is not None else to_epoch_millis(now),
                    has_ended=timing.has_ended,
                )
            )
            FEED_MEMBERSHIP_MUTATIONS_TOTAL.labels(operation="insert").inc()
            logger.debug("feed_membership_added", feed_id=feed_id, event_id=event.id)
            inserted = True
        else:
            tx.update_membership_timing(feed_id, event.id, timing)
            if existing.similarity_group_id is None and event.similarity_group_id:
                tx.set_membership_group(feed_id, event.id, event.similarity_group_id)
            FEED_MEMBERSHIP_MUTATIONS_TOTAL.labels(operation="refresh").inc()
            inserted = False

        group_id = (
            existing.similarity_group_id if existing is not None else None
        ) or event.similarity_group_id
        if group_id is not None:
            self._materializer.upsert(tx, feed_id, group_id)
        else:
            logger.warning("feed_membership_ungrouped", feed_id=feed_id, event_id=event.id)
        return inserted

    def remove_membership(
        self, tx: FeedTransactionProtocol, feed_id: str, event_id: str
    ) -> bool:
        """Take an event out of a feed. Returns False if it was not there."""
        existing = tx.get_membership(feed_id, event_id)
        if existing is None:
            return False

        tx.delete_membership(feed_id, event_id)
        FEED_MEMBERSHIP_MUTATIONS_TOTAL.labels(operation="delete").inc()
        logger.debug("feed_membership_removed", feed_id=feed_id, event_id=event_id)

        if existing.similarity_group_id is not None:
            self._materializer.upsert(tx, feed_id, existing.similarity_group_id)
        return True

    def update_event_times_in_feeds(
        self, tx: FeedTransactionProtocol, event: Event
    ) -> int:
        """Re-copy the event's timing onto every feed row that holds it.

        Returns:
            Number of membership rows patched
        """
        timing = FeedTiming.from_event(event, self._clock())
        memberships = tx.get_memberships_for_event(event.id)
        for membership in memberships:
            tx.update_membership_timing(membership.feed_id, event.id, timing)
        self._materializer.sync_all_entries_for_event(tx, event.id)
        return len(memberships)

    def remove_event_from_feeds(
        self,
        tx: FeedTransactionProtocol,
        event: Event,
        *,
        keep_creator_feed: bool,
    ) -> list[str]:
        """Remove an event from all of its feeds.

        Returns:
            Feed ids the event was removed from
        """
        creator_feed = str(FeedId.personal(event.user_id))
        removed: list[str] = []
        for membership in tx.get_memberships_for_event(event.id):
            if keep_creator_feed and membership.feed_id == creator_feed:
                continue
            if self.remove_membership(tx, membership.feed_id, event.id):
                removed.append(membership.feed_id)
        return removed
