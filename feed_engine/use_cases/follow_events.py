"""Follow and unfollow events."""

from feed_engine.config.logging_config import get_logger
from feed_engine.config.settings import Settings
from feed_engine.domain.exceptions import NotFoundError
from feed_engine.domain.models import Event, FeedChangeResult, FeedId, Visibility
from feed_engine.domain.protocols import Clock, FeedRepositoryProtocol, FeedTransactionProtocol
from feed_engine.observability.tracing import correlation_scope
from feed_engine.services.feed_membership import FeedMembershipService
from feed_engine.services.unit_of_work import run_in_transaction

logger = get_logger(__name__)


def _visible_event(tx: FeedTransactionProtocol, user_id: str, event_id: str) -> Event:
    event = tx.get_event(event_id)
    # Private events of other users are reported as missing
    if event is None or (event.visibility is Visibility.PRIVATE and event.user_id != user_id):
        raise NotFoundError(f"Event {event_id} not found")
    return event


def follow_event_use_case(
    repository: FeedRepositoryProtocol,
    settings: Settings,
    user_id: str,
    event_id: str,
    *,
    clock: Clock | None = None,
    correlation_id: str | None = None,
) -> FeedChangeResult:
    """Record a follow and add the event to the follower's personal feed.

    Raises:
        NotFoundError: If the event does not exist or is hidden from the user
    """
    with correlation_scope(correlation_id, event_id=event_id):
        membership = FeedMembershipService(clock=clock)
        feed_id = str(FeedId.personal(user_id))

        def _follow(tx: FeedTransactionProtocol) -> FeedChangeResult:
            event = _visible_event(tx, user_id, event_id)
            tx.add_follow(user_id, event_id)
            added = membership.upsert_membership(tx, feed_id, event)
            return FeedChangeResult(event_id=event_id, added_to=[feed_id] if added else [])

        result = run_in_transaction(
            repository, _follow, operation="follow_event", settings=settings
        )
        logger.info("event_followed", user_id=user_id, event_id=event_id)
        return result


def unfollow_event_use_case(
    repository: FeedRepositoryProtocol,
    settings: Settings,
    user_id: str,
    event_id: str,
    *,
    clock: Clock | None = None,
    correlation_id: str | None = None,
) -> FeedChangeResult:
    """Drop a follow; the creator's own feed keeps the event."""
    with correlation_scope(correlation_id, event_id=event_id):
        membership = FeedMembershipService(clock=clock)
        feed_id = str(FeedId.personal(user_id))

        def _unfollow(tx: FeedTransactionProtocol) -> FeedChangeResult:
            event = tx.get_event(event_id)
            if event is None:
                raise NotFoundError(f"Event {event_id} not found")
            tx.remove_follow(user_id, event_id)
            if event.user_id == user_id:
                return FeedChangeResult(event_id=event_id)
            removed = membership.remove_membership(tx, feed_id, event_id)
            return FeedChangeResult(event_id=event_id, removed_from=[feed_id] if removed else [])

        result = run_in_transaction(
            repository, _unfollow, operation="unfollow_event", settings=settings
        )
        logger.info("event_unfollowed", user_id=user_id, event_id=event_id)
        return result
