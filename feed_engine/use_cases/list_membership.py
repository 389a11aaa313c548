"""Add events to and remove events from user lists."""

from feed_engine.config.logging_config import get_logger
from feed_engine.config.settings import Settings
from feed_engine.domain.exceptions import AuthorizationError, NotFoundError
from feed_engine.domain.models import EventList, FeedChangeResult, FeedId, Visibility
from feed_engine.domain.protocols import Clock, FeedRepositoryProtocol, FeedTransactionProtocol
from feed_engine.observability.tracing import correlation_scope
from feed_engine.services.feed_membership import FeedMembershipService
from feed_engine.services.unit_of_work import run_in_transaction

logger = get_logger(__name__)


def _editable_list(tx: FeedTransactionProtocol, actor_id: str, list_id: str) -> EventList:
    event_list = tx.get_list(list_id)
    if event_list is None:
        raise NotFoundError(f"List {list_id} not found")
    if actor_id != event_list.user_id and not tx.is_list_member(list_id, actor_id):
        raise AuthorizationError(str(FeedId.for_list(list_id)), actor_id)
    return event_list


def add_event_to_list_use_case(
    repository: FeedRepositoryProtocol,
    settings: Settings,
    actor_id: str,
    list_id: str,
    event_id: str,
    *,
    clock: Clock | None = None,
    correlation_id: str | None = None,
) -> FeedChangeResult:
    """Link an event to a list; public events also enter the list's feed.

    Raises:
        NotFoundError: If the list or event does not exist
        AuthorizationError: If the actor neither owns nor belongs to the list
    """
    with correlation_scope(correlation_id, event_id=event_id):
        membership = FeedMembershipService(clock=clock)
        feed_id = str(FeedId.for_list(list_id))

        def _add(tx: FeedTransactionProtocol) -> FeedChangeResult:
            _editable_list(tx, actor_id, list_id)
            event = tx.get_event(event_id)
            if event is None:
                raise NotFoundError(f"Event {event_id} not found")
            tx.link_event_to_list(list_id, event_id)
            if event.visibility is not Visibility.PUBLIC:
                return FeedChangeResult(event_id=event_id)
            added = membership.upsert_membership(tx, feed_id, event)
            return FeedChangeResult(event_id=event_id, added_to=[feed_id] if added else [])

        result = run_in_transaction(
            repository, _add, operation="add_event_to_list", settings=settings
        )
        logger.info("event_added_to_list", list_id=list_id, event_id=event_id)
        return result


def remove_event_from_list_use_case(
    repository: FeedRepositoryProtocol,
    settings: Settings,
    actor_id: str,
    list_id: str,
    event_id: str,
    *,
    clock: Clock | None = None,
    correlation_id: str | None = None,
) -> FeedChangeResult:
    """Unlink an event from a list and take it out of the list's feed."""
    with correlation_scope(correlation_id, event_id=event_id):
        membership = FeedMembershipService(clock=clock)
        feed_id = str(FeedId.for_list(list_id))

        def _remove(tx: FeedTransactionProtocol) -> FeedChangeResult:
            _editable_list(tx, actor_id, list_id)
            tx.unlink_event_from_list(list_id, event_id)
            removed = membership.remove_membership(tx, feed_id, event_id)
            return FeedChangeResult(event_id=event_id, removed_from=[feed_id] if removed else [])

        result = run_in_transaction(
            repository, _remove, operation="remove_event_from_list", settings=settings
        )
        logger.info("event_removed_from_list", list_id=list_id, event_id=event_id)
        return result
