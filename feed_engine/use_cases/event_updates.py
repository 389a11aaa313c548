"""Event visibility changes, detail edits and deletion."""

from typing import Any

from pydantic import ValidationError as PydanticValidationError

from feed_engine.config.logging_config import get_logger
from feed_engine.config.settings import Settings
from feed_engine.domain.exceptions import AuthorizationError, NotFoundError, ValidationError
from feed_engine.domain.models import Event, FeedChangeResult, FeedId, Visibility
from feed_engine.domain.protocols import Clock, FeedRepositoryProtocol, FeedTransactionProtocol
from feed_engine.observability.tracing import correlation_scope
from feed_engine.services.feed_membership import FeedMembershipService
from feed_engine.services.unit_of_work import run_in_transaction
from feed_engine.use_cases.feed_fanout import visible_feed_ids

logger = get_logger(__name__)

EDITABLE_FIELDS = frozenset(
    {"name", "description", "location", "start_date_time", "end_date_time", "metadata"}
)


def _owned_event(tx: FeedTransactionProtocol, actor_id: str, event_id: str) -> Event:
    event = tx.get_event(event_id)
    if event is None:
        raise NotFoundError(f"Event {event_id} not found")
    if event.user_id != actor_id:
        raise AuthorizationError(str(FeedId.personal(event.user_id)), actor_id)
    return event


def set_event_visibility_use_case(
    repository: FeedRepositoryProtocol,
    settings: Settings,
    actor_id: str,
    event_id: str,
    visibility: Visibility | str,
    *,
    clock: Clock | None = None,
    correlation_id: str | None = None,
) -> FeedChangeResult:
    """Make an event public or private and update its feeds to match.

    Private: the event leaves every feed except its creator's.
    Public: it re-enters discover (if the author opted in), its list feeds and
    its followers' feeds.

    Raises:
        ValidationError: Unknown visibility value
        NotFoundError: Event does not exist
        AuthorizationError: Actor is not the event's creator
    """
    try:
        target = Visibility(visibility)
    except ValueError as exc:
        raise ValidationError(f"Invalid visibility: {visibility!r}") from exc

    with correlation_scope(correlation_id, event_id=event_id):
        membership = FeedMembershipService(clock=clock)

        def _apply(tx: FeedTransactionProtocol) -> FeedChangeResult:
            event = _owned_event(tx, actor_id, event_id)
            updated = event.model_copy(update={"visibility": target})
            tx.update_event_details(updated)

            if target is Visibility.PRIVATE:
                removed = membership.remove_event_from_feeds(
                    tx, updated, keep_creator_feed=True
                )
                return FeedChangeResult(event_id=event_id, removed_from=removed)

            added = [
                feed_id
                for feed_id in visible_feed_ids(tx, updated)
                if membership.upsert_membership(tx, feed_id, updated)
            ]
            return FeedChangeResult(event_id=event_id, added_to=added)

        result = run_in_transaction(
            repository, _apply, operation="set_event_visibility", settings=settings
        )
        logger.info(
            "event_visibility_changed",
            event_id=event_id,
            visibility=target.value,
            added=len(result.added_to),
            removed=len(result.removed_from),
        )
        return result


def update_event_details_use_case(
    repository: FeedRepositoryProtocol,
    settings: Settings,
    actor_id: str,
    event_id: str,
    changes: dict[str, Any],
    *,
    clock: Clock | None = None,
    correlation_id: str | None = None,
) -> Event:
    """Edit an event's text, timing or metadata.

    The similarity group id never changes here. New timing is copied onto
    every feed row of the event and the affected grouped rows are recomputed
    in the same transaction.

    Raises:
        ValidationError: Unknown field or invalid resulting event
        NotFoundError: Event does not exist
        AuthorizationError: Actor is not the event's creator
    """
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Fields cannot be edited: {sorted(unknown)}")

    with correlation_scope(correlation_id, event_id=event_id):
        membership = FeedMembershipService(clock=clock)

        def _apply(tx: FeedTransactionProtocol) -> Event:
            event = _owned_event(tx, actor_id, event_id)
            try:
                updated = Event.model_validate({**event.model_dump(), **changes})
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid event update: {exc}") from exc
            tx.update_event_details(updated)
            patched = membership.update_event_times_in_feeds(tx, updated)
            logger.debug("event_feed_rows_patched", event_id=event_id, rows=patched)
            return updated

        updated = run_in_transaction(
            repository, _apply, operation="update_event_details", settings=settings
        )
        logger.info("event_updated", event_id=event_id, fields=sorted(changes))
        return updated


def delete_event_use_case(
    repository: FeedRepositoryProtocol,
    settings: Settings,
    actor_id: str,
    event_id: str,
    *,
    clock: Clock | None = None,
    correlation_id: str | None = None,
) -> FeedChangeResult:
    """Remove an event from every feed, drop its follows and list links, then delete it."""
    with correlation_scope(correlation_id, event_id=event_id):
        membership = FeedMembershipService(clock=clock)

        def _delete(tx: FeedTransactionProtocol) -> FeedChangeResult:
            event = _owned_event(tx, actor_id, event_id)
            removed = membership.remove_event_from_feeds(tx, event, keep_creator_feed=False)
            tx.delete_event_links(event_id)
            tx.delete_event(event_id)
            return FeedChangeResult(event_id=event_id, removed_from=removed)

        result = run_in_transaction(
            repository, _delete, operation="delete_event", settings=settings
        )
        logger.info("event_deleted", event_id=event_id, feed_count=len(result.removed_from))
        return result


__all__ = [
    "delete_event_use_case",
    "set_event_visibility_use_case",
    "update_event_details_use_case",
]
