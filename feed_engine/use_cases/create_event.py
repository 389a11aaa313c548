"""Create event use case.

Resolves the event's similarity group, stores it and fans it out to every feed
it belongs in.
"""

from typing import Any

from pydantic import ValidationError as PydanticValidationError

from feed_engine.config.logging_config import get_logger
from feed_engine.config.settings import Settings
from feed_engine.domain.exceptions import NotFoundError, ValidationError
from feed_engine.domain.models import CreateEventResult, Event
from feed_engine.domain.protocols import Clock, FeedRepositoryProtocol, FeedTransactionProtocol
from feed_engine.observability.tracing import correlation_scope
from feed_engine.services.feed_membership import FeedMembershipService
from feed_engine.services.group_resolver import GroupResolution, GroupResolver
from feed_engine.services.unit_of_work import run_in_transaction
from feed_engine.use_cases.feed_fanout import visible_feed_ids

logger = get_logger(__name__)


def parse_event_payload(payload: dict[str, Any]) -> Event:
    """Validate an event payload from the authoring pipeline.

    Raises:
        ValidationError: If required fields are missing or malformed
    """
    try:
        return Event.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid event payload: {exc}") from exc


def create_event_use_case(
    repository: FeedRepositoryProtocol,
    settings: Settings,
    event: Event,
    list_ids: list[str] | None = None,
    *,
    clock: Clock | None = None,
    correlation_id: str | None = None,
) -> CreateEventResult:
    """Store a new event and add it to its feeds.

    1. Resolve the similarity group in a read-only scan (no locks held)
    2. In one transaction: insert the event, link it to the given lists and
       add it to the creator's feed, discover and list feeds, materializing
       every touched group before commit

    Args:
        repository: Repository protocol implementation
        settings: Application settings
        event: Validated event; ``similarity_group_id`` is normally unset
        list_ids: Lists the creator files the event under

    Returns:
        CreateEventResult with the stored event and the feeds it entered

    Raises:
        ValidationError: If an event with this id already exists
        NotFoundError: If one of ``list_ids`` does not exist

    Example:
        >>> result = create_event_use_case(repo, settings, event)
        >>> result.feed_ids
        ['user_42', 'discover']
    """
    with correlation_scope(correlation_id, event_id=event.id):
        if event.similarity_group_id is None:
            resolution = GroupResolver(repository, settings).resolve(event)
            event = event.model_copy(update={"similarity_group_id": resolution.group_id})
        else:
            resolution = GroupResolution(
                group_id=event.similarity_group_id, joined_existing=True
            )

        membership = FeedMembershipService(clock=clock)

        def _store(tx: FeedTransactionProtocol) -> list[str]:
            if tx.get_event(event.id) is not None:
                raise ValidationError(f"Event {event.id} already exists")
            tx.insert_event(event)
            for list_id in list_ids or []:
                if tx.get_list(list_id) is None:
                    raise NotFoundError(f"List {list_id} not found")
                tx.link_event_to_list(list_id, event.id)

            feed_ids = visible_feed_ids(tx, event)
            for feed_id in feed_ids:
                membership.upsert_membership(tx, feed_id, event)
            return feed_ids

        feed_ids = run_in_transaction(
            repository, _store, operation="create_event", settings=settings
        )
        logger.info(
            "event_created",
            event_id=event.id,
            group_id=event.similarity_group_id,
            joined_existing_group=resolution.joined_existing,
            feed_count=len(feed_ids),
        )
        return CreateEventResult(
            event=event,
            joined_existing_group=resolution.joined_existing,
            feed_ids=feed_ids,
        )
