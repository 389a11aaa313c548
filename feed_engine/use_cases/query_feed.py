"""Query feed use case."""

from datetime import datetime

from feed_engine.config.settings import Settings
from feed_engine.domain.models import FeedDirection, FeedPage
from feed_engine.domain.protocols import Clock, FeedRepositoryProtocol
from feed_engine.observability.tracing import correlation_scope
from feed_engine.services.feed_query import FeedQueryService


def query_feed_use_case(
    repository: FeedRepositoryProtocol,
    settings: Settings,
    viewer_id: str | None,
    feed_id: str,
    direction: FeedDirection | str = FeedDirection.UPCOMING,
    page_size: int | None = None,
    cursor: str | None = None,
    before_this_date_time: datetime | None = None,
    *,
    grouped: bool = True,
    clock: Clock | None = None,
    correlation_id: str | None = None,
) -> FeedPage:
    """Fetch one page of a feed for a viewer.

    Example:
        >>> page = query_feed_use_case(repo, settings, "42", "user_42", "upcoming", 20)
        >>> next_page = query_feed_use_case(
        ...     repo, settings, "42", "user_42", "upcoming", 20, cursor=page.next_cursor
        ... )
    """
    with correlation_scope(correlation_id):
        service = FeedQueryService(repository, settings, clock=clock)
        return service.query_feed(
            viewer_id,
            feed_id,
            direction,
            page_size,
            cursor=cursor,
            before_this_date_time=before_this_date_time,
            grouped=grouped,
        )
