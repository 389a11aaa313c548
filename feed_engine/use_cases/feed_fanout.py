"""Which feeds an event belongs in."""

from feed_engine.domain.models import DISCOVER_FEED_ID, Event, FeedId, Visibility
from feed_engine.domain.protocols import FeedTransactionProtocol


def visible_feed_ids(tx: FeedTransactionProtocol, event: Event) -> list[str]:
    """Feeds that should contain the event given its current visibility.

    The creator's own feed always holds the event. Public events also appear
    in discover (when the author opted in), in the feeds of lists that contain
    them, and in the personal feeds of their followers.
    """
    feed_ids = [str(FeedId.personal(event.user_id))]
    if event.visibility is Visibility.PUBLIC:
        author = tx.get_user(event.user_id)
        if author is not None and author.show_discover:
            feed_ids.append(DISCOVER_FEED_ID)
        feed_ids.extend(
            str(FeedId.for_list(list_id)) for list_id in tx.get_list_ids_for_event(event.id)
        )
        feed_ids.extend(
            str(FeedId.personal(follower_id))
            for follower_id in tx.get_follower_ids(event.id)
            if follower_id != event.user_id
        )
    return list(dict.fromkeys(feed_ids))
