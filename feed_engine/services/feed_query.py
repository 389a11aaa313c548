"""Cursor-paginated feed reads.

A pagination session is anchored to a snapshot boundary: rows ending at or
after it are "upcoming", rows ending before it are "past". The boundary is
fixed on the first page and carried inside the cursor, so an event whose end
time passes mid-scroll neither repeats nor vanishes.

Rows whose stored timing disagrees with their event are left out of the page
and re-derived in a short write transaction once the read has finished, so
the next read sees them on the correct side of the boundary.
"""

import base64
import binascii
from datetime import datetime

import pytz
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from feed_engine.adapters.query_builders import FeedQueryCriteria
from feed_engine.config.logging_config import get_logger
from feed_engine.config.settings import FEED_DEFAULT_PAGE_SIZE, FEED_MAX_PAGE_SIZE, Settings
from feed_engine.domain.exceptions import AuthorizationError, NotFoundError, ValidationError
from feed_engine.domain.models import (
    Event,
    FeedDirection,
    FeedId,
    FeedItem,
    FeedKind,
    FeedMembership,
    FeedPage,
    GroupedFeedEntry,
    ListVisibility,
    User,
)
from feed_engine.domain.protocols import Clock, FeedRepositoryProtocol, FeedTransactionProtocol
from feed_engine.domain.timing import FeedTiming, from_epoch_millis, to_epoch_millis
from feed_engine.observability.consistency import report_consistency_warning
from feed_engine.observability.metrics import FEED_QUERY_DURATION_SECONDS
from feed_engine.services.materializer import GroupedFeedMaterializer
from feed_engine.services.unit_of_work import run_in_transaction

logger = get_logger(__name__)

FeedRow = FeedMembership | GroupedFeedEntry


class FeedCursor(BaseModel):
    """Opaque pagination state handed back to clients."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    feed_id: str
    direction: FeedDirection
    grouped: bool
    boundary_ms: int
    last_start_time: int
    last_key: str

    def encode(self) -> str:
        return base64.urlsafe_b64encode(self.model_dump_json().encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, token: str) -> "FeedCursor":
        """Parse a cursor token.

        Raises:
            ValidationError: If the token is not a cursor this service issued
        """
        try:
            raw = base64.urlsafe_b64decode(token.encode("ascii"))
            return cls.model_validate_json(raw)
        except (binascii.Error, UnicodeError, ValueError, PydanticValidationError) as exc:
            raise ValidationError("Malformed feed cursor") from exc


def _utc_now() -> datetime:
    return datetime.now(pytz.UTC)


class FeedQueryService:
    """Read path over membership rows and grouped rows."""

    def __init__(
        self,
        repository: FeedRepositoryProtocol,
        settings: Settings | None = None,
        clock: Clock | None = None,
        materializer: GroupedFeedMaterializer | None = None,
    ) -> None:
        self._repository = repository
        self._settings = settings
        self._clock = clock or _utc_now
        self._materializer = materializer or GroupedFeedMaterializer(self._clock)
        self._default_page_size = (
            settings.feed_default_page_size if settings else FEED_DEFAULT_PAGE_SIZE
        )
        self._max_page_size = settings.feed_max_page_size if settings else FEED_MAX_PAGE_SIZE

    def query_feed(
        self,
        viewer_id: str | None,
        feed_id: str,
        direction: FeedDirection | str,
        page_size: int | None = None,
        cursor: str | None = None,
        before_this_date_time: datetime | None = None,
        grouped: bool = True,
    ) -> FeedPage:
        """Fetch one page of a feed.

        Args:
            viewer_id: Authenticated caller, or None for anonymous reads
            feed_id: ``user_<id>``, ``discover`` or ``list_<id>``
            direction: ``upcoming`` or ``past``
            page_size: Items per page, clamped to the configured maximum
            cursor: Token from the previous page of the same session
            before_this_date_time: Snapshot boundary; defaults to now on the
                first page and to the cursor's boundary afterwards
            grouped: Read grouped rows (one card per similarity group) instead
                of raw membership rows

        Raises:
            ValidationError: Malformed feed id, direction, page size or cursor
            AuthorizationError: Viewer may not read this feed
            NotFoundError: The list behind a list feed does not exist
        """
        parsed_feed = FeedId.parse(feed_id)
        try:
            feed_direction = FeedDirection(direction)
        except ValueError as exc:
            raise ValidationError(f"Invalid feed direction: {direction!r}") from exc

        size = self._default_page_size if page_size is None else page_size
        if size <= 0:
            raise ValidationError(f"page_size must be positive, got {size}")
        size = min(size, self._max_page_size)

        requested_boundary: int | None = None
        if before_this_date_time is not None:
            try:
                requested_boundary = to_epoch_millis(before_this_date_time)
            except ValueError as exc:
                raise ValidationError("before_this_date_time must be timezone-aware") from exc

        after: tuple[int, str] | None = None
        if cursor is not None:
            state = FeedCursor.decode(cursor)
            if (
                state.feed_id != feed_id
                or state.direction is not feed_direction
                or state.grouped != grouped
            ):
                raise ValidationError("Cursor does not belong to this feed query")
            if requested_boundary is not None and requested_boundary != state.boundary_ms:
                raise ValidationError("Cursor was issued for a different snapshot")
            boundary_ms = state.boundary_ms
            after = (state.last_start_time, state.last_key)
        else:
            boundary_ms = (
                requested_boundary
                if requested_boundary is not None
                else to_epoch_millis(self._clock())
            )

        drifted: list[FeedRow] = []

        def _read(tx: FeedTransactionProtocol) -> FeedPage:
            drifted.clear()
            return self._read_page(
                tx,
                viewer_id=viewer_id,
                feed=parsed_feed,
                direction=feed_direction,
                page_size=size,
                boundary_ms=boundary_ms,
                after=after,
                grouped=grouped,
                drifted=drifted,
            )

        mode = "grouped" if grouped else "raw"
        with FEED_QUERY_DURATION_SECONDS.labels(
            direction=feed_direction.value, mode=mode
        ).time():
            page = run_in_transaction(
                self._repository,
                _read,
                operation="query_feed",
                settings=self._settings,
                read_only=True,
            )
        if drifted:
            self._heal_drifted_rows(drifted)
        return page

    def _heal_drifted_rows(self, rows: list[FeedRow]) -> None:
        """Re-copy event timing onto drifted rows and re-derive their grouped rows."""
        memberships = sorted({(row.feed_id, self._event_id_of(row)) for row in rows})
        groups = sorted(
            {
                (row.feed_id, row.similarity_group_id)
                for row in rows
                if row.similarity_group_id is not None
            }
        )

        def _work(tx: FeedTransactionProtocol) -> None:
            now = self._clock()
            for feed_id, event_id in memberships:
                event = tx.get_event(event_id)
                if event is not None and tx.get_membership(feed_id, event_id) is not None:
                    tx.update_membership_timing(
                        feed_id, event_id, FeedTiming.from_event(event, now)
                    )
            for feed_id, group_id in groups:
                self._materializer.upsert(tx, feed_id, group_id)

        run_in_transaction(
            self._repository, _work, operation="heal_feed_rows", settings=self._settings
        )
        logger.info(
            "feed_rows_healed", membership_count=len(memberships), group_count=len(groups)
        )

    def authorize(
        self, tx: FeedTransactionProtocol, viewer_id: str | None, feed: FeedId
    ) -> None:
        """Raise unless the viewer may read the feed."""
        if feed.kind is FeedKind.DISCOVER:
            return

        if feed.kind is FeedKind.PERSONAL:
            owner_id = feed.owner_user_id
            if viewer_id is not None and viewer_id == owner_id:
                return
            owner = tx.get_user(owner_id) if owner_id else None
            if owner is not None and owner.public_list_enabled:
                return
            raise AuthorizationError(str(feed), viewer_id)

        event_list = tx.get_list(feed.subject_id or "")
        if event_list is None:
            raise NotFoundError(f"List {feed.subject_id} not found")
        if event_list.visibility in (ListVisibility.PUBLIC, ListVisibility.UNLISTED):
            return
        if viewer_id is not None and (
            viewer_id == event_list.user_id or tx.is_list_member(event_list.id, viewer_id)
        ):
            return
        raise AuthorizationError(str(feed), viewer_id)

    def _read_page(
        self,
        tx: FeedTransactionProtocol,
        *,
        viewer_id: str | None,
        feed: FeedId,
        direction: FeedDirection,
        page_size: int,
        boundary_ms: int,
        after: tuple[int, str] | None,
        grouped: bool,
        drifted: list[FeedRow],
    ) -> FeedPage:
        self.authorize(tx, viewer_id, feed)

        feed_id = str(feed)
        items: list[FeedItem] = []
        authors: dict[str, User | None] = {}
        position = after
        has_more = False
        exhausted = False

        while len(items) < page_size and not exhausted:
            fetch = page_size - len(items) + 1
            criteria = FeedQueryCriteria(
                feed_id=feed_id,
                direction=direction,
                boundary_ms=boundary_ms,
                limit=fetch,
                grouped=grouped,
                after_start_time=position[0] if position else None,
                after_key=position[1] if position else None,
            )
            rows: list[FeedRow] = list(
                tx.page_grouped_feed(criteria) if grouped else tx.page_feed(criteria)
            )
            exhausted = len(rows) < fetch
            events = tx.get_events([self._event_id_of(row) for row in rows])

            for index, row in enumerate(rows):
                if len(items) == page_size:
                    has_more = True
                    break
                position = (row.event_start_time, self._key_of(row))
                event = events.get(self._event_id_of(row))
                item = self._to_item(tx, row, event, direction, boundary_ms, authors)
                if item is not None:
                    items.append(item)
                elif event is not None:
                    drifted.append(row)
                if index == len(rows) - 1 and len(items) == page_size and not exhausted:
                    has_more = True

        is_done = not has_more
        next_cursor = None
        if not is_done and position is not None:
            next_cursor = FeedCursor(
                feed_id=feed_id,
                direction=direction,
                grouped=grouped,
                boundary_ms=boundary_ms,
                last_start_time=position[0],
                last_key=position[1],
            ).encode()

        logger.debug(
            "feed_page_served",
            feed_id=feed_id,
            direction=direction.value,
            grouped=grouped,
            item_count=len(items),
            is_done=is_done,
        )
        return FeedPage(
            items=items,
            next_cursor=next_cursor,
            is_done=is_done,
            before_this_date_time=from_epoch_millis(boundary_ms),
        )

    @staticmethod
    def _event_id_of(row: FeedRow) -> str:
        if isinstance(row, GroupedFeedEntry):
            return row.primary_event_id
        return row.event_id

    @staticmethod
    def _key_of(row: FeedRow) -> str:
        if isinstance(row, GroupedFeedEntry):
            return row.similarity_group_id
        return row.event_id

    def _to_item(
        self,
        tx: FeedTransactionProtocol,
        row: FeedRow,
        event: Event | None,
        direction: FeedDirection,
        boundary_ms: int,
        authors: dict[str, User | None],
    ) -> FeedItem | None:
        if event is None:
            logger.debug(
                "feed_row_event_missing",
                feed_id=row.feed_id,
                event_id=self._event_id_of(row),
            )
            return None

        end_ms = to_epoch_millis(event.end_date_time)
        is_upcoming = end_ms >= boundary_ms
        if is_upcoming != (direction is FeedDirection.UPCOMING):
            report_consistency_warning(
                "denormalized_timing_drift",
                row.feed_id,
                row.similarity_group_id,
                event_id=event.id,
                stored_end_time=row.event_end_time,
                actual_end_time=end_ms,
            )
            return None

        if event.user_id not in authors:
            authors[event.user_id] = tx.get_user(event.user_id)

        if isinstance(row, GroupedFeedEntry):
            return FeedItem(
                event=event,
                author=authors[event.user_id],
                similarity_group_id=row.similarity_group_id,
                similar_events_count=row.similar_events_count,
                added_at=row.added_at,
            )
        return FeedItem(
            event=event,
            author=authors[event.user_id],
            similarity_group_id=row.similarity_group_id,
            similar_events_count=0,
            added_at=row.added_at,
        )
