"""Similarity group resolution.

Finds the group a new (or backfilled) event belongs to by scanning events that
start within the resolver window and running the similarity predicate on each
candidate in index order. The first grouped match wins; with no match a new
group id is minted. Groups are joinable but never merged.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from feed_engine.config.logging_config import get_logger
from feed_engine.domain.exceptions import NotFoundError
from feed_engine.domain.models import Event
from feed_engine.domain.protocols import FeedRepositoryProtocol, FeedTransactionProtocol
from feed_engine.domain.similarity_constants import (
    LEGACY_POINTER_MAX_HOPS,
    RESOLVER_WINDOW_MINUTES,
)
from feed_engine.observability.metrics import GROUP_RESOLUTIONS_TOTAL
from feed_engine.services.similarity import (
    DEFAULT_THRESHOLDS,
    SimilarityThresholds,
    are_events_similar,
    deterministic_group_id,
    generate_similarity_group_id,
)
from feed_engine.services.unit_of_work import run_in_transaction

if TYPE_CHECKING:
    from feed_engine.config.settings import Settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class GroupMatch:
    """Existing group found for a candidate event."""

    group_id: str
    matched_event_id: str
    via_legacy_pointer: bool = False


@dataclass(frozen=True)
class GroupResolution:
    """Outcome of ``GroupResolver.resolve``."""

    group_id: str
    joined_existing: bool
    matched_event_id: str | None = None


class GroupResolver:
    """Assigns similarity groups to events."""

    def __init__(
        self,
        repository: FeedRepositoryProtocol,
        settings: "Settings | None" = None,
        *,
        thresholds: SimilarityThresholds | None = None,
    ) -> None:
        self._repository = repository
        self._settings = settings
        if thresholds is not None:
            self._thresholds = thresholds
        elif settings is not None:
            self._thresholds = SimilarityThresholds.from_settings(settings)
        else:
            self._thresholds = DEFAULT_THRESHOLDS
        self._window = timedelta(
            minutes=settings.resolver_window_minutes if settings else RESOLVER_WINDOW_MINUTES
        )

    def find_group(
        self,
        tx: FeedTransactionProtocol,
        event: Event,
        *,
        backfill: bool = False,
        known_groups: Mapping[str, str] | None = None,
    ) -> GroupMatch | None:
        """Look for an existing group the event should join.

        Args:
            tx: Open (ideally read-only) transaction
            event: Candidate event; it need not be stored yet
            backfill: Only consider events created strictly before this one
            known_groups: Assignments decided but not yet written (dry runs
                and in-flight batches), keyed by event id

        Returns:
            The first match in start-time index order, or None
        """
        overlay = known_groups or {}

        if event.similar_to_event_id:
            group_id = self._follow_legacy_pointer(tx, event.similar_to_event_id, overlay)
            if group_id is not None:
                return GroupMatch(
                    group_id=group_id,
                    matched_event_id=event.similar_to_event_id,
                    via_legacy_pointer=True,
                )

        candidates = tx.find_events_starting_between(
            event.start_date_time - self._window,
            event.start_date_time + self._window,
        )
        for candidate in candidates:
            if candidate.id == event.id:
                continue
            if backfill and candidate.created_at >= event.created_at:
                continue

            group_id = candidate.similarity_group_id or overlay.get(candidate.id)
            if group_id is None and candidate.similar_to_event_id is None:
                continue
            if not are_events_similar(event, candidate, self._thresholds):
                continue

            via_pointer = False
            if group_id is None and candidate.similar_to_event_id is not None:
                group_id = self._follow_legacy_pointer(
                    tx, candidate.similar_to_event_id, overlay
                )
                via_pointer = True
            if group_id is None:
                continue

            return GroupMatch(
                group_id=group_id,
                matched_event_id=candidate.id,
                via_legacy_pointer=via_pointer,
            )
        return None

    def find_similar_events(
        self, tx: FeedTransactionProtocol, event: Event, *, earlier_only: bool = True
    ) -> list[Event]:
        """All events in the resolver window that the predicate matches."""
        candidates = tx.find_events_starting_between(
            event.start_date_time - self._window,
            event.start_date_time + self._window,
        )
        return [
            candidate
            for candidate in candidates
            if candidate.id != event.id
            and not (earlier_only and candidate.created_at >= event.created_at)
            and are_events_similar(event, candidate, self._thresholds)
        ]

    def _follow_legacy_pointer(
        self,
        tx: FeedTransactionProtocol,
        event_id: str,
        overlay: Mapping[str, str],
    ) -> str | None:
        """Walk ``similar_to_event_id`` links to the canonical event's group.

        A canonical event that was never grouped yields the deterministic id
        the backfill will give it, so both paths converge on the same group.
        """
        visited: set[str] = set()
        current_id = event_id
        for _ in range(LEGACY_POINTER_MAX_HOPS):
            visited.add(current_id)
            current = tx.get_event(current_id)
            if current is None:
                logger.warning("legacy_pointer_dangling", event_id=current_id)
                return None

            group_id = current.similarity_group_id or overlay.get(current.id)
            if group_id is not None:
                return group_id

            next_id = current.similar_to_event_id
            if next_id is None or next_id in visited:
                return deterministic_group_id(current.id)
            current_id = next_id

        logger.warning("legacy_pointer_chain_too_long", event_id=event_id)
        return None

    def resolve(
        self,
        event: Event,
        *,
        backfill: bool = False,
        known_groups: Mapping[str, str] | None = None,
    ) -> GroupResolution:
        """Resolve the event's group in a read-only transaction.

        Nothing is written; callers store the id on insert or through
        ``assign_group``.
        """
        if event.similarity_group_id is not None:
            return GroupResolution(group_id=event.similarity_group_id, joined_existing=True)

        match = run_in_transaction(
            self._repository,
            lambda tx: self.find_group(
                tx, event, backfill=backfill, known_groups=known_groups
            ),
            operation="resolve_group",
            settings=self._settings,
            read_only=True,
        )
        return self.resolution_from_match(event, match, backfill=backfill)

    def resolution_from_match(
        self, event: Event, match: GroupMatch | None, *, backfill: bool
    ) -> GroupResolution:
        if match is not None:
            GROUP_RESOLUTIONS_TOTAL.labels(outcome="joined").inc()
            logger.info(
                "group_resolved",
                event_id=event.id,
                group_id=match.group_id,
                matched_event_id=match.matched_event_id,
                via_legacy_pointer=match.via_legacy_pointer,
            )
            return GroupResolution(
                group_id=match.group_id,
                joined_existing=True,
                matched_event_id=match.matched_event_id,
            )

        group_id = (
            deterministic_group_id(event.id) if backfill else generate_similarity_group_id()
        )
        GROUP_RESOLUTIONS_TOTAL.labels(outcome="minted").inc()
        logger.info("group_minted", event_id=event.id, group_id=group_id)
        return GroupResolution(group_id=group_id, joined_existing=False)

    def resolve_group(self, event: Event, *, backfill: bool = False) -> str:
        """Return the group id the event belongs to."""
        return self.resolve(event, backfill=backfill).group_id

    def assign_group(
        self, tx: FeedTransactionProtocol, event_id: str, group_id: str
    ) -> str:
        """Store a group id on an existing event unless one is already set.

        Returns:
            The id actually stored, which differs from ``group_id`` when a
            concurrent writer got there first

        Raises:
            NotFoundError: If the event does not exist
        """
        stored = tx.assign_similarity_group(event_id, group_id)
        if stored is None:
            raise NotFoundError(f"Event {event_id} not found")
        if stored != group_id:
            GROUP_RESOLUTIONS_TOTAL.labels(outcome="race").inc()
            logger.info(
                "group_assignment_kept_existing",
                event_id=event_id,
                proposed_group_id=group_id,
                stored_group_id=stored,
            )
        return stored
