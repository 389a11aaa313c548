"""Denormalized timing fields shared by events, feed rows and grouped rows.

Feed membership rows and grouped feed entries copy the event's start/end time as
epoch milliseconds and carry a precomputed ``has_ended`` flag. Every writer and
the timestamp repair job derive those values here so a timestamp bug has a
single fix point.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

import pytz

if TYPE_CHECKING:
    from feed_engine.domain.models import Event


def ensure_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to UTC.

    Raises:
        ValueError: If the datetime is naive
    """
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError("datetime must be timezone-aware")
    return value.astimezone(pytz.UTC)


def to_epoch_millis(value: datetime) -> int:
    """Convert an aware datetime to integer epoch milliseconds."""
    return int(round(ensure_utc(value).timestamp() * 1000))


def from_epoch_millis(value: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(value / 1000, tz=pytz.UTC)


def has_ended_at(event_end_time: int, now: datetime) -> bool:
    """Return True when an event ending at ``event_end_time`` is in the past."""
    return event_end_time < to_epoch_millis(now)


@dataclass(frozen=True)
class FeedTiming:
    """Sort/filter timing copied onto feed rows."""

    event_start_time: int
    event_end_time: int
    has_ended: bool

    @classmethod
    def from_event(cls, event: "Event", now: datetime) -> "FeedTiming":
        end_ms = to_epoch_millis(event.end_date_time)
        return cls(
            event_start_time=to_epoch_millis(event.start_date_time),
            event_end_time=end_ms,
            has_ended=has_ended_at(end_ms, now),
        )

    def refreshed(self, now: datetime) -> "FeedTiming":
        """Same times with ``has_ended`` recomputed for ``now``."""
        return FeedTiming(
            event_start_time=self.event_start_time,
            event_end_time=self.event_end_time,
            has_ended=has_ended_at(self.event_end_time, now),
        )


__all__ = [
    "FeedTiming",
    "ensure_utc",
    "from_epoch_millis",
    "has_ended_at",
    "to_epoch_millis",
]
