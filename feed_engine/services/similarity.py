"""Event similarity predicate.

Rules:
1. Start times more than 60 minutes apart never match (cheap reject first)
2. End times more than 60 minutes apart never match
3. Name, description and location must each reach a bag-of-words cosine
   similarity of at least 0.10

Missing text on either side scores 0, so two events that both omit a field do
not match on that field.
"""

import hashlib
import math
import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Protocol
from uuid import uuid4

from feed_engine.domain.similarity_constants import (
    DESCRIPTION_SIMILARITY_THRESHOLD,
    END_TIME_THRESHOLD_MINUTES,
    LOCATION_SIMILARITY_THRESHOLD,
    NAME_SIMILARITY_THRESHOLD,
    SIMILARITY_GROUP_PREFIX,
    START_TIME_THRESHOLD_MINUTES,
)

if TYPE_CHECKING:
    from feed_engine.config.settings import Settings

_WORD_PATTERN = re.compile(r"\w+")


class SimilarEventLike(Protocol):
    """Fields the predicate reads from an event record."""

    @property
    def start_date_time(self) -> datetime: ...

    @property
    def end_date_time(self) -> datetime: ...

    @property
    def name(self) -> str | None: ...

    @property
    def description(self) -> str | None: ...

    @property
    def location(self) -> str | None: ...


@dataclass(frozen=True)
class SimilarityThresholds:
    """Tunable limits for ``are_events_similar``."""

    start_minutes: float = START_TIME_THRESHOLD_MINUTES
    end_minutes: float = END_TIME_THRESHOLD_MINUTES
    name: float = NAME_SIMILARITY_THRESHOLD
    description: float = DESCRIPTION_SIMILARITY_THRESHOLD
    location: float = LOCATION_SIMILARITY_THRESHOLD

    @classmethod
    def from_settings(cls, settings: "Settings") -> "SimilarityThresholds":
        return cls(
            start_minutes=settings.similarity_start_threshold_minutes,
            end_minutes=settings.similarity_end_threshold_minutes,
            name=settings.similarity_name_threshold,
            description=settings.similarity_description_threshold,
            location=settings.similarity_location_threshold,
        )


DEFAULT_THRESHOLDS = SimilarityThresholds()


def text_to_vector(text: str | None) -> Counter[str]:
    """Lowercase word-frequency vector of a text.

    Example:
        >>> text_to_vector("Jazz night, jazz!")
        Counter({'jazz': 2, 'night': 1})
    """
    if not text:
        return Counter()
    return Counter(_WORD_PATTERN.findall(text.lower()))


def cosine_similarity(vec1: Counter[str], vec2: Counter[str]) -> float:
    """Cosine similarity of two sparse vectors; 0.0 when either is empty."""
    if not vec1 or not vec2:
        return 0.0

    shared = vec1.keys() & vec2.keys()
    numerator = sum(vec1[token] * vec2[token] for token in shared)
    norm1 = math.sqrt(sum(count * count for count in vec1.values()))
    norm2 = math.sqrt(sum(count * count for count in vec2.values()))
    if norm1 == 0 or norm2 == 0:
        return 0.0
    return numerator / (norm1 * norm2)


def text_similarity(text1: str | None, text2: str | None) -> float:
    return cosine_similarity(text_to_vector(text1), text_to_vector(text2))


def _minutes_apart(first: datetime, second: datetime) -> float:
    return abs((first - second).total_seconds()) / 60


def are_events_similar(
    event1: SimilarEventLike,
    event2: SimilarEventLike,
    thresholds: SimilarityThresholds = DEFAULT_THRESHOLDS,
) -> bool:
    """Decide whether two events report the same happening.

    Pure and symmetric; never raises for well-formed events.

    Args:
        event1: First event
        event2: Second event
        thresholds: Time windows and text floors to apply

    Returns:
        True if the events should share a similarity group
    """
    if _minutes_apart(event1.start_date_time, event2.start_date_time) > thresholds.start_minutes:
        return False
    if _minutes_apart(event1.end_date_time, event2.end_date_time) > thresholds.end_minutes:
        return False

    if text_similarity(event1.name, event2.name) < thresholds.name:
        return False
    if text_similarity(event1.description, event2.description) < thresholds.description:
        return False
    return text_similarity(event1.location, event2.location) >= thresholds.location


def generate_similarity_group_id() -> str:
    """Mint a globally unique group id for live traffic."""
    return f"{SIMILARITY_GROUP_PREFIX}{uuid4().hex}"


def deterministic_group_id(founding_event_id: str) -> str:
    """Stable group id derived from the event that founded the group.

    Backfills use this so replaying the job over the same data from a clean
    slate reproduces the same ids.

    Example:
        >>> deterministic_group_id("evt1") == deterministic_group_id("evt1")
        True
    """
    digest = hashlib.sha1(founding_event_id.encode("utf-8")).hexdigest()
    return f"{SIMILARITY_GROUP_PREFIX}{digest[:32]}"
