"""Business rules and constants for event similarity grouping.

All thresholds that decide whether two events describe the same real-world
happening live here. Settings may override them per deployment; these are the
production defaults.
"""

from typing import Final

START_TIME_THRESHOLD_MINUTES: Final[int] = 60
"""Maximum start-time difference (inclusive) for two events to be similar.

Example:
    - Event A starts 20:00, Event B starts 21:00 → 60 min → can match
    - Event A starts 20:00, Event B starts 21:01 → 61 min → never matches
"""

END_TIME_THRESHOLD_MINUTES: Final[int] = 60
"""Maximum end-time difference (inclusive) for two events to be similar."""

NAME_SIMILARITY_THRESHOLD: Final[float] = 0.1
"""Minimum bag-of-words cosine similarity between event names."""

DESCRIPTION_SIMILARITY_THRESHOLD: Final[float] = 0.1
"""Minimum bag-of-words cosine similarity between event descriptions."""

LOCATION_SIMILARITY_THRESHOLD: Final[float] = 0.1
"""Minimum bag-of-words cosine similarity between event locations.

Business rule: an empty location never reaches the floor, so two events that
both omit a location do not match. No match is better than a false match.
"""

RESOLVER_WINDOW_MINUTES: Final[int] = 60
"""Half-width of the start-time range scan used to collect group candidates."""

SIMILARITY_GROUP_PREFIX: Final[str] = "sg_"
"""Prefix for minted similarity group identifiers."""

LEGACY_POINTER_MAX_HOPS: Final[int] = 16
"""Upper bound when following legacy ``similar_to_event_id`` chains."""
