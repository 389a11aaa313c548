"""Domain models for the event feed engine.

All models use Pydantic v2 for validation and serialization.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal
from uuid import uuid4

import pytz
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from feed_engine.domain.exceptions import ValidationError
from feed_engine.domain.timing import ensure_utc

PERSONAL_FEED_PREFIX = "user_"
LIST_FEED_PREFIX = "list_"
DISCOVER_FEED_ID = "discover"


def new_event_id() -> str:
    """Generate a public event identifier."""
    return uuid4().hex


class Visibility(str, Enum):
    """Event visibility."""

    PUBLIC = "public"
    PRIVATE = "private"


class ListVisibility(str, Enum):
    """Event list visibility."""

    PUBLIC = "public"
    UNLISTED = "unlisted"
    PRIVATE = "private"


class FeedKind(str, Enum):
    """Kinds of feeds the engine maintains."""

    PERSONAL = "personal"
    DISCOVER = "discover"
    LIST = "list"


class FeedDirection(str, Enum):
    """Which side of the snapshot boundary a feed query reads."""

    UPCOMING = "upcoming"
    PAST = "past"


class FeedId(BaseModel):
    """Parsed feed identifier.

    Accepted forms are ``user_<id>``, ``discover`` and ``list_<id>``.

    Example:
        >>> FeedId.parse("user_42").owner_user_id
        '42'
    """

    model_config = ConfigDict(frozen=True)

    kind: FeedKind
    subject_id: str | None = None

    @classmethod
    def parse(cls, raw: str) -> "FeedId":
        if not isinstance(raw, str) or not raw:
            raise ValidationError(f"Invalid feed id: {raw!r}")
        if raw == DISCOVER_FEED_ID:
            return cls(kind=FeedKind.DISCOVER)
        if raw.startswith(PERSONAL_FEED_PREFIX) and len(raw) > len(
            PERSONAL_FEED_PREFIX
        ):
            return cls(kind=FeedKind.PERSONAL, subject_id=raw[len(PERSONAL_FEED_PREFIX) :])
        if raw.startswith(LIST_FEED_PREFIX) and len(raw) > len(LIST_FEED_PREFIX):
            return cls(kind=FeedKind.LIST, subject_id=raw[len(LIST_FEED_PREFIX) :])
        raise ValidationError(f"Invalid feed id: {raw!r}")

    @classmethod
    def personal(cls, user_id: str) -> "FeedId":
        return cls(kind=FeedKind.PERSONAL, subject_id=user_id)

    @classmethod
    def discover(cls) -> "FeedId":
        return cls(kind=FeedKind.DISCOVER)

    @classmethod
    def for_list(cls, list_id: str) -> "FeedId":
        return cls(kind=FeedKind.LIST, subject_id=list_id)

    @property
    def owner_user_id(self) -> str | None:
        """User whose personal feed this is, if any."""
        return self.subject_id if self.kind is FeedKind.PERSONAL else None

    def __str__(self) -> str:
        if self.kind is FeedKind.DISCOVER:
            return DISCOVER_FEED_ID
        if self.kind is FeedKind.PERSONAL:
            return f"{PERSONAL_FEED_PREFIX}{self.subject_id}"
        return f"{LIST_FEED_PREFIX}{self.subject_id}"


def personal_feed_owner(feed_id: str) -> str | None:
    """Return the owning user id of a personal feed id, else None."""
    if feed_id.startswith(PERSONAL_FEED_PREFIX) and len(feed_id) > len(
        PERSONAL_FEED_PREFIX
    ):
        return feed_id[len(PERSONAL_FEED_PREFIX) :]
    return None


# === Event metadata supplied by the extraction pipeline ===


class _MetadataBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    extraction_confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class ScreenshotMetadata(_MetadataBase):
    """Event captured from a screenshot."""

    kind: Literal["screenshot"] = "screenshot"
    image_url: str = Field(..., min_length=1)
    ocr_text: str | None = None


class LinkMetadata(_MetadataBase):
    """Event captured from a shared link."""

    kind: Literal["link"] = "link"
    url: str = Field(..., min_length=1)
    site_name: str | None = None


class TextMetadata(_MetadataBase):
    """Event captured from free text."""

    kind: Literal["text"] = "text"
    source_text: str = Field(..., min_length=1)


EventMetadata = Annotated[
    ScreenshotMetadata | LinkMetadata | TextMetadata,
    Field(discriminator="kind"),
]

_EVENT_METADATA_ADAPTER: TypeAdapter[Any] = TypeAdapter(EventMetadata)


def parse_event_metadata(
    raw: dict[str, Any] | str | None,
) -> ScreenshotMetadata | LinkMetadata | TextMetadata | None:
    """Validate an untyped metadata payload at the engine boundary.

    Args:
        raw: Dict or JSON string from the extraction pipeline, or None

    Returns:
        Typed metadata variant, or None when no metadata was supplied

    Raises:
        ValidationError: If the payload does not match any variant
    """
    if raw is None:
        return None
    try:
        if isinstance(raw, str):
            return _EVENT_METADATA_ADAPTER.validate_json(raw)  # type: ignore[no-any-return]
        return _EVENT_METADATA_ADAPTER.validate_python(raw)  # type: ignore[no-any-return]
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid event metadata: {exc}") from exc


# === Core records ===


class Event(BaseModel):
    """A user-submitted happening."""

    id: str = Field(default_factory=new_event_id, min_length=1)
    user_id: str = Field(..., min_length=1)
    name: str | None = None
    description: str | None = None
    location: str | None = None
    start_date_time: datetime
    end_date_time: datetime
    created_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    visibility: Visibility = Visibility.PUBLIC
    similarity_group_id: str | None = None
    similar_to_event_id: str | None = Field(
        default=None,
        description="Legacy pointer to a canonical event, superseded by group ids",
    )
    metadata: EventMetadata | None = None

    @field_validator("start_date_time", "end_date_time", "created_at")
    @classmethod
    def _normalize_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_time_order(self) -> "Event":
        if self.end_date_time < self.start_date_time:
            raise ValueError("end_date_time must not precede start_date_time")
        return self


class User(BaseModel):
    """Profile fields the engine reads for authorization and fanout."""

    id: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    display_name: str | None = None
    public_list_enabled: bool = False
    show_discover: bool = False


class EventList(BaseModel):
    """User-curated list of events with its own feed."""

    id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    name: str = ""
    visibility: ListVisibility = ListVisibility.PRIVATE


class FeedMembership(BaseModel):
    """One event visible in one feed."""

    feed_id: str
    event_id: str
    similarity_group_id: str | None = None
    event_start_time: int
    event_end_time: int
    added_at: int
    has_ended: bool


class GroupedFeedEntry(BaseModel):
    """Materialized summary of one similarity group inside one feed."""

    feed_id: str
    similarity_group_id: str
    primary_event_id: str
    event_start_time: int
    event_end_time: int
    added_at: int
    has_ended: bool
    similar_events_count: int = Field(..., ge=0)


# === Read path ===


class FeedItem(BaseModel):
    """Row returned to feed-rendering callers."""

    event: Event
    author: User | None = None
    similarity_group_id: str | None = None
    similar_events_count: int = 0
    added_at: int


class FeedPage(BaseModel):
    """One page of a feed plus the state needed to fetch the next one."""

    items: list[FeedItem]
    next_cursor: str | None = None
    is_done: bool
    before_this_date_time: datetime


# === Use case results ===


class CreateEventResult(BaseModel):
    """Outcome of event creation."""

    event: Event
    joined_existing_group: bool
    feed_ids: list[str] = Field(default_factory=list)


class FeedChangeResult(BaseModel):
    """Feeds touched by a lifecycle flow."""

    event_id: str
    added_to: list[str] = Field(default_factory=list)
    removed_from: list[str] = Field(default_factory=list)


# === Migrations ===


class RowChange(BaseModel):
    """A single row patch a migration applied (or would apply in dry-run)."""

    table: str
    key: str
    before: dict[str, Any] = Field(default_factory=dict)
    after: dict[str, Any] = Field(default_factory=dict)


class SkippedRow(BaseModel):
    """A row the migration could not process, recorded instead of aborting."""

    table: str
    key: str
    reason: str


class SplitGroupPair(BaseModel):
    """Two distinct groups holding mutually similar events."""

    group_id: str
    other_group_id: str
    event_id: str
    other_event_id: str

    @property
    def key(self) -> tuple[str, str]:
        first, second = sorted((self.group_id, self.other_group_id))
        return first, second


class MigrationReport(BaseModel):
    """Result of one migration batch or a full run."""

    job: str
    dry_run: bool
    processed: int = 0
    changes: list[RowChange] = Field(default_factory=list)
    skipped: list[SkippedRow] = Field(default_factory=list)
    split_groups: list[SplitGroupPair] = Field(default_factory=list)
    last_processed_key: str | None = None
    is_done: bool = False

    @property
    def changed(self) -> int:
        return len(self.changes)

    def merge(self, batch: "MigrationReport") -> "MigrationReport":
        """Fold a later batch into this running total."""
        return MigrationReport(
            job=self.job,
            dry_run=self.dry_run,
            processed=self.processed + batch.processed,
            changes=[*self.changes, *batch.changes],
            skipped=[*self.skipped, *batch.skipped],
            split_groups=_dedupe_split_groups([*self.split_groups, *batch.split_groups]),
            last_processed_key=batch.last_processed_key or self.last_processed_key,
            is_done=batch.is_done,
        )


def _dedupe_split_groups(pairs: list[SplitGroupPair]) -> list[SplitGroupPair]:
    seen: dict[tuple[str, str], SplitGroupPair] = {}
    for pair in pairs:
        seen.setdefault(pair.key, pair)
    return list(seen.values())
