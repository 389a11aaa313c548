"""SQL implementation of the feed transaction shared by SQLite and PostgreSQL.

Statements are written once with ``?`` placeholders; the dialect rewrites them
for psycopg2 and maps driver exceptions onto the engine's error taxonomy.
Timestamps on the ``events`` table are stored as fixed-width UTC ISO strings so
that lexicographic order equals chronological order on both backends; feed
tables store epoch milliseconds.
"""

import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Final

import pytz

from feed_engine.adapters.query_builders import (
    GROUPED_TABLE,
    MEMBERSHIP_TABLE,
    FeedQueryCriteria,
    KeysetScan,
)
from feed_engine.config.logging_config import get_logger
from feed_engine.domain.exceptions import FeedEngineError, RepositoryError
from feed_engine.domain.models import (
    Event,
    EventList,
    FeedMembership,
    GroupedFeedEntry,
    ListVisibility,
    User,
    Visibility,
    parse_event_metadata,
)
from feed_engine.domain.timing import FeedTiming, ensure_utc

logger = get_logger(__name__)

DB_DATETIME_FORMAT: Final[str] = "%Y-%m-%dT%H:%M:%S.%fZ"

SCHEMA_STATEMENTS: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS events (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT,
        description TEXT,
        location TEXT,
        start_date_time TEXT NOT NULL,
        end_date_time TEXT NOT NULL,
        created_at TEXT NOT NULL,
        visibility TEXT NOT NULL DEFAULT 'public',
        similarity_group_id TEXT,
        similar_to_event_id TEXT,
        metadata TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_start ON events (start_date_time, id)",
    "CREATE INDEX IF NOT EXISTS idx_events_created ON events (created_at, id)",
    "CREATE INDEX IF NOT EXISTS idx_events_user ON events (user_id)",
    "CREATE INDEX IF NOT EXISTS idx_events_group ON events (similarity_group_id)",
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        display_name TEXT,
        public_list_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        show_discover BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS event_lists (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        visibility TEXT NOT NULL DEFAULT 'private'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS list_members (
        list_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        PRIMARY KEY (list_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS event_to_lists (
        list_id TEXT NOT NULL,
        event_id TEXT NOT NULL,
        PRIMARY KEY (list_id, event_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_event_to_lists_event ON event_to_lists (event_id)",
    """
    CREATE TABLE IF NOT EXISTS event_follows (
        user_id TEXT NOT NULL,
        event_id TEXT NOT NULL,
        PRIMARY KEY (user_id, event_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_event_follows_event ON event_follows (event_id)",
    """
    CREATE TABLE IF NOT EXISTS feed_memberships (
        feed_id TEXT NOT NULL,
        event_id TEXT NOT NULL,
        similarity_group_id TEXT,
        event_start_time BIGINT NOT NULL,
        event_end_time BIGINT NOT NULL,
        added_at BIGINT NOT NULL,
        has_ended BOOLEAN NOT NULL DEFAULT FALSE,
        PRIMARY KEY (feed_id, event_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_memberships_feed_start "
    "ON feed_memberships (feed_id, event_start_time, event_id)",
    "CREATE INDEX IF NOT EXISTS idx_memberships_feed_group "
    "ON feed_memberships (feed_id, similarity_group_id)",
    "CREATE INDEX IF NOT EXISTS idx_memberships_event ON feed_memberships (event_id)",
    """
    CREATE TABLE IF NOT EXISTS grouped_feed_entries (
        feed_id TEXT NOT NULL,
        similarity_group_id TEXT NOT NULL,
        primary_event_id TEXT NOT NULL,
        event_start_time BIGINT NOT NULL,
        event_end_time BIGINT NOT NULL,
        added_at BIGINT NOT NULL,
        has_ended BOOLEAN NOT NULL DEFAULT FALSE,
        similar_events_count INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (feed_id, similarity_group_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_grouped_feed_start "
    "ON grouped_feed_entries (feed_id, event_start_time, similarity_group_id)",
    """
    CREATE TABLE IF NOT EXISTS migration_checkpoints (
        job_name TEXT PRIMARY KEY,
        last_processed_key TEXT,
        updated_at TEXT NOT NULL
    )
    """,
)


def datetime_to_db(value: datetime) -> str:
    """Serialize an aware datetime to the fixed-width UTC storage format."""
    return ensure_utc(value).strftime(DB_DATETIME_FORMAT)


def datetime_from_db(value: str) -> datetime:
    """Parse the storage format back to an aware UTC datetime."""
    return datetime.strptime(value, DB_DATETIME_FORMAT).replace(tzinfo=pytz.UTC)


@dataclass(frozen=True)
class SqlDialect:
    """Backend-specific hooks used by ``SqlFeedTransaction``."""

    name: str
    placeholder: str
    translate_error: Callable[[Exception], FeedEngineError | None]
    lock_statement: str | None = None

    def render(self, sql: str) -> str:
        if self.placeholder == "?":
            return sql
        return sql.replace("?", self.placeholder)


class SqlFeedTransaction:
    """Feed unit of work over an open DB-API connection.

    The owning repository begins and ends the transaction; this class only
    issues statements on the connection it was handed.
    """

    def __init__(
        self,
        connection: Any,
        dialect: SqlDialect,
        cursor_factory: Callable[[Any], Any] | None = None,
    ) -> None:
        self._conn = connection
        self._dialect = dialect
        self._cursor_factory = cursor_factory or (lambda conn: conn.cursor())

    # === Low-level helpers ===

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> Any:
        cursor = self._cursor_factory(self._conn)
        try:
            cursor.execute(self._dialect.render(sql), tuple(params))
        except Exception as exc:
            cursor.close()
            translated = self._dialect.translate_error(exc)
            if translated is None:
                raise
            raise translated from exc
        return cursor

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[Any]:
        cursor = self._execute(sql, params)
        try:
            return list(cursor.fetchall())
        finally:
            cursor.close()

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Any:
        cursor = self._execute(sql, params)
        try:
            return cursor.fetchone()
        finally:
            cursor.close()

    def _write(self, sql: str, params: Sequence[Any] = ()) -> int:
        cursor = self._execute(sql, params)
        try:
            return int(cursor.rowcount or 0)
        finally:
            cursor.close()

    # === Row mapping ===

    @staticmethod
    def _row_to_event(row: Any) -> Event:
        raw_metadata = row["metadata"]
        return Event(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            description=row["description"],
            location=row["location"],
            start_date_time=datetime_from_db(row["start_date_time"]),
            end_date_time=datetime_from_db(row["end_date_time"]),
            created_at=datetime_from_db(row["created_at"]),
            visibility=Visibility(row["visibility"]),
            similarity_group_id=row["similarity_group_id"],
            similar_to_event_id=row["similar_to_event_id"],
            metadata=parse_event_metadata(raw_metadata) if raw_metadata else None,
        )

    @staticmethod
    def _row_to_membership(row: Any) -> FeedMembership:
        return FeedMembership(
            feed_id=row["feed_id"],
            event_id=row["event_id"],
            similarity_group_id=row["similarity_group_id"],
            event_start_time=int(row["event_start_time"]),
            event_end_time=int(row["event_end_time"]),
            added_at=int(row["added_at"]),
            has_ended=bool(row["has_ended"]),
        )

    @staticmethod
    def _row_to_grouped(row: Any) -> GroupedFeedEntry:
        return GroupedFeedEntry(
            feed_id=row["feed_id"],
            similarity_group_id=row["similarity_group_id"],
            primary_event_id=row["primary_event_id"],
            event_start_time=int(row["event_start_time"]),
            event_end_time=int(row["event_end_time"]),
            added_at=int(row["added_at"]),
            has_ended=bool(row["has_ended"]),
            similar_events_count=int(row["similar_events_count"]),
        )

    @staticmethod
    def _row_to_user(row: Any) -> User:
        return User(
            id=row["id"],
            username=row["username"],
            display_name=row["display_name"],
            public_list_enabled=bool(row["public_list_enabled"]),
            show_discover=bool(row["show_discover"]),
        )

    # === Events ===

    def get_event(self, event_id: str) -> Event | None:
        row = self._fetchone("SELECT * FROM events WHERE id = ?", (event_id,))
        return self._row_to_event(row) if row else None

    def get_events(self, event_ids: list[str]) -> dict[str, Event]:
        if not event_ids:
            return {}
        unique_ids = list(dict.fromkeys(event_ids))
        placeholders = ",".join("?" * len(unique_ids))
        rows = self._fetchall(
            f"SELECT * FROM events WHERE id IN ({placeholders})", unique_ids
        )
        events = [self._row_to_event(row) for row in rows]
        return {event.id: event for event in events}

    def insert_event(self, event: Event) -> None:
        self._write(
            """
            INSERT INTO events (
                id, user_id, name, description, location, start_date_time,
                end_date_time, created_at, visibility, similarity_group_id,
                similar_to_event_id, metadata
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.user_id,
                event.name,
                event.description,
                event.location,
                datetime_to_db(event.start_date_time),
                datetime_to_db(event.end_date_time),
                datetime_to_db(event.created_at),
                event.visibility.value,
                event.similarity_group_id,
                event.similar_to_event_id,
                event.metadata.model_dump_json() if event.metadata else None,
            ),
        )

    def update_event_details(self, event: Event) -> None:
        self._write(
            """
            UPDATE events SET
                name = ?, description = ?, location = ?, start_date_time = ?,
                end_date_time = ?, visibility = ?, metadata = ?
            WHERE id = ?
            """,
            (
                event.name,
                event.description,
                event.location,
                datetime_to_db(event.start_date_time),
                datetime_to_db(event.end_date_time),
                event.visibility.value,
                event.metadata.model_dump_json() if event.metadata else None,
                event.id,
            ),
        )

    def delete_event(self, event_id: str) -> bool:
        return self._write("DELETE FROM events WHERE id = ?", (event_id,)) > 0

    def assign_similarity_group(self, event_id: str, group_id: str) -> str | None:
        self._write(
            "UPDATE events SET similarity_group_id = ? "
            "WHERE id = ? AND similarity_group_id IS NULL",
            (group_id, event_id),
        )
        row = self._fetchone(
            "SELECT similarity_group_id FROM events WHERE id = ?", (event_id,)
        )
        return row["similarity_group_id"] if row else None

    def find_events_starting_between(
        self, lower: datetime, upper: datetime
    ) -> list[Event]:
        rows = self._fetchall(
            "SELECT * FROM events WHERE start_date_time >= ? AND start_date_time <= ? "
            "ORDER BY start_date_time ASC, id ASC",
            (datetime_to_db(lower), datetime_to_db(upper)),
        )
        return [self._row_to_event(row) for row in rows]

    def scan_events_by_creation(
        self, after: tuple[str, str] | None, limit: int
    ) -> list[Event]:
        sql, params = KeysetScan(
            table="events",
            key_columns=("created_at", "id"),
            limit=limit,
            after=after,
        ).to_sql()
        return [self._row_to_event(row) for row in self._fetchall(sql, params)]

    # === Users, lists and follows ===

    def get_user(self, user_id: str) -> User | None:
        row = self._fetchone("SELECT * FROM users WHERE id = ?", (user_id,))
        return self._row_to_user(row) if row else None

    def upsert_user(self, user: User) -> None:
        self._write(
            """
            INSERT INTO users (id, username, display_name, public_list_enabled, show_discover)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                username = excluded.username,
                display_name = excluded.display_name,
                public_list_enabled = excluded.public_list_enabled,
                show_discover = excluded.show_discover
            """,
            (
                user.id,
                user.username,
                user.display_name,
                user.public_list_enabled,
                user.show_discover,
            ),
        )

    def get_list(self, list_id: str) -> EventList | None:
        row = self._fetchone("SELECT * FROM event_lists WHERE id = ?", (list_id,))
        if not row:
            return None
        return EventList(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            visibility=ListVisibility(row["visibility"]),
        )

    def upsert_list(self, event_list: EventList) -> None:
        self._write(
            """
            INSERT INTO event_lists (id, user_id, name, visibility)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                user_id = excluded.user_id,
                name = excluded.name,
                visibility = excluded.visibility
            """,
            (
                event_list.id,
                event_list.user_id,
                event_list.name,
                event_list.visibility.value,
            ),
        )

    def add_list_member(self, list_id: str, user_id: str) -> None:
        self._write(
            "INSERT INTO list_members (list_id, user_id) VALUES (?, ?) "
            "ON CONFLICT DO NOTHING",
            (list_id, user_id),
        )

    def is_list_member(self, list_id: str, user_id: str) -> bool:
        row = self._fetchone(
            "SELECT 1 AS present FROM list_members WHERE list_id = ? AND user_id = ?",
            (list_id, user_id),
        )
        return row is not None

    def link_event_to_list(self, list_id: str, event_id: str) -> bool:
        return (
            self._write(
                "INSERT INTO event_to_lists (list_id, event_id) VALUES (?, ?) "
                "ON CONFLICT DO NOTHING",
                (list_id, event_id),
            )
            > 0
        )

    def unlink_event_from_list(self, list_id: str, event_id: str) -> bool:
        return (
            self._write(
                "DELETE FROM event_to_lists WHERE list_id = ? AND event_id = ?",
                (list_id, event_id),
            )
            > 0
        )

    def get_list_ids_for_event(self, event_id: str) -> list[str]:
        rows = self._fetchall(
            "SELECT list_id FROM event_to_lists WHERE event_id = ? ORDER BY list_id",
            (event_id,),
        )
        return [row["list_id"] for row in rows]

    def add_follow(self, user_id: str, event_id: str) -> bool:
        return (
            self._write(
                "INSERT INTO event_follows (user_id, event_id) VALUES (?, ?) "
                "ON CONFLICT DO NOTHING",
                (user_id, event_id),
            )
            > 0
        )

    def remove_follow(self, user_id: str, event_id: str) -> bool:
        return (
            self._write(
                "DELETE FROM event_follows WHERE user_id = ? AND event_id = ?",
                (user_id, event_id),
            )
            > 0
        )

    def get_follower_ids(self, event_id: str) -> list[str]:
        rows = self._fetchall(
            "SELECT user_id FROM event_follows WHERE event_id = ? ORDER BY user_id",
            (event_id,),
        )
        return [row["user_id"] for row in rows]

    def delete_event_links(self, event_id: str) -> None:
        self._write("DELETE FROM event_follows WHERE event_id = ?", (event_id,))
        self._write("DELETE FROM event_to_lists WHERE event_id = ?", (event_id,))

    # === Feed memberships ===

    def get_membership(self, feed_id: str, event_id: str) -> FeedMembership | None:
        row = self._fetchone(
            f"SELECT * FROM {MEMBERSHIP_TABLE} WHERE feed_id = ? AND event_id = ?",
            (feed_id, event_id),
        )
        return self._row_to_membership(row) if row else None

    def insert_membership(self, membership: FeedMembership) -> None:
        self._write(
            f"""
            INSERT INTO {MEMBERSHIP_TABLE} (
                feed_id, event_id, similarity_group_id, event_start_time,
                event_end_time, added_at, has_ended
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                membership.feed_id,
                membership.event_id,
                membership.similarity_group_id,
                membership.event_start_time,
                membership.event_end_time,
                membership.added_at,
                membership.has_ended,
            ),
        )

    def update_membership_timing(
        self,
        feed_id: str,
        event_id: str,
        timing: FeedTiming,
        *,
        expected_start_time: int | None = None,
    ) -> bool:
        sql = (
            f"UPDATE {MEMBERSHIP_TABLE} SET event_start_time = ?, event_end_time = ?, "
            "has_ended = ? WHERE feed_id = ? AND event_id = ?"
        )
        params: list[Any] = [
            timing.event_start_time,
            timing.event_end_time,
            timing.has_ended,
            feed_id,
            event_id,
        ]
        if expected_start_time is not None:
            sql += " AND event_start_time = ?"
            params.append(expected_start_time)
        return self._write(sql, params) > 0

    def set_membership_group(
        self, feed_id: str, event_id: str, group_id: str
    ) -> bool:
        return (
            self._write(
                f"UPDATE {MEMBERSHIP_TABLE} SET similarity_group_id = ? "
                "WHERE feed_id = ? AND event_id = ? AND similarity_group_id IS NULL",
                (group_id, feed_id, event_id),
            )
            > 0
        )

    def delete_membership(self, feed_id: str, event_id: str) -> bool:
        return (
            self._write(
                f"DELETE FROM {MEMBERSHIP_TABLE} WHERE feed_id = ? AND event_id = ?",
                (feed_id, event_id),
            )
            > 0
        )

    def get_memberships_for_event(self, event_id: str) -> list[FeedMembership]:
        rows = self._fetchall(
            f"SELECT * FROM {MEMBERSHIP_TABLE} WHERE event_id = ? ORDER BY feed_id",
            (event_id,),
        )
        return [self._row_to_membership(row) for row in rows]

    def get_group_members(self, feed_id: str, group_id: str) -> list[FeedMembership]:
        rows = self._fetchall(
            f"SELECT * FROM {MEMBERSHIP_TABLE} "
            "WHERE feed_id = ? AND similarity_group_id = ? ORDER BY event_id",
            (feed_id, group_id),
        )
        return [self._row_to_membership(row) for row in rows]

    def page_feed(self, criteria: FeedQueryCriteria) -> list[FeedMembership]:
        if criteria.grouped:
            raise ValueError("page_feed reads raw memberships; use page_grouped_feed")
        sql, params = criteria.to_sql()
        return [self._row_to_membership(row) for row in self._fetchall(sql, params)]

    def scan_memberships(
        self,
        after: tuple[str, str] | None,
        limit: int,
        *,
        start_time_range: tuple[int, int] | None = None,
    ) -> list[FeedMembership]:
        scan = KeysetScan(
            table=MEMBERSHIP_TABLE,
            key_columns=("feed_id", "event_id"),
            limit=limit,
            after=after,
        )
        if start_time_range is not None:
            scan.extra_condition = "event_start_time >= ? AND event_start_time < ?"
            scan.extra_params = start_time_range
        sql, params = scan.to_sql()
        return [self._row_to_membership(row) for row in self._fetchall(sql, params)]

    def scan_feed_group_pairs(
        self, after: tuple[str, str] | None, limit: int
    ) -> list[tuple[str, str]]:
        params: list[Any] = []
        condition = "similarity_group_id IS NOT NULL"
        if after is not None:
            condition += (
                " AND (feed_id > ? OR (feed_id = ? AND similarity_group_id > ?))"
            )
            params.extend([after[0], after[0], after[1]])
        params.append(limit)
        rows = self._fetchall(
            f"SELECT DISTINCT feed_id, similarity_group_id FROM {MEMBERSHIP_TABLE} "
            f"WHERE {condition} ORDER BY feed_id ASC, similarity_group_id ASC LIMIT ?",
            params,
        )
        return [(row["feed_id"], row["similarity_group_id"]) for row in rows]

    # === Grouped feed entries ===

    def get_grouped_entry(self, feed_id: str, group_id: str) -> GroupedFeedEntry | None:
        row = self._fetchone(
            f"SELECT * FROM {GROUPED_TABLE} WHERE feed_id = ? AND similarity_group_id = ?",
            (feed_id, group_id),
        )
        return self._row_to_grouped(row) if row else None

    def upsert_grouped_entry(self, entry: GroupedFeedEntry) -> None:
        self._write(
            f"""
            INSERT INTO {GROUPED_TABLE} (
                feed_id, similarity_group_id, primary_event_id, event_start_time,
                event_end_time, added_at, has_ended, similar_events_count
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (feed_id, similarity_group_id) DO UPDATE SET
                primary_event_id = excluded.primary_event_id,
                event_start_time = excluded.event_start_time,
                event_end_time = excluded.event_end_time,
                added_at = excluded.added_at,
                has_ended = excluded.has_ended,
                similar_events_count = excluded.similar_events_count
            """,
            (
                entry.feed_id,
                entry.similarity_group_id,
                entry.primary_event_id,
                entry.event_start_time,
                entry.event_end_time,
                entry.added_at,
                entry.has_ended,
                entry.similar_events_count,
            ),
        )

    def delete_grouped_entry(self, feed_id: str, group_id: str) -> bool:
        return (
            self._write(
                f"DELETE FROM {GROUPED_TABLE} WHERE feed_id = ? AND similarity_group_id = ?",
                (feed_id, group_id),
            )
            > 0
        )

    def page_grouped_feed(self, criteria: FeedQueryCriteria) -> list[GroupedFeedEntry]:
        if not criteria.grouped:
            raise ValueError("page_grouped_feed reads grouped rows; use page_feed")
        sql, params = criteria.to_sql()
        return [self._row_to_grouped(row) for row in self._fetchall(sql, params)]

    def scan_grouped_entries(
        self,
        after: tuple[str, str] | None,
        limit: int,
        *,
        start_time_range: tuple[int, int] | None = None,
    ) -> list[GroupedFeedEntry]:
        scan = KeysetScan(
            table=GROUPED_TABLE,
            key_columns=("feed_id", "similarity_group_id"),
            limit=limit,
            after=after,
        )
        if start_time_range is not None:
            scan.extra_condition = "event_start_time >= ? AND event_start_time < ?"
            scan.extra_params = start_time_range
        sql, params = scan.to_sql()
        return [self._row_to_grouped(row) for row in self._fetchall(sql, params)]

    # === Coordination ===

    def lock_feed_group(self, feed_id: str, group_id: str) -> None:
        if self._dialect.lock_statement is None:
            return
        cursor = self._execute(self._dialect.lock_statement, (f"{feed_id}:{group_id}",))
        cursor.close()

    def get_checkpoint(self, job_name: str) -> str | None:
        row = self._fetchone(
            "SELECT last_processed_key FROM migration_checkpoints WHERE job_name = ?",
            (job_name,),
        )
        return row["last_processed_key"] if row else None

    def save_checkpoint(self, job_name: str, last_processed_key: str | None) -> None:
        self._write(
            """
            INSERT INTO migration_checkpoints (job_name, last_processed_key, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT (job_name) DO UPDATE SET
                last_processed_key = excluded.last_processed_key,
                updated_at = excluded.updated_at
            """,
            (job_name, last_processed_key, datetime_to_db(datetime.now(pytz.UTC))),
        )


def encode_resume_key(parts: tuple[str, ...]) -> str:
    """Serialize a composite scan key for the checkpoint table."""
    return json.dumps(list(parts))


def decode_resume_key(raw: str | None) -> tuple[str, str] | None:
    """Inverse of ``encode_resume_key`` for two-part keys."""
    if raw is None:
        return None
    try:
        first, second = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise RepositoryError(f"Corrupt checkpoint key: {raw!r}") from exc
    return str(first), str(second)
