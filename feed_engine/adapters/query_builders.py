"""Query builders for constructing feed page queries.

Instead of building SQL WHERE clauses with string literals at call sites, the
feed query service describes a page with these criteria and the repository
renders them. Placeholders are written as ``?`` and translated by the SQL
dialect for PostgreSQL.
"""

from dataclasses import dataclass
from typing import Any, Final

from feed_engine.domain.models import FeedDirection

MEMBERSHIP_TABLE: Final[str] = "feed_memberships"
GROUPED_TABLE: Final[str] = "grouped_feed_entries"


@dataclass
class FeedQueryCriteria:
    """Criteria for one keyset page of a feed.

    Upcoming pages read rows whose ``event_end_time`` is at or after the
    snapshot boundary in ascending ``(event_start_time, key)`` order; past pages
    read rows ending before the boundary in descending order.

    Example:
        >>> criteria = FeedQueryCriteria(
        ...     feed_id="user_42",
        ...     direction=FeedDirection.UPCOMING,
        ...     boundary_ms=1_700_000_000_000,
        ...     limit=21,
        ... )
        >>> where, params = criteria.to_where_clause()
        >>> where
        'feed_id = ? AND event_end_time >= ?'
    """

    feed_id: str
    direction: FeedDirection
    boundary_ms: int
    limit: int
    grouped: bool = False

    after_start_time: int | None = None
    """Sort value of the last row on the previous page"""

    after_key: str | None = None
    """Tie-break key (event id or group id) of the last row on the previous page"""

    @property
    def table(self) -> str:
        return GROUPED_TABLE if self.grouped else MEMBERSHIP_TABLE

    @property
    def key_column(self) -> str:
        return "similarity_group_id" if self.grouped else "event_id"

    def to_where_clause(self) -> tuple[str, list[Any]]:
        """Build SQL WHERE clause with parameters."""
        conditions: list[str] = ["feed_id = ?"]
        params: list[Any] = [self.feed_id]

        if self.direction is FeedDirection.UPCOMING:
            conditions.append("event_end_time >= ?")
        else:
            conditions.append("event_end_time < ?")
        params.append(self.boundary_ms)

        if self.after_start_time is not None and self.after_key is not None:
            op = ">" if self.direction is FeedDirection.UPCOMING else "<"
            conditions.append(
                f"(event_start_time {op} ? OR "
                f"(event_start_time = ? AND {self.key_column} {op} ?))"
            )
            params.extend([self.after_start_time, self.after_start_time, self.after_key])

        return " AND ".join(conditions), params

    def to_order_clause(self) -> str:
        """Build SQL ORDER BY clause."""
        order = "ASC" if self.direction is FeedDirection.UPCOMING else "DESC"
        return f"event_start_time {order}, {self.key_column} {order}"

    def to_limit_clause(self) -> tuple[str, list[Any]]:
        """Build SQL LIMIT clause."""
        return "LIMIT ?", [self.limit]

    def to_sql(self) -> tuple[str, list[Any]]:
        """Render the full SELECT statement."""
        where, params = self.to_where_clause()
        limit, limit_params = self.to_limit_clause()
        sql = (
            f"SELECT * FROM {self.table} WHERE {where} "
            f"ORDER BY {self.to_order_clause()} {limit}"
        )
        return sql, params + limit_params


@dataclass
class KeysetScan:
    """Stable scan over a table's primary key for batch jobs.

    Keys are compared as tuples so a job can resume from the last committed
    row after a crash.
    """

    table: str
    key_columns: tuple[str, ...]
    limit: int
    after: tuple[Any, ...] | None = None
    extra_condition: str | None = None
    extra_params: tuple[Any, ...] = ()

    def to_sql(self) -> tuple[str, list[Any]]:
        conditions: list[str] = []
        params: list[Any] = []

        if self.extra_condition:
            conditions.append(f"({self.extra_condition})")
            params.extend(self.extra_params)

        if self.after is not None:
            if len(self.after) != len(self.key_columns):
                raise ValueError("resume key does not match key columns")
            # (a, b) > (x, y) expanded for portability
            clauses: list[str] = []
            for i, column in enumerate(self.key_columns):
                equal_prefix = [f"{c} = ?" for c in self.key_columns[:i]]
                clauses.append("(" + " AND ".join([*equal_prefix, f"{column} > ?"]) + ")")
                params.extend(self.after[: i + 1])
            conditions.append("(" + " OR ".join(clauses) + ")")

        where = " AND ".join(conditions) if conditions else "1=1"
        order = ", ".join(f"{c} ASC" for c in self.key_columns)
        params.append(self.limit)
        return f"SELECT * FROM {self.table} WHERE {where} ORDER BY {order} LIMIT ?", params
