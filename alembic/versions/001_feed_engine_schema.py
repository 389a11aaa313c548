"""Feed engine PostgreSQL schema

Revision ID: 001
Revises:
Create Date: 2026-10-12 09:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create events, social graph, feed and checkpoint tables."""

    # 1. events (timestamps are fixed-width UTC ISO strings, see sql_feed_store)
    op.create_table(
        "events",
        sa.Column("id", sa.Text(), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("start_date_time", sa.Text(), nullable=False),
        sa.Column("end_date_time", sa.Text(), nullable=False),
        sa.Column("created_at", sa.Text(), nullable=False),
        sa.Column("visibility", sa.Text(), nullable=False, server_default="public"),
        sa.Column("similarity_group_id", sa.Text(), nullable=True),
        sa.Column("similar_to_event_id", sa.Text(), nullable=True),
        sa.Column("metadata", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "visibility IN ('public', 'private')", name="events_visibility_check"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_events_start", "events", ["start_date_time", "id"])
    op.create_index("idx_events_created", "events", ["created_at", "id"])
    op.create_index("idx_events_user", "events", ["user_id"])
    op.create_index("idx_events_group", "events", ["similarity_group_id"])

    # 2. users and lists
    op.create_table(
        "users",
        sa.Column("id", sa.Text(), nullable=False),
        sa.Column("username", sa.Text(), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column(
            "public_list_enabled", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("show_discover", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username"),
    )
    op.create_table(
        "event_lists",
        sa.Column("id", sa.Text(), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False, server_default=""),
        sa.Column("visibility", sa.Text(), nullable=False, server_default="private"),
        sa.CheckConstraint(
            "visibility IN ('public', 'unlisted', 'private')",
            name="event_lists_visibility_check",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "list_members",
        sa.Column("list_id", sa.Text(), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("list_id", "user_id"),
    )
    op.create_table(
        "event_to_lists",
        sa.Column("list_id", sa.Text(), nullable=False),
        sa.Column("event_id", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("list_id", "event_id"),
    )
    op.create_index("idx_event_to_lists_event", "event_to_lists", ["event_id"])
    op.create_table(
        "event_follows",
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("event_id", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("user_id", "event_id"),
    )
    op.create_index("idx_event_follows_event", "event_follows", ["event_id"])

    # 3. feed membership (times in epoch milliseconds)
    op.create_table(
        "feed_memberships",
        sa.Column("feed_id", sa.Text(), nullable=False),
        sa.Column("event_id", sa.Text(), nullable=False),
        sa.Column("similarity_group_id", sa.Text(), nullable=True),
        sa.Column("event_start_time", sa.BigInteger(), nullable=False),
        sa.Column("event_end_time", sa.BigInteger(), nullable=False),
        sa.Column("added_at", sa.BigInteger(), nullable=False),
        sa.Column("has_ended", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("feed_id", "event_id"),
    )
    op.create_index(
        "idx_memberships_feed_start",
        "feed_memberships",
        ["feed_id", "event_start_time", "event_id"],
    )
    op.create_index(
        "idx_memberships_feed_group", "feed_memberships", ["feed_id", "similarity_group_id"]
    )
    op.create_index("idx_memberships_event", "feed_memberships", ["event_id"])

    # 4. grouped feed rows (written only by the materializer)
    op.create_table(
        "grouped_feed_entries",
        sa.Column("feed_id", sa.Text(), nullable=False),
        sa.Column("similarity_group_id", sa.Text(), nullable=False),
        sa.Column("primary_event_id", sa.Text(), nullable=False),
        sa.Column("event_start_time", sa.BigInteger(), nullable=False),
        sa.Column("event_end_time", sa.BigInteger(), nullable=False),
        sa.Column("added_at", sa.BigInteger(), nullable=False),
        sa.Column("has_ended", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("similar_events_count", sa.Integer(), nullable=False, server_default="0"),
        sa.CheckConstraint(
            "similar_events_count >= 0", name="grouped_feed_entries_count_check"
        ),
        sa.PrimaryKeyConstraint("feed_id", "similarity_group_id"),
    )
    op.create_index(
        "idx_grouped_feed_start",
        "grouped_feed_entries",
        ["feed_id", "event_start_time", "similarity_group_id"],
    )

    # 5. migration checkpoints
    op.create_table(
        "migration_checkpoints",
        sa.Column("job_name", sa.Text(), nullable=False),
        sa.Column("last_processed_key", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("job_name"),
    )


def downgrade() -> None:
    """Drop all feed engine tables."""
    op.drop_table("migration_checkpoints")
    op.drop_index("idx_grouped_feed_start", table_name="grouped_feed_entries")
    op.drop_table("grouped_feed_entries")
    op.drop_index("idx_memberships_event", table_name="feed_memberships")
    op.drop_index("idx_memberships_feed_group", table_name="feed_memberships")
    op.drop_index("idx_memberships_feed_start", table_name="feed_memberships")
    op.drop_table("feed_memberships")
    op.drop_index("idx_event_follows_event", table_name="event_follows")
    op.drop_table("event_follows")
    op.drop_index("idx_event_to_lists_event", table_name="event_to_lists")
    op.drop_table("event_to_lists")
    op.drop_table("list_members")
    op.drop_table("event_lists")
    op.drop_table("users")
    op.drop_index("idx_events_group", table_name="events")
    op.drop_index("idx_events_user", table_name="events")
    op.drop_index("idx_events_created", table_name="events")
    op.drop_index("idx_events_start", table_name="events")
    op.drop_table("events")
