"""Create venues, vibe_checks, promotions and notifications

Revision ID: 001
Revises: None
Create Date: 2025-01-10 00:00:00.000000+00:00

What:  Creates the four synchronised tables and their feed/search indexes.
Also:  Installs a trigger keeping updated_at monotonic for venues and
       promotions, since clients update them through raw SQL batches where
       the ORM's onupdate never runs.

Rollback: downgrade() drops everything (destructive).
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# now() is the transaction start time; GREATEST keeps the clock from moving
# backwards when a row is touched twice in one transaction or clocks skew.
TOUCH_UPDATED_AT = """
CREATE OR REPLACE FUNCTION buzzsync_touch_updated_at() RETURNS trigger AS $$
BEGIN
    NEW.updated_at := GREATEST(now(), OLD.updated_at);
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""


def _timestamps(with_updated_at: bool):
    columns = [
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]
    if with_updated_at:
        columns.append(
            sa.Column(
                "updated_at",
                sa.TIMESTAMP(timezone=True),
                server_default=sa.text("now()"),
                nullable=False,
            )
        )
    return columns


def upgrade() -> None:
    op.create_table(
        "venues",
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("city", sa.String(120), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("venue_type", sa.String(50), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=True),
        *_timestamps(with_updated_at=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_venues_updated_at_id", "venues", ["updated_at", "id"])
    op.create_index("idx_venues_lat_lng", "venues", ["latitude", "longitude"])
    op.create_index("idx_venues_city", "venues", ["city"])
    op.create_index("idx_venues_venue_type", "venues", ["venue_type"])

    op.create_table(
        "vibe_checks",
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("venue_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("energy_level", sa.Integer(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(with_updated_at=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["venue_id"], ["venues.id"], ondelete="CASCADE"),
        sa.CheckConstraint("energy_level BETWEEN 1 AND 5", name="ck_vibe_checks_energy_level"),
    )
    op.create_index("idx_vibe_checks_created_at_id", "vibe_checks", ["created_at", "id"])
    op.create_index("idx_vibe_checks_venue_id", "vibe_checks", ["venue_id"])

    op.create_table(
        "promotions",
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("venue_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("start_date", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("end_date", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        *_timestamps(with_updated_at=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["venue_id"], ["venues.id"], ondelete="CASCADE"),
    )
    op.create_index("idx_promotions_updated_at_id", "promotions", ["updated_at", "id"])
    op.create_index("idx_promotions_venue_id", "promotions", ["venue_id"])

    op.create_table(
        "notifications",
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("data", postgresql.JSONB(), nullable=True),
        *_timestamps(with_updated_at=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_notifications_created_at_id", "notifications", ["created_at", "id"])

    op.execute(TOUCH_UPDATED_AT)
    for table in ("venues", "promotions"):
        op.execute(
            f"CREATE TRIGGER trg_{table}_touch_updated_at BEFORE UPDATE ON {table} "
            "FOR EACH ROW EXECUTE FUNCTION buzzsync_touch_updated_at()"
        )


def downgrade() -> None:
    for table in ("venues", "promotions"):
        op.execute(f"DROP TRIGGER IF EXISTS trg_{table}_touch_updated_at ON {table}")
    op.execute("DROP FUNCTION IF EXISTS buzzsync_touch_updated_at()")

    op.drop_index("idx_notifications_created_at_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("idx_promotions_venue_id", table_name="promotions")
    op.drop_index("idx_promotions_updated_at_id", table_name="promotions")
    op.drop_table("promotions")
    op.drop_index("idx_vibe_checks_venue_id", table_name="vibe_checks")
    op.drop_index("idx_vibe_checks_created_at_id", table_name="vibe_checks")
    op.drop_table("vibe_checks")
    op.drop_index("idx_venues_venue_type", table_name="venues")
    op.drop_index("idx_venues_city", table_name="venues")
    op.drop_index("idx_venues_lat_lng", table_name="venues")
    op.drop_index("idx_venues_updated_at_id", table_name="venues")
    op.drop_table("venues")
