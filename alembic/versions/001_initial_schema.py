"""Initial schema for flash offer push delivery

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-17

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "venues",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("subscription_tier", sa.String(20), nullable=False, server_default="free"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=True, unique=True, index=True),
        sa.Column("latitude", sa.Float(), nullable=True, index=True),
        sa.Column("longitude", sa.Float(), nullable=True, index=True),
        sa.Column("location_updated_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "favorites",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column(
            "venue_id",
            sa.Uuid(),
            sa.ForeignKey("venues.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "venue_id", name="uq_favorite_user_venue"),
    )

    op.create_table(
        "flash_offers",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "venue_id",
            sa.Uuid(),
            sa.ForeignKey("venues.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("title", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("value_cap", sa.String(50), nullable=True),
        sa.Column("max_claims", sa.Integer(), nullable=True),
        sa.Column("claimed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("start_time", sa.DateTime(), nullable=True),
        sa.Column("end_time", sa.DateTime(), nullable=True),
        sa.Column("radius_meters", sa.Float(), nullable=False, server_default="1609.344"),
        sa.Column("target_favorites_only", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "status",
            sa.Enum(
                "scheduled",
                "active",
                "expired",
                "cancelled",
                "full",
                name="offerstatus",
                native_enum=False,
            ),
            nullable=False,
            server_default="active",
        ),
        sa.Column("push_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("push_sent_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "device_tokens",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("token", sa.String(512), nullable=False, unique=True, index=True),
        sa.Column("platform", sa.String(10), nullable=False, server_default="android"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true(), index=True),
        sa.Column("deactivated_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "notification_preferences",
        sa.Column(
            "user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("flash_offers_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("quiet_hours_start", sa.Time(), nullable=True),
        sa.Column("quiet_hours_end", sa.Time(), nullable=True),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("max_distance_meters", sa.Float(), nullable=True),
        sa.Column("os_permission_granted", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "flash_offer_rate_limits",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("subject_id", sa.Uuid(), nullable=False),
        sa.Column(
            "subject_type",
            sa.Enum("venue_send", "user_receive", name="ratelimitsubject", native_enum=False),
            nullable=False,
        ),
        sa.Column("count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False, index=True),
    )
    op.create_index(
        "ix_rate_limits_subject_window",
        "flash_offer_rate_limits",
        ["subject_type", "subject_id", "created_at"],
    )

    op.create_table(
        "flash_offer_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "offer_id",
            sa.Uuid(),
            sa.ForeignKey("flash_offers.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column(
            "event_type",
            sa.Enum("push_sent", "push_failed", name="offereventtype", native_enum=False),
            nullable=False,
        ),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, index=True),
    )


def downgrade() -> None:
    op.drop_table("flash_offer_events")
    op.drop_index("ix_rate_limits_subject_window", table_name="flash_offer_rate_limits")
    op.drop_table("flash_offer_rate_limits")
    op.drop_table("notification_preferences")
    op.drop_table("device_tokens")
    op.drop_table("flash_offers")
    op.drop_table("favorites")
    op.drop_table("users")
    op.drop_table("venues")
