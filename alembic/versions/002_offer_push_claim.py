"""Add push_claimed_at to flash_offers

Revision ID: 002_offer_push_claim
Revises: 001_initial_schema
Create Date: 2026-10-17

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002_offer_push_claim"
down_revision: str | None = "001_initial_schema"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column("flash_offers", sa.Column("push_claimed_at", sa.DateTime(), nullable=True))


def downgrade() -> None:
    op.drop_column("flash_offers", "push_claimed_at")
