"""create scheduled_calls

Revision ID: 20261018_01
Revises: None
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_01"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "scheduled_calls",
        sa.Column("entity_id", sa.String(length=128), primary_key=True),
        sa.Column("scheduled_at_ms", sa.BigInteger(), nullable=False),
        sa.Column("to_number", sa.String(), nullable=False),
        sa.Column("from_number", sa.String(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_scheduled_calls_status", "scheduled_calls", ["status"])


def downgrade() -> None:
    op.drop_index("ix_scheduled_calls_status", table_name="scheduled_calls")
    op.drop_table("scheduled_calls")
