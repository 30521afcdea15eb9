"""add milestone approval and escrow tables: milestones, milestone_approvals, escrow_transactions

Revision ID: 3f9a6c2d8e10
Revises:
Create Date: 2026-09-28 14:12:41.508113

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9a6c2d8e10"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Upgrade schema. The orders table is owned by the order service and must already exist."""
    op.create_table(
        "milestones",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("stage", sa.String(length=50), nullable=False),
        sa.Column("photo_url", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=False, server_default=""),
        sa.Column("submitted_by", sa.String(length=255), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approval_status", sa.String(length=20), nullable=False, server_default="PENDING"),
        sa.Column("auto_approval_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewed_by", sa.String(length=255), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("warnings_sent", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["order_id"],
            ["orders.id"],
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id", "stage", name="uq_milestones_order_stage"),
    )
    op.create_index(op.f("ix_milestones_order_id"), "milestones", ["order_id"], unique=False)
    op.create_index(
        "ix_milestones_status_deadline",
        "milestones",
        ["approval_status", "auto_approval_deadline"],
        unique=False,
    )

    op.create_table(
        "milestone_approvals",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("milestone_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=True),
        sa.Column("action", sa.String(length=20), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["milestone_id"],
            ["milestones.id"],
        ),
        sa.ForeignKeyConstraint(
            ["order_id"],
            ["orders.id"],
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_milestone_approvals_milestone_id"), "milestone_approvals", ["milestone_id"], unique=False)
    op.create_index(op.f("ix_milestone_approvals_order_id"), "milestone_approvals", ["order_id"], unique=False)
    op.create_index(op.f("ix_milestone_approvals_reviewed_at"), "milestone_approvals", ["reviewed_at"], unique=False)

    op.create_table(
        "escrow_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("order_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("milestone_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("payee_id", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="PROCESSING"),
        sa.Column("release_reason", sa.String(length=50), nullable=False),
        sa.Column("settlement_reference", sa.String(length=255), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["milestone_id"],
            ["milestones.id"],
        ),
        sa.ForeignKeyConstraint(
            ["order_id"],
            ["orders.id"],
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("amount > 0", name="ck_escrow_transactions_amount_positive"),
    )
    op.create_index(op.f("ix_escrow_transactions_order_id"), "escrow_transactions", ["order_id"], unique=False)
    op.create_index(op.f("ix_escrow_transactions_milestone_id"), "escrow_transactions", ["milestone_id"], unique=False)
    op.create_index(op.f("ix_escrow_transactions_created_at"), "escrow_transactions", ["created_at"], unique=False)
    # One in-flight or completed release per milestone; FAILED rows may be superseded
    op.create_index(
        "uq_escrow_transactions_active_release",
        "escrow_transactions",
        ["order_id", "milestone_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('PROCESSING', 'COMPLETED')"),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("uq_escrow_transactions_active_release", table_name="escrow_transactions")
    op.drop_index(op.f("ix_escrow_transactions_created_at"), table_name="escrow_transactions")
    op.drop_index(op.f("ix_escrow_transactions_milestone_id"), table_name="escrow_transactions")
    op.drop_index(op.f("ix_escrow_transactions_order_id"), table_name="escrow_transactions")
    op.drop_table("escrow_transactions")

    op.drop_index(op.f("ix_milestone_approvals_reviewed_at"), table_name="milestone_approvals")
    op.drop_index(op.f("ix_milestone_approvals_order_id"), table_name="milestone_approvals")
    op.drop_index(op.f("ix_milestone_approvals_milestone_id"), table_name="milestone_approvals")
    op.drop_table("milestone_approvals")

    op.drop_index("ix_milestones_status_deadline", table_name="milestones")
    op.drop_index(op.f("ix_milestones_order_id"), table_name="milestones")
    op.drop_table("milestones")
