"""add partial index for unfulfilled orders

Revision ID: 0002_fulfillment_gate_index
Revises: 0001_payments
Create Date: 2026-10-14
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_fulfillment_gate_index"
down_revision = "0001_payments"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_payment_orders_unfulfilled",
        "payment_orders",
        ["correlation_id"],
        postgresql_where=sa.text("fulfilled_at IS NULL"),
    )
    op.create_index(
        "ix_purchases_user_id_created_at",
        "purchases",
        ["user_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_purchases_user_id_created_at", table_name="purchases")
    op.drop_index("ix_payment_orders_unfulfilled", table_name="payment_orders")
