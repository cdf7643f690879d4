"""create inspection_item_results

Revision ID: 0001
Revises:
Create Date: 2026-10-17 09:00:00

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "inspection_item_results",
        sa.Column("customer_id", sa.String(length=128), nullable=False),
        sa.Column("item_key", sa.String(length=1024), nullable=False),
        sa.Column("record_type", sa.String(length=16), nullable=False),
        sa.Column("check_id", sa.String(length=255), nullable=False),
        sa.Column("run_id", sa.String(length=128), nullable=False),
        sa.Column("inspection_time", sa.BigInteger(), nullable=False),
        sa.Column("findings_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("customer_id", "item_key"),
    )
    op.create_index("ix_inspection_item_results_record_type", "inspection_item_results", ["record_type"])
    op.create_index("ix_inspection_item_results_run_id", "inspection_item_results", ["run_id"])
    op.create_index("ix_item_results_customer_run", "inspection_item_results", ["customer_id", "run_id"])


def downgrade() -> None:
    op.drop_index("ix_item_results_customer_run", table_name="inspection_item_results")
    op.drop_index("ix_inspection_item_results_run_id", table_name="inspection_item_results")
    op.drop_index("ix_inspection_item_results_record_type", table_name="inspection_item_results")
    op.drop_table("inspection_item_results")
