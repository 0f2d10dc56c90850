"""create receipts

Revision ID: 3b7e0c1a9d42
Revises:
Create Date: 2026-10-17

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "3b7e0c1a9d42"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_STATUSES = ("UPLOADED", "PROCESSING", "PROCESSED", "FAILED")


def upgrade() -> None:
    op.create_table(
        "receipts_receipt",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("filename", sa.String(length=512), nullable=False),
        sa.Column("original_name", sa.String(length=512), nullable=False),
        sa.Column("file_path", sa.String(length=1024), nullable=False),
        sa.Column("mime_type", sa.String(length=100), nullable=False),
        sa.Column("byte_size", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*_STATUSES, name="receiptstatus", native_enum=False),
            nullable=False,
        ),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error_message", sa.Text(), nullable=True),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("extraction_json", sa.JSON(), nullable=True),
        sa.Column("extraction_method", sa.String(length=20), nullable=True),
        sa.Column("overall_confidence", sa.Float(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("corrections_json", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_receipts_receipt"),
    )
    op.create_index("ix_receipts_receipt_status", "receipts_receipt", ["status"])
    op.create_index("ix_receipts_receipt_is_active", "receipts_receipt", ["is_active"])


def downgrade() -> None:
    op.drop_index("ix_receipts_receipt_is_active", table_name="receipts_receipt")
    op.drop_index("ix_receipts_receipt_status", table_name="receipts_receipt")
    op.drop_table("receipts_receipt")
