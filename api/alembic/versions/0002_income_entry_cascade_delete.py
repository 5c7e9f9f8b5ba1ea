"""income_entry_cascade_delete

Purge income entries that lost their document, then make the document FK
cascade so deleting a document can never leave its income behind.

Revision ID: 0002
Revises: 0001
Create Date: 2025-09-15 14:59:50.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "0002"
down_revision: Union[str, None] = "0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("DELETE FROM income_entries WHERE document_id IS NULL")
    op.execute(
        "DELETE FROM income_entries "
        "WHERE document_id NOT IN (SELECT id FROM documents)"
    )
    op.drop_constraint("income_entries_document_id_fkey", "income_entries", type_="foreignkey")
    op.create_foreign_key(
        "income_entries_document_id_fkey",
        "income_entries",
        "documents",
        ["document_id"],
        ["id"],
        ondelete="CASCADE",
        onupdate="CASCADE",
    )
    op.alter_column("income_entries", "document_id", existing_type=sa.UUID(), nullable=False)
    op.create_index(op.f("ix_income_entries_document_id"), "income_entries", ["document_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_income_entries_document_id"), table_name="income_entries")
    op.alter_column("income_entries", "document_id", existing_type=sa.UUID(), nullable=True)
    op.drop_constraint("income_entries_document_id_fkey", "income_entries", type_="foreignkey")
    op.create_foreign_key(
        "income_entries_document_id_fkey",
        "income_entries",
        "documents",
        ["document_id"],
        ["id"],
        ondelete="SET NULL",
    )
