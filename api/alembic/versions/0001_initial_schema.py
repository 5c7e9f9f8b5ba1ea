"""initial_schema

Revision ID: 0001
Revises:
Create Date: 2025-09-14 20:40:31.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _money(name: str) -> sa.Column:
    return sa.Column(name, sa.Numeric(precision=14, scale=2), server_default="0", nullable=False)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("hashed_password", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "tax_returns",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("tax_year", sa.Integer(), nullable=False),
        sa.Column("filing_status", sa.String(length=40), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=True),
        sa.Column("last_name", sa.String(length=100), nullable=True),
        sa.Column("ssn_encrypted", sa.Text(), nullable=True),
        sa.Column("ssn_last4", sa.String(length=4), nullable=True),
        sa.Column("address", sa.String(length=255), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("state", sa.String(length=2), nullable=True),
        sa.Column("zip_code", sa.String(length=10), nullable=True),
        _money("total_income"),
        _money("total_withholdings"),
        _money("adjusted_gross_income"),
        _money("standard_deduction"),
        _money("itemized_deduction"),
        _money("taxable_income"),
        _money("tax_liability"),
        _money("total_credits"),
        _money("refund_amount"),
        _money("amount_owed"),
        _money("state_tax_liability"),
        _money("state_standard_deduction"),
        _money("state_itemized_deduction"),
        _money("state_taxable_income"),
        sa.Column("state_effective_rate", sa.Numeric(precision=7, scale=3), server_default="0", nullable=False),
        sa.Column("detected_state", sa.String(length=2), nullable=True),
        sa.Column("state_confidence", sa.Float(), server_default="0", nullable=False),
        sa.Column("state_source", sa.String(length=20), server_default="UNKNOWN", nullable=False),
        sa.Column("last_calculated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_tax_returns_user_id"), "tax_returns", ["user_id"], unique=False)

    op.create_table(
        "dependents",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("tax_return_id", sa.UUID(), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=False),
        sa.Column("last_name", sa.String(length=100), nullable=False),
        sa.Column("relationship", sa.String(length=50), nullable=False),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("qualifies_for_ctc", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("qualifies_for_eitc", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["tax_return_id"], ["tax_returns.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_dependents_tax_return_id"), "dependents", ["tax_return_id"], unique=False)

    op.create_table(
        "documents",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("tax_return_id", sa.UUID(), nullable=False),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column("stored_filename", sa.Text(), nullable=False),
        sa.Column("file_type", sa.String(length=100), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False),
        sa.Column("document_type", sa.String(length=30), nullable=False),
        sa.Column("processing_status", sa.String(length=20), server_default="PENDING", nullable=False),
        sa.Column("extracted_data", sa.JSON(), nullable=True),
        sa.Column("ocr_text", sa.Text(), nullable=True),
        sa.Column("is_verified", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("duplicate_resolution", sa.String(length=20), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["tax_return_id"], ["tax_returns.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_documents_tax_return_id"), "documents", ["tax_return_id"], unique=False)
    op.create_index(op.f("ix_documents_document_type"), "documents", ["document_type"], unique=False)
    op.create_index(op.f("ix_documents_processing_status"), "documents", ["processing_status"], unique=False)

    # document_id starts out nullable with SET NULL; 0002 switches to CASCADE
    op.create_table(
        "income_entries",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("tax_return_id", sa.UUID(), nullable=False),
        sa.Column("document_id", sa.UUID(), nullable=True),
        sa.Column("income_type", sa.String(length=30), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Numeric(precision=14, scale=2), nullable=False),
        sa.Column("federal_tax_withheld", sa.Numeric(precision=14, scale=2), server_default="0", nullable=False),
        sa.Column("employer_name", sa.String(length=255), nullable=True),
        sa.Column("employer_ein", sa.String(length=20), nullable=True),
        sa.Column("payer_name", sa.String(length=255), nullable=True),
        sa.Column("payer_tin", sa.String(length=20), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["tax_return_id"], ["tax_returns.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["document_id"], ["documents.id"], name="income_entries_document_id_fkey", ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_income_entries_tax_return_id"), "income_entries", ["tax_return_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_income_entries_tax_return_id"), table_name="income_entries")
    op.drop_table("income_entries")
    op.drop_index(op.f("ix_documents_processing_status"), table_name="documents")
    op.drop_index(op.f("ix_documents_document_type"), table_name="documents")
    op.drop_index(op.f("ix_documents_tax_return_id"), table_name="documents")
    op.drop_table("documents")
    op.drop_index(op.f("ix_dependents_tax_return_id"), table_name="dependents")
    op.drop_table("dependents")
    op.drop_index(op.f("ix_tax_returns_user_id"), table_name="tax_returns")
    op.drop_table("tax_returns")
    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
