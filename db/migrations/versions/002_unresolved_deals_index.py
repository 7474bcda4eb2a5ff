"""Partial index over deals still missing a company or primary contact.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_deal_unresolved",
        "deals",
        ["id"],
        schema="crm",
        postgresql_where=sa.text("company_id IS NULL OR primary_contact_id IS NULL"),
    )


def downgrade() -> None:
    op.drop_index("ix_deal_unresolved", table_name="deals", schema="crm")
