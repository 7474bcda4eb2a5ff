"""Initial schema: crm companies, contacts, deals, stakeholders and review queue.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE SCHEMA IF NOT EXISTS crm")

    # ─── Canonical entities ──────────────────────────────────────────────────

    op.create_table(
        "companies",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("domain", sa.Text, nullable=True),
        sa.Column("owner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("owner_id", "domain", name="uq_company_owner_domain"),
        schema="crm",
    )
    op.create_index("ix_company_owner_name", "companies", ["owner_id", "name"], schema="crm")

    op.create_table(
        "contacts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("company_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("first_name", sa.Text, nullable=False),
        sa.Column("last_name", sa.Text, nullable=False, server_default=""),
        sa.Column("email", sa.Text, nullable=False),
        sa.Column("is_primary", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("owner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("email", name="uq_contact_email"),
        sa.ForeignKeyConstraint(
            ["company_id"], ["crm.companies.id"], name="fk_contact_company", ondelete="SET NULL"
        ),
        schema="crm",
    )
    op.create_index("ix_contact_company", "contacts", ["company_id"], schema="crm")

    # ─── Pipeline records ────────────────────────────────────────────────────

    op.create_table(
        "deals",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.Text, nullable=True),
        sa.Column("value", sa.Numeric(14, 2), nullable=True),
        sa.Column("company", sa.Text, nullable=True),
        sa.Column("contact_name", sa.Text, nullable=True),
        sa.Column("contact_email", sa.Text, nullable=True),
        sa.Column("company_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("primary_contact_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(
            ["company_id"], ["crm.companies.id"], name="fk_deal_company", ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(
            ["primary_contact_id"], ["crm.contacts.id"], name="fk_deal_primary_contact", ondelete="SET NULL"
        ),
        schema="crm",
    )
    op.create_index("ix_deal_owner", "deals", ["owner_id"], schema="crm")
    op.create_index("ix_deal_company", "deals", ["company_id"], schema="crm")
    op.create_index("ix_deal_primary_contact", "deals", ["primary_contact_id"], schema="crm")

    op.create_table(
        "deal_stakeholders",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("deal_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("contact_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("stakeholder_role", sa.Text, nullable=False, server_default="decision_maker"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("deal_id", "contact_id", name="uq_deal_stakeholder"),
        sa.ForeignKeyConstraint(["deal_id"], ["crm.deals.id"], name="fk_stakeholder_deal", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["contact_id"], ["crm.contacts.id"], name="fk_stakeholder_contact", ondelete="CASCADE"
        ),
        schema="crm",
    )

    # ─── Review queue ────────────────────────────────────────────────────────

    op.create_table(
        "deal_reviews",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("deal_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("original_company", sa.Text, nullable=True),
        sa.Column("original_contact_name", sa.Text, nullable=True),
        sa.Column("original_contact_email", sa.Text, nullable=True),
        sa.Column("suggested_company_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("suggested_contact_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("run_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.CheckConstraint(
            "reason IN ('no_email', 'invalid_email', 'entity_creation_failed', 'fuzzy_match_uncertainty')",
            name="ck_review_reason",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'resolved', 'archived')",
            name="ck_review_status",
        ),
        sa.ForeignKeyConstraint(["deal_id"], ["crm.deals.id"], name="fk_review_deal", ondelete="CASCADE"),
        schema="crm",
    )
    op.create_index("ix_review_deal_status", "deal_reviews", ["deal_id", "status"], schema="crm")


def downgrade() -> None:
    op.drop_index("ix_review_deal_status", table_name="deal_reviews", schema="crm")
    op.drop_index("ix_deal_primary_contact", table_name="deals", schema="crm")
    op.drop_index("ix_deal_company", table_name="deals", schema="crm")
    op.drop_index("ix_deal_owner", table_name="deals", schema="crm")
    op.drop_index("ix_contact_company", table_name="contacts", schema="crm")
    op.drop_index("ix_company_owner_name", table_name="companies", schema="crm")
    # Drop in reverse dependency order
    op.drop_table("deal_reviews", schema="crm")
    op.drop_table("deal_stakeholders", schema="crm")
    op.drop_table("deals", schema="crm")
    op.drop_table("contacts", schema="crm")
    op.drop_table("companies", schema="crm")
