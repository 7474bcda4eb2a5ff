"""SQLAlchemy 2.0 ORM models for the deal reconciliation engine.

Covers 5 tables in the crm schema:
  - companies, contacts: canonical entities
  - deals: pipeline records carrying legacy free-text identifiers
  - deal_stakeholders: deal <-> contact relationships derived after linking
  - deal_reviews: records the engine could not resolve with confidence
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    UUID,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    Text,
    UniqueConstraint,
    false,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


# ---------------------------------------------------------------------------
# Shared base
# ---------------------------------------------------------------------------


SCHEMA = "crm"


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Review queue vocabulary used in the CHECK constraints
# ---------------------------------------------------------------------------

REVIEW_REASONS = (
    "no_email",
    "invalid_email",
    "entity_creation_failed",
    "fuzzy_match_uncertainty",
)

REVIEW_STATUSES = ("pending", "resolved", "archived")


def _in_check(column: str, values: tuple[str, ...]) -> str:
    return f"{column} IN (" + ", ".join(f"'{v}'" for v in values) + ")"


# ===========================================================================
# Schema: crm
# ===========================================================================


class Company(Base):
    """crm.companies — canonical organization, one per (owner, domain)."""

    __tablename__ = "companies"
    __table_args__ = (
        UniqueConstraint("owner_id", "domain", name="uq_company_owner_domain"),
        Index("ix_company_owner_name", "owner_id", "name"),
        {"schema": SCHEMA},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    domain: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Relationships
    contacts: Mapped[list["Contact"]] = relationship(
        "Contact", back_populates="company"
    )
    deals: Mapped[list["Deal"]] = relationship(
        "Deal", back_populates="company_entity"
    )


class Contact(Base):
    """crm.contacts — canonical person, unique by normalized email."""

    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("email", name="uq_contact_email"),
        Index("ix_contact_company", "company_id"),
        {"schema": SCHEMA},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm.companies.id", ondelete="SET NULL"),
        nullable=True,
    )
    first_name: Mapped[str] = mapped_column(Text, nullable=False)
    last_name: Mapped[str] = mapped_column(Text, nullable=False, server_default="")
    email: Mapped[str] = mapped_column(Text, nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, server_default=false(), nullable=False)
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Relationships
    company: Mapped[Optional["Company"]] = relationship(
        "Company", back_populates="contacts"
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Deal(Base):
    """crm.deals — pipeline record; free-text fields are never rewritten here."""

    __tablename__ = "deals"
    __table_args__ = (
        Index("ix_deal_owner", "owner_id"),
        Index("ix_deal_company", "company_id"),
        Index("ix_deal_primary_contact", "primary_contact_id"),
        Index(
            "ix_deal_unresolved",
            "id",
            postgresql_where=text("company_id IS NULL OR primary_contact_id IS NULL"),
        ),
        {"schema": SCHEMA},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    value: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)

    # Legacy free-text identifiers
    company: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    contact_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    contact_email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Resolved references (fill-null-only)
    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm.companies.id", ondelete="SET NULL"),
        nullable=True,
    )
    primary_contact_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm.contacts.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Relationships
    company_entity: Mapped[Optional["Company"]] = relationship(
        "Company", back_populates="deals"
    )
    primary_contact: Mapped[Optional["Contact"]] = relationship("Contact")
    reviews: Mapped[list["ReviewEntry"]] = relationship(
        "ReviewEntry", back_populates="deal"
    )



class DealStakeholder(Base):
    """crm.deal_stakeholders — contacts involved in a deal."""

    __tablename__ = "deal_stakeholders"
    __table_args__ = (
        UniqueConstraint("deal_id", "contact_id", name="uq_deal_stakeholder"),
        {"schema": SCHEMA},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    deal_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm.deals.id", ondelete="CASCADE"),
        nullable=False,
    )
    contact_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm.contacts.id", ondelete="CASCADE"),
        nullable=False,
    )
    stakeholder_role: Mapped[str] = mapped_column(
        Text, nullable=False, server_default="decision_maker"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class ReviewEntry(Base):
    """crm.deal_reviews — append-only log of deals needing a human decision."""

    __tablename__ = "deal_reviews"
    __table_args__ = (
        CheckConstraint(_in_check("reason", REVIEW_REASONS), name="ck_review_reason"),
        CheckConstraint(_in_check("status", REVIEW_STATUSES), name="ck_review_status"),
        Index("ix_review_deal_status", "deal_id", "status"),
        {"schema": SCHEMA},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    deal_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("crm.deals.id", ondelete="CASCADE"),
        nullable=False,
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, server_default="pending")
    original_company: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    original_contact_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    original_contact_email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    suggested_company_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    suggested_contact_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    run_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    resolved_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )

    # Relationship
    deal: Mapped["Deal"] = relationship("Deal", back_populates="reviews")
