"""Deal repository — backlog streaming, fill-null linking and coverage counts."""
import logging
from datetime import datetime
from typing import AsyncIterator, Literal, Optional
from uuid import UUID

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Company, Contact, Deal
from db.side_effects import EntityChange, notify
from schemas.deal import DealFields
from schemas.run import ResolutionStats

logger = logging.getLogger(__name__)

Needs = Literal["any", "company", "contact"]


def _has_text(column):
    return and_(column.is_not(None), func.trim(column) != "")


def _unresolved(needs: Needs):
    if needs == "company":
        return Deal.company_id.is_(None)
    if needs == "contact":
        return Deal.primary_contact_id.is_(None)
    return or_(Deal.company_id.is_(None), Deal.primary_contact_id.is_(None))


def _scoped(stmt, owner_id: Optional[UUID], since: Optional[datetime]):
    if owner_id is not None:
        stmt = stmt.where(Deal.owner_id == owner_id)
    if since is not None:
        stmt = stmt.where(or_(Deal.created_at >= since, Deal.updated_at >= since))
    return stmt


async def get_by_id(session: AsyncSession, deal_id: UUID) -> Optional[Deal]:
    return await session.get(Deal, deal_id)


async def iter_unresolved(
    session: AsyncSession,
    *,
    needs: Needs = "any",
    owner_id: Optional[UUID] = None,
    since: Optional[datetime] = None,
    batch_size: int = 200,
) -> AsyncIterator[list[DealFields]]:
    """Yield chunks of deals missing a reference, ordered by id.

    Keyset pagination keeps each query bounded and lets callers write (and
    commit) between chunks without the cursor skipping or repeating rows.
    """
    last_id: Optional[UUID] = None
    while True:
        stmt = _scoped(select(Deal).where(_unresolved(needs)), owner_id, since)
        if last_id is not None:
            stmt = stmt.where(Deal.id > last_id)
        result = await session.execute(
            stmt.order_by(Deal.id)
            .limit(batch_size)
            .execution_options(populate_existing=True)
        )
        rows = list(result.scalars().all())
        if not rows:
            return
        chunk = [DealFields.model_validate(row) for row in rows]
        last_id = chunk[-1].id
        yield chunk
        if len(rows) < batch_size:
            return


async def fill_company(session: AsyncSession, deal_id: UUID, company_id: UUID) -> bool:
    """Set deals.company_id only if it is still NULL. Returns True if written."""
    result = await session.execute(
        update(Deal)
        .where(Deal.id == deal_id)
        .where(Deal.company_id.is_(None))
        .values(company_id=company_id, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    written = result.rowcount == 1
    if written:
        notify(session, EntityChange("deal", "company_linked", deal_id))
    return written


async def fill_primary_contact(
    session: AsyncSession, deal_id: UUID, contact_id: UUID
) -> bool:
    """Set deals.primary_contact_id only if it is still NULL. Returns True if written."""
    result = await session.execute(
        update(Deal)
        .where(Deal.id == deal_id)
        .where(Deal.primary_contact_id.is_(None))
        .values(primary_contact_id=contact_id, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    written = result.rowcount == 1
    if written:
        notify(session, EntityChange("deal", "contact_linked", deal_id))
    return written


async def link_company_via_contact(
    session: AsyncSession, *, owner_id: Optional[UUID] = None, batch_size: int = 200
) -> int:
    """Fill a missing deal company from the primary contact's company."""
    linked = 0
    last_id: Optional[UUID] = None
    while True:
        stmt = (
            select(Deal.id, Contact.company_id)
            .join(Contact, Contact.id == Deal.primary_contact_id)
            .where(Deal.company_id.is_(None))
            .where(Contact.company_id.is_not(None))
        )
        stmt = _scoped(stmt, owner_id, None)
        if last_id is not None:
            stmt = stmt.where(Deal.id > last_id)
        result = await session.execute(stmt.order_by(Deal.id).limit(batch_size))
        rows = result.all()
        if not rows:
            return linked
        for deal_id, company_id in rows:
            if await fill_company(session, deal_id, company_id):
                linked += 1
        last_id = rows[-1][0]


async def count_unresolved(
    session: AsyncSession,
    *,
    owner_id: Optional[UUID] = None,
    since: Optional[datetime] = None,
) -> int:
    stmt = _scoped(select(func.count(Deal.id)).where(_unresolved("any")), owner_id, since)
    result = await session.execute(stmt)
    return int(result.scalar_one())


def _count_if(condition):
    return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)


async def resolution_stats(
    session: AsyncSession, owner_id: Optional[UUID] = None
) -> ResolutionStats:
    """Snapshot of how many deals carry free text vs. resolved references."""
    stmt = select(
        func.count(Deal.id),
        _count_if(_has_text(Deal.company)),
        _count_if(_has_text(Deal.contact_email)),
        _count_if(and_(_has_text(Deal.company), Deal.company_id.is_not(None))),
        _count_if(and_(_has_text(Deal.contact_email), Deal.primary_contact_id.is_not(None))),
    )
    stmt = _scoped(stmt, owner_id, None)
    total, company_text, email_text, company_fk, contact_fk = (
        await session.execute(stmt)
    ).one()

    companies_stmt = select(func.count(Company.id))
    contacts_stmt = select(func.count(Contact.id))
    if owner_id is not None:
        companies_stmt = companies_stmt.where(Company.owner_id == owner_id)
        contacts_stmt = contacts_stmt.where(Contact.owner_id == owner_id)

    return ResolutionStats(
        total_deals=int(total),
        deals_with_company_text=int(company_text),
        deals_with_contact_email=int(email_text),
        deals_with_company_fk=int(company_fk),
        deals_with_contact_fk=int(contact_fk),
        total_companies=int((await session.execute(companies_stmt)).scalar_one()),
        total_contacts=int((await session.execute(contacts_stmt)).scalar_one()),
    )


async def count_missing_links(
    session: AsyncSession, owner_id: Optional[UUID] = None
) -> tuple[int, int]:
    """Return (deals with company text but no company, deals with email but no contact)."""
    stmt = select(
        _count_if(and_(_has_text(Deal.company), Deal.company_id.is_(None))),
        _count_if(and_(_has_text(Deal.contact_email), Deal.primary_contact_id.is_(None))),
    )
    stmt = _scoped(stmt, owner_id, None)
    without_company, without_contact = (await session.execute(stmt)).one()
    return int(without_company), int(without_contact)
