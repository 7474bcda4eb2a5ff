"""Company repository — lookups by domain / name and creation."""
import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Company, Contact
from db.side_effects import EntityChange, notify

logger = logging.getLogger(__name__)


async def get_by_id(session: AsyncSession, company_id: UUID) -> Optional[Company]:
    return await session.get(Company, company_id)


async def get_by_domain(
    session: AsyncSession, domain: str, owner_id: Optional[UUID] = None
) -> Optional[Company]:
    """Return the Company with this domain (case-insensitive), or None.

    With owner_id=None the lookup spans every owner and the oldest match wins.
    """
    stmt = select(Company).where(func.lower(Company.domain) == domain.lower().strip())
    if owner_id is not None:
        stmt = stmt.where(Company.owner_id == owner_id)
    result = await session.execute(
        stmt.order_by(Company.created_at, Company.id).limit(1)
    )
    return result.scalars().first()


async def get_by_name(
    session: AsyncSession, name: str, owner_id: UUID
) -> Optional[Company]:
    """Return this owner's Company whose name equals `name` ignoring case, or None."""
    result = await session.execute(
        select(Company)
        .where(Company.owner_id == owner_id)
        .where(func.lower(func.trim(Company.name)) == name.strip().lower())
        .order_by(Company.created_at, Company.id)
        .limit(1)
    )
    return result.scalars().first()


async def get_owned_by_domain(
    session: AsyncSession, domain: str, owner_id: UUID
) -> list[Company]:
    """Return every Company of this owner carrying the domain."""
    result = await session.execute(
        select(Company)
        .where(Company.owner_id == owner_id)
        .where(func.lower(Company.domain) == domain.lower().strip())
    )
    return list(result.scalars().all())


async def create(
    session: AsyncSession,
    *,
    name: str,
    owner_id: UUID,
    domain: Optional[str] = None,
) -> Company:
    """Insert a Company. Raises IntegrityError if (owner_id, domain) already exists."""
    company = Company(
        name=name.strip(),
        domain=domain.lower().strip() if domain else None,
        owner_id=owner_id,
    )
    session.add(company)
    await session.flush()
    notify(session, EntityChange("company", "created", company.id, owner_id))
    return company


async def count_contacts(session: AsyncSession, company_id: UUID) -> int:
    result = await session.execute(
        select(func.count(Contact.id)).where(Contact.company_id == company_id)
    )
    return int(result.scalar_one())


async def count_without_domain(
    session: AsyncSession, owner_id: Optional[UUID] = None
) -> int:
    stmt = select(func.count(Company.id)).where(Company.domain.is_(None))
    if owner_id is not None:
        stmt = stmt.where(Company.owner_id == owner_id)
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def count_all(session: AsyncSession, owner_id: Optional[UUID] = None) -> int:
    stmt = select(func.count(Company.id))
    if owner_id is not None:
        stmt = stmt.where(Company.owner_id == owner_id)
    result = await session.execute(stmt)
    return int(result.scalar_one())
