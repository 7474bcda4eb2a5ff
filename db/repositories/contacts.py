"""Contact repository — dedup by email and company backfill."""
import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Contact
from db.side_effects import EntityChange, notify

logger = logging.getLogger(__name__)


async def get_by_id(session: AsyncSession, contact_id: UUID) -> Optional[Contact]:
    return await session.get(Contact, contact_id)


async def get_by_email(session: AsyncSession, email: str) -> Optional[Contact]:
    """Return the Contact with this email, or None."""
    result = await session.execute(
        select(Contact).where(Contact.email == email.lower().strip())
    )
    return result.scalar_one_or_none()


async def create(
    session: AsyncSession,
    *,
    email: str,
    first_name: str,
    last_name: str,
    owner_id: UUID,
    company_id: Optional[UUID] = None,
    is_primary: bool = False,
) -> Contact:
    """Insert a Contact. Raises IntegrityError if the email already exists."""
    contact = Contact(
        email=email.lower().strip(),
        first_name=first_name,
        last_name=last_name,
        owner_id=owner_id,
        company_id=company_id,
        is_primary=is_primary,
    )
    session.add(contact)
    await session.flush()
    notify(session, EntityChange("contact", "created", contact.id, owner_id))
    return contact


async def set_company_if_missing(
    session: AsyncSession, contact_id: UUID, company_id: UUID
) -> bool:
    """Attach a company to a contact that has none. Returns True if a row changed."""
    result = await session.execute(
        update(Contact)
        .where(Contact.id == contact_id)
        .where(Contact.company_id.is_(None))
        .values(company_id=company_id, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    changed = result.rowcount == 1
    if changed:
        notify(session, EntityChange("contact", "updated", contact_id))
    return changed


async def get_without_company(
    session: AsyncSession,
    *,
    owner_id: Optional[UUID] = None,
    after_id: Optional[UUID] = None,
    limit: int = 200,
) -> list[Contact]:
    """Return a keyset-paginated page of contacts with no company."""
    stmt = select(Contact).where(Contact.company_id.is_(None))
    if owner_id is not None:
        stmt = stmt.where(Contact.owner_id == owner_id)
    if after_id is not None:
        stmt = stmt.where(Contact.id > after_id)
    result = await session.execute(stmt.order_by(Contact.id).limit(limit))
    return list(result.scalars().all())


async def count_without_company(
    session: AsyncSession, owner_id: Optional[UUID] = None
) -> int:
    stmt = select(func.count(Contact.id)).where(Contact.company_id.is_(None))
    if owner_id is not None:
        stmt = stmt.where(Contact.owner_id == owner_id)
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def count_all(session: AsyncSession, owner_id: Optional[UUID] = None) -> int:
    stmt = select(func.count(Contact.id))
    if owner_id is not None:
        stmt = stmt.where(Contact.owner_id == owner_id)
    result = await session.execute(stmt)
    return int(result.scalar_one())
