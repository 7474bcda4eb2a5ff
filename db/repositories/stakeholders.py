"""Deal stakeholder repository — idempotent primary-contact relationships."""
import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import exists, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Deal, DealStakeholder

logger = logging.getLogger(__name__)


async def _insert_for(session: AsyncSession):
    connection = await session.connection()
    return sqlite_insert if connection.dialect.name == "sqlite" else pg_insert


async def add(
    session: AsyncSession,
    deal_id: UUID,
    contact_id: UUID,
    stakeholder_role: str = "decision_maker",
) -> bool:
    """Add a stakeholder row. Idempotent: returns False if it already existed."""
    insert = await _insert_for(session)
    stmt = (
        insert(DealStakeholder)
        .values(deal_id=deal_id, contact_id=contact_id, stakeholder_role=stakeholder_role)
        .on_conflict_do_nothing(index_elements=["deal_id", "contact_id"])
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def add_missing_primary(
    session: AsyncSession, *, owner_id: Optional[UUID] = None, batch_size: int = 200
) -> int:
    """Add a decision_maker row for every deal whose primary contact has none."""
    missing = ~exists(
        select(DealStakeholder.id)
        .where(DealStakeholder.deal_id == Deal.id)
        .where(DealStakeholder.contact_id == Deal.primary_contact_id)
    )
    added = 0
    last_id: Optional[UUID] = None
    while True:
        stmt = (
            select(Deal.id, Deal.primary_contact_id)
            .where(Deal.primary_contact_id.is_not(None))
            .where(missing)
        )
        if owner_id is not None:
            stmt = stmt.where(Deal.owner_id == owner_id)
        if last_id is not None:
            stmt = stmt.where(Deal.id > last_id)
        rows = (await session.execute(stmt.order_by(Deal.id).limit(batch_size))).all()
        if not rows:
            return added
        for deal_id, contact_id in rows:
            if await add(session, deal_id, contact_id):
                added += 1
        last_id = rows[-1][0]
