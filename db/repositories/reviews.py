"""Review queue repository — append-only entries plus the human status marks."""
import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import REVIEW_REASONS, REVIEW_STATUSES, Deal, ReviewEntry
from schemas.deal import DealFields

logger = logging.getLogger(__name__)


async def add(
    session: AsyncSession,
    deal: DealFields,
    reason: str,
    *,
    notes: Optional[str] = None,
    suggested_company_id: Optional[UUID] = None,
    suggested_contact_id: Optional[UUID] = None,
    run_id: Optional[UUID] = None,
) -> ReviewEntry:
    """Append a pending review entry carrying a copy of the deal's free text."""
    if reason not in REVIEW_REASONS:
        raise ValueError(f"Unknown review reason {reason!r}")
    entry = ReviewEntry(
        deal_id=deal.id,
        reason=reason,
        status="pending",
        original_company=deal.company,
        original_contact_name=deal.contact_name,
        original_contact_email=deal.contact_email,
        suggested_company_id=suggested_company_id,
        suggested_contact_id=suggested_contact_id,
        notes=notes,
        run_id=run_id,
        created_at=datetime.now(timezone.utc),
    )
    session.add(entry)
    await session.flush()
    return entry


async def get_by_id(session: AsyncSession, review_id: UUID) -> Optional[ReviewEntry]:
    return await session.get(ReviewEntry, review_id)


async def list_entries(
    session: AsyncSession,
    *,
    status: Optional[str] = None,
    owner_id: Optional[UUID] = None,
    deal_id: Optional[UUID] = None,
    latest_per_deal: bool = False,
) -> list[ReviewEntry]:
    """Return entries newest first, optionally keeping only the latest per deal.

    With ``latest_per_deal`` the newest entry of each deal is picked across all
    statuses before ``status`` is applied, so a deal whose latest entry was
    resolved or archived does not surface an older pending one.
    """
    if status is not None and status not in REVIEW_STATUSES:
        raise ValueError(f"Unknown review status {status!r}")
    stmt = select(ReviewEntry)
    if deal_id is not None:
        stmt = stmt.where(ReviewEntry.deal_id == deal_id)
    if owner_id is not None:
        stmt = stmt.join(Deal, Deal.id == ReviewEntry.deal_id).where(Deal.owner_id == owner_id)
    if latest_per_deal:
        newest = (
            select(
                ReviewEntry.id,
                func.row_number()
                .over(
                    partition_by=ReviewEntry.deal_id,
                    order_by=(ReviewEntry.created_at.desc(), ReviewEntry.id),
                )
                .label("rank"),
            )
            .subquery()
        )
        stmt = stmt.join(newest, newest.c.id == ReviewEntry.id).where(newest.c.rank == 1)
    if status is not None:
        stmt = stmt.where(ReviewEntry.status == status)
    result = await session.execute(
        stmt.order_by(ReviewEntry.created_at.desc(), ReviewEntry.id)
    )
    return list(result.scalars().all())


async def count_for_run(session: AsyncSession, run_id: UUID) -> int:
    result = await session.execute(
        select(func.count(ReviewEntry.id)).where(ReviewEntry.run_id == run_id)
    )
    return int(result.scalar_one())


async def mark_resolved(
    session: AsyncSession,
    entry: ReviewEntry,
    *,
    resolved_by: Optional[UUID] = None,
    notes: Optional[str] = None,
) -> ReviewEntry:
    entry.status = "resolved"
    entry.resolved_at = datetime.now(timezone.utc)
    entry.resolved_by = resolved_by
    if notes:
        entry.notes = notes
    await session.flush()
    return entry


async def mark_archived(
    session: AsyncSession, entry: ReviewEntry, *, notes: Optional[str] = None
) -> ReviewEntry:
    entry.status = "archived"
    if notes:
        entry.notes = notes
    await session.flush()
    return entry
