"""Operational entry points, called by the CLI or an external scheduler.

Every function takes an optional ``session_factory`` so callers (and tests)
can point it at a specific engine; the default is the lazily-built engine
from DATABASE_URL.
"""
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.connection import get_db, get_session_factory
from db.models import ReviewEntry
from db.repositories import contacts as contacts_repo
from db.repositories import deals as deals_repo
from db.repositories import reviews as reviews_repo
from pipeline_config import ReconcileSettings
from resolution.contacts import backfill_contact_company
from resolution.errors import ReconcileError
from resolution.linker import LinkResult, link_deal
from resolution.orchestrator import BatchOrchestrator, RunScope
from resolution.run_log import RunLog
from schemas.run import RunSummary

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


async def run_full_backfill(
    owner_filter: Optional[UUID] = None,
    *,
    session_factory: Optional[SessionFactory] = None,
    settings: Optional[ReconcileSettings] = None,
    run_log: Optional[RunLog] = None,
) -> RunSummary:
    """Resolve every unresolved deal, optionally for a single owner."""
    orchestrator = BatchOrchestrator(
        session_factory or get_session_factory(), settings=settings, run_log=run_log
    )
    return await orchestrator.run(RunScope(owner_id=owner_filter))


async def run_incremental(
    since: datetime,
    owner_filter: Optional[UUID] = None,
    *,
    session_factory: Optional[SessionFactory] = None,
    settings: Optional[ReconcileSettings] = None,
    run_log: Optional[RunLog] = None,
) -> RunSummary:
    """Resolve unresolved deals created or updated at or after ``since``."""
    orchestrator = BatchOrchestrator(
        session_factory or get_session_factory(), settings=settings, run_log=run_log
    )
    return await orchestrator.run(RunScope(owner_id=owner_filter, since=since))


async def get_unresolved_count(
    owner_filter: Optional[UUID] = None,
    *,
    session_factory: Optional[SessionFactory] = None,
) -> int:
    async with get_db(session_factory) as session:
        return await deals_repo.count_unresolved(session, owner_id=owner_filter)


async def get_review_queue(
    status_filter: Optional[str] = "pending",
    owner_filter: Optional[UUID] = None,
    *,
    latest_per_deal: bool = False,
    session_factory: Optional[SessionFactory] = None,
) -> list[ReviewEntry]:
    """List review entries newest first.

    Triage consumers should pass ``latest_per_deal=True``: a deal that failed
    on several runs has one entry per run and only the newest matters.
    """
    async with get_db(session_factory) as session:
        return await reviews_repo.list_entries(
            session,
            status=status_filter,
            owner_id=owner_filter,
            latest_per_deal=latest_per_deal,
        )


async def resolve_review(
    review_id: UUID,
    company_id: Optional[UUID] = None,
    contact_id: Optional[UUID] = None,
    *,
    resolved_by: Optional[UUID] = None,
    notes: Optional[str] = None,
    session_factory: Optional[SessionFactory] = None,
) -> LinkResult:
    """Apply a reviewer's decision and mark the entry resolved.

    Links are filled only where the deal has none. Runs outside bulk mode, so
    downstream side-effect listeners fire as for any live edit.
    """
    async with get_db(session_factory) as session:
        entry = await reviews_repo.get_by_id(session, review_id)
        if entry is None:
            raise ReconcileError("Review entry not found", {"review_id": str(review_id)})
        if entry.status != "pending":
            raise ReconcileError(
                "Review entry is not pending",
                {"review_id": str(review_id), "status": entry.status},
            )
        result = await link_deal(session, entry.deal_id, company_id, contact_id)
        await reviews_repo.mark_resolved(session, entry, resolved_by=resolved_by, notes=notes)
        logger.info(
            "Resolved review %s for deal %s (company_linked=%s, contact_linked=%s)",
            review_id, entry.deal_id, result.company_linked, result.contact_linked,
        )
        return result


async def archive_review(
    review_id: UUID,
    *,
    notes: Optional[str] = None,
    session_factory: Optional[SessionFactory] = None,
) -> ReviewEntry:
    async with get_db(session_factory) as session:
        entry = await reviews_repo.get_by_id(session, review_id)
        if entry is None:
            raise ReconcileError("Review entry not found", {"review_id": str(review_id)})
        if entry.status != "pending":
            raise ReconcileError(
                "Review entry is not pending",
                {"review_id": str(review_id), "status": entry.status},
            )
        entry = await reviews_repo.mark_archived(session, entry, notes=notes)
        logger.info("Archived review %s for deal %s", review_id, entry.deal_id)
        return entry


async def backfill_contact_companies(
    owner_filter: Optional[UUID] = None,
    *,
    batch_size: int = 200,
    session_factory: Optional[SessionFactory] = None,
) -> int:
    """Attach companies to contacts that lack one, where the domain is unambiguous.

    Separate from the pipeline; idempotent. Returns the number of contacts
    updated.
    """
    updated = 0
    async with get_db(session_factory) as session:
        after_id: Optional[UUID] = None
        while True:
            contacts = await contacts_repo.get_without_company(
                session, owner_id=owner_filter, after_id=after_id, limit=batch_size
            )
            if not contacts:
                break
            for contact in contacts:
                if await backfill_contact_company(session, contact) is not None:
                    updated += 1
            after_id = contacts[-1].id
    logger.info("Backfilled company on %d contacts", updated)
    return updated
