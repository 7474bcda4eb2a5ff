"""Review queue: routes unresolved deals to a human, once per deal per run."""
import logging
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ReviewEntry
from db.repositories import reviews as reviews_repo
from schemas.deal import DealFields

logger = logging.getLogger(__name__)

NO_EMAIL = "no_email"
INVALID_EMAIL = "invalid_email"
ENTITY_CREATION_FAILED = "entity_creation_failed"
# Reserved for a future non-exact matcher; the exact-match resolvers never emit it.
FUZZY_MATCH_UNCERTAINTY = "fuzzy_match_uncertainty"


async def enqueue(
    session: AsyncSession,
    deal: DealFields,
    reason: str,
    *,
    notes: Optional[str] = None,
    suggested_company_id: Optional[UUID] = None,
    suggested_contact_id: Optional[UUID] = None,
    run_id: Optional[UUID] = None,
) -> ReviewEntry:
    entry = await reviews_repo.add(
        session,
        deal,
        reason,
        notes=notes,
        suggested_company_id=suggested_company_id,
        suggested_contact_id=suggested_contact_id,
        run_id=run_id,
    )
    logger.info("Queued deal %s for review (%s)", deal.id, reason)
    return entry


class ReviewRouter:
    """Run-scoped front of the queue: a deal is enqueued at most once per run.

    Entries from earlier runs are left alone; each run that fails to resolve a
    deal adds its own entry.
    """

    def __init__(self, run_id: UUID):
        self.run_id = run_id
        self._queued: dict[UUID, str] = {}

    def __contains__(self, deal_id: UUID) -> bool:
        return deal_id in self._queued

    @property
    def count(self) -> int:
        return len(self._queued)

    def reason_for(self, deal_id: UUID) -> Optional[str]:
        return self._queued.get(deal_id)

    async def route(
        self,
        session: AsyncSession,
        deal: DealFields,
        reason: str,
        *,
        notes: Optional[str] = None,
        suggested_company_id: Optional[UUID] = None,
        suggested_contact_id: Optional[UUID] = None,
    ) -> Optional[ReviewEntry]:
        if deal.id in self._queued:
            return None
        entry = await enqueue(
            session,
            deal,
            reason,
            notes=notes,
            suggested_company_id=suggested_company_id,
            suggested_contact_id=suggested_contact_id,
            run_id=self.run_id,
        )
        self._queued[deal.id] = reason
        return entry

    def snapshot(self) -> dict[UUID, str]:
        return dict(self._queued)

    def restore(self, queued: dict[UUID, str]) -> None:
        """Reset the ledger to entries that are still in the database."""
        self._queued = dict(queued)
