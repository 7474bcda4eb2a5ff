"""Deal linking with a fill-null-only write policy."""
import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from db.repositories import deals as deals_repo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinkResult:
    company_linked: bool = False
    contact_linked: bool = False

    @property
    def any(self) -> bool:
        return self.company_linked or self.contact_linked


async def link_deal(
    session: AsyncSession,
    deal_id: UUID,
    company_id: Optional[UUID],
    contact_id: Optional[UUID],
) -> LinkResult:
    """Write resolved references onto a deal where they are still NULL.

    Existing references are never overwritten, whether set by an earlier run
    or by the application.
    """
    if company_id is None and contact_id is None:
        return LinkResult()

    company_linked = False
    contact_linked = False
    if company_id is not None:
        company_linked = await deals_repo.fill_company(session, deal_id, company_id)
    if contact_id is not None:
        contact_linked = await deals_repo.fill_primary_contact(session, deal_id, contact_id)

    if company_linked or contact_linked:
        logger.debug(
            "Linked deal %s (company=%s, contact=%s)",
            deal_id,
            company_id if company_linked else "-",
            contact_id if contact_linked else "-",
        )
    return LinkResult(company_linked, contact_linked)
