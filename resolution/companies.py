"""Company resolution: find the canonical company for a deal, or create it."""
import logging
from dataclasses import dataclass
from typing import Literal, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Company
from db.repositories import companies as companies_repo
from resolution.domain import company_name_from_domain
from resolution.errors import ConflictError

logger = logging.getLogger(__name__)

DomainScope = Literal["owner", "global"]


@dataclass(frozen=True)
class CompanyResolution:
    company_id: Optional[UUID]
    created: bool = False
    matched_by: Optional[str] = None


async def find_company(
    session: AsyncSession,
    owner_id: UUID,
    domain: Optional[str] = None,
    name: Optional[str] = None,
    *,
    scope: DomainScope = "owner",
) -> Optional[Company]:
    """Look up an existing company without creating one.

    Domain match first; the exact-name fallback is rejected when the named
    company already carries a different domain.
    """
    if domain:
        company = await companies_repo.get_by_domain(
            session, domain, owner_id=owner_id if scope == "owner" else None
        )
        if company is not None:
            return company
    if name and name.strip():
        company = await companies_repo.get_by_name(session, name, owner_id)
        if company is not None and (
            domain is None or company.domain is None or company.domain == domain
        ):
            return company
    return None


def _display_name(name: Optional[str], domain: Optional[str]) -> Optional[str]:
    if name and name.strip():
        return name.strip()
    if domain:
        return company_name_from_domain(domain)
    return None


async def resolve_company(
    session: AsyncSession,
    owner_id: UUID,
    domain: Optional[str] = None,
    name: Optional[str] = None,
    *,
    scope: DomainScope = "owner",
    deal_id: Optional[UUID] = None,
) -> CompanyResolution:
    """Return the company for (domain, name), creating it when nothing matches.

    Returns CompanyResolution(None) when there is neither a domain nor a name.
    Raises ConflictError when the insert collides with a row that a re-query
    still cannot find.
    """
    existing = await find_company(session, owner_id, domain, name, scope=scope)
    if existing is not None:
        matched_by = "domain" if domain and existing.domain == domain else "name"
        return CompanyResolution(existing.id, matched_by=matched_by)

    display_name = _display_name(name, domain)
    if display_name is None:
        return CompanyResolution(None)

    try:
        async with session.begin_nested():
            company = await companies_repo.create(
                session, name=display_name, owner_id=owner_id, domain=domain
            )
    except IntegrityError as exc:
        logger.warning(
            "Company insert conflicted for deal %s (domain=%s, name=%r); re-querying",
            deal_id, domain, display_name,
        )
        existing = await find_company(session, owner_id, domain, name, scope=scope)
        if existing is None:
            raise ConflictError(
                "Company insert conflicted but no matching company was found",
                {"deal_id": str(deal_id), "domain": domain, "name": display_name},
            ) from exc
        return CompanyResolution(existing.id, matched_by="conflict")

    logger.debug("Created company %s (%s) for deal %s", company.id, domain, deal_id)
    return CompanyResolution(company.id, created=True, matched_by="created")
