"""Contact resolution and the separately-invoked company backfill for contacts."""
import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db.repositories import companies as companies_repo
from db.repositories import contacts as contacts_repo
from resolution.domain import (
    extract_domain,
    is_valid_email,
    normalize_email,
    split_display_name,
)
from resolution.errors import ConflictError, ValidationError

logger = logging.getLogger(__name__)

NO_EMAIL = "no_email"
INVALID_EMAIL = "invalid_email"


@dataclass(frozen=True)
class ContactResolution:
    contact_id: Optional[UUID]
    created: bool = False
    reason: Optional[str] = None


def validate_email(raw_email: Optional[str]) -> str:
    """Return the normalized email or raise ValidationError with a review reason."""
    if raw_email is None or not raw_email.strip():
        raise ValidationError(NO_EMAIL, "Deal has no contact email")
    if not is_valid_email(raw_email):
        raise ValidationError(
            INVALID_EMAIL, "Contact email is malformed", {"email": raw_email}
        )
    return normalize_email(raw_email)


async def resolve_contact(
    session: AsyncSession,
    owner_id: UUID,
    company_id: Optional[UUID],
    contact_name: Optional[str],
    contact_email: Optional[str],
    *,
    deal_id: Optional[UUID] = None,
) -> ContactResolution:
    """Return the contact for this email, creating it when it does not exist.

    An unusable email yields ContactResolution(None, reason=...) rather than
    an exception. Raises ConflictError when the insert collides with a row
    that a re-query cannot find.
    """
    try:
        email = validate_email(contact_email)
    except ValidationError as exc:
        logger.debug("Deal %s: %s", deal_id, exc)
        return ContactResolution(None, reason=exc.reason)

    existing = await contacts_repo.get_by_email(session, email)
    if existing is not None:
        return ContactResolution(existing.id)

    first_name, last_name = split_display_name(contact_name, email)
    is_primary = (
        company_id is not None
        and await companies_repo.count_contacts(session, company_id) == 0
    )

    try:
        async with session.begin_nested():
            contact = await contacts_repo.create(
                session,
                email=email,
                first_name=first_name,
                last_name=last_name,
                owner_id=owner_id,
                company_id=company_id,
                is_primary=is_primary,
            )
    except IntegrityError as exc:
        logger.warning(
            "Contact insert conflicted for deal %s (email=%s); re-querying", deal_id, email
        )
        existing = await contacts_repo.get_by_email(session, email)
        if existing is None:
            raise ConflictError(
                "Contact insert conflicted but no matching contact was found",
                {"deal_id": str(deal_id), "email": email},
            ) from exc
        return ContactResolution(existing.id)

    return ContactResolution(contact.id, created=True)


async def backfill_contact_company(session: AsyncSession, contact) -> Optional[UUID]:
    """Attach a company to a contact that has none, when its domain is unambiguous.

    Only fills an empty link, and only when exactly one company of the
    contact's owner carries the email domain. Returns the company id written.
    """
    if contact.company_id is not None:
        return None
    domain = extract_domain(contact.email)
    if domain is None:
        return None
    candidates = await companies_repo.get_owned_by_domain(session, domain, contact.owner_id)
    if len(candidates) != 1:
        return None
    company_id = candidates[0].id
    if await contacts_repo.set_company_if_missing(session, contact.id, company_id):
        return company_id
    return None
