"""Deal snapshot passed through the resolution pipeline."""
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class DealFields(BaseModel):
    """Immutable copy of the columns the engine reads from a deal row."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: UUID
    owner_id: UUID
    company: Optional[str] = None
    contact_name: Optional[str] = None
    contact_email: Optional[str] = None
    company_id: Optional[UUID] = None
    primary_contact_id: Optional[UUID] = None

    @property
    def is_resolved(self) -> bool:
        return self.company_id is not None and self.primary_contact_id is not None
