"""Run reporting schemas: phase records, statistics and the final summary."""
from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class PhaseRecord(BaseModel):
    phase: str
    operation: str
    status: Literal["started", "completed", "failed", "skipped"]
    count: int = 0
    duration_ms: float = 0.0
    error: Optional[str] = None
    recorded_at: datetime


class ResolutionStats(BaseModel):
    total_deals: int = 0
    deals_with_company_text: int = 0
    deals_with_contact_email: int = 0
    deals_with_company_fk: int = 0
    deals_with_contact_fk: int = 0
    total_companies: int = 0
    total_contacts: int = 0

    @property
    def company_coverage_pct(self) -> Optional[float]:
        if self.deals_with_company_text == 0:
            return None
        return round(self.deals_with_company_fk / self.deals_with_company_text * 100, 2)

    @property
    def contact_coverage_pct(self) -> Optional[float]:
        if self.deals_with_contact_email == 0:
            return None
        return round(self.deals_with_contact_fk / self.deals_with_contact_email * 100, 2)


class DataQualityCheck(BaseModel):
    check_type: str
    count: int
    action_needed: str


class RunSummary(BaseModel):
    run_id: UUID
    owner_filter: Optional[UUID] = None
    since: Optional[datetime] = None
    dry_run: bool = False
    status: Literal["completed", "failed"] = "completed"
    started_at: datetime
    finished_at: Optional[datetime] = None

    companies_created: int = 0
    contacts_created: int = 0
    company_links: int = 0
    contact_links: int = 0
    deals_linked: int = 0
    derived_links: int = 0
    stakeholders_added: int = 0
    reviews_queued: int = 0
    record_errors: int = 0
    side_effects_suppressed: int = 0

    coverage_pct: Optional[float] = None
    company_coverage_pct: Optional[float] = None
    coverage_threshold: float = 80.0
    warnings: List[str] = Field(default_factory=list)

    before: Optional[ResolutionStats] = None
    after: Optional[ResolutionStats] = None
    quality_checks: List[DataQualityCheck] = Field(default_factory=list)
    phases: List[PhaseRecord] = Field(default_factory=list)
