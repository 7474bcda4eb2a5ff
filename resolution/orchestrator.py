"""
Batch orchestrator: drives the resolution pipeline over the deal backlog.

Phases run in order, each inside its own checkpoint:

    validate_prerequisites -> analyze -> create_companies -> create_contacts
    -> link_deals -> populate_derived_relationships -> validate_and_report

A phase commits when it finishes. An unhandled error rolls that phase back
and aborts the run with PhaseError; phases that already finished stay
committed. Each deal is processed inside a SAVEPOINT, so a record-level
failure rolls back that deal only and routes it to the review queue.

In dry-run mode the run shares one transaction, phases become SAVEPOINTs and
everything is rolled back at the end.
"""
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import DataError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.models import Company, Contact, Deal, DealStakeholder, ReviewEntry
from db.repositories import companies as companies_repo
from db.repositories import contacts as contacts_repo
from db.repositories import deals as deals_repo
from db.repositories import stakeholders as stakeholders_repo
from db.side_effects import bulk_mode, suppressed_count
from pipeline_config import ReconcileSettings
from resolution.companies import find_company, resolve_company
from resolution.contacts import resolve_contact
from resolution.domain import extract_domain, is_valid_email, normalize_email
from resolution.errors import ConflictError, PhaseError, ReconcileError, ValidationError
from resolution.linker import link_deal
from resolution.review_queue import (
    ENTITY_CREATION_FAILED,
    INVALID_EMAIL,
    NO_EMAIL,
    ReviewRouter,
)
from resolution.run_log import PhaseTimer, RunLog
from schemas.deal import DealFields
from schemas.run import DataQualityCheck, RunSummary

logger = logging.getLogger(__name__)

# Errors that fail a single deal without failing its phase.
RECORD_ERRORS = (ConflictError, ValidationError, IntegrityError, DataError)

LOW_COVERAGE_WARNING = "low_resolution_coverage"


class Phase(str, Enum):
    VALIDATE_PREREQUISITES = "validate_prerequisites"
    ANALYZE = "analyze"
    CREATE_COMPANIES = "create_companies"
    CREATE_CONTACTS = "create_contacts"
    LINK_DEALS = "link_deals"
    POPULATE_DERIVED_RELATIONSHIPS = "populate_derived_relationships"
    VALIDATE_AND_REPORT = "validate_and_report"
    COMPLETED = "completed"


# Phases that write entities or links; side-effect listeners are suspended.
BULK_PHASES = frozenset({
    Phase.CREATE_COMPANIES,
    Phase.CREATE_CONTACTS,
    Phase.LINK_DEALS,
    Phase.POPULATE_DERIVED_RELATIONSHIPS,
})


@dataclass(frozen=True)
class RunScope:
    owner_id: Optional[uuid.UUID] = None
    since: Optional[datetime] = None


PhaseBody = Callable[[AsyncSession, PhaseTimer], Awaitable[None]]


class BatchOrchestrator:
    """One instance per run. The run log and review ledger are never shared."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[ReconcileSettings] = None,
        run_log: Optional[RunLog] = None,
        run_id: Optional[uuid.UUID] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or ReconcileSettings.from_env()
        self.run_id = run_id or uuid.uuid4()
        self.run_log = run_log or RunLog(self.run_id)
        if self.run_log.run_id is None:
            self.run_log.run_id = self.run_id
        self.router = ReviewRouter(self.run_id)
        self.scope = RunScope()
        self.summary: Optional[RunSummary] = None
        # deal id -> note explaining why an earlier phase could not create its entities
        self._record_failures: dict[uuid.UUID, str] = {}
        self._shared_session: Optional[AsyncSession] = None
        self._committed_queue: dict[uuid.UUID, str] = {}

    # ------------------------------------------------------------------
    # Run driver
    # ------------------------------------------------------------------

    async def run(self, scope: Optional[RunScope] = None) -> RunSummary:
        """Execute every phase. Raises PhaseError when a phase fails."""
        self.scope = scope or RunScope()
        self.summary = RunSummary(
            run_id=self.run_id,
            owner_filter=self.scope.owner_id,
            since=self.scope.since,
            dry_run=self.settings.dry_run,
            coverage_threshold=self.settings.coverage_threshold,
            started_at=datetime.now(timezone.utc),
        )
        logger.info(
            "Starting reconciliation run %s (owner=%s, since=%s, dry_run=%s)",
            self.run_id, self.scope.owner_id, self.scope.since, self.settings.dry_run,
        )

        try:
            if self.settings.dry_run:
                async with self.session_factory() as session:
                    self._shared_session = session
                    try:
                        await self._run_phases()
                    finally:
                        await session.rollback()
                        self._shared_session = None
                        logger.info("Dry run %s rolled back", self.run_id)
            else:
                await self._run_phases()
        except PhaseError:
            self.summary.status = "failed"
            raise
        finally:
            self.summary.finished_at = datetime.now(timezone.utc)
            self.summary.reviews_queued = self.router.count
            self.summary.phases = list(self.run_log.records)

        self.run_log.record(Phase.COMPLETED.value, "run", "completed", self.summary.deals_linked)
        self.summary.phases = list(self.run_log.records)
        logger.info(
            "Run %s completed: %d companies, %d contacts, %d deals linked, %d reviews",
            self.run_id,
            self.summary.companies_created,
            self.summary.contacts_created,
            self.summary.deals_linked,
            self.summary.reviews_queued,
        )
        return self.summary

    async def _run_phases(self) -> None:
        await self._run_phase(
            Phase.VALIDATE_PREREQUISITES, "check settings and tables", self._validate_prerequisites
        )
        await self._run_phase(Phase.ANALYZE, "snapshot resolution stats", self._analyze)
        await self._run_phase(
            Phase.CREATE_COMPANIES, "resolve companies from deals", self._create_companies
        )
        await self._run_phase(
            Phase.CREATE_CONTACTS, "resolve contacts from deals", self._create_contacts
        )
        await self._run_phase(Phase.LINK_DEALS, "link deals and route reviews", self._link_deals)
        await self._run_phase(
            Phase.POPULATE_DERIVED_RELATIONSHIPS,
            "derive companies and stakeholders",
            self._populate_derived_relationships,
        )
        await self._run_phase(
            Phase.VALIDATE_AND_REPORT, "coverage and data quality", self._validate_and_report
        )

    @asynccontextmanager
    async def _checkpoint(self) -> AsyncIterator[AsyncSession]:
        if self._shared_session is not None:
            async with self._shared_session.begin_nested():
                yield self._shared_session
            return

        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except BaseException:
                await session.rollback()
                raise

    async def _run_phase(self, phase: Phase, operation: str, body: PhaseBody) -> None:
        self._committed_queue = self.router.snapshot()
        failures = dict(self._record_failures)
        with self.run_log.timed(phase.value, operation) as timer:
            try:
                async with self._checkpoint() as session:
                    before = suppressed_count(session)
                    with bulk_mode(session, enabled=phase in BULK_PHASES):
                        await body(session, timer)
                    self.summary.side_effects_suppressed += suppressed_count(session) - before
            except Exception as exc:
                # The phase's uncommitted review entries are gone with its session.
                self.router.restore(self._committed_queue)
                self._record_failures = failures
                if isinstance(exc, PhaseError):
                    raise
                raise PhaseError(
                    phase.value, operation, exc, {"run_id": str(self.run_id)}
                ) from exc

    async def _end_of_chunk(self, session: AsyncSession) -> None:
        if self.settings.chunk_commit and self._shared_session is None:
            await session.commit()
            self._committed_queue = self.router.snapshot()

    def _chunks(self, session: AsyncSession, needs: str):
        return deals_repo.iter_unresolved(
            session,
            needs=needs,
            owner_id=self.scope.owner_id,
            since=self.scope.since,
            batch_size=self.settings.batch_size,
        )

    async def _record_failed(
        self, session: AsyncSession, phase: Phase, deal: DealFields, exc: Exception
    ) -> None:
        self.summary.record_errors += 1
        note = f"{phase.value}: {exc}"
        logger.warning("Deal %s failed in phase %s: %s", deal.id, phase.value, exc)
        if phase == Phase.LINK_DEALS:
            await self.router.route(session, deal, ENTITY_CREATION_FAILED, notes=note)
        else:
            # link_deals decides the review reason once it has seen the whole deal.
            self._record_failures.setdefault(deal.id, note)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _validate_prerequisites(self, session: AsyncSession, timer: PhaseTimer) -> None:
        problems = self.settings.validate()
        if problems:
            raise ReconcileError("Invalid reconciliation settings", {"problems": problems})
        for model in (Company, Contact, Deal, DealStakeholder, ReviewEntry):
            await session.execute(select(model.id).limit(1))
            timer.count += 1

    async def _analyze(self, session: AsyncSession, timer: PhaseTimer) -> None:
        stats = await deals_repo.resolution_stats(session, self.scope.owner_id)
        self.summary.before = stats
        timer.count = await deals_repo.count_unresolved(
            session, owner_id=self.scope.owner_id, since=self.scope.since
        )
        logger.info(
            "Backlog: %d unresolved deals (of %d); contact coverage %s%%",
            timer.count, stats.total_deals, stats.contact_coverage_pct,
        )

    async def _create_companies(self, session: AsyncSession, timer: PhaseTimer) -> None:
        async for chunk in self._chunks(session, "company"):
            for deal in chunk:
                domain = extract_domain(deal.contact_email)
                if domain is None and not (deal.company and deal.company.strip()):
                    continue
                try:
                    async with session.begin_nested():
                        result = await resolve_company(
                            session,
                            deal.owner_id,
                            domain,
                            deal.company,
                            scope=self.settings.domain_scope,
                            deal_id=deal.id,
                        )
                except RECORD_ERRORS as exc:
                    await self._record_failed(session, Phase.CREATE_COMPANIES, deal, exc)
                    continue
                if result.created:
                    timer.count += 1
                    self.summary.companies_created += 1
            await self._end_of_chunk(session)

    async def _company_for(self, session: AsyncSession, deal: DealFields) -> Optional[uuid.UUID]:
        if deal.company_id is not None:
            return deal.company_id
        company = await find_company(
            session,
            deal.owner_id,
            extract_domain(deal.contact_email),
            deal.company,
            scope=self.settings.domain_scope,
        )
        return company.id if company is not None else None

    async def _create_contacts(self, session: AsyncSession, timer: PhaseTimer) -> None:
        async for chunk in self._chunks(session, "contact"):
            for deal in chunk:
                try:
                    async with session.begin_nested():
                        company_id = await self._company_for(session, deal)
                        result = await resolve_contact(
                            session,
                            deal.owner_id,
                            company_id,
                            deal.contact_name,
                            deal.contact_email,
                            deal_id=deal.id,
                        )
                except RECORD_ERRORS as exc:
                    await self._record_failed(session, Phase.CREATE_CONTACTS, deal, exc)
                    continue
                if result.created:
                    timer.count += 1
                    self.summary.contacts_created += 1
            await self._end_of_chunk(session)

    async def _link_deals(self, session: AsyncSession, timer: PhaseTimer) -> None:
        async for chunk in self._chunks(session, "any"):
            for deal in chunk:
                try:
                    async with session.begin_nested():
                        company_id, contact_id = await self._link_one(session, deal, timer)
                except RECORD_ERRORS as exc:
                    await self._record_failed(session, Phase.LINK_DEALS, deal, exc)
                    continue
                await self._route_if_unresolved(session, deal, company_id, contact_id)
            await self._end_of_chunk(session)

    async def _link_one(
        self, session: AsyncSession, deal: DealFields, timer: PhaseTimer
    ) -> tuple[Optional[uuid.UUID], Optional[uuid.UUID]]:
        company_id = await self._company_for(session, deal)

        contact_id = deal.primary_contact_id
        contact = None
        if contact_id is None and is_valid_email(deal.contact_email):
            contact = await contacts_repo.get_by_email(
                session, normalize_email(deal.contact_email)
            )
            if contact is not None:
                contact_id = contact.id
        elif contact_id is not None and company_id is None:
            contact = await contacts_repo.get_by_id(session, contact_id)
        if company_id is None and contact is not None:
            company_id = contact.company_id

        result = await link_deal(
            session,
            deal.id,
            company_id if deal.company_id is None else None,
            contact_id if deal.primary_contact_id is None else None,
        )
        if result.company_linked:
            self.summary.company_links += 1
        if result.contact_linked:
            self.summary.contact_links += 1
        if result.any:
            timer.count += 1
            self.summary.deals_linked += 1
        return company_id, contact_id

    async def _route_if_unresolved(
        self,
        session: AsyncSession,
        deal: DealFields,
        company_id: Optional[uuid.UUID],
        contact_id: Optional[uuid.UUID],
    ) -> None:
        if company_id is not None and contact_id is not None:
            return

        failure = self._record_failures.get(deal.id)
        email = deal.contact_email
        if contact_id is None and (email is None or not email.strip()):
            reason, notes = NO_EMAIL, "Deal has no contact email"
        elif contact_id is None and not is_valid_email(email):
            reason, notes = INVALID_EMAIL, f"Contact email {email!r} is malformed"
        elif contact_id is None:
            reason, notes = ENTITY_CREATION_FAILED, failure or "Contact could not be resolved"
        elif extract_domain(email) is None and not (deal.company and deal.company.strip()):
            reason, notes = ENTITY_CREATION_FAILED, "No company signal: personal email domain and no company name"
        else:
            reason, notes = ENTITY_CREATION_FAILED, failure or "Company could not be resolved"

        await self.router.route(
            session,
            deal,
            reason,
            notes=notes,
            suggested_company_id=company_id,
            suggested_contact_id=contact_id,
        )

    async def _populate_derived_relationships(
        self, session: AsyncSession, timer: PhaseTimer
    ) -> None:
        derived = await deals_repo.link_company_via_contact(
            session, owner_id=self.scope.owner_id, batch_size=self.settings.batch_size
        )
        added = await stakeholders_repo.add_missing_primary(
            session, owner_id=self.scope.owner_id, batch_size=self.settings.batch_size
        )
        self.summary.derived_links += derived
        self.summary.stakeholders_added += added
        timer.count = derived + added

    async def _validate_and_report(self, session: AsyncSession, timer: PhaseTimer) -> None:
        owner_id = self.scope.owner_id
        stats = await deals_repo.resolution_stats(session, owner_id)
        self.summary.after = stats
        self.summary.coverage_pct = stats.contact_coverage_pct
        self.summary.company_coverage_pct = stats.company_coverage_pct

        without_company, without_contact = await deals_repo.count_missing_links(session, owner_id)
        checks = [
            DataQualityCheck(
                check_type="Deals without company relationships",
                count=without_company,
                action_needed="Review deals.company field for missing company_id assignments",
            ),
            DataQualityCheck(
                check_type="Deals without contact relationships",
                count=without_contact,
                action_needed="Review deals.contact_email field for missing primary_contact_id assignments",
            ),
            DataQualityCheck(
                check_type="Companies without domains",
                count=await companies_repo.count_without_domain(session, owner_id),
                action_needed="Consider enrichment for better email matching",
            ),
            DataQualityCheck(
                check_type="Contacts without company relationships",
                count=await contacts_repo.count_without_company(session, owner_id),
                action_needed="Review for potential company matching opportunities",
            ),
        ]
        self.summary.quality_checks = checks
        timer.count = sum(check.count for check in checks)

        coverage = stats.contact_coverage_pct
        if coverage is not None and coverage < self.settings.coverage_threshold:
            self.summary.warnings.append(LOW_COVERAGE_WARNING)
            logger.warning(
                "Contact coverage %.2f%% is below the %.2f%% threshold",
                coverage, self.settings.coverage_threshold,
            )
