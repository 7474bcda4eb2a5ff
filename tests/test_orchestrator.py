"""End-to-end tests for the batch orchestrator."""
import uuid

import pytest
from sqlalchemy import select

from db.connection import get_db
from db.models import Company, Contact, Deal, DealStakeholder, ReviewEntry
from db.side_effects import register_listener
import resolution.orchestrator as orchestrator_module
from pipeline_config import ReconcileSettings
from resolution.errors import ConflictError, PhaseError
from resolution.orchestrator import LOW_COVERAGE_WARNING, BatchOrchestrator, Phase, RunScope
from resolution.run_log import RunLog


async def _run(session_factory, settings, scope=None, run_log=None):
    orchestrator = BatchOrchestrator(session_factory, settings=settings, run_log=run_log)
    return await orchestrator.run(scope)


async def _state(session_factory):
    """Everything a rerun must leave untouched."""
    async with get_db(session_factory) as session:
        companies = (await session.execute(select(Company.id, Company.name, Company.domain))).all()
        contacts = (
            await session.execute(
                select(Contact.id, Contact.email, Contact.company_id, Contact.is_primary)
            )
        ).all()
        deals = (
            await session.execute(select(Deal.id, Deal.company_id, Deal.primary_contact_id))
        ).all()
        stakeholders = (
            await session.execute(select(DealStakeholder.deal_id, DealStakeholder.contact_id))
        ).all()
    return tuple(sorted(tuple(row) for row in rows) for rows in (companies, contacts, deals, stakeholders))


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_scenario_a_creates_and_links_company_and_contact(
    session_factory, settings, make_deal, fetch
):
    deal_id = await make_deal("Acme Inc", "Jane Doe", "jane@acme.io")

    summary = await _run(session_factory, settings)

    [company] = await fetch.companies()
    assert (company.name, company.domain) == ("Acme Inc", "acme.io")
    [contact] = await fetch.contacts()
    assert (contact.first_name, contact.last_name, contact.email) == ("Jane", "Doe", "jane@acme.io")
    assert contact.is_primary is True
    assert contact.company_id == company.id

    deal = await fetch.deal(deal_id)
    assert deal.company_id == company.id
    assert deal.primary_contact_id == contact.id

    assert summary.status == "completed"
    assert summary.companies_created == 1
    assert summary.contacts_created == 1
    assert summary.deals_linked == 1
    assert summary.reviews_queued == 0
    assert summary.stakeholders_added == 1
    assert summary.coverage_pct == 100.0
    assert summary.warnings == []
    assert await fetch.reviews() == []


@pytest.mark.asyncio
async def test_scenario_b_invalid_email_is_queued_and_left_unlinked(
    session_factory, settings, make_deal, fetch
):
    deal_id = await make_deal(None, None, "bad-email")

    summary = await _run(session_factory, settings)

    assert await fetch.companies() == []
    assert await fetch.contacts() == []
    deal = await fetch.deal(deal_id)
    assert deal.company_id is None and deal.primary_contact_id is None

    [entry] = await fetch.reviews(deal_id)
    assert entry.reason == "invalid_email"
    assert entry.original_contact_email == "bad-email"
    assert entry.run_id == summary.run_id
    assert summary.reviews_queued == 1


# ---------------------------------------------------------------------------
# Uniqueness and idempotence
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_deals_sharing_a_domain_share_one_company(session_factory, settings, make_deal, fetch):
    first = await make_deal("Acme Inc", "Jane Doe", "jane@acme.io")
    second = await make_deal("ACME INC.", "John Roe", "john@acme.io")

    summary = await _run(session_factory, settings)

    [company] = await fetch.companies()
    assert summary.companies_created == 1
    assert (await fetch.deal(first)).company_id == company.id
    assert (await fetch.deal(second)).company_id == company.id
    primaries = {c.email: c.is_primary for c in await fetch.contacts()}
    assert sum(primaries.values()) == 1


@pytest.mark.asyncio
async def test_same_email_in_different_casing_shares_one_contact(
    session_factory, settings, make_deal, fetch
):
    first = await make_deal("Acme", "Jane Doe", "jane@acme.io")
    second = await make_deal("Acme", "JANE DOE", "JANE@ACME.IO")

    await _run(session_factory, settings)

    [contact] = await fetch.contacts()
    assert (await fetch.deal(first)).primary_contact_id == contact.id
    assert (await fetch.deal(second)).primary_contact_id == contact.id


@pytest.mark.asyncio
async def test_second_run_changes_nothing(session_factory, settings, make_deal):
    await make_deal("Acme Inc", "Jane Doe", "jane@acme.io")
    await make_deal("ACME INC.", "John Roe", "john@acme.io")
    await make_deal("Globex", "Hank Scorpio", "hank@gmail.com")
    await make_deal(None, "Sam", "sam@gmail.com")
    await make_deal("Initech", None, None)
    await make_deal(None, None, "bad-email")

    await _run(session_factory, settings)
    after_first = await _state(session_factory)
    second = await _run(session_factory, settings)

    assert await _state(session_factory) == after_first
    assert second.companies_created == 0
    assert second.contacts_created == 0
    assert second.deals_linked == 0
    assert second.stakeholders_added == 0


@pytest.mark.asyncio
async def test_externally_set_company_is_kept(
    session_factory, settings, make_deal, make_company, fetch
):
    chosen_by_app = await make_company("Acme Holdings")
    deal_id = await make_deal("Acme Inc", "Jane Doe", "jane@acme.io", company_id=chosen_by_app)

    await _run(session_factory, settings)

    deal = await fetch.deal(deal_id)
    assert deal.company_id == chosen_by_app
    assert deal.primary_contact_id is not None


# ---------------------------------------------------------------------------
# Review routing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_every_unusable_email_is_queued_exactly_once_per_run(
    session_factory, settings, make_deal
):
    expected = {
        await make_deal("Acme", "Jane", None): "no_email",
        await make_deal("Acme", "Jane", "  "): "no_email",
        await make_deal("Acme", "Jane", "bad-email"): "invalid_email",
        await make_deal(None, None, "jane@acme"): "invalid_email",
        await make_deal(None, "Joe", "joe@@acme.io"): "invalid_email",
    }

    first = await _run(session_factory, settings)
    second = await _run(session_factory, settings)

    for run in (first, second):
        async with get_db(session_factory) as session:
            result = await session.execute(
                select(ReviewEntry.deal_id, ReviewEntry.reason).where(ReviewEntry.run_id == run.run_id)
            )
            routed = result.all()
        assert sorted(deal_id for deal_id, _ in routed) == sorted(expected)
        assert dict(routed) == expected
        assert run.reviews_queued == len(expected)


@pytest.mark.asyncio
async def test_personal_email_without_company_name_is_queued(
    session_factory, settings, make_deal, fetch
):
    deal_id = await make_deal(None, "Sam Smith", "sam@gmail.com")

    await _run(session_factory, settings)

    deal = await fetch.deal(deal_id)
    [contact] = await fetch.contacts()
    assert deal.primary_contact_id == contact.id
    assert deal.company_id is None
    [entry] = await fetch.reviews(deal_id)
    assert entry.reason == "entity_creation_failed"
    assert entry.suggested_contact_id == contact.id
    assert "No company signal" in entry.notes


@pytest.mark.asyncio
async def test_personal_email_with_company_name_links_by_name(
    session_factory, settings, make_deal, fetch
):
    deal_id = await make_deal("Globex", "Hank Scorpio", "hank@gmail.com")

    await _run(session_factory, settings)

    [company] = await fetch.companies()
    assert company.domain is None
    deal = await fetch.deal(deal_id)
    assert deal.company_id == company.id
    assert deal.primary_contact_id is not None
    assert await fetch.reviews() == []


@pytest.mark.asyncio
async def test_record_conflict_is_isolated_and_queued(
    session_factory, settings, make_deal, fetch, monkeypatch
):
    failing = await make_deal("Acme", "Jane Doe", "jane@acme.io")
    healthy = await make_deal("Globex", "Hank Scorpio", "hank@globex.com")
    real_resolve = orchestrator_module.resolve_company

    async def conflict_for_acme(session, owner_id, domain=None, name=None, **kwargs):
        if domain == "acme.io":
            raise ConflictError("Company insert conflicted", {"domain": domain})
        return await real_resolve(session, owner_id, domain, name, **kwargs)

    monkeypatch.setattr(orchestrator_module, "resolve_company", conflict_for_acme)

    summary = await _run(session_factory, settings)

    assert summary.status == "completed"
    assert summary.record_errors == 1
    assert (await fetch.deal(healthy)).company_id is not None
    failed_deal = await fetch.deal(failing)
    assert failed_deal.company_id is None
    # The contact is still created and linked; the deal waits for review.
    assert failed_deal.primary_contact_id is not None
    [entry] = await fetch.reviews(failing)
    assert entry.reason == "entity_creation_failed"
    assert "create_companies" in entry.notes


# ---------------------------------------------------------------------------
# Checkpoints, dry run, bulk mode
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_phase_failure_rolls_back_only_that_phase(
    session_factory, settings, make_deal, fetch, monkeypatch
):
    deal_id = await make_deal("Acme Inc", "Jane Doe", "jane@acme.io")
    queued = await make_deal(None, None, "bad-email")

    async def broken_link(*args, **kwargs):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(orchestrator_module, "link_deal", broken_link)
    run_log = RunLog()
    orchestrator = BatchOrchestrator(session_factory, settings=settings, run_log=run_log)

    with pytest.raises(PhaseError) as exc_info:
        await orchestrator.run()

    assert exc_info.value.phase == Phase.LINK_DEALS.value
    assert isinstance(exc_info.value.cause, RuntimeError)
    assert orchestrator.summary.status == "failed"

    # Earlier phases stay committed.
    assert len(await fetch.companies()) == 1
    assert len(await fetch.contacts()) == 1
    # The failed phase left nothing behind.
    deal = await fetch.deal(deal_id)
    assert deal.company_id is None and deal.primary_contact_id is None
    assert await fetch.reviews(queued) == []

    assert run_log.completed_phases() == [
        "validate_prerequisites", "analyze", "create_companies", "create_contacts",
    ]
    [failure] = run_log.failures()
    assert failure.phase == "link_deals"
    assert "connection reset" in failure.error


def _fail_after_routing(monkeypatch, fail_on: int):
    """Make link_deals blow up right after the n-th deal it queues for review."""
    original = BatchOrchestrator._route_if_unresolved
    routed = []

    async def route_then_fail(self, session, deal, *args, **kwargs):
        await original(self, session, deal, *args, **kwargs)
        if deal.id in self.router:
            routed.append(deal.id)
            if len(routed) == fail_on:
                raise RuntimeError("connection reset")

    monkeypatch.setattr(BatchOrchestrator, "_route_if_unresolved", route_then_fail)
    return routed


@pytest.mark.asyncio
async def test_failed_phase_does_not_count_rolled_back_reviews(
    session_factory, settings, make_deal, fetch, monkeypatch
):
    deal_id = await make_deal(None, None, "bad-email")
    _fail_after_routing(monkeypatch, fail_on=1)
    orchestrator = BatchOrchestrator(session_factory, settings=settings)

    with pytest.raises(PhaseError):
        await orchestrator.run()

    assert await fetch.reviews(deal_id) == []
    assert deal_id not in orchestrator.router
    assert orchestrator.summary.reviews_queued == 0


@pytest.mark.asyncio
async def test_failed_phase_keeps_reviews_from_committed_chunks(
    session_factory, make_deal, fetch, monkeypatch
):
    for _ in range(2):
        await make_deal(None, None, "bad-email")
    routed = _fail_after_routing(monkeypatch, fail_on=2)
    orchestrator = BatchOrchestrator(
        session_factory, settings=ReconcileSettings(batch_size=1, chunk_commit=True)
    )

    with pytest.raises(PhaseError):
        await orchestrator.run()

    [stored] = await fetch.reviews()
    assert stored.deal_id == routed[0]
    assert routed[1] not in orchestrator.router
    assert orchestrator.summary.reviews_queued == 1


@pytest.mark.asyncio
async def test_invalid_settings_fail_prerequisites(session_factory, make_deal):
    await make_deal("Acme Inc", "Jane Doe", "jane@acme.io")
    with pytest.raises(PhaseError) as exc_info:
        await _run(session_factory, ReconcileSettings(batch_size=0))
    assert exc_info.value.phase == "validate_prerequisites"


@pytest.mark.asyncio
async def test_dry_run_reports_but_leaves_no_trace(session_factory, make_deal, fetch):
    deal_id = await make_deal("Acme Inc", "Jane Doe", "jane@acme.io")
    await make_deal(None, None, "bad-email")

    summary = await _run(session_factory, ReconcileSettings(batch_size=2, dry_run=True))

    assert summary.dry_run is True
    assert summary.companies_created == 1
    assert summary.contacts_created == 1
    assert summary.deals_linked == 1
    assert summary.reviews_queued == 1
    assert await fetch.companies() == []
    assert await fetch.contacts() == []
    assert await fetch.reviews() == []
    deal = await fetch.deal(deal_id)
    assert deal.company_id is None and deal.primary_contact_id is None


@pytest.mark.asyncio
async def test_chunk_commit_produces_the_same_result(session_factory, make_deal, fetch):
    ids = [await make_deal(f"Company {i}", f"Person {i}", f"p{i}@company{i}.com") for i in range(5)]

    summary = await _run(session_factory, ReconcileSettings(batch_size=2, chunk_commit=True))

    assert summary.companies_created == 5
    assert summary.deals_linked == 5
    for deal_id in ids:
        deal = await fetch.deal(deal_id)
        assert deal.company_id is not None and deal.primary_contact_id is not None


@pytest.mark.asyncio
async def test_side_effect_listeners_are_suspended_during_bulk_phases(
    session_factory, settings, make_deal
):
    seen = []
    for entity in ("company", "contact", "deal"):
        register_listener(entity, seen.append)
    await make_deal("Acme Inc", "Jane Doe", "jane@acme.io")

    summary = await _run(session_factory, settings)

    assert seen == []
    # company created, contact created, company + contact linked
    assert summary.side_effects_suppressed == 4


# ---------------------------------------------------------------------------
# Scope, derived relationships, reporting
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_owner_scope_leaves_other_owners_alone(session_factory, settings, make_deal, fetch):
    other_owner = uuid.uuid4()
    mine = await make_deal("Acme Inc", "Jane Doe", "jane@acme.io")
    theirs = await make_deal("Globex", "Hank", "hank@globex.com", owner_id=other_owner)

    await _run(session_factory, settings, RunScope(owner_id=other_owner))

    assert (await fetch.deal(theirs)).company_id is not None
    assert (await fetch.deal(mine)).company_id is None


@pytest.mark.asyncio
async def test_deal_with_preset_contact_takes_the_contact_company(
    session_factory, settings, make_deal, make_company, make_contact, fetch
):
    company_id = await make_company("Acme", domain="acme.io")
    contact_id = await make_contact("jane@acme.io", company_id=company_id)
    deal_id = await make_deal(None, None, None, primary_contact_id=contact_id)

    summary = await _run(session_factory, settings)

    assert (await fetch.deal(deal_id)).company_id == company_id
    assert await fetch.reviews(deal_id) == []
    assert summary.stakeholders_added == 1


@pytest.mark.asyncio
async def test_stakeholders_are_added_once(session_factory, settings, make_deal, fetch):
    await make_deal("Acme Inc", "Jane Doe", "jane@acme.io")
    await make_deal("Acme Inc", "Jane Doe", "jane@acme.io")

    await _run(session_factory, settings)
    await _run(session_factory, settings)

    assert await fetch.count(DealStakeholder) == 2


@pytest.mark.asyncio
async def test_low_coverage_warning_and_quality_checks(session_factory, settings, make_deal):
    await make_deal("Acme Inc", "Jane Doe", "jane@acme.io")
    await make_deal(None, "Joe", "bad-email")
    await make_deal(None, None, "hank@")

    summary = await _run(session_factory, settings)

    # one of three deals with an email got a contact
    assert summary.coverage_pct == pytest.approx(33.33)
    assert LOW_COVERAGE_WARNING in summary.warnings
    assert summary.before.total_deals == 3
    assert summary.before.deals_with_contact_fk == 0
    assert summary.after.deals_with_contact_fk == 1
    checks = {c.check_type: c.count for c in summary.quality_checks}
    assert checks["Deals without contact relationships"] == 2
    assert checks["Deals without company relationships"] == 0
    assert checks["Companies without domains"] == 0
    assert checks["Contacts without company relationships"] == 0
    assert summary.company_coverage_pct == 100.0


@pytest.mark.asyncio
async def test_run_log_records_every_phase_in_order(session_factory, settings, make_deal):
    await make_deal("Acme Inc", "Jane Doe", "jane@acme.io")
    run_log = RunLog()

    summary = await _run(session_factory, settings, run_log=run_log)

    assert run_log.run_id == summary.run_id
    assert run_log.completed_phases() == [phase.value for phase in Phase]
    started = [r.phase for r in run_log.records if r.status == "started"]
    assert started == [phase.value for phase in Phase if phase != Phase.COMPLETED]
    assert [r.phase for r in summary.phases] == [r.phase for r in run_log.records]
