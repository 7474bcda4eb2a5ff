"""Tests for the review queue and its run-scoped router."""
import uuid

import pytest

from db.connection import get_db
from db.repositories import deals as deals_repo
from db.repositories import reviews as reviews_repo
from resolution.review_queue import (
    ENTITY_CREATION_FAILED,
    INVALID_EMAIL,
    NO_EMAIL,
    ReviewRouter,
    enqueue,
)
from schemas.deal import DealFields


async def _snapshot(session, deal_id) -> DealFields:
    return DealFields.model_validate(await deals_repo.get_by_id(session, deal_id))


@pytest.mark.asyncio
async def test_enqueue_copies_original_fields(session_factory, make_deal, fetch):
    deal_id = await make_deal(None, "Jane Doe", "bad-email")
    run_id = uuid.uuid4()

    async with get_db(session_factory) as session:
        deal = await _snapshot(session, deal_id)
        await enqueue(session, deal, INVALID_EMAIL, notes="malformed", run_id=run_id)

    [entry] = await fetch.reviews(deal_id)
    assert entry.reason == INVALID_EMAIL
    assert entry.status == "pending"
    assert entry.original_company is None
    assert entry.original_contact_name == "Jane Doe"
    assert entry.original_contact_email == "bad-email"
    assert entry.notes == "malformed"
    assert entry.run_id == run_id


@pytest.mark.asyncio
async def test_unknown_reason_is_rejected(session_factory, make_deal):
    deal_id = await make_deal()
    async with session_factory() as session:
        deal = await _snapshot(session, deal_id)
        with pytest.raises(ValueError):
            await enqueue(session, deal, "looks_wrong")


@pytest.mark.asyncio
async def test_router_enqueues_each_deal_once_per_run(session_factory, make_deal, fetch):
    deal_id = await make_deal(contact_email=None)
    router = ReviewRouter(uuid.uuid4())

    async with get_db(session_factory) as session:
        deal = await _snapshot(session, deal_id)
        first = await router.route(session, deal, NO_EMAIL)
        second = await router.route(session, deal, ENTITY_CREATION_FAILED)

    assert first is not None
    assert second is None
    assert deal_id in router
    assert router.count == 1
    assert router.reason_for(deal_id) == NO_EMAIL
    assert [e.reason for e in await fetch.reviews(deal_id)] == [NO_EMAIL]


@pytest.mark.asyncio
async def test_duplicates_across_runs_are_kept_and_latest_wins(session_factory, make_deal):
    deal_id = await make_deal(contact_email="bad-email")

    async with get_db(session_factory) as session:
        deal = await _snapshot(session, deal_id)
        await ReviewRouter(uuid.uuid4()).route(session, deal, INVALID_EMAIL)
        latest_run = uuid.uuid4()
        await ReviewRouter(latest_run).route(session, deal, ENTITY_CREATION_FAILED)

    async with get_db(session_factory) as session:
        everything = await reviews_repo.list_entries(session, status="pending")
        latest = await reviews_repo.list_entries(session, status="pending", latest_per_deal=True)

    assert len(everything) == 2
    assert len(latest) == 1
    assert latest[0].run_id == latest_run
    assert latest[0].reason == ENTITY_CREATION_FAILED


@pytest.mark.asyncio
async def test_list_entries_filters_by_owner_and_status(session_factory, make_deal):
    other_owner = uuid.uuid4()
    mine = await make_deal(contact_email=None)
    theirs = await make_deal(contact_email=None, owner_id=other_owner)

    async with get_db(session_factory) as session:
        for deal_id in (mine, theirs):
            await enqueue(session, await _snapshot(session, deal_id), NO_EMAIL)

    async with get_db(session_factory) as session:
        [entry] = await reviews_repo.list_entries(session, owner_id=other_owner)
        await reviews_repo.mark_archived(session, entry, notes="spam deal")

    async with get_db(session_factory) as session:
        pending = await reviews_repo.list_entries(session, status="pending")
        archived = await reviews_repo.list_entries(session, status="archived")

    assert [e.deal_id for e in pending] == [mine]
    assert [e.deal_id for e in archived] == [theirs]
    assert archived[0].notes == "spam deal"


@pytest.mark.asyncio
async def test_list_entries_rejects_unknown_status(session_factory):
    async with session_factory() as session:
        with pytest.raises(ValueError):
            await reviews_repo.list_entries(session, status="done")
