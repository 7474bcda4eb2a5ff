"""Shared fixtures: a file-backed SQLite database standing in for PostgreSQL.

The crm schema is translated away and pysqlite's transaction handling is
replaced so that SAVEPOINTs behave as they do on PostgreSQL.
"""
import uuid
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import create_async_engine

from db.connection import get_db, make_session_factory
from db.models import Base, Company, Contact, Deal, ReviewEntry
from db.side_effects import clear_listeners
from pipeline_config import ReconcileSettings


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'crm.db'}",
        execution_options={"schema_translate_map": {"crm": None}},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def owner_id():
    return uuid.uuid4()


@pytest.fixture
def settings():
    # Small batches so keyset pagination crosses chunk boundaries.
    return ReconcileSettings(batch_size=2, coverage_threshold=80.0)


@pytest.fixture(autouse=True)
def _reset_listeners():
    yield
    clear_listeners()


@pytest.fixture
def make_deal(session_factory, owner_id):
    """Insert a deal and return its id."""

    async def _make(
        company: Optional[str] = None,
        contact_name: Optional[str] = None,
        contact_email: Optional[str] = None,
        **fields,
    ) -> uuid.UUID:
        deal_id = fields.pop("id", None) or uuid.uuid4()
        fields.setdefault("owner_id", owner_id)
        fields.setdefault("name", f"Deal {deal_id.hex[:6]}")
        async with get_db(session_factory) as session:
            session.add(
                Deal(
                    id=deal_id,
                    company=company,
                    contact_name=contact_name,
                    contact_email=contact_email,
                    **fields,
                )
            )
        return deal_id

    return _make


@pytest.fixture
def make_company(session_factory, owner_id):
    async def _make(name: str, domain: Optional[str] = None, **fields) -> uuid.UUID:
        company_id = uuid.uuid4()
        fields.setdefault("owner_id", owner_id)
        async with get_db(session_factory) as session:
            session.add(Company(id=company_id, name=name, domain=domain, **fields))
        return company_id

    return _make


@pytest.fixture
def make_contact(session_factory, owner_id):
    async def _make(email: str, first_name: str = "Test", **fields) -> uuid.UUID:
        contact_id = uuid.uuid4()
        fields.setdefault("owner_id", owner_id)
        fields.setdefault("last_name", "")
        fields.setdefault("is_primary", False)
        async with get_db(session_factory) as session:
            session.add(Contact(id=contact_id, email=email, first_name=first_name, **fields))
        return contact_id

    return _make


@pytest.fixture
def fetch(session_factory):
    """Small read helpers used across the test modules."""

    class _Fetch:
        async def deal(self, deal_id: uuid.UUID) -> Deal:
            async with get_db(session_factory) as session:
                return await session.get(Deal, deal_id)

        async def companies(self) -> list[Company]:
            async with get_db(session_factory) as session:
                result = await session.execute(select(Company).order_by(Company.name))
                return list(result.scalars().all())

        async def contacts(self) -> list[Contact]:
            async with get_db(session_factory) as session:
                result = await session.execute(select(Contact).order_by(Contact.email))
                return list(result.scalars().all())

        async def reviews(self, deal_id: Optional[uuid.UUID] = None) -> list[ReviewEntry]:
            async with get_db(session_factory) as session:
                stmt = select(ReviewEntry).order_by(ReviewEntry.created_at)
                if deal_id is not None:
                    stmt = stmt.where(ReviewEntry.deal_id == deal_id)
                result = await session.execute(stmt)
                return list(result.scalars().all())

        async def count(self, model) -> int:
            async with get_db(session_factory) as session:
                result = await session.execute(select(func.count()).select_from(model))
                return int(result.scalar_one())

    return _Fetch()
