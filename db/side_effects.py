"""Downstream side-effect dispatch for writes to companies, contacts and deals.

Repository write functions call notify() after every insert/update. Listeners
registered by other subsystems (scoring, automation rules, integrations) are
invoked synchronously unless the session is in bulk mode, in which case the
change is counted and skipped. Changes made inside a transaction reach the
listeners only once the outermost transaction commits. Bulk mode is a flag on
``session.info``, so it only affects the session doing the backfill; live
traffic on other sessions keeps triggering side effects.
"""
import logging
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session, SessionTransaction

logger = logging.getLogger(__name__)

BULK_MODE_KEY = "reconcile.bulk_mode"
SUPPRESSED_KEY = "reconcile.suppressed_side_effects"
PENDING_KEY = "reconcile.pending_side_effects"

ENTITY_TYPES = ("company", "contact", "deal")


@dataclass(frozen=True)
class EntityChange:
    entity: str
    action: str
    entity_id: uuid.UUID
    owner_id: Optional[uuid.UUID] = None


Listener = Callable[[EntityChange], None]

_listeners: dict[str, list[Listener]] = defaultdict(list)


def register_listener(entity: str, listener: Listener) -> None:
    if entity not in ENTITY_TYPES:
        raise ValueError(f"Unknown entity type {entity!r}; expected one of {ENTITY_TYPES}")
    _listeners[entity].append(listener)


def unregister_listener(entity: str, listener: Listener) -> None:
    if listener in _listeners.get(entity, []):
        _listeners[entity].remove(listener)


def clear_listeners() -> None:
    _listeners.clear()


def is_bulk_mode(session: AsyncSession) -> bool:
    return bool(session.info.get(BULK_MODE_KEY, False))


def suppressed_count(session: AsyncSession) -> int:
    return int(session.info.get(SUPPRESSED_KEY, 0))


@contextmanager
def bulk_mode(session: AsyncSession, enabled: bool = True) -> Iterator[AsyncSession]:
    """Suspend side-effect listeners for writes made through this session.

    The previous flag value is restored on exit, including when the body raises.
    """
    previous = session.info.get(BULK_MODE_KEY, False)
    session.info[BULK_MODE_KEY] = enabled
    try:
        yield session
    finally:
        session.info[BULK_MODE_KEY] = previous
        if enabled and not previous:
            logger.debug("Bulk mode off: %d side effects suppressed", suppressed_count(session))


def _dispatch(change: EntityChange) -> None:
    for listener in list(_listeners.get(change.entity, [])):
        logger.debug("Dispatching %s %s %s", change.entity, change.action, change.entity_id)
        listener(change)


def _sync_session(session) -> Session:
    return getattr(session, "sync_session", session)


def notify(session: AsyncSession, change: EntityChange) -> None:
    """Dispatch a change to registered listeners unless bulk mode is active.

    Inside a transaction the change is held until the outermost commit and
    dropped if the transaction, or the savepoint it was made in, rolls back.
    """
    if is_bulk_mode(session):
        session.info[SUPPRESSED_KEY] = suppressed_count(session) + 1
        return
    sync_session = _sync_session(session)
    if not sync_session.in_transaction():
        _dispatch(change)
        return
    transaction = sync_session.get_nested_transaction() or sync_session.get_transaction()
    sync_session.info.setdefault(PENDING_KEY, []).append((transaction, change))


def pending_count(session: AsyncSession) -> int:
    return len(_sync_session(session).info.get(PENDING_KEY, []))


def _made_within(transaction: SessionTransaction, ancestor: SessionTransaction) -> bool:
    while transaction is not None:
        if transaction is ancestor:
            return True
        transaction = transaction.parent
    return False


@event.listens_for(Session, "after_commit")
def _dispatch_pending(session: Session) -> None:
    # Releasing a SAVEPOINT is not the commit that makes changes visible.
    if session.get_nested_transaction() is not None:
        return
    pending = session.info.pop(PENDING_KEY, [])
    for _, change in pending:
        _dispatch(change)


@event.listens_for(Session, "after_soft_rollback")
def _drop_rolled_back(session: Session, previous_transaction: SessionTransaction) -> None:
    pending = session.info.get(PENDING_KEY)
    if not pending:
        return
    kept = [item for item in pending if not _made_within(item[0], previous_transaction)]
    if len(kept) != len(pending):
        logger.debug("Dropped %d side effects from a rolled back transaction", len(pending) - len(kept))
    session.info[PENDING_KEY] = kept


@event.listens_for(Session, "after_transaction_end")
def _drop_uncommitted(session: Session, transaction: SessionTransaction) -> None:
    # After a commit the list is already gone; anything left was never committed.
    if transaction.parent is None:
        session.info.pop(PENDING_KEY, None)
