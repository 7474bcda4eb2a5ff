"""Database package for the deal reconciliation engine."""
from db.connection import (
    dispose_engine,
    get_db,
    get_engine,
    get_session_factory,
    make_session_factory,
)

__all__ = [
    "get_engine",
    "get_session_factory",
    "make_session_factory",
    "get_db",
    "dispose_engine",
]
