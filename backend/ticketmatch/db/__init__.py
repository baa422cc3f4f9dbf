"""
Database package for TicketMatch.

Exports engine construction, session management and ORM models.
"""
from .init_db import (
    initialize_database,
    create_db_engine,
    create_session_factory,
    AsyncSessionLocal,
)
from .store import compare_and_set, update_where, load
from .models import (
    Base,
    Money,
    OfferModel,
    ListingModel,
    TransactionModel,
)

__all__ = [
    "initialize_database",
    "create_db_engine",
    "create_session_factory",
    "AsyncSessionLocal",
    "Base",
    "Money",
    "OfferModel",
    "ListingModel",
    "TransactionModel",
    "compare_and_set",
    "update_where",
    "load",
]
