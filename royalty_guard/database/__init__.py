"""
Database layer: collections, royalty policies, mints, sales, activity log.

SQLAlchemy store; SQLite by default, PostgreSQL via DATABASE_URL.
"""

from royalty_guard.database.database import SaleStore, get_store
from royalty_guard.database.models import (
    Collection,
    Creator,
    LogEntry,
    MarketplaceProgram,
    Mint,
    RoyaltyPolicy,
    Sale,
)

__all__ = [
    "SaleStore",
    "get_store",
    "Collection",
    "Creator",
    "LogEntry",
    "MarketplaceProgram",
    "Mint",
    "RoyaltyPolicy",
    "Sale",
]
