"""Ledger persistence adapters."""

from bnpl_engine.store.base import RetryTimer, Store
from bnpl_engine.store.memory import InMemoryStore
from bnpl_engine.store.sql import SqlAlchemyStore

__all__ = [
    "Store",
    "RetryTimer",
    "InMemoryStore",
    "SqlAlchemyStore",
]
