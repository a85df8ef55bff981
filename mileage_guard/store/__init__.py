"""Batch store implementations."""

from mileage_guard.store.base import BatchStore
from mileage_guard.store.memory import InMemoryBatchStore

__all__ = ["BatchStore", "InMemoryBatchStore", "create_store"]


def create_store(database_url: str) -> BatchStore:
    """Factory: return the right store for *database_url*.

    ``SqlBatchStore`` is imported lazily so the in-memory store works
    without touching SQLAlchemy.
    """
    if database_url.strip().lower() == "memory":
        return InMemoryBatchStore()

    from mileage_guard.store.sql import SqlBatchStore

    return SqlBatchStore.from_url(database_url)

