"""Key-value store adapters."""

from meshdots.store.base import BatchOp, KeyValueStore, WriteBatch

__all__ = ["BatchOp", "KeyValueStore", "WriteBatch"]
