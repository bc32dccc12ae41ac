"""Order persistence: interface plus in-memory and PostgreSQL adapters."""

from storefront.storage.base import IOrderStore
from storefront.storage.memory import InMemoryOrderStore
from storefront.storage.postgres import PostgresOrderStore


def create_store(settings) -> IOrderStore:
    if settings.store_backend == "memory":
        return InMemoryOrderStore()
    return PostgresOrderStore()


__all__ = ["IOrderStore", "InMemoryOrderStore", "PostgresOrderStore", "create_store"]
