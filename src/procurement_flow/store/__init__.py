"""Domain store - business records behind a generic DAO"""

from procurement_flow.store.domain_store import BusinessObjectDAO, SQLiteDomainStore

__all__ = ["BusinessObjectDAO", "SQLiteDomainStore"]
