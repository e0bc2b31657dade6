"""
Database Layer for wikisign

Provides:
- SignatureStore abstraction (InMemory for dev, Postgres for prod)
- PostgreSQL schema bootstrap
- Connection configuration
"""

from .store import (
    SignatureStore,
    InMemorySignatureStore,
    PostgresSignatureStore,
    PageWriteContext,
    SignatureStoreError,
    LockTimeoutError,
)
from .config import (
    DatabaseConfig,
    SignatureStoreDriver,
    get_database_config,
    get_database_url,
    get_store_driver,
)
from .schema import SCHEMA_SQL, ensure_schema

__all__ = [
    "SignatureStore",
    "InMemorySignatureStore",
    "PostgresSignatureStore",
    "PageWriteContext",
    "SignatureStoreError",
    "LockTimeoutError",
    "DatabaseConfig",
    "SignatureStoreDriver",
    "get_database_config",
    "get_database_url",
    "get_store_driver",
    "SCHEMA_SQL",
    "ensure_schema",
]
