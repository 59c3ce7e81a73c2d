"""
Database Layer for CertChain

Provides:
- PostgreSQL schema for action requests, blocked clients and verification logs
- GovernanceStore abstraction (InMemory for dev, Postgres for prod)
- Connection pooling and configuration
"""

from .store import (
    GovernanceStore,
    InMemoryGovernanceStore,
    PostgresGovernanceStore,
    SCHEMA_SQL,
    create_store,
)
from .config import DatabaseConfig, StoreDriver, get_database_url, get_store_driver

__all__ = [
    "GovernanceStore",
    "InMemoryGovernanceStore",
    "PostgresGovernanceStore",
    "SCHEMA_SQL",
    "create_store",
    "DatabaseConfig",
    "StoreDriver",
    "get_database_url",
    "get_store_driver",
]
