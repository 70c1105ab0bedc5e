"""
AIGate - Database Layer

Store interfaces with PostgreSQL (asyncpg) and in-memory implementations.
"""

from .base import AccountStore, AuditSink, SecretStore
from .connection import DatabasePool, init_db, close_db, apply_schema
from .models import AccountRecord
from .memory import InMemoryAccountStore, InMemoryAuditSink, InMemorySecretStore
from .services import PostgresAccountStore, PostgresAuditSink, PostgresSecretStore

__all__ = [
    "AccountStore",
    "AuditSink",
    "SecretStore",
    "DatabasePool",
    "init_db",
    "close_db",
    "apply_schema",
    "AccountRecord",
    "InMemoryAccountStore",
    "InMemoryAuditSink",
    "InMemorySecretStore",
    "PostgresAccountStore",
    "PostgresAuditSink",
    "PostgresSecretStore",
]
