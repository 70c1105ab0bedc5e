"""
AIGate - PostgreSQL Stores

asyncpg-backed implementations of AccountStore, AuditSink and SecretStore.
"""

import hashlib
import json
from datetime import datetime
from typing import List, Optional, Sequence

import asyncpg

from ..core.errors import StoreUnavailableError
from ..core.models import (
    AuditEntry,
    DebitResult,
    Identity,
    Organization,
    ProviderType,
    UsageMetrics,
)
from .base import AccountStore, AuditSink, SecretStore
from .connection import DatabasePool
from .models import AccountRecord, audit_entry_from_record, organization_from_record

# Failures meaning "the database is unreachable or broken", as opposed to
# a legitimate empty result.
DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class _DebitRejected(Exception):
    """Raised inside the debit transaction to roll back the ledger insert."""


class PostgresAccountStore(AccountStore):
    """
    Account store over the users / credit_transactions / sessions tables.

    Debits insert the ledger row and run the conditional update in one
    transaction; the unique (user_id, request_id) pair makes retries idempotent.
    """

    def __init__(self, db: DatabasePool):
        self.db = db

    @staticmethod
    def hash_session(token: str) -> str:
        """Hash a session token for lookup."""
        return hashlib.sha256(token.encode()).hexdigest()

    async def get_account(self, user_id: str) -> Optional[AccountRecord]:
        query = """
            SELECT id, plan, credits, credits_used, is_active,
                   organization_id, feature_overrides, expires_at
            FROM users
            WHERE id = $1
        """
        try:
            record = await self.db.fetchrow(query, user_id)
        except DB_ERRORS as e:
            raise StoreUnavailableError("accounts", str(e)) from e
        if record is None:
            return None
        return AccountRecord.from_record(record)

    async def debit(
        self,
        user_id: str,
        amount: int,
        operation: str,
        request_id: str,
    ) -> DebitResult:
        if amount < 0:
            return DebitResult(success=False, new_balance=0, error="invalid_amount")

        try:
            async with self.db.transaction() as conn:
                inserted = await conn.fetchval(
                    """
                    INSERT INTO credit_transactions (request_id, user_id, amount, operation)
                    VALUES ($1, $2, $3, $4)
                    ON CONFLICT (user_id, request_id) DO NOTHING
                    RETURNING id
                    """,
                    request_id,
                    user_id,
                    amount,
                    operation,
                )
                if inserted is None:
                    return DebitResult(
                        success=True,
                        new_balance=await self._balance(conn, user_id),
                        already_applied=True,
                    )

                balance = await conn.fetchval(
                    """
                    UPDATE users
                    SET credits_used = credits_used + $2
                    WHERE id = $1 AND credits_used + $2 <= credits
                    RETURNING credits - credits_used
                    """,
                    user_id,
                    amount,
                )
                if balance is None:
                    # Rolls back the ledger row
                    raise _DebitRejected()
                return DebitResult(success=True, new_balance=max(0, balance))
        except _DebitRejected:
            pass
        except asyncpg.ForeignKeyViolationError:
            return DebitResult(success=False, new_balance=0, error="account_not_found")
        except DB_ERRORS as e:
            raise StoreUnavailableError("accounts", str(e)) from e

        try:
            async with self.db.acquire() as conn:
                balance = await self._balance(conn, user_id)
        except DB_ERRORS as e:
            raise StoreUnavailableError("accounts", str(e)) from e
        return DebitResult(success=False, new_balance=balance, error="insufficient_credits")

    @staticmethod
    async def _balance(conn, user_id: str) -> int:
        balance = await conn.fetchval(
            "SELECT credits - credits_used FROM users WHERE id = $1",
            user_id,
        )
        return max(0, balance or 0)

    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        try:
            record = await self.db.fetchrow(
                "SELECT id, name, compliance FROM organizations WHERE id = $1",
                organization_id,
            )
        except DB_ERRORS as e:
            raise StoreUnavailableError("accounts", str(e)) from e
        if record is None:
            return None
        return organization_from_record(record)

    async def resolve_session(self, session_token: str) -> Optional[Identity]:
        query = """
            SELECT s.user_id, u.organization_id
            FROM sessions s
            JOIN users u ON u.id = s.user_id
            WHERE s.token_hash = $1 AND s.expires_at > NOW()
        """
        try:
            record = await self.db.fetchrow(query, self.hash_session(session_token))
        except DB_ERRORS as e:
            raise StoreUnavailableError("accounts", str(e)) from e
        if record is None:
            return None
        return Identity(
            user_id=record["user_id"],
            session_id=self.hash_session(session_token)[:16],
            organization_id=record["organization_id"],
        )


class PostgresAuditSink(AuditSink):
    """Audit sink over the audit_log and usage_aggregates tables."""

    def __init__(self, db: DatabasePool):
        self.db = db

    async def append(self, entries: Sequence[AuditEntry]) -> None:
        if not entries:
            return
        query = """
            INSERT INTO audit_log (
                id, created_at, user_id, organization_id, request_id, operation,
                model, tokens_used, credits_deducted, latency_ms, success,
                error, risk_score, ip_address, user_agent, metadata
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
            ON CONFLICT (id) DO NOTHING
        """
        rows = [
            (
                e.id,
                e.timestamp,
                e.user_id,
                e.organization_id,
                e.request_id,
                e.operation,
                e.model,
                e.tokens_used,
                e.credits_deducted,
                e.latency_ms,
                e.success,
                e.error,
                e.risk_score,
                e.ip_address,
                e.user_agent,
                json.dumps(dict(e.metadata), default=str),
            )
            for e in entries
        ]
        try:
            async with self.db.acquire() as conn:
                await conn.executemany(query, rows)
        except DB_ERRORS as e:
            raise StoreUnavailableError("audit", str(e)) from e

    async def record_aggregate(
        self,
        metrics: UsageMetrics,
        window_start: datetime,
        window_end: datetime,
    ) -> None:
        query = """
            INSERT INTO usage_aggregates (window_start, window_end, metrics)
            VALUES ($1, $2, $3)
        """
        try:
            await self.db.execute(
                query, window_start, window_end, json.dumps(metrics.to_dict())
            )
        except DB_ERRORS as e:
            raise StoreUnavailableError("audit", str(e)) from e

    async def query(
        self,
        start: datetime,
        end: datetime,
        user_id: Optional[str] = None,
        operation: Optional[str] = None,
        success: Optional[bool] = None,
    ) -> List[AuditEntry]:
        where_clauses = ["created_at >= $1", "created_at <= $2"]
        params: list = [start, end]
        param_num = 3

        if user_id is not None:
            where_clauses.append(f"user_id = ${param_num}")
            params.append(user_id)
            param_num += 1

        if operation is not None:
            where_clauses.append(f"operation = ${param_num}")
            params.append(operation)
            param_num += 1

        if success is not None:
            where_clauses.append(f"success = ${param_num}")
            params.append(success)
            param_num += 1

        query = f"""
            SELECT * FROM audit_log
            WHERE {' AND '.join(where_clauses)}
            ORDER BY created_at ASC
        """
        try:
            records = await self.db.fetch(query, *params)
        except DB_ERRORS as e:
            raise StoreUnavailableError("audit", str(e)) from e
        return [audit_entry_from_record(r) for r in records]


class PostgresSecretStore(SecretStore):
    """Provider credentials from the provider_secrets table."""

    def __init__(self, db: DatabasePool):
        self.db = db

    async def get_secret(self, provider: ProviderType) -> Optional[str]:
        query = """
            SELECT secret FROM provider_secrets
            WHERE provider = $1 AND is_active = TRUE
        """
        try:
            return await self.db.fetchval(query, provider.value)
        except DB_ERRORS as e:
            raise StoreUnavailableError("secrets", str(e)) from e
