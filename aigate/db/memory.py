"""
AIGate - In-Memory Stores

Lock-guarded stores for local and test mode. Same contracts as the
PostgreSQL stores, including atomic and idempotent debits.
"""

import asyncio
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..core.models import (
    AuditEntry,
    DebitResult,
    Identity,
    Organization,
    ProviderType,
    UsageMetrics,
)
from .base import AccountStore, AuditSink, SecretStore
from .models import AccountRecord


class InMemoryAccountStore(AccountStore):
    """Accounts, organizations and sessions held in dicts."""

    def __init__(
        self,
        accounts: Optional[Iterable[AccountRecord]] = None,
        organizations: Optional[Iterable[Organization]] = None,
    ):
        self._accounts: Dict[str, AccountRecord] = {
            a.user_id: a for a in (accounts or [])
        }
        self._organizations: Dict[str, Organization] = {
            o.id: o for o in (organizations or [])
        }
        self._sessions: Dict[str, Identity] = {}
        # (user_id, request_id) -> amount
        self._ledger: Dict[Tuple[str, str], int] = {}
        self._lock = asyncio.Lock()

    def add_account(self, account: AccountRecord) -> AccountRecord:
        self._accounts[account.user_id] = account
        return account

    def add_organization(self, organization: Organization) -> Organization:
        self._organizations[organization.id] = organization
        return organization

    def add_session(self, token: str, identity: Identity) -> None:
        self._sessions[token] = identity

    @property
    def ledger(self) -> Dict[Tuple[str, str], int]:
        return dict(self._ledger)

    async def get_account(self, user_id: str) -> Optional[AccountRecord]:
        account = self._accounts.get(user_id)
        if account is None:
            return None
        # copy so callers never see later debits through a shared object
        return AccountRecord(
            user_id=account.user_id,
            plan=account.plan,
            credits_limit=account.credits_limit,
            credits_used=account.credits_used,
            is_active=account.is_active,
            organization_id=account.organization_id,
            feature_overrides=dict(account.feature_overrides),
            expires_at=account.expires_at,
        )

    async def debit(
        self,
        user_id: str,
        amount: int,
        operation: str,
        request_id: str,
    ) -> DebitResult:
        if amount < 0:
            return DebitResult(success=False, new_balance=0, error="invalid_amount")

        async with self._lock:
            account = self._accounts.get(user_id)
            if account is None:
                return DebitResult(success=False, new_balance=0, error="account_not_found")

            if (user_id, request_id) in self._ledger:
                return DebitResult(success=True, new_balance=account.balance, already_applied=True)

            if account.credits_used + amount > account.credits_limit:
                return DebitResult(
                    success=False,
                    new_balance=account.balance,
                    error="insufficient_credits",
                )

            account.credits_used += amount
            self._ledger[(user_id, request_id)] = amount
            return DebitResult(success=True, new_balance=account.balance)

    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        return self._organizations.get(organization_id)

    async def resolve_session(self, session_token: str) -> Optional[Identity]:
        return self._sessions.get(session_token)


class InMemoryAuditSink(AuditSink):
    """Audit entries and aggregate snapshots held in lists."""

    def __init__(self):
        self.entries: List[AuditEntry] = []
        self.aggregates: List[Tuple[datetime, datetime, UsageMetrics]] = []
        self._lock = asyncio.Lock()

    async def append(self, entries: Sequence[AuditEntry]) -> None:
        async with self._lock:
            self.entries.extend(entries)

    async def record_aggregate(
        self,
        metrics: UsageMetrics,
        window_start: datetime,
        window_end: datetime,
    ) -> None:
        async with self._lock:
            self.aggregates.append((window_start, window_end, metrics))

    async def query(
        self,
        start: datetime,
        end: datetime,
        user_id: Optional[str] = None,
        operation: Optional[str] = None,
        success: Optional[bool] = None,
    ) -> List[AuditEntry]:
        async with self._lock:
            snapshot = list(self.entries)
        matched = [
            e for e in snapshot
            if start <= e.timestamp <= end
            and (user_id is None or e.user_id == user_id)
            and (operation is None or e.operation == operation)
            and (success is None or e.success == success)
        ]
        return sorted(matched, key=lambda e: e.timestamp)


class InMemorySecretStore(SecretStore):
    """Fixed provider credentials, keyed by ProviderType."""

    def __init__(self, secrets: Optional[Dict[ProviderType, str]] = None):
        self._secrets: Dict[ProviderType, str] = dict(secrets or {})
        self.reads = 0

    def set_secret(self, provider: ProviderType, secret: str) -> None:
        self._secrets[provider] = secret

    async def get_secret(self, provider: ProviderType) -> Optional[str]:
        self.reads += 1
        return self._secrets.get(provider)
