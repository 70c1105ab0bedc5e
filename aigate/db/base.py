"""
AIGate - Store Interfaces

Collaborators the pipeline depends on. Each has a PostgreSQL implementation
(services.py) and an in-memory one (memory.py).
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Sequence

from ..core.models import (
    AuditEntry,
    DebitResult,
    Identity,
    Organization,
    ProviderType,
    UsageMetrics,
)
from .models import AccountRecord


class AccountStore(ABC):
    """Users, credit balances, organizations and sessions."""

    @abstractmethod
    async def get_account(self, user_id: str) -> Optional[AccountRecord]:
        ...

    @abstractmethod
    async def debit(
        self,
        user_id: str,
        amount: int,
        operation: str,
        request_id: str,
    ) -> DebitResult:
        """
        Atomically add amount to the user's used credits.

        Rejects (success=False) when used + amount would exceed the limit.
        Idempotency is per (user_id, request_id): a pair that was already
        applied returns success with already_applied=True and the current
        balance, and does not debit again.
        """

    @abstractmethod
    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        ...

    @abstractmethod
    async def resolve_session(self, session_token: str) -> Optional[Identity]:
        """Identity for a live session token, or None."""


class AuditSink(ABC):
    """Append-only audit storage with a query interface."""

    @abstractmethod
    async def append(self, entries: Sequence[AuditEntry]) -> None:
        ...

    @abstractmethod
    async def record_aggregate(
        self,
        metrics: UsageMetrics,
        window_start: datetime,
        window_end: datetime,
    ) -> None:
        ...

    @abstractmethod
    async def query(
        self,
        start: datetime,
        end: datetime,
        user_id: Optional[str] = None,
        operation: Optional[str] = None,
        success: Optional[bool] = None,
    ) -> List[AuditEntry]:
        """Entries with start <= timestamp <= end, oldest first."""


class SecretStore(ABC):
    """Read-only source of raw provider credentials."""

    @abstractmethod
    async def get_secret(self, provider: ProviderType) -> Optional[str]:
        ...
