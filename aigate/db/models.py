"""
AIGate - Database Models

Dataclass models for account-store entities.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from ..core.models import AuditEntry, Organization


def _json_field(value: Any, default: Any) -> Any:
    """asyncpg returns json/jsonb as text unless a codec is registered."""
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


@dataclass
class AccountRecord:
    """
    A user's account as stored: plan string, credit counters and overrides.

    feature_overrides grants (True) or revokes (False) individual operations
    on top of the plan defaults.
    """

    user_id: str
    plan: str = "FREE"
    credits_limit: int = 0
    credits_used: int = 0
    is_active: bool = True
    organization_id: Optional[str] = None
    feature_overrides: Dict[str, bool] = field(default_factory=dict)
    expires_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "AccountRecord":
        """Create AccountRecord from database record."""
        return cls(
            user_id=str(record["id"]),
            plan=record["plan"] or "FREE",
            credits_limit=record["credits"] or 0,
            credits_used=record["credits_used"] or 0,
            is_active=record["is_active"] is not False,
            organization_id=(
                str(record["organization_id"]) if record["organization_id"] else None
            ),
            feature_overrides=_json_field(record["feature_overrides"], {}),
            expires_at=record["expires_at"],
        )

    @property
    def balance(self) -> int:
        return max(0, self.credits_limit - self.credits_used)


def organization_from_record(record) -> Organization:
    """Create Organization from database record."""
    return Organization(
        id=str(record["id"]),
        name=record["name"],
        compliance=frozenset(record["compliance"] or []),
    )


def audit_entry_from_record(record) -> AuditEntry:
    """Create AuditEntry from an audit_log row."""
    return AuditEntry(
        id=record["id"],
        timestamp=record["created_at"],
        user_id=record["user_id"],
        request_id=record["request_id"],
        operation=record["operation"],
        model=record["model"],
        tokens_used=record["tokens_used"],
        credits_deducted=record["credits_deducted"],
        latency_ms=record["latency_ms"],
        success=record["success"],
        risk_score=record["risk_score"],
        error=record["error"],
        organization_id=record["organization_id"],
        ip_address=record["ip_address"],
        user_agent=record["user_agent"],
        metadata=_json_field(record["metadata"], {}),
    )
