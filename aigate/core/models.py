"""
AIGate - Core Data Models

Per-request context snapshots, audit records, credential cache records and
the uniform provider message types.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# Enums
# ============================================================

class Plan(str, Enum):
    """Subscription plans."""
    FREE = "FREE"
    BASIC = "BASIC"
    PREMIUM = "PREMIUM"
    ENTERPRISE = "ENTERPRISE"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "Plan":
        """Map a raw plan string from the account store; unknown values are FREE."""
        if not raw:
            return cls.FREE
        try:
            return cls(str(raw).strip().upper())
        except ValueError:
            return cls.FREE

    @property
    def tier(self) -> "Tier":
        return PLAN_TIERS[self]


class Tier(str, Enum):
    """Coarser plan grouping used for service selection."""
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


PLAN_TIERS: Dict[Plan, Tier] = {
    Plan.FREE: Tier.FREE,
    Plan.BASIC: Tier.BASIC,
    Plan.PREMIUM: Tier.PREMIUM,
    Plan.ENTERPRISE: Tier.ENTERPRISE,
}


class Operation(str, Enum):
    """AI operations that can be requested through the pipeline."""
    QUIZ_MCQ = "quiz-mcq"
    QUIZ_BLANKS = "quiz-blanks"
    QUIZ_OPENENDED = "quiz-openended"
    QUIZ_CODE = "quiz-code"
    QUIZ_VIDEO = "quiz-video"
    QUIZ_FLASHCARD = "quiz-flashcard"
    QUIZ_ORDERING = "quiz-ordering"
    COURSE_CREATION = "course-creation"
    CONTENT_CREATION = "content-creation"
    DOCUMENT_QUIZ = "document-quiz"


class ProviderType(str, Enum):
    """Supported model providers."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


class AuditLevel(str, Enum):
    BASIC = "basic"
    DETAILED = "detailed"
    COMPREHENSIVE = "comprehensive"


class EncryptionLevel(str, Enum):
    STANDARD = "standard"
    ENHANCED = "enhanced"


class Role(str, Enum):
    """Message roles."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


# ============================================================
# Request Context
# ============================================================

@dataclass(frozen=True)
class Credits:
    """Credit balance snapshot. available == limit - used, never negative."""
    available: int
    used: int
    limit: int

    @classmethod
    def from_usage(cls, limit: int, used: int) -> "Credits":
        return cls(available=max(0, limit - used), used=used, limit=limit)


@dataclass(frozen=True)
class SubscriptionContext:
    plan: Plan
    tier: Tier
    is_active: bool
    credits: Credits
    features: FrozenSet[str] = frozenset()
    expires_at: Optional[datetime] = None
    organization_id: Optional[str] = None


@dataclass(frozen=True)
class RateLimits:
    """Requests allowed per window; -1 means unlimited."""
    per_minute: int
    per_hour: int
    per_day: int
    burst: int


@dataclass(frozen=True)
class PermissionContext:
    can_use_ai: bool
    allowed_features: FrozenSet[str]
    rate_limits: RateLimits
    feature_flags: Mapping[str, bool] = field(default_factory=lambda: MappingProxyType({}))
    restrictions: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class SecurityContext:
    risk_score: int
    audit_level: AuditLevel
    encryption_level: EncryptionLevel
    compliance_requirements: FrozenSet[str] = frozenset()

    @property
    def requires_approval(self) -> bool:
        return self.risk_score > 80


@dataclass(frozen=True)
class RequestInfo:
    id: str
    timestamp: datetime
    source: str
    ip: Optional[str]
    user_agent: Optional[str]
    correlation_id: str


@dataclass(frozen=True)
class Organization:
    id: str
    name: str
    compliance: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class RequestContext:
    """
    Immutable snapshot of everything the pipeline knows about one request.

    Created once by ContextProvider and discarded when the request ends.
    """
    user_id: str
    session_id: str
    is_authenticated: bool
    subscription: SubscriptionContext
    permissions: PermissionContext
    security: SecurityContext
    request: RequestInfo
    organization: Optional[Organization] = None


# ============================================================
# Inbound request inputs
# ============================================================

@dataclass
class RequestMeta:
    """Network-level metadata of an inbound call."""
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    method: str = "POST"
    headers: Dict[str, str] = field(default_factory=dict)
    source: str = "api"
    correlation_id: Optional[str] = None
    request_id: Optional[str] = None


@dataclass
class Identity:
    """Verified caller identity, as resolved by the HTTP layer."""
    user_id: str
    session_id: str = ""
    is_authenticated: bool = True
    organization_id: Optional[str] = None
    extra_restrictions: List[str] = field(default_factory=list)


# ============================================================
# Audit & Metering
# ============================================================

@dataclass
class OperationOutcome:
    """What happened during one operation, as reported to the usage tracker."""
    name: str
    model: str = ""
    tokens: int = 0
    credits: int = 0
    duration_ms: int = 0
    success: bool = True
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of one operation's outcome."""
    id: str
    timestamp: datetime
    user_id: str
    request_id: str
    operation: str
    model: str
    tokens_used: int
    credits_deducted: int
    latency_ms: int
    success: bool
    risk_score: int
    error: Optional[str] = None
    organization_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @staticmethod
    def new_id() -> str:
        return f"audit_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "organization_id": self.organization_id,
            "request_id": self.request_id,
            "operation": self.operation,
            "model": self.model,
            "tokens_used": self.tokens_used,
            "credits_deducted": self.credits_deducted,
            "latency_ms": self.latency_ms,
            "success": self.success,
            "error": self.error,
            "risk_score": self.risk_score,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "metadata": dict(self.metadata),
        }


@dataclass
class UsageMetrics:
    """Aggregate over a batch of audit entries."""
    total_requests: int = 0
    total_tokens: int = 0
    total_credits: int = 0
    average_latency: float = 0.0
    success_rate: float = 1.0
    error_rate: float = 0.0
    top_models: List[Dict[str, Any]] = field(default_factory=list)
    top_features: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "total_tokens": self.total_tokens,
            "total_credits": self.total_credits,
            "average_latency": round(self.average_latency, 2),
            "success_rate": round(self.success_rate, 4),
            "error_rate": round(self.error_rate, 4),
            "top_models": self.top_models,
            "top_features": self.top_features,
        }


# ============================================================
# Credential cache
# ============================================================

@dataclass
class TokenMetadata:
    provider: ProviderType
    last_rotated: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    usage_count: int = 0
    is_active: bool = True


@dataclass
class TokenRecord:
    """Cached provider credential. The key is never included in repr."""
    key: str = field(repr=False)
    metadata: TokenMetadata = field(default_factory=lambda: TokenMetadata(ProviderType.OPENAI))
    cached_at: float = field(default_factory=time.monotonic)


# ============================================================
# Provider messages
# ============================================================

@dataclass
class ChatMessage:
    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass
class FunctionSpec:
    """Function the model is asked to call with structured output."""
    name: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FunctionCall:
    name: str
    arguments: str  # JSON string


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __post_init__(self):
        if self.total_tokens == 0:
            self.total_tokens = self.prompt_tokens + self.completion_tokens


@dataclass
class CompletionResult:
    content: Optional[str] = None
    function_call: Optional[FunctionCall] = None
    usage: Optional[TokenUsage] = None


# ============================================================
# Caller-facing results
# ============================================================

@dataclass
class ServiceResult:
    """Result of Service.execute."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    credits_used: int = 0
    tokens_used: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(
        cls,
        error_code: str,
        error: str,
        credits_used: int = 0,
        tokens_used: int = 0,
        **metadata: Any,
    ) -> "ServiceResult":
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            credits_used=credits_used,
            tokens_used=tokens_used,
            metadata=metadata,
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success}
        if self.success:
            result["data"] = self.data
        else:
            result["error"] = self.error
            result["error_code"] = self.error_code
        if self.success or self.credits_used or self.tokens_used:
            result["usage"] = {
                "credits_used": self.credits_used,
                "tokens_used": self.tokens_used,
            }
        if self.metadata:
            result["metadata"] = self.metadata
        return result


@dataclass
class AccessDecision:
    granted: bool
    reason: Optional[str] = None
    credit_cost: int = 0


@dataclass
class DebitResult:
    success: bool
    new_balance: int
    error: Optional[str] = None
    # request_id was already settled for this user; nothing was charged now
    already_applied: bool = False


@dataclass
class RateLimitResult:
    """Advisory rate-limit verdict returned before the gate runs."""
    allowed: bool
    remaining: int
    reset_time: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "reset_time": self.reset_time.isoformat(),
        }
