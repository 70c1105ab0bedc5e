"""AIGate core: data models, errors and runtime configuration."""

from .errors import (
    ErrorCode,
    ErrorDetails,
    ErrorType,
    GateException,
    InfraError,
    SemanticError,
    ContextValidationError,
    NoProviderForModelError,
    InvalidTokenFormatError,
)
from .models import (
    Plan,
    Tier,
    Operation,
    ProviderType,
    RequestContext,
    SubscriptionContext,
    PermissionContext,
    SecurityContext,
    AuditEntry,
    TokenRecord,
    ServiceResult,
)

__all__ = [
    "ErrorCode",
    "ErrorDetails",
    "ErrorType",
    "GateException",
    "InfraError",
    "SemanticError",
    "ContextValidationError",
    "NoProviderForModelError",
    "InvalidTokenFormatError",
    "Plan",
    "Tier",
    "Operation",
    "ProviderType",
    "RequestContext",
    "SubscriptionContext",
    "PermissionContext",
    "SecurityContext",
    "AuditEntry",
    "TokenRecord",
    "ServiceResult",
]
