"""AIGate request context assembly."""

from .provider import (
    ANONYMOUS_RISK_SCORE,
    ANONYMOUS_USER_ID,
    AUTHENTICATION_REQUIRED,
    ContextProvider,
    ContextValidation,
    new_request_id,
)

__all__ = [
    "ANONYMOUS_RISK_SCORE",
    "ANONYMOUS_USER_ID",
    "AUTHENTICATION_REQUIRED",
    "ContextProvider",
    "ContextValidation",
    "new_request_id",
]
