"""
AIGate - Error Definitions

Error taxonomy for the gating pipeline with infra vs semantic classification.

Caller-facing failures of an AI operation are reported as ServiceResult
error codes (see ErrorCode); exceptions below are raised inside the pipeline
and converted at the Service boundary or by the HTTP layer.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx


class ErrorType(str, Enum):
    """Error classification."""
    INFRA = "infra_error"
    SEMANTIC = "semantic_error"


class ErrorCode(str, Enum):
    """Caller-facing error codes returned in ServiceResult.error_code."""
    ACCESS_DENIED = "ACCESS_DENIED"
    CREDIT_DEDUCTION_FAILED = "CREDIT_DEDUCTION_FAILED"
    OPERATION_FAILED = "OPERATION_FAILED"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_INPUT = "INVALID_INPUT"
    PLAN_LIMIT_EXCEEDED = "PLAN_LIMIT_EXCEEDED"
    NO_PROVIDER_FOR_MODEL = "NO_PROVIDER_FOR_MODEL"
    INVALID_TOKEN_FORMAT = "INVALID_TOKEN_FORMAT"
    CONTEXT_INVALID = "CONTEXT_INVALID"
    DUPLICATE_REQUEST = "DUPLICATE_REQUEST"


@dataclass
class ErrorDetails:
    """Full error information for API response."""
    # Core fields (always present)
    code: str
    message: str
    type: ErrorType

    # Context fields
    provider: Optional[str] = None
    param: Optional[str] = None

    # Trace fields
    request_id: str = ""

    # Recovery fields
    retryable: bool = False
    retry_after: Optional[int] = None

    # Debug fields
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "code": self.code,
            "message": self.message,
            "type": self.type.value,
            "request_id": self.request_id,
            "retryable": self.retryable,
        }

        if self.provider:
            result["provider"] = self.provider
        if self.param:
            result["param"] = self.param
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        if self.details:
            result["details"] = self.details

        return {"error": result}


class GateException(Exception):
    """Base exception for all AIGate errors."""

    def __init__(self, error: ErrorDetails, status_code: int = 500):
        self.error = error
        self.status_code = status_code
        super().__init__(error.message)

    @property
    def code(self) -> str:
        return self.error.code


# ============================================================
# Infra Errors (Retryable)
# ============================================================

class InfraError(GateException):
    """Base class for infrastructure errors."""
    pass


class ProviderError(InfraError):
    """Provider call failed."""

    def __init__(
        self,
        provider: str,
        message: str,
        code: str = "provider_error",
        status_code: int = 502,
        retryable: bool = True,
        request_id: str = "",
        retry_after: Optional[int] = None,
    ):
        super().__init__(
            ErrorDetails(
                code=code,
                message=message,
                type=ErrorType.INFRA,
                provider=provider,
                request_id=request_id,
                retryable=retryable,
                retry_after=retry_after,
            ),
            status_code=status_code
        )


class ProviderTimeoutError(ProviderError):
    """Provider did not respond within the deadline."""

    def __init__(self, provider: str, timeout: float, request_id: str = ""):
        super().__init__(
            provider,
            f"{provider} did not respond within {timeout:g}s",
            code="provider_timeout",
            status_code=504,
            request_id=request_id,
            retry_after=10,
        )


class ProviderRateLimitedError(ProviderError):
    """Provider rejected the call with 429."""

    def __init__(self, provider: str, retry_after: int = 60, request_id: str = ""):
        super().__init__(
            provider,
            f"{provider} rate limit exceeded. Retry after {retry_after} seconds.",
            code="provider_rate_limited",
            status_code=429,
            request_id=request_id,
            retry_after=retry_after,
        )


class ProviderAuthError(ProviderError):
    """Provider rejected the credential."""

    def __init__(self, provider: str, request_id: str = ""):
        super().__init__(
            provider,
            f"{provider} rejected the configured credential",
            code="provider_auth_failed",
            status_code=502,
            retryable=False,
            request_id=request_id,
        )


class StoreUnavailableError(InfraError):
    """An external store (accounts, audit, secrets) is unreachable."""

    def __init__(self, store: str, message: str = ""):
        super().__init__(
            ErrorDetails(
                code="store_unavailable",
                message=message or f"{store} store unavailable",
                type=ErrorType.INFRA,
                retryable=True,
                details={"store": store},
            ),
            status_code=503
        )


# ============================================================
# Semantic Errors (Not Retryable)
# ============================================================

class SemanticError(GateException):
    """Base class for semantic errors (caller or operator must fix)."""
    pass


class ContextValidationError(SemanticError):
    """Request context could not be assembled; carries every failure found."""

    def __init__(self, errors: List[str], request_id: str = ""):
        self.errors = list(errors)
        super().__init__(
            ErrorDetails(
                code=ErrorCode.CONTEXT_INVALID.value,
                message="Context validation failed: " + "; ".join(self.errors),
                type=ErrorType.SEMANTIC,
                request_id=request_id,
                retryable=False,
                details={"errors": self.errors},
            ),
            status_code=400
        )


class AccountNotFoundError(SemanticError):
    """No account exists for the user."""

    def __init__(self, user_id: str):
        super().__init__(
            ErrorDetails(
                code="account_not_found",
                message=f"User not found: {user_id}",
                type=ErrorType.SEMANTIC,
                retryable=False,
            ),
            status_code=404
        )


class InvalidSessionError(SemanticError):
    """Session token is unknown or expired."""

    def __init__(self, message: str = "Invalid or expired session"):
        super().__init__(
            ErrorDetails(
                code="invalid_session",
                message=message,
                type=ErrorType.SEMANTIC,
                retryable=False,
            ),
            status_code=401
        )


class NoProviderForModelError(SemanticError):
    """Requested model is not mapped to any provider."""

    def __init__(self, model: str):
        super().__init__(
            ErrorDetails(
                code=ErrorCode.NO_PROVIDER_FOR_MODEL.value,
                message=f"No provider configured for model '{model}'",
                type=ErrorType.SEMANTIC,
                retryable=False,
                details={"requested_model": model},
            ),
            status_code=500
        )


class InvalidTokenFormatError(SemanticError):
    """Stored credential does not match the provider's key format."""

    def __init__(self, provider: str):
        super().__init__(
            ErrorDetails(
                code=ErrorCode.INVALID_TOKEN_FORMAT.value,
                message=f"Credential for {provider} has an invalid format",
                type=ErrorType.SEMANTIC,
                provider=provider,
                retryable=False,
            ),
            status_code=500
        )


class SecretNotFoundError(SemanticError):
    """No credential is stored for the provider."""

    def __init__(self, provider: str):
        super().__init__(
            ErrorDetails(
                code="secret_not_found",
                message=f"No credential configured for {provider}",
                type=ErrorType.SEMANTIC,
                provider=provider,
                retryable=False,
            ),
            status_code=500
        )


class RateLimitExceededError(SemanticError):
    """User exceeded the plan's request rate."""

    def __init__(self, remaining: int, retry_after: int, request_id: str = ""):
        super().__init__(
            ErrorDetails(
                code=ErrorCode.RATE_LIMITED.value,
                message=f"Rate limit exceeded. Retry after {retry_after} seconds.",
                type=ErrorType.SEMANTIC,
                request_id=request_id,
                retryable=True,
                retry_after=retry_after,
                details={"remaining": remaining},
            ),
            status_code=429
        )


# ============================================================
# Provider error handling
# ============================================================

def handle_provider_error(
    provider: str,
    error: Exception,
    request_id: str = ""
) -> GateException:
    """
    Convert an httpx/transport failure into a canonical ProviderError.

    Already-converted GateExceptions are returned unchanged.
    """
    if isinstance(error, GateException):
        return error

    if isinstance(error, httpx.TimeoutException):
        return ProviderTimeoutError(provider, 0, request_id)

    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        try:
            body = error.response.json()
        except ValueError:
            body = {}
        message = ""
        if isinstance(body, dict):
            err = body.get("error", {})
            message = err.get("message", "") if isinstance(err, dict) else str(err)
        message = message or f"{provider} returned error {status_code}"

        if status_code in (401, 403):
            return ProviderAuthError(provider, request_id)
        if status_code == 429:
            retry_after = 60
            if "retry-after" in error.response.headers:
                try:
                    retry_after = int(error.response.headers["retry-after"])
                except ValueError:
                    pass
            return ProviderRateLimitedError(provider, retry_after, request_id)
        if status_code >= 500:
            return ProviderError(
                provider, message, code=f"upstream_{status_code}", request_id=request_id
            )
        return ProviderError(
            provider, message, code="provider_rejected_request",
            status_code=400, retryable=False, request_id=request_id
        )

    if isinstance(error, httpx.TransportError):
        return ProviderError(
            provider, f"Failed to connect to {provider}: {error}",
            code="connection_error", status_code=504, request_id=request_id
        )

    return ProviderError(provider, str(error), code="unknown_error", request_id=request_id)
