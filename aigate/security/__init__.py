"""AIGate security: request risk assessment."""

from .assessor import (
    SecurityAssessor,
    APPROVAL_THRESHOLD,
    PROXY_HEADERS,
)

__all__ = [
    "SecurityAssessor",
    "APPROVAL_THRESHOLD",
    "PROXY_HEADERS",
]
