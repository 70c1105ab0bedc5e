"""
AIGate - Tier Services

Gate-and-debit execution of AI operations for each subscription tier.
"""

from .base import AI_NOT_PERMITTED, BaseService
from .basic import BasicService
from .premium import PremiumService
from .factory import SERVICE_CLASSES, ServiceFactory
from .prompts import OPERATION_SPECS, OperationSpec, build_messages
from .validation import (
    DIFFICULTIES,
    OperationRequest,
    ValidationResult,
    sanitize_text,
    validate_params,
)

__all__ = [
    "AI_NOT_PERMITTED",
    "BaseService",
    "BasicService",
    "PremiumService",
    "SERVICE_CLASSES",
    "ServiceFactory",
    "OPERATION_SPECS",
    "OperationSpec",
    "build_messages",
    "DIFFICULTIES",
    "OperationRequest",
    "ValidationResult",
    "sanitize_text",
    "validate_params",
]
