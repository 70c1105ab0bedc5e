"""AIGate subscription: plan table, gating, credit debits and rate limits."""

from .plans import (
    CREDIT_COSTS,
    PLAN_CONFIGURATIONS,
    UNLIMITED,
    ModelConfig,
    PlanConfig,
    get_plan_config,
)
from .limits import LimitPeriod, RateLimiter
from .manager import (
    FEATURE_NOT_AVAILABLE,
    INSUFFICIENT_CREDITS,
    SUBSCRIPTION_INACTIVE,
    SubscriptionManager,
    parse_operation,
)

__all__ = [
    "CREDIT_COSTS",
    "PLAN_CONFIGURATIONS",
    "UNLIMITED",
    "ModelConfig",
    "PlanConfig",
    "get_plan_config",
    "LimitPeriod",
    "RateLimiter",
    "FEATURE_NOT_AVAILABLE",
    "INSUFFICIENT_CREDITS",
    "SUBSCRIPTION_INACTIVE",
    "SubscriptionManager",
    "parse_operation",
]
