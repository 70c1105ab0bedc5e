"""
AIGate - Subscription Manager

Resolves a user's plan and credit balance, derives permissions from the plan
table, gates operations and performs atomic credit debits.

Every debit is delegated to the account store's conditional update; nothing
here reads a balance and then writes it.
"""

from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Union

from ..core.errors import AccountNotFoundError, GateException
from ..core.models import (
    AccessDecision,
    Credits,
    DebitResult,
    Operation,
    PermissionContext,
    Plan,
    RateLimitResult,
    SubscriptionContext,
    utcnow,
)
from ..db.base import AccountStore
from ..observability.logging import get_logger
from ..observability.metrics import MetricsCollector, get_metrics
from .limits import RateLimiter
from .plans import ModelConfig, get_plan_config

logger = get_logger(__name__)

# Reasons returned in AccessDecision.reason
SUBSCRIPTION_INACTIVE = "subscription_inactive"
FEATURE_NOT_AVAILABLE = "feature_not_available"
INSUFFICIENT_CREDITS = "insufficient_credits"


def parse_operation(operation: Union[Operation, str]) -> Optional[Operation]:
    """Operation for a raw name, or None if it is not a known operation."""
    if isinstance(operation, Operation):
        return operation
    try:
        return Operation(operation)
    except ValueError:
        return None


class SubscriptionManager:
    """
    Plan, permission and credit authority for the pipeline.

    Args:
        account_store: Source of accounts and the atomic debit primitive.
        rate_limiter: Per-user request counters. A private one is created
            when omitted.
        metrics: Prometheus collector; the process-wide one by default.
    """

    def __init__(
        self,
        account_store: AccountStore,
        rate_limiter: Optional[RateLimiter] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.account_store = account_store
        self.rate_limiter = rate_limiter or RateLimiter()
        self.metrics = metrics or get_metrics()

    # ============================================================
    # Subscription & permissions
    # ============================================================

    async def load_subscription(self, user_id: str, request_id: str = "") -> SubscriptionContext:
        """
        Read the user's account and build a subscription snapshot.

        Raises:
            AccountNotFoundError: No account exists for user_id.
            StoreUnavailableError: The account store could not be reached.
        """
        account = await self.account_store.get_account(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)

        plan = Plan.parse(account.plan)
        is_active = account.is_active
        if account.expires_at is not None and account.expires_at <= utcnow():
            is_active = False

        credits = Credits.from_usage(account.credits_limit, account.credits_used)
        subscription = SubscriptionContext(
            plan=plan,
            tier=plan.tier,
            is_active=is_active,
            credits=credits,
            features=self.features_for(plan, account.feature_overrides),
            expires_at=account.expires_at,
            organization_id=account.organization_id,
        )

        logger.debug(
            "Loaded subscription",
            user_id=user_id,
            plan=plan.value,
            credits_available=credits.available,
            request_id=request_id,
        )
        return subscription

    @staticmethod
    def features_for(
        plan: Plan,
        overrides: Optional[Mapping[str, bool]] = None,
    ) -> frozenset:
        """Operations available on a plan, with per-user grants and revocations applied."""
        features = set(get_plan_config(plan).available_operations)
        for name, enabled in (overrides or {}).items():
            if parse_operation(name) is None:
                continue
            if enabled:
                features.add(name)
            else:
                features.discard(name)
        return frozenset(features)

    def permissions_for(
        self,
        plan: Plan,
        features: Optional[Iterable[str]] = None,
    ) -> PermissionContext:
        """
        Permissions derived from the plan table.

        features replaces the plan's default operation set when given (for
        example a subscription snapshot with user overrides applied).
        """
        config = get_plan_config(plan)
        allowed = frozenset(features) if features is not None else config.available_operations

        return PermissionContext(
            can_use_ai=plan != Plan.FREE or len(allowed) > 0,
            allowed_features=allowed,
            rate_limits=config.rate_limits,
            feature_flags=MappingProxyType(dict(config.feature_flags)),
            restrictions=config.restrictions,
        )

    def is_feature_enabled(self, plan: Plan, flag: str) -> bool:
        return get_plan_config(plan).feature_flags.get(flag, False)

    def credit_cost(self, plan: Plan, operation: Union[Operation, str]) -> int:
        op = parse_operation(operation)
        if op is None:
            return 0
        return get_plan_config(plan).credit_cost(op)

    def max_items(self, plan: Plan, operation: Union[Operation, str]) -> int:
        op = parse_operation(operation)
        if op is None:
            return 0
        return get_plan_config(plan).max_items_for(op)

    def model_config(self, plan: Plan) -> ModelConfig:
        return get_plan_config(plan).models

    # ============================================================
    # Gate
    # ============================================================

    def validate_access(
        self,
        subscription: SubscriptionContext,
        operation: Union[Operation, str],
    ) -> AccessDecision:
        """
        Decide whether the subscription may run the operation.

        Checks, in order: active subscription, operation available on the
        plan, enough credits for its cost.
        """
        if not subscription.is_active:
            return AccessDecision(granted=False, reason=SUBSCRIPTION_INACTIVE)

        op = parse_operation(operation)
        if op is None or op.value not in subscription.features:
            return AccessDecision(granted=False, reason=FEATURE_NOT_AVAILABLE)

        cost = get_plan_config(subscription.plan).credit_cost(op)
        if subscription.credits.available < cost:
            return AccessDecision(granted=False, reason=INSUFFICIENT_CREDITS, credit_cost=cost)

        return AccessDecision(granted=True, credit_cost=cost)

    async def debit_credits(
        self,
        user_id: str,
        amount: int,
        operation: Union[Operation, str],
        request_id: str,
    ) -> DebitResult:
        """
        Atomically debit amount credits, tagged with operation and request_id.

        Never raises for store failures; they come back as success=False.
        """
        op_name = operation.value if isinstance(operation, Operation) else str(operation)
        try:
            result = await self.account_store.debit(user_id, amount, op_name, request_id)
        except GateException as e:
            logger.error(
                "Credit deduction error",
                user_id=user_id,
                operation=op_name,
                request_id=request_id,
                error=str(e),
            )
            return DebitResult(success=False, new_balance=0, error=str(e))

        if result.success:
            logger.info(
                "Credits debited",
                user_id=user_id,
                amount=amount,
                operation=op_name,
                new_balance=result.new_balance,
                request_id=request_id,
            )
        else:
            logger.warning(
                "Credit deduction failed",
                user_id=user_id,
                amount=amount,
                operation=op_name,
                request_id=request_id,
                error=result.error,
            )
        return result

    async def check_rate_limit(
        self,
        user_id: str,
        operation: Union[Operation, str],
        permissions: PermissionContext,
    ) -> RateLimitResult:
        """Advisory rate-limit verdict; counts the request when allowed."""
        op_name = operation.value if isinstance(operation, Operation) else str(operation)
        result, window = await self.rate_limiter.check(user_id, permissions.rate_limits)
        if not result.allowed:
            self.metrics.record_rate_limit_hit(op_name, window.value if window else "unknown")
            logger.warning(
                "Rate limit exceeded",
                user_id=user_id,
                operation=op_name,
                window=window.value if window else None,
                reset_time=result.reset_time.isoformat(),
            )
        return result
