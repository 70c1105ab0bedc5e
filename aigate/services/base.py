"""
AIGate - Gated Service Base

Every operation runs the gate-and-debit protocol, short-circuiting on the
first failure:

1. validate access (plan, feature, credits)       -> ACCESS_DENIED
2. validate input and plan item limits            -> INVALID_INPUT / PLAN_LIMIT_EXCEEDED
3. debit credits atomically                       -> CREDIT_DEDUCTION_FAILED / DUPLICATE_REQUEST
4. acquire a provider (primary, then fallback)    -> NO_PROVIDER_FOR_MODEL / INVALID_TOKEN_FORMAT
5. call the provider under a deadline             -> OPERATION_FAILED
6. record the outcome with the usage tracker

Steps 1-3 make no provider call and write no audit entry, except a debit
interrupted by cancellation, which is tracked. From step 4 on the outcome is
always tracked and debited credits are never refunded. A request id the
ledger has already settled for the user is refused at step 3, so one charge
buys exactly one provider call.
"""

import asyncio
import json
import time
from abc import ABC
from typing import Any, Dict, FrozenSet, Optional, Tuple, Union

from ..core.config import get_provider_timeout
from ..core.errors import (
    ErrorCode,
    GateException,
    InvalidTokenFormatError,
    NoProviderForModelError,
    SecretNotFoundError,
)
from ..core.models import (
    CompletionResult,
    Operation,
    OperationOutcome,
    RequestContext,
    ServiceResult,
)
from ..observability.logging import get_logger
from ..observability.metrics import MetricsCollector, get_metrics
from ..observability.tracing import trace_operation, trace_provider_call
from ..subscription.manager import (
    FEATURE_NOT_AVAILABLE,
    SubscriptionManager,
    parse_operation,
)
from ..subscription.plans import UNLIMITED, ModelConfig
from ..tokens.manager import ProviderHandle, TokenManager
from ..usage.tracker import UsageTracker
from .prompts import OPERATION_SPECS, OperationSpec, build_messages
from .validation import OperationRequest, validate_params

logger = get_logger(__name__)

AI_NOT_PERMITTED = "ai_not_permitted"

# Provider acquisition errors that trigger the fallback model
CONFIGURATION_ERRORS = (NoProviderForModelError, InvalidTokenFormatError, SecretNotFoundError)


def _configuration_error_code(error: GateException) -> str:
    if isinstance(error, InvalidTokenFormatError):
        return ErrorCode.INVALID_TOKEN_FORMAT.value
    return ErrorCode.NO_PROVIDER_FOR_MODEL.value


class BaseService(ABC):
    """
    Tier service bound to one request context.

    Subclasses set the enabled operations and the sampling bounds; the
    protocol itself is shared.
    """

    name: str = "base"
    enabled_operations: FrozenSet[Operation] = frozenset(Operation)
    max_temperature: float = 1.0
    max_tokens_cap: int = 8192
    premium_prompts: bool = False

    def __init__(
        self,
        context: RequestContext,
        subscription_manager: SubscriptionManager,
        token_manager: TokenManager,
        usage_tracker: UsageTracker,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.context = context
        self.subscription_manager = subscription_manager
        self.token_manager = token_manager
        self.usage_tracker = usage_tracker
        self.metrics = metrics or get_metrics()
        self.model_config: ModelConfig = subscription_manager.model_config(
            context.subscription.plan
        )

    @property
    def temperature(self) -> float:
        return min(self.model_config.temperature, self.max_temperature)

    @property
    def max_tokens(self) -> int:
        return min(self.model_config.max_tokens, self.max_tokens_cap)

    @property
    def request_id(self) -> str:
        return self.context.request.id

    # ============================================================
    # Entry point
    # ============================================================

    async def execute(
        self,
        operation: Union[Operation, str],
        params: Optional[Dict[str, Any]] = None,
    ) -> ServiceResult:
        """
        Run one operation through the gate-and-debit protocol.

        Never raises for gate, credit, configuration or provider failures;
        they come back as a failed ServiceResult. Cancellation propagates
        after the outcome has been tracked.
        """
        op_name = operation.value if isinstance(operation, Operation) else str(operation)
        tier = self.context.subscription.tier.value
        started = time.monotonic()

        with trace_operation(op_name, tier, self.request_id) as span:
            with self.metrics.track_active_operation(tier):
                result = await self._run(op_name, dict(params or {}), started)
            span.set_attribute("aigate.success", result.success)
            if result.error_code:
                span.set_attribute("aigate.error_code", result.error_code)

        self.metrics.record_operation(
            op_name,
            tier,
            "success" if result.success else (result.error_code or "error"),
            time.monotonic() - started,
        )
        return result

    async def _run(self, op_name: str, params: Dict[str, Any], started: float) -> ServiceResult:
        # Gate
        denied = self._check_access(op_name)
        if denied is not None:
            return denied

        operation = parse_operation(op_name)
        spec = OPERATION_SPECS[operation]
        limit = self.subscription_manager.max_items(self.context.subscription.plan, operation)

        # an omitted count defaults to at most the plan's item limit
        if spec.uses_count and params.get("count") is None and limit != UNLIMITED:
            params["count"] = min(spec.default_count, limit)

        validation = validate_params(spec, params)
        if not validation.is_valid:
            return ServiceResult.failure(
                ErrorCode.INVALID_INPUT.value,
                validation.message,
                fields=[e.path for e in validation.errors],
            )
        request = validation.request

        if spec.uses_count and limit != UNLIMITED and request.count > limit:
            return ServiceResult.failure(
                ErrorCode.PLAN_LIMIT_EXCEEDED.value,
                f"Maximum {limit} items allowed for your plan.",
                requested=request.count,
                allowed=limit,
                plan=self.context.subscription.plan.value,
            )

        # Debit
        cost = self.subscription_manager.credit_cost(self.context.subscription.plan, operation)
        outcome = OperationOutcome(name=op_name, credits=cost)
        if cost > 0:
            try:
                debit = await self.subscription_manager.debit_credits(
                    self.context.user_id, cost, operation, self.request_id
                )
            except asyncio.CancelledError:
                # the store may already have committed the charge
                outcome.metadata["debit_state"] = "unknown"
                await self._track_cancelled(outcome, started)
                raise
            if not debit.success:
                return ServiceResult.failure(
                    ErrorCode.CREDIT_DEDUCTION_FAILED.value,
                    "Credit deduction failed",
                    reason=debit.error,
                )
            if debit.already_applied:
                logger.warning(
                    "Replayed request id refused",
                    user_id=self.context.user_id,
                    operation=op_name,
                    request_id=self.request_id,
                )
                return ServiceResult.failure(
                    ErrorCode.DUPLICATE_REQUEST.value,
                    "Request id was already settled; send a new request id",
                    reason="request_already_settled",
                )
            self.metrics.record_debit(op_name, self.context.subscription.tier.value, cost)

        # Provider call; tracked whatever happens from here on
        try:
            result = await self._call_provider(spec, request, params, outcome)
        except asyncio.CancelledError:
            await self._track_cancelled(outcome, started)
            raise

        outcome.duration_ms = int((time.monotonic() - started) * 1000)
        await self.usage_tracker.track(self.context, outcome)
        return result

    async def _track_cancelled(self, outcome: OperationOutcome, started: float) -> None:
        outcome.success = False
        outcome.error = "cancelled"
        outcome.duration_ms = int((time.monotonic() - started) * 1000)
        await self.usage_tracker.track(self.context, outcome)

    def _check_access(self, op_name: str) -> Optional[ServiceResult]:
        permissions = self.context.permissions
        if not permissions.can_use_ai:
            return self._deny(op_name, AI_NOT_PERMITTED)

        decision = self.subscription_manager.validate_access(self.context.subscription, op_name)
        if not decision.granted:
            return self._deny(op_name, decision.reason, credit_cost=decision.credit_cost)

        if parse_operation(op_name) not in self.enabled_operations:
            return self._deny(op_name, FEATURE_NOT_AVAILABLE)
        return None

    def _deny(self, op_name: str, reason: Optional[str], **metadata: Any) -> ServiceResult:
        self.metrics.record_access_denied(reason or "unknown")
        logger.warning(
            "Access denied",
            user_id=self.context.user_id,
            operation=op_name,
            reason=reason,
            risk_score=self.context.security.risk_score,
            request_id=self.request_id,
            service=self.name,
        )
        return ServiceResult.failure(
            ErrorCode.ACCESS_DENIED.value,
            f"Access denied: {reason}",
            reason=reason,
            **metadata,
        )

    # ============================================================
    # Provider
    # ============================================================

    async def _acquire_provider(
        self,
        timeout: float,
    ) -> Tuple[Optional[ProviderHandle], Optional[GateException]]:
        """Handle for the primary model, falling back once to the plan's fallback model."""
        models = [self.model_config.primary]
        if self.model_config.fallback and self.model_config.fallback != self.model_config.primary:
            models.append(self.model_config.fallback)

        last_error: Optional[GateException] = None
        for model in models:
            try:
                return await self.token_manager.get_provider(self.context, model, timeout), None
            except CONFIGURATION_ERRORS as e:
                last_error = e
                logger.warning(
                    "Provider unavailable for model",
                    model=model,
                    error_code=e.code,
                    request_id=self.request_id,
                )
        return None, last_error

    async def _call_provider(
        self,
        spec: OperationSpec,
        request: OperationRequest,
        params: Dict[str, Any],
        outcome: OperationOutcome,
    ) -> ServiceResult:
        timeout = float(params.get("timeout") or get_provider_timeout())

        try:
            handle, config_error = await self._acquire_provider(timeout)
        except GateException as e:
            outcome.success = False
            outcome.error = e.error.message
            return ServiceResult.failure(
                ErrorCode.OPERATION_FAILED.value,
                e.error.message,
                credits_used=outcome.credits,
            )

        if handle is None:
            code = _configuration_error_code(config_error)
            outcome.success = False
            outcome.error = config_error.error.message
            outcome.model = self.model_config.primary
            logger.error(
                "No usable provider for plan models",
                error_code=code,
                plan=self.context.subscription.plan.value,
                request_id=self.request_id,
            )
            return ServiceResult.failure(code, config_error.error.message, credits_used=outcome.credits)

        outcome.model = handle.model
        outcome.metadata["provider"] = handle.provider.value
        outcome.metadata["fallback_used"] = handle.model != self.model_config.primary

        messages = build_messages(
            spec,
            request.source,
            request.count,
            request.difficulty,
            request.language,
            premium=self.premium_prompts,
        )
        try:
            with trace_provider_call(handle.provider.value, handle.model, spec.operation.value):
                completion = await asyncio.wait_for(
                    handle.client.generate_completion(
                        handle.model,
                        messages,
                        functions=[spec.function],
                        temperature=self.temperature,
                        max_tokens=self.max_tokens,
                        request_id=self.request_id,
                    ),
                    timeout=timeout,
                )
        except asyncio.TimeoutError:
            return self._provider_failure(outcome, f"Provider call timed out after {timeout:g}s")
        except GateException as e:
            return self._provider_failure(outcome, e.error.message)
        except Exception as e:
            logger.exception(
                "Unexpected provider failure",
                provider=handle.provider.value,
                request_id=self.request_id,
            )
            return self._provider_failure(outcome, str(e) or type(e).__name__)
        finally:
            await handle.close()

        tokens = completion.usage.total_tokens if completion.usage else 0
        outcome.tokens = tokens
        self.metrics.record_tokens(handle.model, tokens)

        data = self._parse_completion(spec, completion)
        if data is None:
            return self._provider_failure(outcome, "Provider returned an empty response")

        return ServiceResult(
            success=True,
            data=data,
            credits_used=outcome.credits,
            tokens_used=tokens,
            metadata={
                "model": handle.model,
                "provider": handle.provider.value,
                "service": self.name,
                "request_id": self.request_id,
            },
        )

    def _provider_failure(self, outcome: OperationOutcome, message: str) -> ServiceResult:
        outcome.success = False
        outcome.error = message
        logger.error(
            "Operation failed",
            operation=outcome.name,
            model=outcome.model,
            error=message,
            request_id=self.request_id,
        )
        return ServiceResult.failure(
            ErrorCode.OPERATION_FAILED.value,
            message,
            credits_used=outcome.credits,
            tokens_used=outcome.tokens,
        )

    def _parse_completion(self, spec: OperationSpec, completion: CompletionResult) -> Any:
        if completion.function_call and completion.function_call.arguments:
            try:
                parsed = json.loads(completion.function_call.arguments)
            except ValueError:
                logger.warning(
                    "Failed to parse function call arguments",
                    function_name=completion.function_call.name,
                    request_id=self.request_id,
                )
            else:
                if spec.result_key and isinstance(parsed, dict) and spec.result_key in parsed:
                    return parsed[spec.result_key]
                return parsed
        return completion.content or None
