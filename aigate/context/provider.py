"""
AIGate - Context Provider

Builds the immutable RequestContext for each inbound call.

Sequence: validate identity -> load subscription -> derive permissions ->
resolve organization -> assess security -> assemble -> validate.
A context that fails validation is never returned.
"""

import dataclasses
import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, List, Optional

from ..core.errors import ContextValidationError
from ..core.models import (
    AuditLevel,
    Credits,
    EncryptionLevel,
    Identity,
    Organization,
    PermissionContext,
    Plan,
    RequestContext,
    RequestInfo,
    RequestMeta,
    SecurityContext,
    SubscriptionContext,
    utcnow,
)
from ..db.base import AccountStore
from ..observability.logging import LogContext, get_logger
from ..observability.metrics import MetricsCollector, get_metrics
from ..security.assessor import MAX_RISK_SCORE, SecurityAssessor
from ..subscription.manager import SubscriptionManager
from ..subscription.plans import get_plan_config

logger = get_logger(__name__)

ANONYMOUS_USER_ID = "anonymous"
ANONYMOUS_RISK_SCORE = 50
AUTHENTICATION_REQUIRED = "authentication_required"

# Fields update_context may patch; request is always refreshed instead
PATCHABLE_FIELDS = frozenset({
    "session_id",
    "subscription",
    "permissions",
    "security",
    "organization",
})


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:24]}"


@dataclass
class ContextValidation:
    """Outcome of validate_context. Errors are fatal, warnings are logged."""
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


class ContextProvider:
    """
    Composes subscription, permission and security state into one context.

    Args:
        subscription_manager: Plan, permission and credit authority.
        security_assessor: Risk scoring.
        account_store: Used to resolve organizations. Defaults to the
            subscription manager's store.
        metrics: Prometheus collector; the process-wide one by default.
    """

    def __init__(
        self,
        subscription_manager: SubscriptionManager,
        security_assessor: SecurityAssessor,
        account_store: Optional[AccountStore] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.subscription_manager = subscription_manager
        self.security_assessor = security_assessor
        self.account_store = account_store or subscription_manager.account_store
        self.metrics = metrics or get_metrics()

    # ============================================================
    # Creation
    # ============================================================

    async def create_context(self, identity: Identity, request_meta: RequestMeta) -> RequestContext:
        """
        Context for an authenticated caller.

        Raises:
            ContextValidationError: The identity or the assembled context is invalid.
            AccountNotFoundError: The identity has no account.
            StoreUnavailableError: The account store could not be reached.
        """
        request_id = request_meta.request_id or new_request_id()

        identity_errors = self._validate_identity(identity)
        if identity_errors:
            raise ContextValidationError(identity_errors, request_id)

        subscription = await self.subscription_manager.load_subscription(
            identity.user_id, request_id
        )
        permissions = self.subscription_manager.permissions_for(
            subscription.plan, subscription.features
        )
        if identity.extra_restrictions:
            permissions = dataclasses.replace(
                permissions,
                restrictions=permissions.restrictions | frozenset(identity.extra_restrictions),
            )

        organization = await self._resolve_organization(
            identity.organization_id or subscription.organization_id
        )
        security = self.security_assessor.assess(request_meta, identity, organization)

        context = RequestContext(
            user_id=identity.user_id,
            session_id=identity.session_id,
            is_authenticated=identity.is_authenticated,
            subscription=subscription,
            permissions=permissions,
            security=security,
            request=self._request_info(request_meta, request_id),
            organization=organization,
        )
        self._ensure_valid(context)

        self.metrics.record_risk_score(security.risk_score)
        logger.info(
            "Request context created",
            user_id=context.user_id,
            request_id=request_id,
            plan=subscription.plan.value,
            risk_score=security.risk_score,
            audit_level=security.audit_level.value,
        )
        return context

    async def create_anonymous_context(self, request_meta: RequestMeta) -> RequestContext:
        """
        Context for an unauthenticated caller: no AI access, zero credits and
        a fixed risk score of 50.
        """
        request_id = request_meta.request_id or new_request_id()
        free = get_plan_config(Plan.FREE)

        context = RequestContext(
            user_id=ANONYMOUS_USER_ID,
            session_id="",
            is_authenticated=False,
            subscription=SubscriptionContext(
                plan=Plan.FREE,
                tier=Plan.FREE.tier,
                is_active=False,
                credits=Credits(available=0, used=0, limit=0),
                features=frozenset(),
            ),
            permissions=PermissionContext(
                can_use_ai=False,
                allowed_features=frozenset(),
                rate_limits=free.rate_limits,
                feature_flags=MappingProxyType(dict(free.feature_flags)),
                restrictions=free.restrictions | {AUTHENTICATION_REQUIRED},
            ),
            security=SecurityContext(
                risk_score=ANONYMOUS_RISK_SCORE,
                audit_level=AuditLevel.BASIC,
                encryption_level=EncryptionLevel.STANDARD,
            ),
            request=self._request_info(request_meta, request_id),
        )
        self._ensure_valid(context)

        logger.debug("Anonymous context created", request_id=request_id)
        return context

    def update_context(self, context: RequestContext, **patch: Any) -> RequestContext:
        """
        New context with patch merged and request.timestamp refreshed.

        Raises:
            ValueError: patch names a field that cannot be changed.
            ContextValidationError: The patched context is invalid.
        """
        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update context fields: {', '.join(sorted(unknown))}")

        updated = dataclasses.replace(
            context,
            request=dataclasses.replace(context.request, timestamp=utcnow()),
            **patch,
        )
        self._ensure_valid(updated)
        return updated

    # ============================================================
    # Validation
    # ============================================================

    @staticmethod
    def _validate_identity(identity: Optional[Identity]) -> List[str]:
        if identity is None:
            return ["identity is required"]
        errors = []
        if not identity.user_id or not identity.user_id.strip():
            errors.append("identity has no user id")
        if not identity.is_authenticated:
            errors.append("identity is not authenticated")
        return errors

    def validate_context(self, context: RequestContext) -> ContextValidation:
        """Check a context's internal consistency."""
        result = ContextValidation()
        credits = context.subscription.credits
        permissions = context.permissions

        if not context.user_id:
            result.errors.append("user id is missing")
        if not context.request.id:
            result.errors.append("request id is missing")
        if not 0 <= context.security.risk_score <= MAX_RISK_SCORE:
            result.errors.append(
                f"risk score {context.security.risk_score} outside 0..{MAX_RISK_SCORE}"
            )
        if permissions.can_use_ai and not context.is_authenticated:
            result.errors.append("AI access granted to an unauthenticated caller")
        if credits.available < 0:
            result.errors.append("available credits are negative")
        elif credits.available != max(0, credits.limit - credits.used):
            result.errors.append(
                f"available credits {credits.available} do not match "
                f"limit {credits.limit} minus used {credits.used}"
            )
        if context.subscription.tier != context.subscription.plan.tier:
            result.errors.append(
                f"tier {context.subscription.tier.value} does not match plan "
                f"{context.subscription.plan.value}"
            )

        if permissions.can_use_ai and credits.available == 0:
            result.warnings.append("AI access granted with zero credits available")
        if permissions.can_use_ai and not context.subscription.is_active:
            result.warnings.append("AI access granted on an inactive subscription")
        if credits.used > credits.limit:
            result.warnings.append("credits used exceed the limit")
        if context.security.requires_approval:
            result.warnings.append("risk score requires manual approval")

        return result

    def _ensure_valid(self, context: RequestContext) -> None:
        result = self.validate_context(context)
        for warning in result.warnings:
            logger.warning(
                "Context warning",
                warning=warning,
                user_id=context.user_id,
                request_id=context.request.id,
            )
        if not result.is_valid:
            logger.error(
                "Context validation failed",
                errors=result.errors,
                user_id=context.user_id,
                request_id=context.request.id,
            )
            raise ContextValidationError(result.errors, context.request.id)

    # ============================================================
    # Helpers
    # ============================================================

    async def _resolve_organization(self, organization_id: Optional[str]) -> Optional[Organization]:
        if not organization_id:
            return None
        organization = await self.account_store.get_organization(organization_id)
        if organization is None:
            logger.warning("Organization not found", organization_id=organization_id)
        return organization

    @staticmethod
    def _request_info(request_meta: RequestMeta, request_id: str) -> RequestInfo:
        current = LogContext.get_current()
        correlation_id = (
            request_meta.correlation_id
            or (current.correlation_id if current and current.correlation_id else None)
            or request_id
        )
        return RequestInfo(
            id=request_id,
            timestamp=utcnow(),
            source=request_meta.source,
            ip=request_meta.ip,
            user_agent=request_meta.user_agent,
            correlation_id=correlation_id,
        )
