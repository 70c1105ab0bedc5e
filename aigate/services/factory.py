"""
AIGate - Service Factory

Selects the tier service for a request context.
"""

import dataclasses
from types import MappingProxyType
from typing import Mapping, Optional, Type

from ..core.models import Plan, RequestContext, Tier
from ..observability.logging import get_logger
from ..observability.metrics import MetricsCollector, get_metrics
from ..subscription.manager import SubscriptionManager
from ..tokens.manager import TokenManager
from ..usage.tracker import UsageTracker
from .base import BaseService
from .basic import BasicService
from .premium import PremiumService

logger = get_logger(__name__)

SERVICE_CLASSES: Mapping[Tier, Type[BaseService]] = MappingProxyType({
    Tier.FREE: BasicService,
    Tier.BASIC: BasicService,
    Tier.PREMIUM: PremiumService,
    Tier.ENTERPRISE: PremiumService,
})


def _parse_tier(raw) -> Optional[Tier]:
    if isinstance(raw, Tier):
        return raw
    try:
        return Tier(str(raw).lower())
    except ValueError:
        return None


class ServiceFactory:
    """Builds tier services that share the pipeline's collaborators."""

    def __init__(
        self,
        subscription_manager: SubscriptionManager,
        token_manager: TokenManager,
        usage_tracker: UsageTracker,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.subscription_manager = subscription_manager
        self.token_manager = token_manager
        self.usage_tracker = usage_tracker
        self.metrics = metrics or get_metrics()

    def create_service(self, context: RequestContext) -> BaseService:
        """
        Service for the context's tier.

        An unrecognised tier is served by BasicService with the subscription
        downgraded to FREE.
        """
        tier = _parse_tier(context.subscription.tier)
        service_class = SERVICE_CLASSES.get(tier) if tier is not None else None

        if service_class is None:
            logger.warning(
                "Unknown subscription tier, downgrading to FREE",
                tier=str(context.subscription.tier),
                user_id=context.user_id,
                request_id=context.request.id,
            )
            context = self._downgrade(context)
            service_class = BasicService

        return service_class(
            context,
            self.subscription_manager,
            self.token_manager,
            self.usage_tracker,
            metrics=self.metrics,
        )

    def _downgrade(self, context: RequestContext) -> RequestContext:
        subscription = dataclasses.replace(
            context.subscription,
            plan=Plan.FREE,
            tier=Tier.FREE,
            features=self.subscription_manager.features_for(Plan.FREE),
        )
        permissions = self.subscription_manager.permissions_for(Plan.FREE, subscription.features)
        if not context.is_authenticated:
            permissions = dataclasses.replace(permissions, can_use_ai=False)
        return dataclasses.replace(context, subscription=subscription, permissions=permissions)
