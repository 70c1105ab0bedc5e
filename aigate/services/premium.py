"""
AIGate - Premium Service

Serves PREMIUM and ENTERPRISE plans: every operation, the larger models and
the richer prompt set.
"""

from ..core.models import Operation
from .base import BaseService


class PremiumService(BaseService):
    name = "premium"
    enabled_operations = frozenset(Operation)
    max_temperature = 1.0
    max_tokens_cap = 8192
    premium_prompts = True
