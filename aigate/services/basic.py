"""
AIGate - Basic Service

Serves FREE and BASIC plans with the cost-efficient models. Open-ended and
coding quizzes are not offered here.
"""

from ..core.models import Operation
from .base import BaseService


class BasicService(BaseService):
    name = "basic"
    enabled_operations = frozenset(Operation) - {
        Operation.QUIZ_OPENENDED,
        Operation.QUIZ_CODE,
    }
    max_temperature = 0.7
    max_tokens_cap = 3072
    premium_prompts = False
