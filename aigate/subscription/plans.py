"""
AIGate - Plan Configuration

Static, table-driven configuration for every subscription plan: monthly
credits, which operations are available, what each operation costs, per
request item limits, rate limits, feature flags, restrictions and model
settings.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, Mapping

from ..core.models import Operation, Plan, RateLimits

UNLIMITED = -1

# Credits charged per operation. Ordering quizzes are covered by daily limits.
CREDIT_COSTS: Mapping[Operation, int] = MappingProxyType({
    Operation.QUIZ_MCQ: 1,
    Operation.QUIZ_BLANKS: 1,
    Operation.QUIZ_OPENENDED: 2,
    Operation.QUIZ_CODE: 2,
    Operation.QUIZ_VIDEO: 2,
    Operation.QUIZ_FLASHCARD: 1,
    Operation.QUIZ_ORDERING: 0,
    Operation.COURSE_CREATION: 5,
    Operation.CONTENT_CREATION: 1,
    Operation.DOCUMENT_QUIZ: 3,
})


@dataclass(frozen=True)
class ModelConfig:
    """Model selection and sampling bounds for a plan."""
    primary: str
    fallback: str
    max_tokens: int
    temperature: float
    top_p: float


@dataclass(frozen=True)
class PlanConfig:
    plan: Plan
    monthly_credits: int
    features: Mapping[Operation, bool]
    max_items: Mapping[Operation, int]
    rate_limits: RateLimits
    models: ModelConfig
    feature_flags: Mapping[str, bool] = field(default_factory=lambda: MappingProxyType({}))
    restrictions: FrozenSet[str] = frozenset()
    credit_costs: Mapping[Operation, int] = field(default_factory=lambda: CREDIT_COSTS)

    @property
    def available_operations(self) -> FrozenSet[str]:
        return frozenset(op.value for op, enabled in self.features.items() if enabled)

    def credit_cost(self, operation: Operation) -> int:
        return self.credit_costs.get(operation, 0)

    def max_items_for(self, operation: Operation) -> int:
        return self.max_items.get(operation, UNLIMITED)


def _features(
    mcq: bool,
    blanks: bool,
    openended: bool,
    code: bool,
    video: bool,
    course: bool = True,
    content: bool = True,
) -> Mapping[Operation, bool]:
    return MappingProxyType({
        Operation.QUIZ_MCQ: mcq,
        Operation.QUIZ_BLANKS: blanks,
        Operation.QUIZ_OPENENDED: openended,
        Operation.QUIZ_CODE: code,
        Operation.QUIZ_VIDEO: video,
        # flashcards and ordering are on every plan
        Operation.QUIZ_FLASHCARD: True,
        Operation.QUIZ_ORDERING: True,
        Operation.COURSE_CREATION: course,
        Operation.CONTENT_CREATION: content,
        # document quizzes are built from fill-in-the-blanks generation
        Operation.DOCUMENT_QUIZ: blanks,
    })


def _max_items(per_quiz: int, course_length: int) -> Mapping[Operation, int]:
    limits: Dict[Operation, int] = {op: per_quiz for op in Operation}
    limits[Operation.COURSE_CREATION] = course_length
    return MappingProxyType(limits)


def _rate_limits(per_minute: int, per_hour: int, per_day: int) -> RateLimits:
    return RateLimits(
        per_minute=per_minute,
        per_hour=per_hour,
        per_day=per_day,
        burst=min(per_minute, 10),
    )


def _flags(
    features: Mapping[Operation, bool],
    pdf: bool,
    analytics: bool,
    recommendations: bool,
    advanced: bool,
    collaborative: bool = False,
    custom_models: bool = False,
) -> Mapping[str, bool]:
    flags = {op.value: enabled for op, enabled in features.items()}
    flags.update({
        "quiz-creation": True,
        "pdf-generation": pdf,
        "analytics": analytics,
        "analytics-basic": analytics or pdf,
        "enhanced-analytics": analytics,
        "ai-recommendations": recommendations,
        "beta-features": advanced,
        "collaborative-courses": collaborative,
        "advancedAI": advanced,
        "prioritySupport": advanced,
        "customModels": custom_models,
    })
    return MappingProxyType(flags)


_FREE_FEATURES = _features(mcq=True, blanks=False, openended=False, code=False, video=True)
_BASIC_FEATURES = _features(mcq=True, blanks=True, openended=False, code=False, video=False)
_PREMIUM_FEATURES = _features(mcq=True, blanks=True, openended=True, code=True, video=False)
_ENTERPRISE_FEATURES = _features(mcq=True, blanks=True, openended=True, code=True, video=True)


PLAN_CONFIGURATIONS: Mapping[Plan, PlanConfig] = MappingProxyType({
    Plan.FREE: PlanConfig(
        plan=Plan.FREE,
        monthly_credits=5,
        features=_FREE_FEATURES,
        max_items=_max_items(per_quiz=3, course_length=10),
        rate_limits=_rate_limits(5, 50, 100),
        models=ModelConfig("gpt-4o-mini", "gpt-3.5-turbo", 2048, 0.7, 0.9),
        feature_flags=_flags(
            _FREE_FEATURES, pdf=False, analytics=False,
            recommendations=False, advanced=False,
        ),
        restrictions=frozenset({"limited_quiz_types", "daily_limits"}),
    ),
    Plan.BASIC: PlanConfig(
        plan=Plan.BASIC,
        monthly_credits=50,
        features=_BASIC_FEATURES,
        max_items=_max_items(per_quiz=5, course_length=25),
        rate_limits=_rate_limits(10, 200, 500),
        models=ModelConfig("gpt-4o-mini", "gpt-3.5-turbo", 3072, 0.7, 0.9),
        feature_flags=_flags(
            _BASIC_FEATURES, pdf=True, analytics=False,
            recommendations=True, advanced=False,
        ),
    ),
    Plan.PREMIUM: PlanConfig(
        plan=Plan.PREMIUM,
        monthly_credits=200,
        features=_PREMIUM_FEATURES,
        max_items=_max_items(per_quiz=10, course_length=50),
        rate_limits=_rate_limits(30, 1000, 2000),
        models=ModelConfig("gpt-4o", "gpt-4o-mini", 4096, 0.8, 0.95),
        feature_flags=_flags(
            _PREMIUM_FEATURES, pdf=True, analytics=True,
            recommendations=True, advanced=True,
        ),
    ),
    Plan.ENTERPRISE: PlanConfig(
        plan=Plan.ENTERPRISE,
        monthly_credits=500,
        features=_ENTERPRISE_FEATURES,
        max_items=_max_items(per_quiz=15, course_length=100),
        rate_limits=_rate_limits(100, UNLIMITED, UNLIMITED),
        models=ModelConfig("gpt-4-turbo", "gpt-4o", 8192, 0.8, 0.95),
        feature_flags=_flags(
            _ENTERPRISE_FEATURES, pdf=True, analytics=True,
            recommendations=True, advanced=True,
            collaborative=True, custom_models=True,
        ),
    ),
})


def get_plan_config(plan: Plan) -> PlanConfig:
    """Configuration for a plan. Every Plan member has an entry."""
    return PLAN_CONFIGURATIONS[plan]
