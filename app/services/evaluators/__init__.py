"""Response evaluators."""

from app.services.evaluators.base import BaseEvaluator
from app.services.evaluators.composite import CompositeEvaluator, normalize_weights
from app.services.evaluators.llm_judge import (
    LLMJudgeEvaluator,
    coherence_evaluator,
    helpfulness_evaluator,
    relevance_evaluator,
)
from app.services.evaluators.registry import (
    EvaluatorRegistry,
    build_default_registry,
    get_evaluator_registry,
)
from app.services.evaluators.safety import SafetyEvaluator

__all__ = [
    "BaseEvaluator",
    "CompositeEvaluator",
    "LLMJudgeEvaluator",
    "SafetyEvaluator",
    "EvaluatorRegistry",
    "build_default_registry",
    "get_evaluator_registry",
    "relevance_evaluator",
    "coherence_evaluator",
    "helpfulness_evaluator",
    "normalize_weights",
]
