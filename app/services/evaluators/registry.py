"""Evaluator registry - maps ids to evaluator instances."""

from app.ai.client import AIClient
from app.schemas.evaluation import EvaluatorConfig
from app.services.evaluators.base import BaseEvaluator
from app.services.evaluators.composite import CompositeEvaluator
from app.services.evaluators.llm_judge import (
    coherence_evaluator,
    helpfulness_evaluator,
    relevance_evaluator,
)
from app.services.evaluators.safety import SafetyEvaluator

QUALITY_WEIGHTS = {"relevance": 0.4, "coherence": 0.3, "helpfulness": 0.3}


class EvaluatorRegistry:
    """Evaluators keyed by their config name."""

    def __init__(self):
        self._evaluators: dict[str, BaseEvaluator] = {}

    def register(self, evaluator: BaseEvaluator) -> None:
        self._evaluators[evaluator.name] = evaluator

    def get(self, evaluator_id: str) -> BaseEvaluator | None:
        return self._evaluators.get(evaluator_id)

    def list(self) -> list[EvaluatorConfig]:
        return [e.get_config() for e in self._evaluators.values()]

    def __contains__(self, evaluator_id: str) -> bool:
        return evaluator_id in self._evaluators


def build_default_registry(ai_client: AIClient | None = None) -> EvaluatorRegistry:
    """Registry with the built-in evaluators plus the composite and quality blends."""
    registry = EvaluatorRegistry()
    registry.register(relevance_evaluator(ai_client))
    registry.register(coherence_evaluator(ai_client))
    registry.register(helpfulness_evaluator(ai_client))
    registry.register(SafetyEvaluator())
    registry.register(CompositeEvaluator(registry))
    registry.register(
        CompositeEvaluator(
            registry,
            evaluator_names=list(QUALITY_WEIGHTS),
            weights=QUALITY_WEIGHTS,
            name="quality",
            description="Weighted quality assessment focusing on relevance, coherence, and helpfulness",
        )
    )
    return registry


# Singleton instance for easy access
_registry: EvaluatorRegistry | None = None


def get_evaluator_registry() -> EvaluatorRegistry:
    """Get singleton evaluator registry."""
    global _registry
    if _registry is None:
        _registry = build_default_registry()
    return _registry
