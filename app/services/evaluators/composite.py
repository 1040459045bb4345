"""Composite evaluator - weighted blend of other registered evaluators."""

import asyncio
import logging
from typing import TYPE_CHECKING

from app.schemas.evaluation import (
    EvaluationRequest,
    EvaluationResult,
    EvaluationThresholds,
    EvaluatorConfig,
)
from app.services.evaluators.base import BaseEvaluator

if TYPE_CHECKING:
    from app.services.evaluators.registry import EvaluatorRegistry

logger = logging.getLogger(__name__)

DEFAULT_EVALUATORS = ["relevance", "coherence", "helpfulness", "safety"]


def normalize_weights(names: list[str], weights: dict[str, float] | None) -> dict[str, float]:
    """Weights summing to 1; equal weights when none are given."""
    if not weights:
        weights = {name: 1.0 for name in names}
    total = sum(weights.values())
    if total <= 0:
        raise ValueError("Evaluator weights must sum to a positive number")
    return {name: weight / total for name, weight in weights.items()}


class CompositeEvaluator(BaseEvaluator):
    """Runs sub-evaluators concurrently and combines their scores.

    A failing or missing sub-evaluator is left out and the remaining weights
    are renormalized. The result is 0 only when every sub-evaluator fails.

    Args:
        registry: Where sub-evaluators are looked up by name
        evaluator_names: Sub-evaluators to run
        weights: Relative weight per name (normalized)
        name: Registry id for this evaluator
        description: Human-readable description
    """

    def __init__(
        self,
        registry: "EvaluatorRegistry",
        evaluator_names: list[str] | None = None,
        weights: dict[str, float] | None = None,
        name: str = "composite",
        description: str = "Combines multiple evaluators for comprehensive assessment",
    ):
        self.evaluator_names = list(evaluator_names or DEFAULT_EVALUATORS)
        super().__init__(
            EvaluatorConfig(
                name=name,
                description=description,
                metrics=self.evaluator_names,
                thresholds=EvaluationThresholds(excellent=0.85, good=0.7, fair=0.5, poor=0.3),
            )
        )
        self.registry = registry
        self.weights = normalize_weights(self.evaluator_names, weights)

    async def _run(self, name: str, request: EvaluationRequest) -> EvaluationResult | None:
        evaluator = self.registry.get(name)
        if evaluator is None:
            logger.warning(f"Evaluator {name} not found in registry")
            return None
        try:
            return await evaluator.evaluate(request)
        except Exception as e:
            logger.error(f"Error running evaluator {name}: {e}", exc_info=True)
            return None

    async def evaluate(self, request: EvaluationRequest) -> EvaluationResult:
        results = await asyncio.gather(*(self._run(name, request) for name in self.evaluator_names))
        succeeded = [(name, r) for name, r in zip(self.evaluator_names, results) if r is not None]

        if not succeeded:
            return EvaluationResult(score=0.0, reasoning="All evaluators failed", metadata={"error": True})

        weighted = sum(r.score * self.weights.get(name, 0) for name, r in succeeded)
        successful_weight = sum(self.weights.get(name, 0) for name, _ in succeeded)
        score = weighted / successful_weight if successful_weight > 0 else 0.0

        return EvaluationResult(
            score=max(0.0, min(1.0, score)),
            reasoning=" | ".join(f"{name}: {r.reasoning}" for name, r in succeeded),
            metadata={
                "evaluator": self.name,
                "version": self.config.version,
                "metrics": {name: r.score for name, r in succeeded},
                "weights": self.weights,
                "evaluators_run": [name for name, _ in succeeded],
            },
        )
