"""Evaluator contract shared by every scorer."""

import asyncio
from abc import ABC, abstractmethod

from app.schemas.evaluation import EvaluationRequest, EvaluationResult, EvaluatorConfig


class BaseEvaluator(ABC):
    """Grades a prompt/response pair on a 0-1 scale."""

    def __init__(self, config: EvaluatorConfig):
        self.config = config

    @property
    def name(self) -> str:
        return self.config.name

    @abstractmethod
    async def evaluate(self, request: EvaluationRequest) -> EvaluationResult:
        """Score a single request."""

    async def batch_evaluate(self, requests: list[EvaluationRequest]) -> list[EvaluationResult]:
        """Score requests concurrently, results in request order."""
        return list(await asyncio.gather(*(self.evaluate(r) for r in requests)))

    def get_config(self) -> EvaluatorConfig:
        return self.config
