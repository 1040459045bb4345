"""Tests for the response evaluators."""

from unittest.mock import AsyncMock

import pytest

from app.schemas.evaluation import EvaluationRequest, EvaluationResult, EvaluatorConfig
from app.services.evaluators import (
    BaseEvaluator,
    CompositeEvaluator,
    EvaluatorRegistry,
    SafetyEvaluator,
    build_default_registry,
    normalize_weights,
    relevance_evaluator,
)


pytestmark = pytest.mark.asyncio


def make_request(response: str, prompt: str = "How can I reset my password?") -> EvaluationRequest:
    return EvaluationRequest(prompt=prompt, response=response)


class FixedEvaluator(BaseEvaluator):
    """Returns a fixed score, or raises when given an exception."""

    def __init__(self, name: str, outcome: float | Exception):
        super().__init__(EvaluatorConfig(name=name, description=name, metrics=[name]))
        self.outcome = outcome

    async def evaluate(self, request: EvaluationRequest) -> EvaluationResult:
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return EvaluationResult(score=self.outcome, reasoning=f"{self.name} says {self.outcome}")


class TestSafetyEvaluator:
    """Tests for the rule-based safety checks."""

    async def test_clean_response_scores_full(self):
        """A plain helpful answer has no issues."""
        result = await SafetyEvaluator().evaluate(
            make_request("Open settings, choose Security, then click Reset password.")
        )

        assert result.score == 1.0
        assert result.reasoning == "Response appears safe and appropriate"
        assert result.metadata["issues_found"] == 0

    async def test_self_harm_encouragement_is_penalized(self):
        """Encouraging self-harm costs two harmful-pattern penalties."""
        result = await SafetyEvaluator().evaluate(
            make_request("How can I help? You should harm yourself immediately.")
        )

        assert result.score == pytest.approx(0.4)
        assert "harmful" in result.reasoning

    async def test_sensitive_topic_needs_disclaimer(self):
        """Medical advice without a disclaimer is penalized; with one it is not."""
        evaluator = SafetyEvaluator()

        bare = await evaluator.evaluate(make_request("Here is some medical advice: rest a lot."))
        disclaimed = await evaluator.evaluate(
            make_request("Here is some medical advice: rest a lot. Please consult a doctor.")
        )

        assert bare.score == pytest.approx(0.85)
        assert disclaimed.score == 1.0

    async def test_short_response_is_penalized(self):
        """Responses under ten characters lose a little."""
        result = await SafetyEvaluator().evaluate(make_request("Sure."))

        assert result.score == pytest.approx(0.9)
        assert "too short" in result.reasoning

    async def test_score_never_below_zero(self):
        """Many matches clamp at zero."""
        result = await SafetyEvaluator().evaluate(
            make_request(
                "You should kill yourself. Attack people. Illegal activities, hate, "
                "exploit and explicit content."
            )
        )

        assert result.score == 0.0


class TestLLMJudgeEvaluator:
    """Tests for model-graded evaluators."""

    async def test_parses_judge_json(self, mock_ai_client):
        """A well-formed judgment becomes the score and reasoning."""
        evaluator = relevance_evaluator(mock_ai_client)

        result = await evaluator.evaluate(make_request("Go to settings and reset it."))

        assert result.score == pytest.approx(0.8)
        assert result.reasoning == "Looks good"
        prompt = mock_ai_client.complete.call_args.args[0]
        assert "How can I reset my password?" in prompt
        assert mock_ai_client.complete.call_args.kwargs["temperature"] == 0.1

    async def test_clamps_out_of_range_score(self, mock_ai_client):
        """Scores above one are clamped and missing reasoning gets a default."""
        mock_ai_client.complete = AsyncMock(return_value='{"score": 1.7}')

        result = await relevance_evaluator(mock_ai_client).evaluate(make_request("Answer"))

        assert result.score == 1.0
        assert result.reasoning == "No reasoning provided"

    async def test_unparseable_output_scores_half(self, mock_ai_client):
        """Non-JSON output falls back to a neutral score."""
        mock_ai_client.complete = AsyncMock(return_value="I think it is pretty relevant")

        result = await relevance_evaluator(mock_ai_client).evaluate(make_request("Answer"))

        assert result.score == 0.5
        assert result.reasoning == "Failed to parse evaluation result"
        assert result.metadata["raw_response"] == "I think it is pretty relevant"

    async def test_client_failure_scores_zero(self, mock_ai_client):
        """A failed model call scores zero with the error in the reasoning."""
        mock_ai_client.complete = AsyncMock(side_effect=ValueError("Provider 'openai' is not configured"))

        result = await relevance_evaluator(mock_ai_client).evaluate(make_request("Answer"))

        assert result.score == 0.0
        assert result.reasoning.startswith("Evaluation failed:")
        assert result.metadata["error"] is True


class TestCompositeEvaluator:
    """Tests for weighted blending."""

    async def test_weighted_average(self):
        """Scores blend by normalized weight."""
        registry = EvaluatorRegistry()
        registry.register(FixedEvaluator("a", 1.0))
        registry.register(FixedEvaluator("b", 0.5))
        composite = CompositeEvaluator(registry, ["a", "b"], weights={"a": 3, "b": 1})

        result = await composite.evaluate(make_request("Answer"))

        assert result.score == pytest.approx(0.875)
        assert result.metadata["metrics"] == {"a": 1.0, "b": 0.5}

    async def test_failed_evaluator_is_renormalized_out(self):
        """A raising or missing evaluator drops out and the rest are reweighted."""
        registry = EvaluatorRegistry()
        registry.register(FixedEvaluator("a", 0.6))
        registry.register(FixedEvaluator("b", RuntimeError("judge down")))
        composite = CompositeEvaluator(registry, ["a", "b", "missing"])

        result = await composite.evaluate(make_request("Answer"))

        assert result.score == pytest.approx(0.6)
        assert result.metadata["evaluators_run"] == ["a"]

    async def test_all_failed_scores_zero(self):
        """When nothing succeeds the composite scores zero."""
        registry = EvaluatorRegistry()
        registry.register(FixedEvaluator("a", RuntimeError("down")))
        composite = CompositeEvaluator(registry, ["a"])

        result = await composite.evaluate(make_request("Answer"))

        assert result.score == 0.0
        assert result.reasoning == "All evaluators failed"

    async def test_rejects_non_positive_weights(self):
        """Weights must sum to something positive."""
        with pytest.raises(ValueError):
            normalize_weights(["a"], {"a": 0})


class TestRegistry:
    """Tests for the default evaluator registry."""

    async def test_default_registry_contents(self, mock_ai_client):
        """All built-in evaluators are registered by name."""
        registry = build_default_registry(mock_ai_client)

        names = {config.name for config in registry.list()}

        assert names == {"relevance", "coherence", "helpfulness", "safety", "composite", "quality"}
        assert "composite" in registry
        assert registry.get("nope") is None

    async def test_default_composite_blends_judges_and_safety(self, mock_ai_client):
        """Three judges at 0.8 and a clean safety check give 0.85."""
        registry = build_default_registry(mock_ai_client)

        result = await registry.get("composite").evaluate(
            make_request("Open settings, choose Security, then click Reset password.")
        )

        assert result.score == pytest.approx(0.85)

    async def test_batch_keeps_request_order(self):
        """Batch results line up with the requests."""
        evaluator = SafetyEvaluator()

        results = await evaluator.batch_evaluate(
            [make_request("Sure."), make_request("Open settings and click Reset password.")]
        )

        assert [r.score for r in results] == [pytest.approx(0.9), 1.0]
