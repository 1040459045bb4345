"""LLM-as-judge evaluators: relevance, coherence and helpfulness.

Each sends a fixed rubric to a chat model and expects a JSON object
``{"score": <0-1>, "reasoning": "..."}`` back.
"""

import json
import logging

from app.ai.client import AIClient, get_ai_client
from app.config import get_settings
from app.schemas.evaluation import (
    EvaluationRequest,
    EvaluationResult,
    EvaluationThresholds,
    EvaluatorConfig,
)
from app.services.evaluators.base import BaseEvaluator

logger = logging.getLogger(__name__)

JUDGE_TEMPERATURE = 0.1
JUDGE_MAX_TOKENS = 500
PARSE_FAILURE_SCORE = 0.5

_RESPONSE_FORMAT = """Return your evaluation in JSON format:
{{
  "score": <number between 0 and 1>,
  "reasoning": "<brief explanation of your scoring>"
}}"""

RELEVANCE_PROMPT = (
    """You are an expert evaluator assessing the relevance of an AI response to a given prompt.

Evaluate based on these criteria:
1. Direct addressing of the prompt's requirements
2. Completeness of the response
3. Absence of irrelevant information
4. Contextual appropriateness

Prompt: {prompt}
Response: {response}
{context}

Provide a score from 0 to 1 where:
- 1.0 = Perfectly relevant and complete
- 0.8-0.9 = Highly relevant with minor gaps
- 0.6-0.7 = Generally relevant but missing key elements
- 0.4-0.5 = Partially relevant
- Below 0.4 = Mostly irrelevant

"""
    + _RESPONSE_FORMAT
)

COHERENCE_PROMPT = (
    """You are an expert evaluator assessing the coherence and logical flow of an AI response.

Evaluate based on these criteria:
1. Logical structure and organization
2. Consistency of ideas and arguments
3. Smooth transitions between concepts
4. Clarity of expression
5. Absence of contradictions

Prompt: {prompt}
Response: {response}

Provide a score from 0 to 1 where:
- 1.0 = Perfectly coherent and well-structured
- 0.8-0.9 = Very coherent with minor issues
- 0.6-0.7 = Generally coherent but some confusion
- 0.4-0.5 = Somewhat incoherent
- Below 0.4 = Mostly incoherent

"""
    + _RESPONSE_FORMAT
)

HELPFULNESS_PROMPT = (
    """You are an expert evaluator assessing how helpful an AI response is to the user.

Evaluate based on these criteria:
1. Practical value and actionability
2. Clarity of guidance or information
3. Appropriateness to user's needs
4. Completeness of assistance
5. Ease of understanding and implementation

Prompt: {prompt}
Response: {response}

Provide a score from 0 to 1 where:
- 1.0 = Extremely helpful and actionable
- 0.8-0.9 = Very helpful with clear value
- 0.6-0.7 = Moderately helpful
- 0.4-0.5 = Somewhat helpful but limited
- Below 0.4 = Not particularly helpful

"""
    + _RESPONSE_FORMAT
)


class LLMJudgeEvaluator(BaseEvaluator):
    """Scores a response by asking a chat model to apply a rubric.

    Args:
        config: Evaluator description
        rubric: Prompt template with ``{prompt}``, ``{response}`` and
            optionally ``{context}`` placeholders
        ai_client: Completion client (defaults to the shared one)
        model: Judge model (defaults to settings)
    """

    def __init__(
        self,
        config: EvaluatorConfig,
        rubric: str,
        ai_client: AIClient | None = None,
        model: str | None = None,
    ):
        super().__init__(config)
        self.rubric = rubric
        self._ai_client = ai_client
        self.model = model or get_settings().evaluator_model

    @property
    def ai_client(self) -> AIClient:
        if self._ai_client is None:
            self._ai_client = get_ai_client()
        return self._ai_client

    def build_prompt(self, request: EvaluationRequest) -> str:
        return self.rubric.format(
            prompt=request.prompt,
            response=request.response,
            context=f"Context: {request.context}" if request.context else "",
        )

    async def evaluate(self, request: EvaluationRequest) -> EvaluationResult:
        try:
            text = await self.ai_client.complete(
                self.build_prompt(request),
                model=self.model,
                temperature=JUDGE_TEMPERATURE,
                max_tokens=JUDGE_MAX_TOKENS,
            )
        except Exception as e:
            logger.error(f"{self.name} evaluation failed: {e}", exc_info=True)
            return EvaluationResult(
                score=0.0,
                reasoning=f"Evaluation failed: {e}",
                metadata={"error": True, "error_message": str(e)},
            )

        try:
            parsed = json.loads(text)
            score = max(0.0, min(1.0, float(parsed["score"])))
        except (ValueError, TypeError, KeyError) as e:
            logger.warning(f"{self.name} judge returned unparseable output: {e}")
            return EvaluationResult(
                score=PARSE_FAILURE_SCORE,
                reasoning="Failed to parse evaluation result",
                metadata={"error": "JSON parse error", "raw_response": text},
            )

        return EvaluationResult(
            score=score,
            reasoning=parsed.get("reasoning") or "No reasoning provided",
            metadata={
                "evaluator": self.name,
                "version": self.config.version,
                "model": self.model,
            },
        )


def relevance_evaluator(ai_client: AIClient | None = None) -> LLMJudgeEvaluator:
    return LLMJudgeEvaluator(
        EvaluatorConfig(
            name="relevance",
            description="Evaluates how relevant and complete an AI response is to the given prompt",
            metrics=["relevance", "completeness"],
            thresholds=EvaluationThresholds(excellent=0.9, good=0.7, fair=0.5, poor=0.3),
        ),
        RELEVANCE_PROMPT,
        ai_client=ai_client,
    )


def coherence_evaluator(ai_client: AIClient | None = None) -> LLMJudgeEvaluator:
    return LLMJudgeEvaluator(
        EvaluatorConfig(
            name="coherence",
            description="Evaluates the logical flow, consistency, and clarity of an AI response",
            metrics=["coherence", "clarity"],
            thresholds=EvaluationThresholds(excellent=0.9, good=0.7, fair=0.5, poor=0.3),
        ),
        COHERENCE_PROMPT,
        ai_client=ai_client,
    )


def helpfulness_evaluator(ai_client: AIClient | None = None) -> LLMJudgeEvaluator:
    return LLMJudgeEvaluator(
        EvaluatorConfig(
            name="helpfulness",
            description="Evaluates how helpful and actionable an AI response is for the user",
            metrics=["helpfulness", "actionability"],
            thresholds=EvaluationThresholds(excellent=0.9, good=0.7, fair=0.5, poor=0.3),
        ),
        HELPFULNESS_PROMPT,
        ai_client=ai_client,
    )
