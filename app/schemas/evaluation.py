"""Evaluation schemas: requests to grade a prompt/response pair and their results."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.utils.time import utc_now


class EvaluationThresholds(BaseModel):
    excellent: float
    good: float
    fair: float
    poor: float


class EvaluatorConfig(BaseModel):
    """Describes a registered evaluator."""

    name: str
    description: str
    version: str = "1.0.0"
    metrics: list[str] = Field(default_factory=list)
    thresholds: EvaluationThresholds | None = None


class EvaluationRequest(BaseModel):
    """A prompt/response pair to grade."""

    model_config = ConfigDict(populate_by_name=True)

    prompt: str = ""
    response: str
    context: str | None = None
    expected_output: str | None = Field(None, alias="expectedOutput")
    evaluator_id: str = Field("composite", alias="evaluatorId")
    metadata: dict[str, Any] | None = None


class EvaluationResult(BaseModel):
    """Score in [0, 1] with the evaluator's reasoning."""

    score: float = Field(..., ge=0, le=1)
    reasoning: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class BatchEvaluationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    evaluations: list[EvaluationRequest] = Field(..., min_length=1, max_length=100)
    evaluator_id: str = Field("composite", alias="evaluatorId")


class BatchEvaluationResponse(BaseModel):
    evaluator_id: str
    results: list[EvaluationResult]
    average_score: float
