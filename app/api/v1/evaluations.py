"""Evaluation API endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import get_current_user, get_evaluators
from app.schemas.evaluation import (
    BatchEvaluationRequest,
    BatchEvaluationResponse,
    EvaluationRequest,
    EvaluationResult,
    EvaluatorConfig,
)
from app.services.evaluators import BaseEvaluator, EvaluatorRegistry
from app.services.metrics import record_evaluation_score

router = APIRouter(
    prefix="/evaluations",
    tags=["evaluations"],
    dependencies=[Depends(get_current_user)],
)


def _model_of(request: EvaluationRequest) -> str | None:
    return (request.metadata or {}).get("model")


def _evaluator(registry: EvaluatorRegistry, evaluator_id: str) -> BaseEvaluator:
    evaluator = registry.get(evaluator_id)
    if evaluator is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Evaluator {evaluator_id} not found",
        )
    return evaluator


@router.get("/evaluators", response_model=list[EvaluatorConfig])
async def list_evaluators(
    registry: Annotated[EvaluatorRegistry, Depends(get_evaluators)],
) -> list[EvaluatorConfig]:
    """List registered evaluators."""
    return registry.list()


@router.post("", response_model=EvaluationResult)
async def evaluate(
    body: EvaluationRequest,
    registry: Annotated[EvaluatorRegistry, Depends(get_evaluators)],
) -> EvaluationResult:
    """Grade one prompt/response pair."""
    result = await _evaluator(registry, body.evaluator_id).evaluate(body)
    record_evaluation_score(body.evaluator_id, _model_of(body), result.score)
    return result


@router.post("/batch", response_model=BatchEvaluationResponse)
async def evaluate_batch(
    body: BatchEvaluationRequest,
    registry: Annotated[EvaluatorRegistry, Depends(get_evaluators)],
) -> BatchEvaluationResponse:
    """Grade many pairs with the same evaluator."""
    results = await _evaluator(registry, body.evaluator_id).batch_evaluate(body.evaluations)
    for request, result in zip(body.evaluations, results):
        record_evaluation_score(body.evaluator_id, _model_of(request), result.score)
    return BatchEvaluationResponse(
        evaluator_id=body.evaluator_id,
        results=results,
        average_score=sum(r.score for r in results) / len(results),
    )
