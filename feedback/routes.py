from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.encoders import jsonable_encoder

from feedback.learning_loop import TransactionNotFoundError
from feedback.statistics import compute_statistics
from pipeline.pipeline import Pipeline
from schemas.api import FeedbackIn, FeedbackOut
from schemas.records import FeedbackCorrections
from settings.deps import get_pipeline

router = APIRouter(prefix="/feedback", tags=["feedback"])


@router.post("", response_model=FeedbackOut)
async def submit_feedback(payload: FeedbackIn, pipeline: Pipeline = Depends(get_pipeline)) -> FeedbackOut:
    corrections = FeedbackCorrections(
        merchant=payload.merchant,
        category=payload.category,
        is_correct=payload.is_correct,
    )
    try:
        outcome = await pipeline.learning_loop.learn_from_feedback(payload.transaction_hash, corrections)
    except TransactionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return FeedbackOut(
        feedback_id=outcome.feedback_id,
        transaction_hash=outcome.transaction_hash,
        pattern_accuracy=outcome.pattern_accuracy,
        retrained=outcome.retrained,
        retrain_results=outcome.retrain_results,
    )


@router.get("/statistics")
async def feedback_statistics(pipeline: Pipeline = Depends(get_pipeline)) -> dict:
    return jsonable_encoder(await compute_statistics(pipeline.store))
