from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class FeedbackIn(BaseModel):
    transaction_hash: str = Field(min_length=8)
    merchant: Optional[str] = None
    category: Optional[str] = None
    is_correct: Optional[bool] = None

    @field_validator("merchant", "category")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class FeedbackOut(BaseModel):
    status: str = "ok"
    feedback_id: str
    transaction_hash: str
    pattern_accuracy: Optional[float] = None
    retrained: bool = False
    retrain_results: Dict[str, bool] = Field(default_factory=dict)


class StatementResponse(BaseModel):
    filename: Optional[str] = None
    state: str
    bank_detection: Optional[Dict[str, Any]] = None
    pattern: Optional[Dict[str, Any]] = None
    confidence: float
    ml_enhanced: bool = False
    processing_time_ms: float
    metrics: Dict[str, Any] = Field(default_factory=dict)
    transactions: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None
