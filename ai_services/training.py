from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from ai_services.features import CATEGORY_LABELS, amount_bucket, encode_sample
from ai_services.features import When
from schemas.records import Feedback
from storage.store import Store


@dataclass
class TrainingSample:
    features: np.ndarray
    label: str
    text: str = ""


@dataclass
class TrainingBatch:
    merchant: List[TrainingSample] = field(default_factory=list)
    category: List[TrainingSample] = field(default_factory=list)
    amount: List[TrainingSample] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.merchant) + len(self.category) + len(self.amount)


def normalize_category_label(category: str) -> str:
    for label in CATEGORY_LABELS:
        if label.lower() == (category or "").strip().lower():
            return label
    return "Other"


def merchant_sample(description: str, merchant: str, amount: Optional[float] = None, when: When = None) -> TrainingSample:
    return TrainingSample(encode_sample(description, amount, when), merchant.strip(), description)


def category_sample(
    description: str,
    category: str,
    amount: Optional[float] = None,
    when: When = None,
    merchant_confidence: float = 0.0,
) -> TrainingSample:
    return TrainingSample(
        encode_sample(description, amount, when, merchant_confidence),
        normalize_category_label(category),
        description,
    )


def amount_sample(description: str, amount: float, merchant_confidence: float = 0.0) -> TrainingSample:
    return TrainingSample(encode_sample(description, None, None, merchant_confidence), amount_bucket(amount), description)


def samples_from_feedback(entries: Sequence[Feedback]) -> TrainingBatch:
    """
    Build training samples from feedback entries given oldest first.

    Merchant/category samples come only from explicit corrections; every entry
    with an amount yields an amount-range sample.
    """
    batch = TrainingBatch()
    for entry in entries:
        original = entry.original or {}
        description = original.get("description") or ""
        if not description:
            continue
        amount = original.get("amount")
        when = original.get("date")
        merchant = entry.corrections.merchant
        merchant_confidence = 1.0 if merchant else float(original.get("merchant_confidence") or 0.0)
        if merchant:
            batch.merchant.append(merchant_sample(description, merchant, amount, when))
        if entry.corrections.category:
            batch.category.append(
                category_sample(description, entry.corrections.category, amount, when, merchant_confidence)
            )
        if amount is not None:
            batch.amount.append(amount_sample(description, float(amount), merchant_confidence))
    return batch


async def load_recent_feedback(store: Store, limit: int = 100) -> List[Feedback]:
    """Newest-first feedback entries, at most `limit`."""
    records = await store.get_all("feedback")
    # insertion order breaks timestamp ties
    indexed = sorted(enumerate(records), key=lambda item: (Feedback.from_record(item[1]).timestamp, item[0]), reverse=True)
    return [Feedback.from_record(r) for _, r in indexed[:limit]]


async def build_training_batch(store: Store, limit: int = 100) -> TrainingBatch:
    recent = await load_recent_feedback(store, limit)
    return samples_from_feedback(list(reversed(recent)))
