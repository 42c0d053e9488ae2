from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional

from ai_services.categorization import FuzzyMatch, UNKNOWN_MERCHANT
from extraction.field_extractor import TRANSACTION_KEYWORDS, fold_text
from schemas.records import METHOD_NEURAL, ExtractedFields, Prediction


DEFAULT_CATEGORY = "General"
MERCHANT_MODEL_ACCEPT = 0.5
FUZZY_ACCEPT = 0.7
CATEGORY_ACCEPT = 0.6
FIELD_MERCHANT_CONFIDENCE = 0.3


@dataclass(frozen=True)
class FusionWeights:
    """Contribution of each signal to a transaction's overall confidence."""

    merchant: float = 0.4
    fuzzy: float = 0.3
    field_extraction: float = 0.2


@dataclass
class FusionInput:
    fields: ExtractedFields
    merchant: Prediction
    category: Prediction
    fuzzy: Optional[FuzzyMatch] = None
    amount_range: Optional[Prediction] = None
    original_text: str = ""


@dataclass
class FusedResult:
    merchant: str
    merchant_confidence: float
    merchant_source: str
    category: str
    category_confidence: float
    overall_confidence: float
    ml_enhanced: bool
    improvements: List[str] = field(default_factory=list)


_TOKEN_RE = re.compile(r"[A-Za-zĂÂÎȘȚăâîșț&'.]{4,}")
_NOISE_TOKENS = set(TRANSACTION_KEYWORDS) | {"terminal", "tranzactie", "ref", "online", "comision", "plati", "catre"}


def merchant_from_description(description: Optional[str]) -> Optional[str]:
    """First capitalised word of the description that is not a transaction keyword."""
    for token in _TOKEN_RE.findall(description or ""):
        if fold_text(token).strip(".") in _NOISE_TOKENS:
            continue
        if token[0].isupper():
            return token.strip(".").title() if token.isupper() else token.strip(".")
    return None


def overall_confidence(
    merchant_confidence: float,
    fuzzy_confidence: float,
    field_confidence: float,
    weights: FusionWeights = FusionWeights(),
) -> float:
    score = (
        merchant_confidence * weights.merchant
        + fuzzy_confidence * weights.fuzzy
        + field_confidence * weights.field_extraction
    )
    return min(max(score, 0.0), 1.0)


class FusionEngine:
    def __init__(self, weights: Optional[FusionWeights] = None) -> None:
        self.weights = weights or FusionWeights()

    def fuse(self, inputs: FusionInput) -> FusedResult:
        improvements: List[str] = []
        description = inputs.fields.description or inputs.original_text
        merchant_pred = inputs.merchant
        fuzzy = inputs.fuzzy

        if merchant_pred.value != UNKNOWN_MERCHANT and merchant_pred.confidence > MERCHANT_MODEL_ACCEPT:
            merchant, merchant_conf, source = str(merchant_pred.value), merchant_pred.confidence, merchant_pred.method
        elif fuzzy is not None and fuzzy.confidence > FUZZY_ACCEPT:
            merchant, merchant_conf, source = fuzzy.name, fuzzy.confidence, "fuzzy"
        else:
            derived = merchant_from_description(inputs.fields.description)
            if derived:
                merchant, merchant_conf, source = derived, FIELD_MERCHANT_CONFIDENCE, "field_extraction"
            else:
                merchant, merchant_conf, source = UNKNOWN_MERCHANT, 0.0, "none"
        if merchant != UNKNOWN_MERCHANT:
            improvements.append(f"merchant '{description}' -> '{merchant}' ({source}, {merchant_conf:.2f})")

        category_pred = inputs.category
        if category_pred.confidence > CATEGORY_ACCEPT:
            category, category_conf = str(category_pred.value), category_pred.confidence
            if category != inputs.fields.category:
                improvements.append(
                    f"category '{inputs.fields.category}' -> '{category}' ({category_pred.method}, {category_conf:.2f})"
                )
        else:
            category, category_conf = DEFAULT_CATEGORY, category_pred.confidence

        if inputs.amount_range is not None and inputs.fields.amount is not None:
            expected = inputs.amount_range.value
            magnitude = abs(inputs.fields.amount)
            if magnitude < expected.minimum or magnitude > expected.maximum:
                improvements.append(
                    f"amount {magnitude:.2f} outside expected range {expected.minimum:.0f}-{expected.maximum:.0f}"
                )

        overall = overall_confidence(
            merchant_conf,
            fuzzy.confidence if fuzzy is not None else 0.0,
            inputs.fields.confidence,
            self.weights,
        )
        ml_enhanced = (source == METHOD_NEURAL) or (
            category_pred.method == METHOD_NEURAL and category != DEFAULT_CATEGORY
        )
        return FusedResult(
            merchant=merchant,
            merchant_confidence=merchant_conf,
            merchant_source=source,
            category=category,
            category_confidence=category_conf,
            overall_confidence=overall,
            ml_enhanced=ml_enhanced,
            improvements=improvements,
        )
