import pytest

from ai_services.categorization import FuzzyMatch
from extraction.field_extractor import extract_transaction_fields
from fusion.fusion_engine import (
    FusionEngine,
    FusionInput,
    FusionWeights,
    merchant_from_description,
    overall_confidence,
)
from schemas.records import KIND_AMOUNT_RANGE, KIND_CATEGORY, KIND_MERCHANT, AmountRange, Prediction


LINE = "15/09/2025  PLATA CARD KAUFLAND  -45.67"


def _inputs(merchant=("Unknown", 0.2, "rule_based"), category=("Groceries", 0.65, "rule_based"), fuzzy=None, amount_range=None):
    return FusionInput(
        fields=extract_transaction_fields(LINE),
        merchant=Prediction(KIND_MERCHANT, merchant[0], merchant[1], merchant[2]),
        category=Prediction(KIND_CATEGORY, category[0], category[1], category[2]),
        fuzzy=fuzzy,
        amount_range=amount_range,
        original_text=LINE,
    )


def test_confident_predictor_merchant_wins():
    result = FusionEngine().fuse(_inputs(merchant=("Kaufland", 0.92, "neural")))
    assert result.merchant == "Kaufland"
    assert result.merchant_source == "neural"
    assert result.ml_enhanced is True


def test_fuzzy_match_used_when_predictor_is_unsure():
    fuzzy = FuzzyMatch(name="Kaufland Romania", category="Groceries", confidence=0.85, similarity=0.94, alias="kaufland")
    result = FusionEngine().fuse(_inputs(merchant=("Lidl", 0.4, "neural"), fuzzy=fuzzy))
    assert result.merchant == "Kaufland Romania"
    assert result.merchant_source == "fuzzy"
    assert result.merchant_confidence == pytest.approx(0.85)
    assert result.ml_enhanced is False


def test_merchant_taken_from_description_as_last_resort():
    result = FusionEngine().fuse(_inputs())
    assert result.merchant == "Kaufland"
    assert result.merchant_source == "field_extraction"
    assert result.merchant_confidence == pytest.approx(0.3)


def test_description_without_merchant_word():
    assert merchant_from_description("PLATA CARD 1234") is None
    assert merchant_from_description(None) is None


def test_category_needs_confidence_above_threshold():
    accepted = FusionEngine().fuse(_inputs(category=("Groceries", 0.65, "rule_based")))
    assert accepted.category == "Groceries"
    rejected = FusionEngine().fuse(_inputs(category=("Shopping", 0.6, "neural")))
    assert rejected.category == "General"
    assert rejected.ml_enhanced is False


def test_amount_outside_expected_range_is_noted():
    expected = Prediction(KIND_AMOUNT_RANGE, AmountRange(100.0, 300.0, 150.0), 0.6, "rule_based")
    result = FusionEngine().fuse(_inputs(amount_range=expected))
    assert any("outside expected range" in note for note in result.improvements)


def test_overall_confidence_is_monotone_in_each_input():
    steps = [i / 10.0 for i in range(11)]
    for position in range(3):
        values = []
        for s in steps:
            args = [0.5, 0.5, 0.5]
            args[position] = s
            values.append(overall_confidence(*args))
        assert all(b >= a for a, b in zip(values, values[1:]))


def test_overall_confidence_is_clamped():
    heavy = FusionWeights(merchant=1.0, fuzzy=1.0, field_extraction=1.0)
    assert overall_confidence(1.0, 1.0, 1.0, heavy) == 1.0
    assert overall_confidence(0.0, 0.0, 0.0) == 0.0
    assert overall_confidence(1.0, 1.0, 1.0) == pytest.approx(0.9)
