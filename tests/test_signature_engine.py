import pytest

from detection.signature_engine import (
    METHOD_KEYWORDS,
    METHOD_LEARNED,
    METHOD_NO_INPUT,
    METHOD_TEMPLATE,
    SignatureEngine,
    generate_signature,
    signature_similarity,
)
from schemas.records import UNKNOWN_BANK

from conftest import BCR_STATEMENT, UNICREDIT_STATEMENT


CEC_STATEMENT = "CEC Bank extras\n01.02.2025 Plata factura 120,50\n"


def test_empty_text_is_unknown_with_zero_confidence():
    engine = SignatureEngine()
    for text in ("", "   \n  "):
        detection = engine.detect_bank(text)
        assert detection.bank == UNKNOWN_BANK
        assert detection.confidence == 0.0
        assert detection.method == METHOD_NO_INPUT


def test_known_template_is_detected():
    detection = SignatureEngine().detect_bank(BCR_STATEMENT)
    assert detection.bank == "BCR"
    assert detection.method == METHOD_TEMPLATE
    assert 0.8 < detection.confidence <= 1.0
    assert detection.signature is not None


def test_keyword_fallback():
    detection = SignatureEngine().detect_bank(UNICREDIT_STATEMENT)
    assert detection.bank == "UNICREDIT"
    assert detection.method == METHOD_KEYWORDS
    assert detection.confidence == pytest.approx(0.4)


def test_nothing_recognisable_is_unknown():
    detection = SignatureEngine().detect_bank("Lorem ipsum dolor sit amet")
    assert detection.bank == UNKNOWN_BANK
    assert detection.confidence == pytest.approx(0.2)


@pytest.mark.parametrize(
    "text",
    ["\x00\x01\x02", "1" * 5000, "ȘȚĂÎÂ ș ț", "BT BT BT", "12.12.2012 " * 300, "\t\t\t\n" * 50],
)
def test_detection_never_raises_and_stays_bounded(text):
    detection = SignatureEngine().detect_bank(text)
    assert 0.0 <= detection.confidence <= 1.0


def test_short_codes_need_word_boundaries():
    # "DEBT" must not count as the BT signature
    detection = SignatureEngine().detect_bank("DEBT DEBT DEBT statement")
    assert detection.bank != "BT"


def test_signature_is_deterministic():
    a = generate_signature(BCR_STATEMENT)
    b = generate_signature(BCR_STATEMENT)
    c = generate_signature(UNICREDIT_STATEMENT)
    assert a.hash == b.hash
    assert a.features == b.features
    assert a.hash != c.hash
    assert len(a.hash) == 16


def test_signature_similarity_bounds():
    a = generate_signature(BCR_STATEMENT).features
    b = generate_signature(UNICREDIT_STATEMENT).features
    assert signature_similarity(a, a) == pytest.approx(1.0)
    assert 0.0 <= signature_similarity(a, b) < 1.0


@pytest.mark.asyncio
async def test_learned_pattern_is_matched_on_next_document(store):
    engine = SignatureEngine(store)
    signature = generate_signature(CEC_STATEMENT)
    await engine.find_or_learn_pattern(signature, CEC_STATEMENT, "CEC")

    detection = engine.detect_bank(CEC_STATEMENT)
    assert detection.bank == "CEC"
    assert detection.method == METHOD_LEARNED
    assert detection.pattern_hash == signature.hash
    assert await store.count("patterns") == 1


@pytest.mark.asyncio
async def test_unknown_patterns_are_not_used_for_matching(store):
    engine = SignatureEngine(store)
    signature = generate_signature(CEC_STATEMENT)
    await engine.find_or_learn_pattern(signature, CEC_STATEMENT, UNKNOWN_BANK)
    detection = engine.detect_bank(CEC_STATEMENT)
    assert detection.method != METHOD_LEARNED


@pytest.mark.asyncio
async def test_find_or_learn_reuses_existing_pattern(store):
    engine = SignatureEngine(store)
    signature = generate_signature(CEC_STATEMENT)
    first = await engine.find_or_learn_pattern(signature, CEC_STATEMENT, "CEC")
    second = await engine.find_or_learn_pattern(signature, CEC_STATEMENT, "CEC")
    assert second is first
    assert second.usage_count == 2
    assert (await store.get("patterns", signature.hash))["usage_count"] == 2


@pytest.mark.asyncio
async def test_pattern_accuracy_moves_monotonically(store):
    engine = SignatureEngine(store)
    signature = generate_signature(CEC_STATEMENT)
    await engine.find_or_learn_pattern(signature, CEC_STATEMENT, "CEC")

    values = [await engine.update_pattern_accuracy(signature.hash, True) for _ in range(20)]
    assert values[0] == pytest.approx(0.55)
    assert all(b > a for a, b in zip(values, values[1:]))
    assert all(0.0 <= v <= 1.0 for v in values)

    down = [await engine.update_pattern_accuracy(signature.hash, False) for _ in range(20)]
    assert all(b < a for a, b in zip(down, down[1:]))
    assert down[-1] >= 0.0
    assert (await store.get("patterns", signature.hash))["samples"] == 40


@pytest.mark.asyncio
async def test_accuracy_update_for_unknown_hash_is_none(store):
    engine = SignatureEngine(store)
    assert await engine.update_pattern_accuracy("0" * 16, True) is None


@pytest.mark.asyncio
async def test_pattern_cache_is_bounded_but_store_keeps_everything(store):
    engine = SignatureEngine(store, cache_size=2)
    texts = ["first statement text", "second statement text here", "third statement text here too"]
    signatures = [generate_signature(t) for t in texts]
    for text, sig in zip(texts, signatures):
        await engine.find_or_learn_pattern(sig, text, "CEC")

    assert len(engine.learned_patterns) == 2
    assert await store.count("patterns") == 3

    # the evicted pattern is read back from the store
    again = await engine.find_or_learn_pattern(signatures[0], texts[0], "CEC")
    assert again.usage_count == 2


@pytest.mark.asyncio
async def test_load_learned_patterns_warms_cache(store):
    engine = SignatureEngine(store)
    signature = generate_signature(CEC_STATEMENT)
    await engine.find_or_learn_pattern(signature, CEC_STATEMENT, "CEC")

    fresh = SignatureEngine(store)
    assert await fresh.load_learned_patterns() == 1
    assert fresh.detect_bank(CEC_STATEMENT).bank == "CEC"
