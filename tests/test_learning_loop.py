import pytest
import pytest_asyncio

from detection.signature_engine import generate_signature
from feedback.learning_loop import TransactionNotFoundError
from ocr.recognizer import NullRecognizer
from pipeline.pipeline import build_pipeline
from schemas.records import FeedbackCorrections

from conftest import make_transaction


@pytest_asyncio.fixture
async def pipeline(store):
    pipe = build_pipeline(store=store, recognizer=NullRecognizer(), ml_enabled=True)
    await pipe.start()
    return pipe


async def _seed_transactions(store, count, signature_hash=None):
    txs = [
        make_transaction(f"PLATA CARD MAGAZIN{i} BUCURESTI", -12.5 * (i + 1), signature_hash=signature_hash)
        for i in range(count)
    ]
    for tx in txs:
        await store.put("transactions", tx.to_record())
    return txs


@pytest.mark.asyncio
async def test_tenth_merchant_correction_retrains_once(pipeline, store, monkeypatch):
    classifier = pipeline.classifier
    calls = []
    original = classifier.retrain_merchant_network

    async def counting_retrain():
        calls.append(1)
        return await original()

    monkeypatch.setattr(classifier, "retrain_merchant_network", counting_retrain)

    txs = await _seed_transactions(store, 10)
    outcomes = []
    for i, tx in enumerate(txs):
        merchant = "Kaufland" if i % 2 == 0 else "Lidl"
        outcomes.append(await pipeline.learning_loop.learn_from_feedback(tx.hash, FeedbackCorrections(merchant=merchant)))

    assert len(calls) == 1
    assert [o.retrained for o in outcomes] == [False] * 9 + [True]
    assert outcomes[-1].retrain_results["merchant"] is True
    assert len(classifier.merchant_window) <= 25
    assert await store.count("feedback") == 10
    assert await store.get("statistics", "current") is not None


@pytest.mark.asyncio
async def test_unknown_transaction_is_rejected(pipeline):
    with pytest.raises(TransactionNotFoundError):
        await pipeline.learning_loop.learn_from_feedback("f" * 40, FeedbackCorrections(merchant="Lidl"))


@pytest.mark.asyncio
async def test_feedback_moves_pattern_accuracy(pipeline, store):
    text = "CEC Bank extras\n01.02.2025 Plata factura 120,50\n"
    signature = generate_signature(text)
    await pipeline.signature_engine.find_or_learn_pattern(signature, text, "CEC")
    wrong, corrected, confirmed = await _seed_transactions(store, 3, signature_hash=signature.hash)

    outcome = await pipeline.learning_loop.learn_from_feedback(wrong.hash, FeedbackCorrections(is_correct=False))
    assert outcome.pattern_accuracy == pytest.approx(0.45)

    # corrections without an explicit verdict count as a miss
    outcome = await pipeline.learning_loop.learn_from_feedback(corrected.hash, FeedbackCorrections(category="Groceries"))
    assert outcome.pattern_accuracy == pytest.approx(0.405)

    outcome = await pipeline.learning_loop.learn_from_feedback(confirmed.hash, FeedbackCorrections())
    assert outcome.pattern_accuracy == pytest.approx(0.4645)


@pytest.mark.asyncio
async def test_transaction_without_pattern_has_no_accuracy(pipeline, store):
    (tx,) = await _seed_transactions(store, 1)
    outcome = await pipeline.learning_loop.learn_from_feedback(tx.hash, FeedbackCorrections(is_correct=True))
    assert outcome.pattern_accuracy is None
    assert outcome.feedback_id


@pytest.mark.asyncio
async def test_merchant_correction_teaches_directory(pipeline, store):
    tx = make_transaction("PLATA POS MEGAIMAGE 0123", -31.2)
    await store.put("transactions", tx.to_record())
    await pipeline.learning_loop.learn_from_feedback(tx.hash, FeedbackCorrections(merchant="Mega Image", category="Groceries"))

    match = pipeline.merchant_directory.fuzzy_match("CUMPARARE POS MEGAIMAGE 777")
    assert match is not None
    assert match.name == "Mega Image"
    assert (await store.get("merchants", "mega image"))["aliases"][-1] == "megaimage"
    assert len(pipeline.classifier.category_window) == 1
