import pytest

from detection.signature_engine import METHOD_KEYWORDS, METHOD_LEARNED, METHOD_NO_INPUT, METHOD_TEMPLATE
from ocr.recognizer import NullRecognizer
from pipeline.orchestrator import FALLBACK_CONFIDENCE, PipelineState
from pipeline.pipeline import build_pipeline
from schemas.records import transaction_hash

from conftest import BCR_STATEMENT, UNICREDIT_STATEMENT, ScriptedRecognizer, blank_pages


BCR_HEADER, BCR_BODY = BCR_STATEMENT.split("\n\n", 1)


def _pipeline(store, recognizer=None):
    return build_pipeline(store=store, recognizer=recognizer or NullRecognizer(), ml_enabled=False)


@pytest.mark.asyncio
async def test_statement_text_produces_transactions(store):
    pipe = _pipeline(store)
    result = await pipe.orchestrator.process_document(text=BCR_STATEMENT, filename="sept.txt")

    assert result.state == PipelineState.DONE
    assert result.bank_detection.bank == "BCR"
    assert result.bank_detection.method == METHOD_TEMPLATE
    assert result.confidence == pytest.approx(result.bank_detection.confidence)
    assert result.pattern is None
    assert len(result.transactions) == 4

    first = result.transactions[0]
    assert first.date == "2025-09-15"
    assert first.amount == pytest.approx(-45.67)
    assert first.type == "expense"
    assert first.merchant == "Kaufland"
    assert first.category == "Groceries"
    assert first.bank == "BCR"
    assert first.line_number == 6
    assert first.hash == transaction_hash("2025-09-15", -45.67, "PLATA CARD KAUFLAND")
    assert 0.0 <= first.overall_confidence <= 1.0
    assert first.processed_at is not None

    salary = result.transactions[2]
    assert salary.amount == pytest.approx(5400.0)
    assert salary.type == "income"

    assert await store.count("transactions") == 4
    assert result.metrics["total_transactions"] == 4
    assert result.metrics["candidate_lines"] == 4
    assert result.metrics["duplicates"] == 0


@pytest.mark.asyncio
async def test_brand_names_inside_other_words_do_not_pick_merchant(store):
    pipe = _pipeline(store)
    result = await pipe.orchestrator.process_document(text="15/09/2025  PLATA CARD CAFENELA BISTRO  -25.00")

    assert len(result.transactions) == 1
    tx = result.transactions[0]
    assert tx.merchant != "Enel"
    assert tx.category == "Restaurants"


@pytest.mark.asyncio
async def test_reprocessing_counts_duplicates(store):
    pipe = _pipeline(store)
    first = await pipe.orchestrator.process_document(text=BCR_STATEMENT)
    second = await pipe.orchestrator.process_document(text=BCR_STATEMENT)

    assert [t.hash for t in second.transactions] == [t.hash for t in first.transactions]
    assert second.metrics["duplicates"] == 4
    assert await store.count("transactions") == 4
    assert pipe.orchestrator.get_metrics()["duplicates"] == 4


@pytest.mark.asyncio
async def test_persist_false_leaves_store_untouched(store):
    pipe = _pipeline(store)
    result = await pipe.orchestrator.process_document(text=BCR_STATEMENT, persist=False)
    assert len(result.transactions) == 4
    assert await store.count("transactions") == 0


@pytest.mark.asyncio
async def test_unknown_layout_is_learned_and_recognised_again(store):
    pipe = _pipeline(store)
    first = await pipe.orchestrator.process_document(text=UNICREDIT_STATEMENT)
    assert first.bank_detection.method == METHOD_KEYWORDS
    assert first.pattern is not None
    assert first.pattern.bank_id == "UNICREDIT"
    assert await store.count("patterns") == 1
    assert all(t.signature_hash == first.pattern.signature_hash for t in first.transactions)

    second = await pipe.orchestrator.process_document(text=UNICREDIT_STATEMENT)
    assert second.bank_detection.method == METHOD_LEARNED
    assert second.bank_detection.bank == "UNICREDIT"
    assert second.pattern.usage_count == 2
    assert await store.count("patterns") == 1


@pytest.mark.asyncio
async def test_empty_document(store):
    result = await _pipeline(store).orchestrator.process_document(text="")
    assert result.state == PipelineState.DONE
    assert result.transactions == []
    assert result.bank_detection.method == METHOD_NO_INPUT
    assert result.confidence == 0.0


@pytest.mark.asyncio
async def test_stage_failure_returns_fallback_result(store, monkeypatch):
    pipe = _pipeline(store)

    def broken(text):
        raise RuntimeError("extractor exploded")

    monkeypatch.setattr(pipe.field_extractor, "extract_lines", broken)
    result = await pipe.orchestrator.process_document(text=BCR_STATEMENT)

    assert result.state == PipelineState.FAILED
    assert result.transactions == []
    assert result.confidence == FALLBACK_CONFIDENCE
    assert result.ml_enhanced is False
    assert "extractor exploded" in result.error
    assert pipe.orchestrator.get_metrics()["failures"] == 1


@pytest.mark.asyncio
async def test_scanned_pages_go_through_ocr(store):
    recognizer = ScriptedRecognizer(texts={0: BCR_HEADER, 1: BCR_BODY})
    pipe = _pipeline(store, recognizer)
    result = await pipe.orchestrator.process_document(images=blank_pages(2))

    assert result.bank_detection.bank == "BCR"
    assert [t.description for t in result.transactions][:2] == ["PLATA CARD KAUFLAND", "PLATA CARD OMV PETROM"]
    assert result.metrics["ocr"]["pages_processed"] == 2


@pytest.mark.asyncio
async def test_all_ocr_pages_failing_gives_empty_result(store):
    pipe = _pipeline(store, ScriptedRecognizer(fail_pages={0, 1}))
    result = await pipe.orchestrator.process_document(images=blank_pages(2))
    assert result.state == PipelineState.DONE
    assert result.transactions == []
    assert result.confidence == 0.0
    assert result.metrics["ocr"]["pages_processed"] == 0


@pytest.mark.asyncio
async def test_text_layer_and_ocr_pages_are_merged_in_order(store):
    recognizer = ScriptedRecognizer(texts={1: BCR_BODY})
    pipe = _pipeline(store, recognizer)
    images = [blank_pages(2)[1]]
    result = await pipe.orchestrator.process_document(images=images, page_texts={0: BCR_HEADER})

    assert recognizer.calls == 1
    assert result.bank_detection.bank == "BCR"
    assert len(result.transactions) == 4
    assert result.transactions[0].description == "PLATA CARD KAUFLAND"


@pytest.mark.asyncio
async def test_result_serialises(store):
    result = await _pipeline(store).orchestrator.process_document(text=BCR_STATEMENT, filename="sept.txt")
    payload = result.to_dict()
    assert payload["state"] == "Done"
    assert payload["filename"] == "sept.txt"
    assert payload["bank_detection"]["bank"] == "BCR"
    tx = payload["transactions"][0]
    assert tx["predictions"]["merchant"]["method"] == "rule_based"
    assert tx["predictions"]["amount_range"]["value"] == {"min": 20.0, "max": 200.0, "expected": 80.0}
