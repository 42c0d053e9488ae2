import pytest
from fastapi.testclient import TestClient

from main import get_app
from ocr.recognizer import NullRecognizer
from pipeline.pipeline import build_pipeline
from storage.store import InMemoryStore

from conftest import BCR_STATEMENT


@pytest.fixture
def client():
    pipeline = build_pipeline(store=InMemoryStore(), recognizer=NullRecognizer(), ml_enabled=False)
    with TestClient(get_app(pipeline=pipeline)) as c:
        yield c


def _upload(client, content=BCR_STATEMENT.encode("utf-8"), name="statement.txt", ctype="text/plain"):
    return client.post("/statements", files={"file": (name, content, ctype)})


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "recognizer": "null"}


def test_upload_text_statement(client):
    resp = _upload(client)
    assert resp.status_code == 200
    body = resp.json()
    assert body["state"] == "Done"
    assert body["bank_detection"]["bank"] == "BCR"
    assert len(body["transactions"]) == 4
    assert body["transactions"][0]["merchant"] == "Kaufland"


def test_upload_rejects_empty_and_unsupported_files(client):
    assert _upload(client, content=b"").status_code == 400
    resp = _upload(client, content=b"PK\x03\x04", name="statement.docx", ctype="application/msword")
    assert resp.status_code == 400
    assert "unsupported" in resp.json()["detail"]


def test_feedback_flow(client):
    tx = _upload(client).json()["transactions"][0]
    resp = client.post("/feedback", json={"transaction_hash": tx["hash"], "merchant": "Kaufland Romania", "category": "Groceries"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["transaction_hash"] == tx["hash"]
    assert body["retrained"] is False

    stats = client.get("/feedback/statistics").json()
    assert stats["counts"]["feedback"] == 1
    assert stats["counts"]["transactions"] == 4
    assert stats["by_bank"]["BCR"]["transactions"] == 4


def test_feedback_for_unknown_transaction(client):
    resp = client.post("/feedback", json={"transaction_hash": "0123456789abcdef", "merchant": "Lidl"})
    assert resp.status_code == 404


def test_feedback_validation(client):
    resp = client.post("/feedback", json={"transaction_hash": "short"})
    assert resp.status_code == 422


def test_metrics(client):
    _upload(client)
    body = client.get("/statements/metrics").json()
    assert body["orchestrator"]["documents"] == 1
    assert body["orchestrator"]["transactions"] == 4
    assert body["detection"]["detections_by_method"]["template_signature"] == 1
