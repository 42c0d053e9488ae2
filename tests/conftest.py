import os
import sys

# Keep the module-level app in main.py off the local OCR engine
os.environ.setdefault("FF_OCR_ENABLED", "false")


def pytest_sessionstart(session):
    # Ensure project root is on sys.path so top-level packages resolve
    project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if project_root not in sys.path:
        sys.path.insert(0, project_root)


# --- Test utilities: scripted recognizers, fake models, sample documents ---
import asyncio
from typing import Dict, Iterable, Optional, Sequence, Tuple

import numpy as np
import pytest

from ai_services.models import ModelUnavailableError, TrainableModel
from ocr.recognizer import Recognizer
from schemas.records import PageImage, RecognizedPage, Transaction, transaction_hash
from storage.store import InMemoryStore


BCR_STATEMENT = """BANCA COMERCIALĂ ROMÂNĂ S.A.
EXTRAS DE CONT BCR
Titular: Ion Popescu    Cont: RO49RNCB0000000000000001
Perioada: 01.09.2025 - 30.09.2025

15/09/2025  PLATA CARD KAUFLAND  -45.67
16/09/2025  PLATA CARD OMV PETROM  -210.00
18/09/2025  TRANSFER SALARIU ACME SRL  +5.400,00
20/09/2025  RETRAGERE ATM BCR  -300.00
Sold final: 4.844,33
"""

UNICREDIT_STATEMENT = """UniCredit Extras
Client: Maria Ionescu
03.10.2025 Plata POS LIDL DISCOUNT 123,45
05.10.2025 Plata factura ENEL ENERGIE 210,30
"""


class ScriptedRecognizer(Recognizer):
    """Returns canned text per page; can fail pages or delay them."""

    name = "scripted"

    def __init__(
        self,
        texts: Optional[Dict[int, str]] = None,
        fail_pages: Iterable[int] = (),
        delays: Optional[Dict[int, float]] = None,
        delay: float = 0.0,
        confidence: float = 90.0,
    ) -> None:
        self.texts = texts or {}
        self.fail_pages = set(fail_pages)
        self.delays = delays or {}
        self.delay = delay
        self.confidence = confidence
        self.active = 0
        self.max_active = 0
        self.calls = 0

    async def recognize(self, image, page_index: int) -> RecognizedPage:
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delays.get(page_index, self.delay))
            if page_index in self.fail_pages:
                raise RuntimeError(f"engine crashed on page {page_index}")
            return RecognizedPage(
                text=self.texts.get(page_index, ""),
                confidence=self.confidence,
                page_index=page_index,
            )
        finally:
            self.active -= 1


class FakeModel(TrainableModel):
    def __init__(
        self,
        name: str = "fake",
        label: str = "Fake",
        confidence: float = 0.9,
        trained: bool = True,
        fail: bool = False,
    ) -> None:
        self.name = name
        self.label = label
        self.confidence = confidence
        self._trained = trained
        self.fail = fail
        self.fit_calls = []

    @property
    def is_trained(self) -> bool:
        return self._trained

    def fit(self, features, labels) -> bool:
        self.fit_calls.append(list(labels))
        self._trained = True
        self.version += 1
        return True

    def predict(self, features) -> Tuple[str, float]:
        if self.fail:
            raise ModelUnavailableError("boom")
        return self.label, self.confidence


def blank_pages(count: int) -> Sequence[PageImage]:
    return [PageImage(page_index=i, image=np.full((12, 16, 3), 255, dtype=np.uint8)) for i in range(count)]


def make_transaction(description: str, amount: float, date: str = "2025-09-15", signature_hash: Optional[str] = None, merchant: str = "Unknown") -> Transaction:
    return Transaction(
        date=date,
        amount=amount,
        description=description,
        type="expense" if amount < 0 else "income",
        merchant=merchant,
        merchant_confidence=0.2,
        category="General",
        category_confidence=0.3,
        overall_confidence=0.3,
        ml_enhanced=False,
        hash=transaction_hash(date, amount, description),
        bank="BCR",
        signature_hash=signature_hash,
    )


@pytest.fixture
def store():
    # Fresh in-memory store per test function
    return InMemoryStore()
