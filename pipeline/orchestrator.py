from __future__ import annotations

import dataclasses
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from services.json_logger import get_json_logger
from ai_services.categorization import MerchantDirectory
from ai_services.classifier import Classifier
from detection.signature_engine import METHOD_LEARNED, METHOD_KEYWORDS, SignatureEngine
from extraction.field_extractor import FieldExtractor
from fusion.fusion_engine import FusionEngine, FusionInput
from ocr.recognizer_pool import RecognizerPool
from schemas.records import (
    BankDetection,
    CandidateLine,
    ExtractedFields,
    LearnedPattern,
    PageImage,
    Transaction,
    transaction_hash,
    utcnow,
)
from storage.store import DuplicateRecordError, Store


logger = get_json_logger("statement_parser.pipeline")

FALLBACK_CONFIDENCE = 0.1


class PipelineState(str, Enum):
    IDLE = "Idle"
    EXTRACTING_TEXT = "ExtractingText"
    DETECTING_BANK = "DetectingBank"
    EXTRACTING_LINES = "ExtractingLines"
    ENRICHING = "Enriching"
    FUSING = "Fusing"
    PERSISTING = "Persisting"
    DONE = "Done"
    FAILED = "Failed"


@dataclass
class DocumentResult:
    transactions: List[Transaction]
    bank_detection: Optional[BankDetection]
    pattern: Optional[LearnedPattern]
    confidence: float
    processing_time_ms: float
    metrics: Dict[str, Any] = field(default_factory=dict)
    state: PipelineState = PipelineState.DONE
    ml_enhanced: bool = False
    error: Optional[str] = None
    filename: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "state": self.state.value,
            "bank_detection": self.bank_detection.to_dict() if self.bank_detection else None,
            "pattern": self.pattern.to_record() if self.pattern else None,
            "confidence": round(self.confidence, 4),
            "ml_enhanced": self.ml_enhanced,
            "processing_time_ms": round(self.processing_time_ms, 1),
            "metrics": self.metrics,
            "transactions": [t.to_record() for t in self.transactions],
            "error": self.error,
        }


@dataclass
class _Enriched:
    candidate: CandidateLine
    fields: ExtractedFields
    inputs: FusionInput


class Orchestrator:
    """
    Drives one document through the pipeline.

    ExtractingText -> DetectingBank -> ExtractingLines -> Enriching -> Fusing ->
    Persisting -> Done. Any error moves the run to Failed and produces an empty
    result with confidence 0.1 instead of raising.
    """

    def __init__(
        self,
        signature_engine: SignatureEngine,
        field_extractor: FieldExtractor,
        classifier: Classifier,
        fusion_engine: FusionEngine,
        merchant_directory: Optional[MerchantDirectory] = None,
        recognizer_pool: Optional[RecognizerPool] = None,
        store: Optional[Store] = None,
    ) -> None:
        self.signature_engine = signature_engine
        self.field_extractor = field_extractor
        self.classifier = classifier
        self.fusion_engine = fusion_engine
        self.merchant_directory = merchant_directory
        self.recognizer_pool = recognizer_pool
        self.store = store
        self.state = PipelineState.IDLE
        self._metrics: Dict[str, float] = {
            "documents": 0,
            "failures": 0,
            "transactions": 0,
            "duplicates": 0,
            "total_time_ms": 0.0,
        }

    def _enter(self, state: PipelineState) -> None:
        self.state = state
        logger.debug("pipeline_state", extra={"extra": {"state": state.value}})

    async def process_document(
        self,
        text: Optional[str] = None,
        images: Optional[Sequence[PageImage]] = None,
        filename: Optional[str] = None,
        persist: bool = True,
        page_texts: Optional[Dict[int, str]] = None,
    ) -> DocumentResult:
        """
        Process one document given as whole text, as page images, or as a mix
        of per-page text layers (`page_texts`) and images for the other pages.
        """
        t0 = time.perf_counter()
        self._metrics["documents"] += 1
        try:
            result = await self._run(text, images, page_texts, filename, persist, t0)
        except Exception as exc:
            self._enter(PipelineState.FAILED)
            self._metrics["failures"] += 1
            elapsed = (time.perf_counter() - t0) * 1000.0
            logger.error(
                "pipeline_failed",
                extra={"extra": {"filename": filename, "error": f"{type(exc).__name__}: {exc}"}},
            )
            result = DocumentResult(
                transactions=[],
                bank_detection=None,
                pattern=None,
                confidence=FALLBACK_CONFIDENCE,
                processing_time_ms=elapsed,
                metrics={"total_transactions": 0, "ml_enhanced_count": 0, "average_confidence": 0.0},
                state=PipelineState.FAILED,
                ml_enhanced=False,
                error=str(exc),
                filename=filename,
            )
        self._metrics["total_time_ms"] += result.processing_time_ms
        return result

    async def _run(
        self,
        text: Optional[str],
        images: Optional[Sequence[PageImage]],
        page_texts: Optional[Dict[int, str]],
        filename: Optional[str],
        persist: bool,
        t0: float,
    ) -> DocumentResult:
        metrics: Dict[str, Any] = {}

        self._enter(PipelineState.EXTRACTING_TEXT)
        pages: Dict[int, str] = dict(page_texts or {})
        if images:
            if self.recognizer_pool is None:
                raise RuntimeError("page images given but no recognizer pool configured")
            ocr = await self.recognizer_pool.recognize_document(images)
            pages.update({p.page_index: p.text for p in ocr.pages})
            metrics["ocr"] = {
                "pages_requested": ocr.pages_requested,
                "pages_processed": ocr.pages_processed,
                "confidence": round(ocr.confidence, 2),
                "timed_out": ocr.timed_out,
            }
        document_text = text if text is not None else "\n".join(pages[i] for i in sorted(pages)).strip()

        self._enter(PipelineState.DETECTING_BANK)
        detection = self.signature_engine.detect_bank(document_text)
        pattern: Optional[LearnedPattern] = None
        if detection.signature is not None and detection.method in (METHOD_LEARNED, METHOD_KEYWORDS):
            pattern = await self.signature_engine.find_or_learn_pattern(detection.signature, document_text, detection.bank)

        self._enter(PipelineState.EXTRACTING_LINES)
        lines = self.field_extractor.extract_lines(document_text)
        metrics["total_lines"] = document_text.count("\n") + 1 if document_text else 0
        metrics["candidate_lines"] = len(lines)

        self._enter(PipelineState.ENRICHING)
        enriched = [await self._enrich(candidate, fields) for candidate, fields in lines]

        self._enter(PipelineState.FUSING)
        signature_hash = detection.signature.hash if detection.signature else None
        transactions: List[Transaction] = []
        for item in enriched:
            fused = self.fusion_engine.fuse(item.inputs)
            description = item.fields.description or item.candidate.text
            transactions.append(
                Transaction(
                    date=item.fields.date,
                    amount=float(item.fields.amount or 0.0),
                    description=description,
                    type=item.fields.type,
                    merchant=fused.merchant,
                    merchant_confidence=fused.merchant_confidence,
                    category=fused.category,
                    category_confidence=fused.category_confidence,
                    overall_confidence=fused.overall_confidence,
                    ml_enhanced=fused.ml_enhanced,
                    hash=transaction_hash(item.fields.date, item.fields.amount, description),
                    bank=detection.bank,
                    signature_hash=signature_hash,
                    line_number=item.candidate.line_number,
                    predictions={
                        "merchant": item.inputs.merchant,
                        "category": item.inputs.category,
                        **({"amount_range": item.inputs.amount_range} if item.inputs.amount_range else {}),
                    },
                    improvements=tuple(fused.improvements),
                )
            )

        self._enter(PipelineState.PERSISTING)
        duplicates = 0
        if persist and self.store is not None:
            stored: List[Transaction] = []
            for tx in transactions:
                tx = dataclasses.replace(tx, processed_at=utcnow())
                try:
                    await self.store.put("transactions", tx.to_record())
                except DuplicateRecordError:
                    duplicates += 1
                stored.append(tx)
            transactions = stored

        self._enter(PipelineState.DONE)
        ml_count = sum(1 for t in transactions if t.ml_enhanced)
        avg_conf = sum(t.overall_confidence for t in transactions) / len(transactions) if transactions else 0.0
        elapsed = (time.perf_counter() - t0) * 1000.0
        metrics.update(
            {
                "total_transactions": len(transactions),
                "ml_enhanced_count": ml_count,
                "average_confidence": round(avg_conf, 4),
                "duplicates": duplicates,
            }
        )
        self._metrics["transactions"] += len(transactions)
        self._metrics["duplicates"] += duplicates
        logger.info(
            "document_processed",
            extra={
                "extra": {
                    "filename": filename,
                    "bank": detection.bank,
                    "method": detection.method,
                    "transactions": len(transactions),
                    "duplicates": duplicates,
                    "ms": round(elapsed, 1),
                }
            },
        )
        return DocumentResult(
            transactions=transactions,
            bank_detection=detection,
            pattern=pattern,
            confidence=detection.confidence,
            processing_time_ms=elapsed,
            metrics=metrics,
            state=PipelineState.DONE,
            ml_enhanced=ml_count > 0,
            filename=filename,
        )

    async def _enrich(self, candidate: CandidateLine, fields: ExtractedFields) -> _Enriched:
        description = fields.description or candidate.text
        merchant = await self.classifier.predict_merchant(description, fields.amount, fields.date)
        category = await self.classifier.predict_category(description, fields.amount or 0.0, merchant, fields.date)
        amount_range = await self.classifier.predict_amount_range(description, merchant)
        fuzzy = self.merchant_directory.fuzzy_match(description) if self.merchant_directory is not None else None
        return _Enriched(
            candidate=candidate,
            fields=fields,
            inputs=FusionInput(
                fields=fields,
                merchant=merchant,
                category=category,
                fuzzy=fuzzy,
                amount_range=amount_range,
                original_text=candidate.text,
            ),
        )

    def get_metrics(self) -> Dict[str, Any]:
        docs = int(self._metrics["documents"])
        return {
            "state": self.state.value,
            "documents": docs,
            "failures": int(self._metrics["failures"]),
            "transactions": int(self._metrics["transactions"]),
            "duplicates": int(self._metrics["duplicates"]),
            "average_processing_ms": (self._metrics["total_time_ms"] / docs) if docs else 0.0,
        }
