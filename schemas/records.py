from __future__ import annotations

import hashlib
import re
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import numpy as np


METHOD_NEURAL = "neural"
METHOD_RULE_BASED = "rule_based"
METHOD_FUZZY = "fuzzy"

KIND_MERCHANT = "merchant"
KIND_CATEGORY = "category"
KIND_AMOUNT_RANGE = "amount_range"

UNKNOWN_BANK = "UNKNOWN"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


@dataclass
class PageImage:
    page_index: int
    image: np.ndarray


@dataclass
class WordBox:
    text: str
    confidence: float
    left: int = 0
    top: int = 0
    width: int = 0
    height: int = 0


@dataclass
class RecognizedPage:
    text: str
    confidence: float  # 0..100, as reported by the recognizer
    page_index: int
    word_boxes: List[WordBox] = field(default_factory=list)


@dataclass
class OCRDocument:
    text: str
    confidence: float
    pages: List[RecognizedPage]
    pages_requested: int
    processing_ms: float
    timed_out: bool = False

    @property
    def pages_processed(self) -> int:
        return len(self.pages)


@dataclass(frozen=True)
class SignatureFeatures:
    length: float
    line_count: float
    digit_ratio: float
    uppercase_ratio: float
    bank_keyword_density: float
    has_table_structure: bool
    date_count: int
    amount_count: int

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignatureFeatures":
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})


@dataclass(frozen=True)
class DocumentSignature:
    hash: str
    features: SignatureFeatures
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LearnedPattern:
    """
    A bank-detection pattern learned from a document that no template recognised.

    Keyed by the signature hash of the document it was first seen on. Accuracy
    moves with user feedback; the record itself is never deleted from the store.
    """

    signature_hash: str
    bank_id: str
    sample_text: str
    features: SignatureFeatures
    accuracy: float = 0.5
    usage_count: int = 1
    samples: int = 0
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)

    def to_record(self) -> Dict[str, Any]:
        return {
            "signature_hash": self.signature_hash,
            "bank_id": self.bank_id,
            "sample_text": self.sample_text,
            "features": self.features.as_dict(),
            "accuracy": self.accuracy,
            "usage_count": self.usage_count,
            "samples": self.samples,
            "created_at": self.created_at,
            "last_used_at": self.last_used_at,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "LearnedPattern":
        return cls(
            signature_hash=record["signature_hash"],
            bank_id=record.get("bank_id") or UNKNOWN_BANK,
            sample_text=record.get("sample_text") or "",
            features=SignatureFeatures.from_dict(record.get("features") or {}),
            accuracy=float(record.get("accuracy", 0.5)),
            usage_count=int(record.get("usage_count", 1)),
            samples=int(record.get("samples", 0)),
            created_at=parse_timestamp(record.get("created_at")) or utcnow(),
            last_used_at=parse_timestamp(record.get("last_used_at")) or utcnow(),
        )


@dataclass
class BankDetection:
    bank: str
    confidence: float
    method: str
    signature: Optional[DocumentSignature] = None
    patterns: List[str] = field(default_factory=list)
    pattern_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bank": self.bank,
            "confidence": round(self.confidence, 4),
            "method": self.method,
            "signature_hash": self.signature.hash if self.signature else None,
            "patterns": list(self.patterns),
            "pattern_hash": self.pattern_hash,
        }


@dataclass
class LineScore:
    probability: float
    confidence: float
    features: List[str] = field(default_factory=list)


@dataclass
class CandidateLine:
    text: str
    line_number: int
    probability: float
    confidence: float
    matched_features: List[str] = field(default_factory=list)


@dataclass
class ExtractedFields:
    date: Optional[str]
    amount: Optional[float]
    description: Optional[str]
    type: str
    category: Optional[str]
    category_confidence: float
    confidence: float
    raw_date: Optional[str] = None
    raw_amount: Optional[str] = None


@dataclass(frozen=True)
class AmountRange:
    minimum: float
    maximum: float
    expected: float

    def as_dict(self) -> Dict[str, float]:
        return {"min": self.minimum, "max": self.maximum, "expected": self.expected}


@dataclass(frozen=True)
class Prediction:
    kind: str
    value: Any
    confidence: float
    method: str

    def to_dict(self) -> Dict[str, Any]:
        value = self.value.as_dict() if isinstance(self.value, AmountRange) else self.value
        return {
            "kind": self.kind,
            "value": value,
            "confidence": round(self.confidence, 4),
            "method": self.method,
        }


_SPACE_RE = re.compile(r"\s+")


def transaction_hash(date: Optional[str], amount: Optional[float], description: Optional[str]) -> str:
    desc = _SPACE_RE.sub(" ", (description or "").strip().lower())
    amt = f"{amount:.2f}" if amount is not None else ""
    parts = [date or "", amt, desc]
    return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Transaction:
    date: Optional[str]
    amount: float
    description: str
    type: str
    merchant: str
    merchant_confidence: float
    category: str
    category_confidence: float
    overall_confidence: float
    ml_enhanced: bool
    hash: str
    bank: str
    signature_hash: Optional[str] = None
    line_number: int = 0
    predictions: Dict[str, Prediction] = field(default_factory=dict)
    improvements: Tuple[str, ...] = ()
    processed_at: Optional[datetime] = None

    def to_record(self) -> Dict[str, Any]:
        return {
            "hash": self.hash,
            "date": self.date,
            "amount": self.amount,
            "description": self.description,
            "type": self.type,
            "merchant": self.merchant,
            "merchant_confidence": round(self.merchant_confidence, 4),
            "category": self.category,
            "category_confidence": round(self.category_confidence, 4),
            "overall_confidence": round(self.overall_confidence, 4),
            "ml_enhanced": self.ml_enhanced,
            "bank": self.bank,
            "signature_hash": self.signature_hash,
            "line_number": self.line_number,
            "predictions": {k: p.to_dict() for k, p in self.predictions.items()},
            "improvements": list(self.improvements),
            "processed_at": self.processed_at,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Transaction":
        predictions: Dict[str, Prediction] = {}
        for key, raw in (record.get("predictions") or {}).items():
            value = raw.get("value")
            if raw.get("kind") == KIND_AMOUNT_RANGE and isinstance(value, dict):
                value = AmountRange(value.get("min", 0.0), value.get("max", 0.0), value.get("expected", 0.0))
            predictions[key] = Prediction(raw.get("kind", key), value, float(raw.get("confidence", 0.0)), raw.get("method", METHOD_RULE_BASED))
        return cls(
            date=record.get("date"),
            amount=float(record.get("amount") or 0.0),
            description=record.get("description") or "",
            type=record.get("type") or "expense",
            merchant=record.get("merchant") or "Unknown",
            merchant_confidence=float(record.get("merchant_confidence") or 0.0),
            category=record.get("category") or "General",
            category_confidence=float(record.get("category_confidence") or 0.0),
            overall_confidence=float(record.get("overall_confidence") or 0.0),
            ml_enhanced=bool(record.get("ml_enhanced")),
            hash=record["hash"],
            bank=record.get("bank") or UNKNOWN_BANK,
            signature_hash=record.get("signature_hash"),
            line_number=int(record.get("line_number") or 0),
            predictions=predictions,
            improvements=tuple(record.get("improvements") or ()),
            processed_at=parse_timestamp(record.get("processed_at")),
        )


@dataclass
class FeedbackCorrections:
    merchant: Optional[str] = None
    category: Optional[str] = None
    is_correct: Optional[bool] = None

    @property
    def has_corrections(self) -> bool:
        return bool(self.merchant or self.category)


@dataclass
class Feedback:
    transaction_hash: str
    original: Dict[str, Any]
    corrections: FeedbackCorrections
    signature_hash: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_record(self) -> Dict[str, Any]:
        return {
            "transaction_hash": self.transaction_hash,
            "original": self.original,
            "corrections": asdict(self.corrections),
            "signature_hash": self.signature_hash,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Feedback":
        corrections = record.get("corrections") or {}
        return cls(
            transaction_hash=record.get("transaction_hash") or "",
            original=record.get("original") or {},
            corrections=FeedbackCorrections(
                merchant=corrections.get("merchant"),
                category=corrections.get("category"),
                is_correct=corrections.get("is_correct"),
            ),
            signature_hash=record.get("signature_hash"),
            timestamp=parse_timestamp(record.get("timestamp")) or utcnow(),
        )
