from __future__ import annotations

import hashlib
import re
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Sequence, Tuple

from services import config
from services.json_logger import get_json_logger
from detection.bank_templates import BANK_KEYWORDS, KNOWN_TEMPLATES, STATEMENT_KEYWORDS, BankTemplate
from schemas.records import (
    UNKNOWN_BANK,
    BankDetection,
    DocumentSignature,
    LearnedPattern,
    SignatureFeatures,
    utcnow,
)
from storage.store import Store


logger = get_json_logger("statement_parser.detection")

TEMPLATE_ACCEPT = 0.8
PATTERN_ACCEPT = 0.6
LEARNED_ACCEPT = 0.5
KEYWORD_CONFIDENCE = 0.4
UNKNOWN_CONFIDENCE = 0.2
ACCURACY_LEARNING_RATE = 0.1
SAMPLE_TEXT_CHARS = 500

METHOD_NO_INPUT = "no_input"
METHOD_TEMPLATE = "template_signature"
METHOD_PATTERN = "pattern_matching"
METHOD_LEARNED = "fuzzy_learned_pattern"
METHOD_KEYWORDS = "fallback_keywords"
METHOD_ERROR = "error"

_DATE_RE = re.compile(r"\b\d{1,2}[./-]\d{1,2}[./-]\d{2,4}\b")
_AMOUNT_RE = re.compile(r"\d+[.,]\d{2}")
_TABLE_LINE_RE = re.compile(r"\t| {3,}")

_COUNT_FEATURES = ("date_count", "amount_count")


def _contains_signature(upper_text: str, signature: str) -> bool:
    # Short codes such as "BT" must stand alone, otherwise "DEBT" would count.
    if len(signature) <= 3:
        return re.search(rf"\b{re.escape(signature)}\b", upper_text) is not None
    return signature in upper_text


def generate_signature(text: str) -> DocumentSignature:
    """Derive the deterministic structural signature of a document's text."""
    n = len(text)
    lower = text.lower()
    keyword_hits = sum(lower.count(k) for k in STATEMENT_KEYWORDS)
    table_lines = sum(1 for line in text.split("\n") if _TABLE_LINE_RE.search(line))
    features = SignatureFeatures(
        length=min(n / 1000.0, 1.0),
        line_count=min(text.count("\n") / 100.0, 1.0),
        digit_ratio=(sum(ch.isdigit() for ch in text) / n) if n else 0.0,
        uppercase_ratio=(sum(ch.isupper() for ch in text) / n) if n else 0.0,
        bank_keyword_density=(keyword_hits / n) if n else 0.0,
        has_table_structure=table_lines > 3,
        date_count=len(_DATE_RE.findall(text)),
        amount_count=len(_AMOUNT_RE.findall(text)),
    )
    return DocumentSignature(hash=signature_hash(features), features=features)


def signature_hash(features: SignatureFeatures) -> str:
    parts = []
    for name, value in features.as_dict().items():
        if isinstance(value, bool):
            parts.append(f"{name}={int(value)}")
        else:
            parts.append(f"{name}={round(float(value) * 1000)}")
    return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()[:16]


def signature_similarity(a: SignatureFeatures, b: SignatureFeatures) -> float:
    """Mean per-feature closeness in [0, 1]."""
    da, db = a.as_dict(), b.as_dict()
    scores: List[float] = []
    for name, va in da.items():
        vb = db.get(name)
        if isinstance(va, bool) or isinstance(vb, bool):
            scores.append(1.0 if bool(va) == bool(vb) else 0.0)
        elif name in _COUNT_FEATURES:
            scale = max(float(va), float(vb), 1.0)
            scores.append(max(0.0, 1.0 - abs(float(va) - float(vb)) / scale))
        else:
            scores.append(max(0.0, 1.0 - abs(float(va) - float(vb))))
    return sum(scores) / len(scores) if scores else 0.0


def score_template(text: str, template: BankTemplate) -> Tuple[float, List[str]]:
    upper = text.upper()
    score = 0.0
    matched: List[str] = []
    for pattern in template.document_patterns:
        if pattern.search(text):
            score += 0.3
            matched.append(pattern.pattern)
    for sig in template.signature_strings:
        if _contains_signature(upper, sig.upper()):
            score += 0.4
            matched.append(sig)

    field_scores = [min(len(p.findall(text)) / 10.0, 1.0) for p in template.field_patterns.values()]
    field_score = sum(field_scores) / len(field_scores) if field_scores else 0.0
    score += field_score * 0.3
    return min(score * template.prior_confidence, 1.0), matched


class SignatureEngine:
    """
    Identifies the issuing bank of a statement.

    Known templates are tried first (strict, then relaxed threshold), then the
    nearest learned pattern, then a keyword guess. Learned patterns live in the
    store; an LRU cache of `cache_size` entries keeps recent ones in memory and
    is the set searched by fuzzy matching.
    """

    def __init__(
        self,
        store: Optional[Store] = None,
        templates: Optional[Sequence[BankTemplate]] = None,
        cache_size: Optional[int] = None,
    ) -> None:
        self.store = store
        self.templates = list(templates) if templates is not None else list(KNOWN_TEMPLATES)
        self.cache_size = max(1, int(cache_size if cache_size is not None else config.PATTERN_CACHE_SIZE))
        self._patterns: "OrderedDict[str, LearnedPattern]" = OrderedDict()
        self._method_counts: Dict[str, int] = {}
        self._patterns_learned = 0

    # ---- pattern cache ----
    def _cache_put(self, pattern: LearnedPattern) -> None:
        self._patterns[pattern.signature_hash] = pattern
        self._patterns.move_to_end(pattern.signature_hash)
        while len(self._patterns) > self.cache_size:
            self._patterns.popitem(last=False)

    async def _lookup_pattern(self, sig_hash: str) -> Optional[LearnedPattern]:
        pattern = self._patterns.get(sig_hash)
        if pattern is not None:
            self._patterns.move_to_end(sig_hash)
            return pattern
        if self.store is None:
            return None
        record = await self.store.get("patterns", sig_hash)
        if record is None:
            return None
        pattern = LearnedPattern.from_record(record)
        self._cache_put(pattern)
        return pattern

    async def _persist_pattern(self, pattern: LearnedPattern) -> None:
        if self.store is not None:
            await self.store.put("patterns", pattern.to_record())

    async def load_learned_patterns(self) -> int:
        if self.store is None:
            return 0
        records = await self.store.get_all("patterns")
        patterns = [LearnedPattern.from_record(r) for r in records]
        patterns.sort(key=lambda p: p.last_used_at)
        for pattern in patterns[-self.cache_size:]:
            self._cache_put(pattern)
        logger.info("learned_patterns_loaded", extra={"extra": {"stored": len(records), "cached": len(self._patterns)}})
        return len(self._patterns)

    @property
    def learned_patterns(self) -> List[LearnedPattern]:
        return list(self._patterns.values())

    # ---- detection ----
    def generate_signature(self, text: str) -> DocumentSignature:
        return generate_signature(text)

    def detect_by_patterns(self, text: str) -> Tuple[Optional[str], float, List[str]]:
        best_bank: Optional[str] = None
        best_score = 0.0
        best_matched: List[str] = []
        for template in self.templates:
            score, matched = score_template(text, template)
            if score > best_score:
                best_bank, best_score, best_matched = template.bank_id, score, matched
        return best_bank, best_score, best_matched

    def fuzzy_match_learned(self, signature: DocumentSignature) -> Tuple[Optional[LearnedPattern], float]:
        best: Optional[LearnedPattern] = None
        best_similarity = 0.0
        for pattern in self._patterns.values():
            if pattern.bank_id == UNKNOWN_BANK:
                continue
            similarity = signature_similarity(signature.features, pattern.features)
            if similarity > best_similarity:
                best, best_similarity = pattern, similarity
        return best, best_similarity

    @staticmethod
    def detect_by_keywords(text: str) -> Tuple[str, float]:
        lower = text.lower()
        for bank, keywords in BANK_KEYWORDS.items():
            if any(k in lower for k in keywords):
                return bank, KEYWORD_CONFIDENCE
        return UNKNOWN_BANK, UNKNOWN_CONFIDENCE

    def detect_bank(self, text: str) -> BankDetection:
        if not text or not text.strip():
            return self._record(BankDetection(UNKNOWN_BANK, 0.0, METHOD_NO_INPUT))
        try:
            signature = self.generate_signature(text)

            bank, score, matched = self.detect_by_patterns(text)
            if bank is not None and score > TEMPLATE_ACCEPT:
                return self._record(BankDetection(bank, score, METHOD_TEMPLATE, signature, matched))
            if bank is not None and score > PATTERN_ACCEPT:
                return self._record(BankDetection(bank, score, METHOD_PATTERN, signature, matched))

            pattern, similarity = self.fuzzy_match_learned(signature)
            if pattern is not None and similarity > LEARNED_ACCEPT:
                return self._record(
                    BankDetection(
                        pattern.bank_id,
                        min(similarity, 1.0),
                        METHOD_LEARNED,
                        signature,
                        pattern_hash=pattern.signature_hash,
                    )
                )

            bank, confidence = self.detect_by_keywords(text)
            return self._record(BankDetection(bank, confidence, METHOD_KEYWORDS, signature))
        except Exception as exc:
            logger.error("bank_detection_failed", extra={"extra": {"error": str(exc)}})
            return self._record(BankDetection(UNKNOWN_BANK, 0.0, METHOD_ERROR))

    def _record(self, detection: BankDetection) -> BankDetection:
        self._method_counts[detection.method] = self._method_counts.get(detection.method, 0) + 1
        logger.info(
            "bank_detected",
            extra={"extra": {"bank": detection.bank, "confidence": round(detection.confidence, 3), "method": detection.method}},
        )
        return detection

    # ---- learning ----
    async def find_or_learn_pattern(self, signature: DocumentSignature, text: str, bank: str) -> LearnedPattern:
        existing = await self._lookup_pattern(signature.hash)
        if existing is not None:
            existing.usage_count += 1
            existing.last_used_at = utcnow()
            await self._persist_pattern(existing)
            return existing

        pattern = LearnedPattern(
            signature_hash=signature.hash,
            bank_id=bank or UNKNOWN_BANK,
            sample_text=text[:SAMPLE_TEXT_CHARS],
            features=signature.features,
        )
        self._cache_put(pattern)
        await self._persist_pattern(pattern)
        self._patterns_learned += 1
        logger.info("pattern_learned", extra={"extra": {"signature_hash": pattern.signature_hash, "bank": pattern.bank_id}})
        return pattern

    async def update_pattern_accuracy(self, sig_hash: str, was_correct: bool) -> Optional[float]:
        pattern = await self._lookup_pattern(sig_hash)
        if pattern is None:
            return None
        target = 1.0 if was_correct else 0.0
        accuracy = pattern.accuracy * (1.0 - ACCURACY_LEARNING_RATE) + target * ACCURACY_LEARNING_RATE
        pattern.accuracy = min(max(accuracy, 0.0), 1.0)
        pattern.samples += 1
        pattern.last_used_at = utcnow()
        await self._persist_pattern(pattern)
        return pattern.accuracy

    def get_stats(self) -> Dict[str, Any]:
        return {
            "templates": len(self.templates),
            "cached_patterns": len(self._patterns),
            "patterns_learned": self._patterns_learned,
            "detections_by_method": dict(self._method_counts),
        }
