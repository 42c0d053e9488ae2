from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from rapidfuzz.distance import JaroWinkler

from services import config
from services.json_logger import get_json_logger
from extraction.field_extractor import fold_text
from schemas.records import (
    KIND_AMOUNT_RANGE,
    KIND_CATEGORY,
    KIND_MERCHANT,
    METHOD_FUZZY,
    METHOD_RULE_BASED,
    AmountRange,
    Prediction,
    utcnow,
)
from storage.store import Store


logger = get_json_logger("statement_parser.classifier")

UNKNOWN_MERCHANT = "Unknown"
DEFAULT_CATEGORY = "Other"

MERCHANT_RULE_CONFIDENCE = 0.7
MERCHANT_MISS_CONFIDENCE = 0.2
CATEGORY_RULE_CONFIDENCE = 0.65
CATEGORY_HINT_CONFIDENCE = 0.62
CATEGORY_MISS_CONFIDENCE = 0.3
AMOUNT_RULE_CONFIDENCE = 0.6
AMOUNT_DEFAULT_CONFIDENCE = 0.3

# Aliases shorter than this only match a whole word exactly
EXACT_ALIAS_LENGTH = 5
MIN_LENGTH_RATIO = 0.75


MERCHANT_RULES: dict[str, Tuple[str, str]] = {
    # keyword -> (category, merchant_name)
    "kaufland": ("Groceries", "Kaufland"),
    "lidl": ("Groceries", "Lidl"),
    "carrefour": ("Groceries", "Carrefour"),
    "auchan": ("Groceries", "Auchan"),
    "mega image": ("Groceries", "Mega Image"),
    "profi": ("Groceries", "Profi"),
    "penny": ("Groceries", "Penny"),
    "omv": ("Transport", "OMV"),
    "petrom": ("Transport", "Petrom"),
    "rompetrol": ("Transport", "Rompetrol"),
    "lukoil": ("Transport", "Lukoil"),
    "uber": ("Transport", "Uber"),
    "bolt": ("Transport", "Bolt"),
    "mcdonald": ("Restaurants", "McDonald's"),
    "mcdonalds": ("Restaurants", "McDonald's"),
    "kfc": ("Restaurants", "KFC"),
    "glovo": ("Restaurants", "Glovo"),
    "tazz": ("Restaurants", "Tazz"),
    "enel": ("Utilities", "Enel"),
    "e.on": ("Utilities", "E.ON"),
    "electrica": ("Utilities", "Electrica"),
    "engie": ("Utilities", "Engie"),
    "digi": ("Utilities", "Digi"),
    "orange": ("Utilities", "Orange"),
    "vodafone": ("Utilities", "Vodafone"),
    "emag": ("Shopping", "eMAG"),
    "altex": ("Shopping", "Altex"),
    "dedeman": ("Shopping", "Dedeman"),
    "zara": ("Shopping", "Zara"),
    "h&m": ("Shopping", "H&M"),
    "catena": ("Health", "Catena"),
    "sensiblu": ("Health", "Sensiblu"),
    "dr.max": ("Health", "Dr. Max"),
    "netflix": ("Entertainment", "Netflix"),
    "spotify": ("Entertainment", "Spotify"),
    "retragere numerar": ("ATM", "ATM"),
    "atm": ("ATM", "ATM"),
}

CATEGORY_RULES: List[Tuple[str, str]] = [
    (r"\b(?:alimentar\w*|food|market|supermarket|kaufland|lidl|carrefour|profi)\b", "Groceries"),
    (r"\b(?:benzin\w*|fuel|petrom|omv|rompetrol|lukoil|taxi|uber|bolt)\b", "Transport"),
    (r"\b(?:enel|e\.?on|gaz|electrica|engie|factur\w*|utilit\w*)\b", "Utilities"),
    # "cafe" also covers cafenea/cafeneaua
    (r"\b(?:restaurant\w*|pizz\w*|burger\w*|mcdonald\w*|kfc|cafe\w*|glovo|tazz)\b", "Restaurants"),
    (r"\b(?:farmaci\w*|clinic\w*|medical|catena|sensiblu)\b", "Health"),
    (r"\b(?:netflix|spotify|cinema\w*|hbo|steam)\b", "Entertainment"),
    (r"\b(?:emag|altex|fashion|mall|zara|h&m)\b", "Shopping"),
    (r"\b(?:atm|retrager\w*|cash|numerar)\b", "ATM"),
    (r"\b(?:transfer\w*|virament\w*)\b", "Transfer"),
]

AMOUNT_RANGE_RULES: List[Tuple[str, AmountRange]] = [
    (r"\b(?:benzin\w*|fuel|petrom|omv|rompetrol|lukoil)\b", AmountRange(50.0, 300.0, 150.0)),
    (r"\b(?:alimentar\w*|food|kaufland|lidl|carrefour|profi|auchan|mega\s?image)\b", AmountRange(20.0, 200.0, 80.0)),
    (r"\b(?:restaurant\w*|mancare|pizz\w*|burger\w*|mcdonald\w*|kfc|glovo)\b", AmountRange(30.0, 150.0, 70.0)),
    (r"\b(?:enel|e\.?on|electrica|engie|gaz|digi|orange|vodafone)\b", AmountRange(50.0, 400.0, 150.0)),
    (r"\b(?:atm|retrager\w*|numerar)\b", AmountRange(50.0, 1000.0, 200.0)),
]
DEFAULT_AMOUNT_RANGE = AmountRange(10.0, 100.0, 50.0)

# Tokens that appear around merchant names on card lines but are not part of them.
_MERCHANT_NOISE_RE = re.compile(
    r"\b(?:plata|cumparare|pos|card|terminal|tranzactie|ref|nr|ron|lei|eur|srl|sa)\b|[*#]|\d+",
    re.IGNORECASE,
)


def normalize_merchant(name: str) -> str:
    cleaned = _MERCHANT_NOISE_RE.sub(" ", fold_text(name))
    return re.sub(r"\s+", " ", cleaned).strip()


def _comparable(left: str, right: str) -> bool:
    if len(right) < EXACT_ALIAS_LENGTH:
        return False
    return min(len(left), len(right)) / max(len(left), len(right)) >= MIN_LENGTH_RATIO


def alias_similarity(tokens: List[str], alias: str) -> float:
    """
    Best Jaro-Winkler similarity between `alias` and any run of `tokens` with the
    same word count. Short aliases ("omv", "digi") only count on an exact word
    match, and windows whose length differs too much from the alias are skipped,
    so a brand never matches inside a longer unrelated word.
    """
    size = len(alias.split())
    if not size:
        return 0.0
    windows = [" ".join(tokens[i:i + size]) for i in range(len(tokens) - size + 1)]
    pairs = [(window, alias) for window in windows]
    if size > 1:
        # "megaimage" on the statement against the "mega image" alias
        compact = alias.replace(" ", "")
        pairs.extend((token, compact) for token in tokens)
    best = 0.0
    for left, right in pairs:
        if left == right:
            return 1.0
        if _comparable(left, right):
            best = max(best, JaroWinkler.normalized_similarity(left, right))
    return best


class RuleBasedCategorizer:
    """Deterministic fallback used whenever a trained model cannot answer."""

    def __init__(self, rules: Optional[dict[str, Tuple[str, str]]] = None) -> None:
        self.rules = rules or MERCHANT_RULES
        # Whole-word patterns; "atm" must not fire inside "atmosfera"
        self._patterns: List[Tuple[re.Pattern[str], Tuple[str, str]]] = []
        for keyword, value in self.rules.items():
            pattern = re.compile(rf"(?<!\w){re.escape(keyword)}(?!\w)", flags=re.IGNORECASE)
            self._patterns.append((pattern, value))
        self._category_patterns = [(re.compile(p, re.IGNORECASE), c) for p, c in CATEGORY_RULES]
        self._amount_patterns = [(re.compile(p, re.IGNORECASE), r) for p, r in AMOUNT_RANGE_RULES]

    def categorize(self, description: str) -> Tuple[str, Optional[str]]:
        if not description:
            return DEFAULT_CATEGORY, None
        folded = fold_text(description)
        for pattern, (category, merchant) in self._patterns:
            if pattern.search(folded):
                return category, merchant
        return DEFAULT_CATEGORY, None

    def predict_merchant(self, text: str) -> Prediction:
        _, merchant = self.categorize(text)
        if merchant:
            return Prediction(KIND_MERCHANT, merchant, MERCHANT_RULE_CONFIDENCE, METHOD_RULE_BASED)
        return Prediction(KIND_MERCHANT, UNKNOWN_MERCHANT, MERCHANT_MISS_CONFIDENCE, METHOD_RULE_BASED)

    def predict_category(self, text: str, amount: float = 0.0, merchant_hint: Optional[str] = None) -> Prediction:
        folded = fold_text(text or "")
        for pattern, category in self._category_patterns:
            if pattern.search(folded):
                return Prediction(KIND_CATEGORY, category, CATEGORY_RULE_CONFIDENCE, METHOD_RULE_BASED)
        if merchant_hint and merchant_hint != UNKNOWN_MERCHANT:
            category, merchant = self.categorize(merchant_hint)
            if merchant:
                return Prediction(KIND_CATEGORY, category, CATEGORY_HINT_CONFIDENCE, METHOD_RULE_BASED)
        return Prediction(KIND_CATEGORY, DEFAULT_CATEGORY, CATEGORY_MISS_CONFIDENCE, METHOD_RULE_BASED)

    def predict_amount_range(self, text: str, merchant_hint: Optional[str] = None) -> Prediction:
        folded = fold_text(" ".join(p for p in (text, merchant_hint) if p))
        for pattern, amount_range in self._amount_patterns:
            if pattern.search(folded):
                return Prediction(KIND_AMOUNT_RANGE, amount_range, AMOUNT_RULE_CONFIDENCE, METHOD_RULE_BASED)
        return Prediction(KIND_AMOUNT_RANGE, DEFAULT_AMOUNT_RANGE, AMOUNT_DEFAULT_CONFIDENCE, METHOD_RULE_BASED)


@dataclass
class MerchantRecord:
    name: str
    normalized: str
    category: Optional[str] = None
    aliases: List[str] = field(default_factory=list)
    confidence: float = 0.8
    occurrences: int = 0
    source: str = "seed"
    last_seen: Optional[datetime] = None

    def to_record(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "normalized": self.normalized,
            "category": self.category,
            "aliases": list(self.aliases),
            "confidence": self.confidence,
            "occurrences": self.occurrences,
            "source": self.source,
            "last_seen": self.last_seen,
        }


@dataclass
class FuzzyMatch:
    name: str
    category: Optional[str]
    confidence: float
    similarity: float
    alias: str

    def as_prediction(self) -> Prediction:
        return Prediction(KIND_MERCHANT, self.name, self.confidence, METHOD_FUZZY)


class MerchantDirectory:
    """
    Known merchants with their aliases, matched approximately against
    transaction descriptions.

    Seeded from MERCHANT_RULES; user corrections add merchants and aliases and
    are written to the `merchants` collection keyed by normalized name.
    """

    def __init__(self, store: Optional[Store] = None, threshold: Optional[float] = None, seed: bool = True) -> None:
        self.store = store
        self.threshold = config.MERCHANT_FUZZY_THRESHOLD if threshold is None else threshold
        self._merchants: Dict[str, MerchantRecord] = {}
        self._alias_index: Dict[str, str] = {}
        if seed:
            for keyword, (category, name) in MERCHANT_RULES.items():
                self._add(MerchantRecord(name=name, normalized=normalize_merchant(name), category=category, aliases=[keyword]))

    def _add(self, record: MerchantRecord) -> None:
        if not record.normalized:
            return
        current = self._merchants.get(record.normalized)
        if current is not None:
            for alias in record.aliases:
                if alias not in current.aliases:
                    current.aliases.append(alias)
            if record.source != "seed":
                current.category = record.category or current.category
                current.confidence = max(current.confidence, record.confidence)
                current.source = record.source
            record = current
        else:
            self._merchants[record.normalized] = record
        for alias in [record.normalized, *record.aliases]:
            alias_key = normalize_merchant(alias) or fold_text(alias).strip()
            if len(alias_key) >= 3:
                self._alias_index[alias_key] = record.normalized

    async def load(self) -> int:
        if self.store is None:
            return 0
        records = await self.store.get_all("merchants")
        for rec in records:
            self._add(
                MerchantRecord(
                    name=rec.get("name") or rec["normalized"],
                    normalized=rec["normalized"],
                    category=rec.get("category"),
                    aliases=list(rec.get("aliases") or []),
                    confidence=float(rec.get("confidence", 0.8)),
                    occurrences=int(rec.get("occurrences", 0)),
                    source=rec.get("source") or "feedback",
                )
            )
        return len(records)

    def __len__(self) -> int:
        return len(self._merchants)

    def fuzzy_match(self, description: str) -> Optional[FuzzyMatch]:
        query = normalize_merchant(description or "")
        tokens = query.split()
        if len(query) < 3 or not self._alias_index:
            return None
        best_alias, similarity = None, 0.0
        for alias in self._alias_index:
            score = alias_similarity(tokens, alias)
            if score > similarity:
                best_alias, similarity = alias, score
        if best_alias is None or similarity <= self.threshold:
            return None
        record = self._merchants[self._alias_index[best_alias]]
        return FuzzyMatch(
            name=record.name,
            category=record.category,
            confidence=round(similarity * 0.9, 4),
            similarity=round(similarity, 4),
            alias=best_alias,
        )

    async def learn(self, name: str, category: Optional[str] = None, alias: Optional[str] = None) -> MerchantRecord:
        normalized = normalize_merchant(name) or fold_text(name).strip()
        if not normalized:
            raise ValueError("merchant name is empty")
        aliases = [a for a in [normalize_merchant(alias or "")] if a and a != normalized]
        self._add(
            MerchantRecord(
                name=name.strip(),
                normalized=normalized,
                category=category,
                aliases=aliases,
                confidence=0.95,
                source="feedback",
            )
        )
        record = self._merchants[normalized]
        record.occurrences += 1
        record.last_seen = utcnow()
        if self.store is not None:
            await self.store.put("merchants", record.to_record())
        logger.info("merchant_learned", extra={"extra": {"merchant": record.name, "category": record.category}})
        return record
