from __future__ import annotations

import re
import unicodedata
from datetime import date
from typing import Dict, List, Optional, Tuple

from services.json_logger import get_json_logger
from schemas.records import CandidateLine, ExtractedFields, LineScore


logger = get_json_logger("statement_parser.extraction")

LINE_ACCEPT = 0.6
MIN_LINE_CHARS = 10
MIN_DESCRIPTION_CHARS = 5

# Day-first, year-first, then two-digit year. First match wins.
DATE_PATTERNS: List[re.Pattern[str]] = [
    re.compile(r"\b\d{1,2}[./-]\d{1,2}[./-]\d{4}\b"),
    re.compile(r"\b\d{4}[./-]\d{1,2}[./-]\d{1,2}\b"),
    re.compile(r"\b\d{1,2}[./-]\d{1,2}[./-]\d{2}\b"),
]
_DATE_PARTS_RE = re.compile(r"[./-]")

# Thousands-grouped amounts first so "1.250,00" is read whole.
AMOUNT_RE = re.compile(
    r"(?<![\d.,])([+-]?)\s*(\d{1,3}(?:[.,]\d{3})+[.,]\d{2}|\d+[.,]\d{2})(?!\d)(?:\s*(?:RON|LEI|EUR))?",
    re.IGNORECASE,
)
_SIMPLE_AMOUNT_RE = re.compile(r"\d+[.,]\d{2}")

TRANSACTION_KEYWORDS: Tuple[str, ...] = (
    "plata",
    "cumparare",
    "transfer",
    "retragere",
    "depunere",
    "card",
    "pos",
    "atm",
    "virament",
    "debit",
    "credit",
)
_COMPANY_SUFFIX_RE = re.compile(r"\b(?:srl|sa|pfa|ii|ltd|inc)\b", re.IGNORECASE)

# category -> keywords, checked in order against the lowercase description.
# Keywords match whole words; a trailing "*" marks a stem ("farmaci*" covers farmacia).
CATEGORY_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "Groceries": ("kaufland", "lidl", "carrefour", "mega image", "profi", "auchan", "penny", "alimentar*"),
    "Transport": ("omv", "petrom", "rompetrol", "lukoil", "benzin*", "uber", "bolt", "taxi", "metrorex", "stb"),
    "Utilities": ("enel", "e.on", "eon", "electrica", "engie", "gaz", "apa nova", "salubris", "digi", "orange", "vodafone"),
    "Restaurants": ("mcdonald*", "kfc", "burger*", "pizz*", "restaurant*", "cafe*", "glovo", "tazz"),
    "Shopping": ("zara", "h&m", "emag", "altex", "fashion", "mall", "dedeman"),
    "Health": ("farmaci*", "catena", "sensiblu", "dr.max", "help net", "clinic*", "regina maria"),
    "Entertainment": ("netflix", "spotify", "cinema", "hbo", "steam"),
    "ATM": ("atm", "retragere numerar", "cash"),
    "Transfer": ("transfer", "virament"),
}
CATEGORY_HIT_CONFIDENCE = 0.8


def _keyword_pattern(keyword: str) -> str:
    if keyword.endswith("*"):
        return rf"(?<!\w){re.escape(keyword[:-1])}\w*"
    return rf"(?<!\w){re.escape(keyword)}(?!\w)"


_CATEGORY_PATTERNS: List[Tuple[str, re.Pattern[str]]] = [
    (category, re.compile("|".join(_keyword_pattern(k) for k in keywords)))
    for category, keywords in CATEGORY_KEYWORDS.items()
]
CATEGORY_DEFAULT = "Other"
CATEGORY_DEFAULT_CONFIDENCE = 0.3


def fold_text(text: str) -> str:
    """Lowercase and strip diacritics so "PLATĂ" matches "plata"."""
    decomposed = unicodedata.normalize("NFKD", text or "")
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower()


def _find_date(line: str) -> Optional[re.Match[str]]:
    for pattern in DATE_PATTERNS:
        m = pattern.search(line)
        if m:
            return m
    return None


def _mask_dates(line: str) -> str:
    masked = line
    for pattern in DATE_PATTERNS:
        masked = pattern.sub(lambda m: " " * len(m.group(0)), masked)
    return masked


def is_transaction_line(line: str) -> LineScore:
    text = (line or "").strip()
    if len(text) < MIN_LINE_CHARS:
        return LineScore(probability=0.0, confidence=0.3, features=[])

    score = 0.0
    features: List[str] = []
    if _find_date(text):
        score += 0.3
        features.append("date")
    if _SIMPLE_AMOUNT_RE.search(_mask_dates(text)):
        score += 0.4
        features.append("amount")
    lower = fold_text(text)
    for keyword in TRANSACTION_KEYWORDS:
        if re.search(rf"\b{keyword}\b", lower):
            score += 0.1
            features.append(f"keyword:{keyword}")
            break
    if _COMPANY_SUFFIX_RE.search(text):
        score += 0.2
        features.append("merchant_suffix")

    probability = round(min(score, 1.0), 4)
    if probability > 0.6:
        confidence = 0.8
    elif probability > 0.3:
        confidence = 0.6
    else:
        confidence = 0.3
    return LineScore(probability=probability, confidence=confidence, features=features)


def normalize_date(value: str) -> Optional[str]:
    """
    Convert DD.MM.YYYY, YYYY-MM-DD or DD/MM/YY (any of . / - as separator)
    to ISO YYYY-MM-DD. Returns None when the parts do not form a calendar date.
    """
    parts = _DATE_PARTS_RE.split((value or "").strip())
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        return None
    if len(parts[0]) == 4:
        year, month, day = parts
    elif len(parts[2]) == 4:
        day, month, year = parts
    elif len(parts[2]) == 2:
        day, month, year = parts[0], parts[1], "20" + parts[2]
    else:
        return None
    try:
        return date(int(year), int(month), int(day)).isoformat()
    except ValueError:
        return None


def extract_date(line: str) -> Tuple[Optional[str], Optional[str]]:
    """Returns (iso_date, raw_match)."""
    for pattern in DATE_PATTERNS:
        for m in pattern.finditer(line):
            iso = normalize_date(m.group(0))
            if iso:
                return iso, m.group(0)
    return None, None


def parse_amount_token(token: str) -> float:
    # The separator before the last two digits is the decimal mark; any other is grouping.
    digits = re.sub(r"[.,\s]", "", token[:-3])
    return float(f"{digits or '0'}.{token[-2:]}")


def extract_amount(line: str) -> Tuple[Optional[float], Optional[str]]:
    """Largest-magnitude signed amount on the line, with the raw text it came from."""
    masked = _mask_dates(line)
    is_debit = "debit" in line.lower()
    best: Optional[float] = None
    best_raw: Optional[str] = None
    for m in AMOUNT_RE.finditer(masked):
        sign, token = m.group(1), m.group(2)
        value = parse_amount_token(token)
        if sign == "-" or (sign != "+" and is_debit):
            value = -value
        if best is None or abs(value) > abs(best):
            best, best_raw = value, m.group(0).strip()
    return best, best_raw


def extract_description(line: str, raw_date: Optional[str], raw_amount: Optional[str]) -> Optional[str]:
    text = line
    if raw_date:
        text = text.replace(raw_date, " ", 1)
    if raw_amount:
        text = text.replace(raw_amount, " ", 1)
    text = re.sub(r"\s+", " ", text).strip(" -*|:;,\t")
    return text if len(text) > MIN_DESCRIPTION_CHARS else None


def predict_category_from_description(description: Optional[str]) -> Tuple[str, float]:
    lower = fold_text(description or "")
    if lower:
        for category, pattern in _CATEGORY_PATTERNS:
            if pattern.search(lower):
                return category, CATEGORY_HIT_CONFIDENCE
    return CATEGORY_DEFAULT, CATEGORY_DEFAULT_CONFIDENCE


def extract_transaction_fields(line: str) -> ExtractedFields:
    iso_date, raw_date = extract_date(line)
    amount, raw_amount = extract_amount(line)
    description = extract_description(line, raw_date, raw_amount)
    category, category_conf = predict_category_from_description(description)

    confidence = 0.0
    if iso_date:
        confidence += 0.25
    if amount is not None:
        confidence += 0.35
    if description:
        confidence += 0.2
    confidence += category_conf * 0.2

    return ExtractedFields(
        date=iso_date,
        amount=amount,
        description=description,
        type="expense" if (amount or 0.0) < 0 else "income",
        category=category,
        category_confidence=category_conf,
        confidence=round(min(confidence, 1.0), 4),
        raw_date=raw_date,
        raw_amount=raw_amount,
    )


class FieldExtractor:
    def __init__(self, accept_threshold: float = LINE_ACCEPT) -> None:
        self.accept_threshold = accept_threshold

    def extract_candidates(self, text: str) -> List[CandidateLine]:
        candidates: List[CandidateLine] = []
        for idx, line in enumerate((text or "").split("\n"), start=1):
            score = is_transaction_line(line)
            if score.probability > self.accept_threshold:
                candidates.append(
                    CandidateLine(
                        text=line.strip(),
                        line_number=idx,
                        probability=score.probability,
                        confidence=score.confidence,
                        matched_features=score.features,
                    )
                )
        return candidates

    def extract_lines(self, text: str) -> List[Tuple[CandidateLine, ExtractedFields]]:
        results: List[Tuple[CandidateLine, ExtractedFields]] = []
        dropped = 0
        candidates = self.extract_candidates(text)
        for candidate in candidates:
            try:
                fields = extract_transaction_fields(candidate.text)
            except Exception as exc:
                dropped += 1
                logger.warning("line_extraction_failed", extra={"extra": {"line": candidate.line_number, "error": str(exc)}})
                continue
            if fields.amount is None:
                dropped += 1
                continue
            results.append((candidate, fields))
        logger.info(
            "lines_extracted",
            extra={"extra": {"candidates": len(candidates), "extracted": len(results), "dropped": dropped}},
        )
        return results
