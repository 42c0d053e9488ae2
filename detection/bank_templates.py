from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Tuple


@dataclass(frozen=True)
class BankTemplate:
    bank_id: str
    signature_strings: Tuple[str, ...]
    document_patterns: Tuple[re.Pattern[str], ...]
    field_patterns: Dict[str, re.Pattern[str]]
    prior_confidence: float


def _compile_all(*patterns: str) -> Tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


KNOWN_TEMPLATES: List[BankTemplate] = [
    BankTemplate(
        bank_id="BCR",
        signature_strings=("BANCA COMERCIALĂ ROMÂNĂ", "BCR", "EXTRAS DE CONT BCR", "GEORGE BCR"),
        document_patterns=_compile_all(r"EXTRAS\s+DE\s+CONT", r"SITUA[ȚŢT]IA\s+CONTULUI", r"BCR\s+BANK"),
        field_patterns={
            "date": re.compile(r"\b\d{2}[./-]\d{2}[./-]\d{4}\b"),
            "amount": re.compile(r"[+-]?\d{1,3}(?:[.,]\d{3})*[.,]\d{2}(?=\s|$|RON|LEI)"),
            "description": re.compile(r"(?:PLATA|CUMPARARE|TRANSFER|RETRAGERE)\s+.{10,}", re.IGNORECASE),
        },
        prior_confidence=0.9,
    ),
    BankTemplate(
        bank_id="BT",
        signature_strings=("BANCA TRANSILVANIA", "BT", "NEO BT", "BT24"),
        document_patterns=_compile_all(r"BANCA\s+TRANSILVANIA", r"EXTRAS\s+CONT", r"BT24"),
        field_patterns={
            "date": re.compile(r"\b\d{2}-\d{2}-\d{4}\b"),
            "amount": re.compile(r"\d+[.,]\d{2}\s*(?:RON|LEI)", re.IGNORECASE),
            "description": re.compile(r"POS\s+.{5,}|CARD\s+.{5,}|TRANSFER\s+.{5,}", re.IGNORECASE),
        },
        prior_confidence=0.85,
    ),
    BankTemplate(
        bank_id="ING",
        signature_strings=("ING BANK ROMÂNIA", "ING PERSONAL", "ING HOME BANK"),
        document_patterns=_compile_all(r"ING\s+BANK", r"EXTRAS\s+BANCAR", r"HOME\s*BANK"),
        field_patterns={
            "date": re.compile(r"\d{2}\.\d{2}\.\d{4}"),
            "amount": re.compile(r"-?\d+,\d{2}"),
            "description": re.compile(r"Tranzac[țţt]ie\s+.{10,}|Pl[ăa]t[ăa]\s+.{10,}", re.IGNORECASE),
        },
        prior_confidence=0.8,
    ),
    BankTemplate(
        bank_id="RAIFFEISEN",
        signature_strings=("RAIFFEISEN BANK", "SMART MOBILE", "RAIFFEISEN DIRECT"),
        document_patterns=_compile_all(r"RAIFFEISEN\s+BANK", r"SMART\s+MOBILE"),
        field_patterns={
            "date": re.compile(r"\d{2}/\d{2}/\d{4}"),
            "amount": re.compile(r"[+-]\s*\d+\.\d{2}"),
            "description": re.compile(r"CUMPARARE\s+.{5,}|RETRAGERE\s+.{5,}", re.IGNORECASE),
        },
        prior_confidence=0.75,
    ),
]


# Last-resort bank guess from lowercase keywords.
BANK_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "BCR": ("bcr", "comercială română", "comerciala romana", "george"),
    "BT": ("transilvania", "bt24", "neo bt"),
    "ING": ("ing bank", "homebank", "home bank", "ing personal"),
    "RAIFFEISEN": ("raiffeisen", "smart mobile"),
    "UNICREDIT": ("unicredit",),
}

# Words that make a document look like a bank statement; used for signature density.
STATEMENT_KEYWORDS: Tuple[str, ...] = (
    "banca",
    "bank",
    "cont",
    "sold",
    "extras",
    "tranzactie",
    "plata",
    "transfer",
    "card",
    "debit",
    "credit",
)
