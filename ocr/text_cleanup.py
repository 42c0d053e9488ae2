from __future__ import annotations

import re
from typing import List, Tuple


# A standalone run of digits, O/I/S and separators: amounts, dates, times.
# Tokens glued to other letters (IBANs, CUI12345, POS1234) never qualify.
_NUMERIC_TOKEN_RE = re.compile(r"(?<![^\W\d_])[\dOIS](?:[\dOIS.,/:-]*[\dOIS])?(?![^\W\d_])")
_DIGIT_FIXES = str.maketrans({"O": "0", "I": "1", "S": "5"})

_REPLACEMENTS: List[Tuple[re.Pattern[str], str]] = [
    # cedilla forms produced by older fonts -> comma-below
    (re.compile("ş"), "ș"),
    (re.compile("Ş"), "Ș"),
    (re.compile("ţ"), "ț"),
    (re.compile("Ţ"), "Ț"),
    (re.compile(r"PIJATA", re.IGNORECASE), "PLATA"),
    (re.compile(r"SOLIJ", re.IGNORECASE), "SOLD"),
    (re.compile(r"[ \t]+$", re.MULTILINE), ""),
    (re.compile(r"\n{3,}"), "\n\n"),
]


def _fix_numeric_token(match: re.Match[str]) -> str:
    token = match.group(0)
    if not any(ch.isdigit() for ch in token):
        return token
    return token.translate(_DIGIT_FIXES)


def clean_ocr_text(text: str) -> str:
    """Fix common recognizer misreads in statement text. Column spacing is preserved."""
    if not text:
        return ""
    processed = _NUMERIC_TOKEN_RE.sub(_fix_numeric_token, text)
    for pattern, replacement in _REPLACEMENTS:
        processed = pattern.sub(replacement, processed)
    return processed.strip()
