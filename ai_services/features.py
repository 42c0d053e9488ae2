from __future__ import annotations

import math
import re
from datetime import date, datetime
from typing import List, Optional, Tuple, Union

import numpy as np
from sklearn.feature_extraction.text import HashingVectorizer

from extraction.field_extractor import fold_text
from schemas.records import AmountRange


CATEGORY_LABELS: Tuple[str, ...] = (
    "Groceries",
    "Transport",
    "Utilities",
    "Shopping",
    "Health",
    "Entertainment",
    "Restaurants",
    "ATM",
    "Transfer",
    "Other",
)

# (label, lower, upper); the last bucket is open-ended
AMOUNT_BUCKETS: Tuple[Tuple[str, float, Optional[float]], ...] = (
    ("0-10", 0.0, 10.0),
    ("10-50", 10.0, 50.0),
    ("50-150", 50.0, 150.0),
    ("150-500", 150.0, 500.0),
    ("500-2000", 500.0, 2000.0),
    ("2000+", 2000.0, None),
)

TEXT_FEATURES = 128
_KEYWORD_FLAGS: Tuple[str, ...] = ("plata", "cumparare", "transfer", "retragere", "pos", "atm", "card", "online")
SCALAR_FEATURES = 10 + len(_KEYWORD_FLAGS)
FEATURE_SIZE = TEXT_FEATURES + SCALAR_FEATURES

_hasher = HashingVectorizer(
    n_features=TEXT_FEATURES,
    analyzer="char_wb",
    ngram_range=(2, 4),
    alternate_sign=False,
    norm="l2",
    lowercase=True,
)

When = Union[str, date, datetime, None]


def _to_datetime(when: When) -> Optional[datetime]:
    if when is None or isinstance(when, datetime):
        return when
    if isinstance(when, date):
        return datetime(when.year, when.month, when.day)
    try:
        return datetime.fromisoformat(str(when))
    except ValueError:
        return None


def encode_text(text: str) -> np.ndarray:
    return _hasher.transform([fold_text(text or "")]).toarray()[0].astype(np.float32)


def encode_sample(
    text: str,
    amount: Optional[float] = None,
    when: When = None,
    merchant_confidence: float = 0.0,
) -> np.ndarray:
    """
    Fixed-length feature vector for one transaction description.

    Scalars are bounded to [0, 1]; the hashed character n-grams are L2-normalised.
    Day-of-week and hour come from the transaction date when known, else 0.
    """
    text = text or ""
    words = set(re.findall(r"\w+", fold_text(text)))
    n = len(text)
    magnitude = abs(amount) if amount is not None else 0.0
    moment = _to_datetime(when)

    scalars: List[float] = [
        min(n / 100.0, 1.0),
        min(len(text.split()) / 20.0, 1.0),
        (sum(ch.isdigit() for ch in text) / n) if n else 0.0,
        (sum(ch.isupper() for ch in text) / n) if n else 0.0,
        min(magnitude / 1000.0, 1.0),
        min(math.log1p(magnitude) / 10.0, 1.0),
        1.0 if (amount is not None and amount < 0) else 0.0,
        (moment.weekday() / 7.0) if moment else 0.0,
        (moment.hour / 24.0) if moment else 0.0,
        min(max(merchant_confidence, 0.0), 1.0),
    ]
    scalars.extend(1.0 if flag in words else 0.0 for flag in _KEYWORD_FLAGS)
    return np.concatenate([encode_text(text), np.asarray(scalars, dtype=np.float32)])


def amount_bucket(amount: float) -> str:
    magnitude = abs(amount)
    for label, lower, upper in AMOUNT_BUCKETS:
        if upper is None or magnitude < upper:
            return label
    return AMOUNT_BUCKETS[-1][0]


def bucket_range(label: str) -> AmountRange:
    for name, lower, upper in AMOUNT_BUCKETS:
        if name == label:
            if upper is None:
                return AmountRange(lower, lower * 5.0, lower * 1.5)
            return AmountRange(lower, upper, (lower + upper) / 2.0)
    raise KeyError(label)
