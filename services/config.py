from __future__ import annotations

import os
from typing import Optional, List


def getenv_str(name: str, default: Optional[str] = None) -> str:
    v = os.getenv(name)
    return v if v is not None else default


def getenv_int(name: str, default: int) -> int:
    v = os.getenv(name)
    try:
        return int(v) if v is not None else default
    except ValueError:
        return default


def getenv_float(name: str, default: float) -> float:
    v = os.getenv(name)
    try:
        return float(v) if v is not None else default
    except ValueError:
        return default


def getenv_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "on"}


def getenv_csv(name: str, default: Optional[str] = None) -> List[str]:
    v = os.getenv(name)
    raw = v if v is not None else (default or "")
    return [item.strip() for item in raw.split(",") if item.strip()]


# OCR throttling and tuning
OCR_ENABLED = getenv_bool("FF_OCR_ENABLED", True)
OCR_MAX_CONCURRENT = getenv_int("FF_OCR_MAX_CONCURRENT", 2)
OCR_TIMEOUT_SECONDS = getenv_float("FF_OCR_TIMEOUT_SECONDS", 120.0)
OCR_MAX_PAGES = getenv_int("FF_OCR_MAX_PAGES", 20)
OCR_DPI = getenv_int("FF_OCR_DPI", 300)
OCR_PREPROCESS = getenv_bool("FF_OCR_PREPROCESS", True)
TESS_LANGS = getenv_str("FF_TESS_LANGS", "ron+eng+hun")
TESS_OEM = getenv_int("FF_TESS_OEM", 1)
TESS_PSM = getenv_int("FF_TESS_PSM", 6)

# PDF text layer
MAX_PAGES = getenv_int("FF_MAX_PAGES", 200)
MAX_CHARS_PER_PAGE = getenv_int("FF_MAX_CHARS_PER_PAGE", 20000)
MIN_TEXT_CHARS_PER_PAGE = getenv_int("FF_MIN_TEXT_CHARS_PER_PAGE", 20)

# Bank detection
PATTERN_CACHE_SIZE = getenv_int("FF_PATTERN_CACHE_SIZE", 500)

# Classifier training windows
ML_ENABLED = getenv_bool("FF_ML_ENABLED", True)
TRAINING_WINDOW_SIZE = getenv_int("FF_TRAINING_WINDOW_SIZE", 50)
MERCHANT_RETRAIN_MIN = getenv_int("FF_MERCHANT_RETRAIN_MIN", 10)
CATEGORY_RETRAIN_MIN = getenv_int("FF_CATEGORY_RETRAIN_MIN", 15)
AMOUNT_RETRAIN_MIN = getenv_int("FF_AMOUNT_RETRAIN_MIN", 10)
MIN_TRAINING_SAMPLES = getenv_int("FF_MIN_TRAINING_SAMPLES", 5)
MIN_MODEL_CONFIDENCE = getenv_float("FF_MIN_MODEL_CONFIDENCE", 0.35)

# Merchant directory: Jaro-Winkler similarity a description word run must exceed
MERCHANT_FUZZY_THRESHOLD = getenv_float("FF_MERCHANT_FUZZY_THRESHOLD", 0.9)

# Feedback loop
RETRAIN_EVERY_N_FEEDBACK = getenv_int("FF_RETRAIN_EVERY_N_FEEDBACK", 10)
RETRAIN_FEEDBACK_LOOKBACK = getenv_int("FF_RETRAIN_FEEDBACK_LOOKBACK", 100)


# --- API settings ---
DEFAULT_DEV_CORS = (
    "http://localhost:3000,"
    "http://127.0.0.1:3000,"
    "http://localhost:5173,"
    "http://127.0.0.1:5173"
)
CORS_ALLOW_ORIGINS = getenv_csv("FF_CORS_ORIGINS", DEFAULT_DEV_CORS)
CORS_ALLOW_CREDENTIALS = getenv_bool("FF_CORS_ALLOW_CREDENTIALS", True)
