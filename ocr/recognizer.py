from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import numpy as np
import pytesseract
from PIL import Image

from services import config
from schemas.records import RecognizedPage, WordBox


def _join_line(words: List[WordBox]) -> str:
    # Wide horizontal gaps become three spaces so column layout survives OCR.
    ordered = sorted(words, key=lambda w: w.left)
    parts: List[str] = []
    prev: Optional[WordBox] = None
    for w in ordered:
        if prev is not None:
            gap = w.left - (prev.left + prev.width)
            parts.append("   " if gap > 1.5 * max(prev.height, w.height, 1) else " ")
        parts.append(w.text)
        prev = w
    return "".join(parts)


class Recognizer(ABC):
    """Character recognition backend for a single page image."""

    name: str = "recognizer"

    @abstractmethod
    async def recognize(self, image: np.ndarray, page_index: int) -> RecognizedPage:
        ...

    def is_available(self) -> bool:
        return True

    async def try_recognize(self, image: np.ndarray, page_index: int) -> Tuple[Optional[RecognizedPage], Optional[str]]:
        """Returns (page, None) on success and (None, error) when the backend fails."""
        try:
            page = await self.recognize(image, page_index)
        except Exception as exc:
            return None, f"{type(exc).__name__}: {exc}"
        return page, None


class TesseractRecognizer(Recognizer):
    name = "tesseract"

    def __init__(
        self,
        langs: Optional[str] = None,
        oem: Optional[int] = None,
        psm: Optional[int] = None,
    ) -> None:
        self.langs = langs or config.TESS_LANGS
        self.oem = int(oem if oem is not None else config.TESS_OEM)
        self.psm = int(psm if psm is not None else config.TESS_PSM)
        self._available: Optional[bool] = None

    def is_available(self) -> bool:
        if self._available is None:
            try:
                pytesseract.get_tesseract_version()
                self._available = True
            except (pytesseract.TesseractNotFoundError, OSError):
                self._available = False
        return self._available

    async def recognize(self, image: np.ndarray, page_index: int) -> RecognizedPage:
        return await asyncio.to_thread(self._recognize_sync, image, page_index)

    def _recognize_sync(self, image: np.ndarray, page_index: int) -> RecognizedPage:
        pil_img = Image.fromarray(np.asarray(image, dtype=np.uint8))
        cfg = f"--oem {self.oem} --psm {self.psm} -c preserve_interword_spaces=1"
        data = pytesseract.image_to_data(pil_img, lang=self.langs, config=cfg, output_type=pytesseract.Output.DICT)

        lines: Dict[Tuple[int, int, int], List[WordBox]] = {}
        boxes: List[WordBox] = []
        confidences: List[float] = []
        for i, word in enumerate(data.get("text", [])):
            word = (word or "").strip()
            if not word:
                continue
            conf = float(data["conf"][i])
            box = WordBox(
                text=word,
                confidence=conf,
                left=int(data["left"][i]),
                top=int(data["top"][i]),
                width=int(data["width"][i]),
                height=int(data["height"][i]),
            )
            key = (int(data["block_num"][i]), int(data["par_num"][i]), int(data["line_num"][i]))
            lines.setdefault(key, []).append(box)
            boxes.append(box)
            if conf >= 0:
                confidences.append(conf)

        text = "\n".join(_join_line(words) for _, words in sorted(lines.items()))
        confidence = sum(confidences) / len(confidences) if confidences else 0.0
        return RecognizedPage(text=text, confidence=confidence, page_index=page_index, word_boxes=boxes)


class NullRecognizer(Recognizer):
    """Stand-in used when no OCR engine is installed; yields empty pages."""

    name = "null"

    def is_available(self) -> bool:
        return False

    async def recognize(self, image: np.ndarray, page_index: int) -> RecognizedPage:
        return RecognizedPage(text="", confidence=0.0, page_index=page_index)


def build_recognizer(enabled: bool = True) -> Recognizer:
    if enabled:
        tess = TesseractRecognizer()
        if tess.is_available():
            return tess
    return NullRecognizer()
