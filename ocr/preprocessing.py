from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Tuple

import cv2
import numpy as np
from PIL import Image, ImageEnhance, ImageFilter

from services.json_logger import get_json_logger


logger = get_json_logger("statement_parser.ocr")

_SHARPEN = ImageFilter.Kernel((3, 3), [0, -1, 0, -1, 5, -1, 0, -1, 0], scale=1)


def load_page_image(content: bytes) -> np.ndarray:
    """Decode PNG/JPEG bytes into an RGB uint8 array."""
    with Image.open(io.BytesIO(content)) as img:
        return np.asarray(img.convert("RGB"), dtype=np.uint8).copy()


def _to_pil(image: np.ndarray) -> Image.Image:
    arr = np.asarray(image)
    if arr.ndim == 2 or (arr.ndim == 3 and arr.shape[2] in (3, 4)):
        return Image.fromarray(arr.astype(np.uint8)).convert("RGB")
    raise ValueError(f"unsupported image shape {arr.shape}")


def binarize(gray: np.ndarray) -> Tuple[int, np.ndarray]:
    """Otsu binarisation of a greyscale uint8 image; returns (threshold, 0/255 image)."""
    threshold, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
    return int(threshold), binary


@dataclass
class ImagePreprocessor:
    """
    Prepares a page image for character recognition.

    Steps run in a fixed order: contrast boost, mild blur, sharpen, then Otsu
    binarisation on luminance. The output is an RGB uint8 array holding only 0
    and 255. If any step fails the original image is returned unchanged.
    """

    contrast_gain: float = 1.2

    def enhance(self, image: np.ndarray) -> np.ndarray:
        try:
            img = _to_pil(image)
            img = ImageEnhance.Contrast(img).enhance(self.contrast_gain)
            img = img.filter(ImageFilter.SMOOTH)
            img = img.filter(_SHARPEN)
            gray = np.asarray(img.convert("L"), dtype=np.uint8)
            _, binary = binarize(gray)
            return cv2.cvtColor(binary, cv2.COLOR_GRAY2RGB)
        except Exception as exc:
            logger.warning(
                "preprocess_failed",
                extra={"extra": {"error": str(exc), "shape": getattr(image, "shape", None)}},
            )
            return image
