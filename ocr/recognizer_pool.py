from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional, Sequence

from services import config
from services.json_logger import get_json_logger
from ocr.preprocessing import ImagePreprocessor
from ocr.recognizer import Recognizer
from ocr.text_cleanup import clean_ocr_text
from schemas.records import OCRDocument, PageImage, RecognizedPage


logger = get_json_logger("statement_parser.ocr")


class RecognizerPool:
    """
    Runs page recognition with a bounded number of concurrent workers.

    All pages of a document are submitted together; at most `pool_size` are
    preprocessed/recognized at once. Pages whose recognition fails are dropped,
    survivors are returned in page order. If the whole batch exceeds
    `timeout_seconds` the outstanding work is cancelled and no pages are returned.
    """

    def __init__(
        self,
        recognizer: Recognizer,
        preprocessor: Optional[ImagePreprocessor] = None,
        pool_size: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        clean_text: bool = True,
    ) -> None:
        self.recognizer = recognizer
        self.preprocessor = preprocessor
        self.pool_size = max(1, int(pool_size if pool_size is not None else config.OCR_MAX_CONCURRENT))
        self.timeout_seconds = float(timeout_seconds if timeout_seconds is not None else config.OCR_TIMEOUT_SECONDS)
        self.clean_text = clean_text
        self._stats: Dict[str, float] = {
            "documents": 0,
            "pages_processed": 0,
            "pages_failed": 0,
            "timeouts": 0,
            "total_time_ms": 0.0,
            "confidence_sum": 0.0,
        }

    async def recognize_all(self, images: Sequence[PageImage]) -> List[RecognizedPage]:
        if not images:
            return []
        semaphore = asyncio.Semaphore(self.pool_size)
        tasks = [asyncio.create_task(self._run_worker(semaphore, img)) for img in images]
        try:
            results = await asyncio.wait_for(asyncio.gather(*tasks), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._stats["timeouts"] += 1
            logger.warning(
                "ocr_timeout",
                extra={"extra": {"pages": len(images), "timeout_s": self.timeout_seconds}},
            )
            return []

        pages = [page for page in results if page is not None]
        pages.sort(key=lambda p: p.page_index)
        return pages

    async def _run_worker(self, semaphore: asyncio.Semaphore, page_image: PageImage) -> Optional[RecognizedPage]:
        async with semaphore:
            image = page_image.image
            if self.preprocessor is not None:
                image = await asyncio.to_thread(self.preprocessor.enhance, image)
            page, error = await self.recognizer.try_recognize(image, page_image.page_index)
        if error is not None or page is None:
            self._stats["pages_failed"] += 1
            logger.warning(
                "page_recognition_failed",
                extra={"extra": {"page_index": page_image.page_index, "error": error}},
            )
            return None
        if self.clean_text:
            page.text = clean_ocr_text(page.text)
        self._stats["pages_processed"] += 1
        return page

    @staticmethod
    def combine_pages(pages: Sequence[RecognizedPage]) -> str:
        ordered = sorted(pages, key=lambda p: p.page_index)
        return "\n".join(p.text for p in ordered).strip()

    @staticmethod
    def overall_confidence(pages: Sequence[RecognizedPage]) -> float:
        scores = [p.confidence for p in pages if p.confidence > 0]
        return sum(scores) / len(scores) if scores else 0.0

    async def recognize_document(self, images: Sequence[PageImage]) -> OCRDocument:
        t0 = time.perf_counter()
        timeouts_before = self._stats["timeouts"]
        pages = await self.recognize_all(images)
        elapsed_ms = (time.perf_counter() - t0) * 1000.0
        confidence = self.overall_confidence(pages)

        self._stats["documents"] += 1
        self._stats["total_time_ms"] += elapsed_ms
        self._stats["confidence_sum"] += confidence
        logger.info(
            "ocr_document_done",
            extra={
                "extra": {
                    "recognizer": self.recognizer.name,
                    "pages_requested": len(images),
                    "pages_processed": len(pages),
                    "confidence": round(confidence, 2),
                    "ms": round(elapsed_ms, 1),
                }
            },
        )
        return OCRDocument(
            text=self.combine_pages(pages),
            confidence=confidence,
            pages=pages,
            pages_requested=len(images),
            processing_ms=elapsed_ms,
            timed_out=self._stats["timeouts"] > timeouts_before,
        )

    def get_stats(self) -> Dict[str, Any]:
        docs = int(self._stats["documents"])
        return {
            "recognizer": self.recognizer.name,
            "pool_size": self.pool_size,
            "documents": docs,
            "pages_processed": int(self._stats["pages_processed"]),
            "pages_failed": int(self._stats["pages_failed"]),
            "timeouts": int(self._stats["timeouts"]),
            "average_time_ms": (self._stats["total_time_ms"] / docs) if docs else 0.0,
            "average_confidence": (self._stats["confidence_sum"] / docs) if docs else 0.0,
        }
