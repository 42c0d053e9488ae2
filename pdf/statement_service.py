from __future__ import annotations

from dataclasses import dataclass, field
from io import BytesIO
from typing import Dict, List, Optional

import numpy as np
import pdfplumber

from services import config
from services.json_logger import get_json_logger
from ocr.preprocessing import load_page_image
from pipeline.orchestrator import DocumentResult, Orchestrator
from schemas.records import PageImage


logger = get_json_logger("statement_parser.ingest")

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp")
TEXT_SUFFIXES = (".txt", ".csv")


class UnsupportedDocumentError(ValueError):
    pass


@dataclass
class DocumentInput:
    """Text layers and page images recovered from an uploaded file."""

    source: str
    page_texts: Dict[int, str] = field(default_factory=dict)
    images: List[PageImage] = field(default_factory=list)
    pages: int = 0


def _kind(filename: str, content_type: str) -> str:
    name = (filename or "").lower()
    ctype = (content_type or "").lower()
    if "pdf" in ctype or name.endswith(".pdf"):
        return "pdf"
    if ctype.startswith("image/") or name.endswith(IMAGE_SUFFIXES):
        return "image"
    if ctype.startswith("text/") or name.endswith(TEXT_SUFFIXES):
        return "text"
    raise UnsupportedDocumentError(f"unsupported document type: {content_type or filename}")


def load_pdf(
    content: bytes,
    ocr_enabled: bool = True,
    dpi: Optional[int] = None,
    max_pages: Optional[int] = None,
    max_ocr_pages: Optional[int] = None,
) -> DocumentInput:
    """
    Read the text layer of every page; pages without usable text are rendered
    to images for OCR (up to `max_ocr_pages`).
    """
    dpi = int(dpi or config.OCR_DPI)
    max_pages = int(max_pages or config.MAX_PAGES)
    max_ocr_pages = int(max_ocr_pages if max_ocr_pages is not None else config.OCR_MAX_PAGES)

    doc = DocumentInput(source="pdf")
    with pdfplumber.open(BytesIO(content)) as pdf:
        doc.pages = len(pdf.pages)
        for idx, page in enumerate(pdf.pages[:max_pages]):
            text = (page.extract_text() or "")[: config.MAX_CHARS_PER_PAGE]
            if len(text.strip()) >= config.MIN_TEXT_CHARS_PER_PAGE:
                doc.page_texts[idx] = text
                continue
            if ocr_enabled and len(doc.images) < max_ocr_pages:
                page_image = page.to_image(resolution=dpi)
                pil_img = page_image.original.convert("RGB")
                doc.images.append(PageImage(page_index=idx, image=np.asarray(pil_img, dtype=np.uint8)))
    logger.info(
        "pdf_loaded",
        extra={"extra": {"pages": doc.pages, "text_pages": len(doc.page_texts), "ocr_pages": len(doc.images)}},
    )
    return doc


def load_document(content: bytes, filename: str = "", content_type: str = "", ocr_enabled: bool = True) -> DocumentInput:
    if not content:
        raise UnsupportedDocumentError("document is empty")
    kind = _kind(filename, content_type)
    if kind == "pdf":
        return load_pdf(content, ocr_enabled=ocr_enabled)
    if kind == "image":
        return DocumentInput(source="image", images=[PageImage(page_index=0, image=load_page_image(content))], pages=1)
    text = content.decode("utf-8", errors="replace")
    return DocumentInput(source="text", page_texts={0: text}, pages=1)


class StatementService:
    def __init__(self, orchestrator: Orchestrator, ocr_enabled: Optional[bool] = None) -> None:
        self.orchestrator = orchestrator
        self.ocr_enabled = config.OCR_ENABLED if ocr_enabled is None else ocr_enabled

    async def process_upload(self, content: bytes, filename: str = "", content_type: str = "") -> DocumentResult:
        doc = load_document(content, filename, content_type, ocr_enabled=self.ocr_enabled)
        return await self.orchestrator.process_document(
            images=doc.images or None,
            page_texts=doc.page_texts,
            filename=filename,
        )
