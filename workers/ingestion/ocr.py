"""
OCR capability used by the image reader and the scanned-PDF fallback.

The engine is a black box returning text and a confidence; Tesseract (via
pytesseract) is the default implementation.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import pytesseract
from PIL import Image

from workers.ingestion.errors import TransientIOError
from workers.ingestion.image_cleanup import DocumentImageCleaner

logger = logging.getLogger(__name__)


@dataclass
class OcrResult:
    text: str
    confidence: Optional[float]  # 0-1, None when no words were recognized
    engine: str


class OcrEngine:
    """Interface: recognize text in a page image."""

    name = "unknown"

    def recognize(self, image: Image.Image) -> OcrResult:
        raise NotImplementedError


class TesseractOcrEngine(OcrEngine):
    name = "tesseract"

    def __init__(
        self,
        language: str = "eng",
        timeout: int = 30,
        cleaner: Optional[DocumentImageCleaner] = None,
    ):
        self.language = language
        self.timeout = timeout
        self.cleaner = cleaner

    def recognize(self, image: Image.Image) -> OcrResult:
        if self.cleaner is not None:
            image = self.cleaner.process(image)

        try:
            data = pytesseract.image_to_data(
                image,
                lang=self.language,
                timeout=self.timeout,
                output_type=pytesseract.Output.DICT,
            )
        except pytesseract.TesseractError:
            raise
        except RuntimeError as e:
            # pytesseract reports its own timeout as a bare RuntimeError
            raise TransientIOError(f"OCR timed out after {self.timeout}s", cause=e) from e

        lines = []
        current_key = None
        current_block = None
        words = []
        confidences = []

        for i, word in enumerate(data["text"]):
            word = (word or "").strip()
            if not word:
                continue

            key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
            if key != current_key:
                if words:
                    lines.append(" ".join(words))
                if current_block is not None and key[0] != current_block:
                    lines.append("")
                words = []
                current_key = key
                current_block = key[0]
            words.append(word)

            conf = float(data["conf"][i])
            if conf >= 0:
                confidences.append(conf / 100.0)

        if words:
            lines.append(" ".join(words))

        confidence = sum(confidences) / len(confidences) if confidences else None
        logger.debug(f"Tesseract recognized {len(lines)} lines, confidence={confidence}")

        return OcrResult(text="\n".join(lines), confidence=confidence, engine=self.name)


def build_ocr_engine(settings) -> OcrEngine:
    """Tesseract engine configured from settings."""
    cleaner = DocumentImageCleaner() if settings.ocr.image_cleanup else None
    return TesseractOcrEngine(
        language=settings.ocr.language,
        timeout=settings.ocr.timeout,
        cleaner=cleaner,
    )
