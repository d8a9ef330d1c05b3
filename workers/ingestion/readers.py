"""
Format readers: raw text from uploaded PDF, DOCX and image files.

Readers are selected from the mimetype lookup table ``READERS``; adding a
format means adding a reader class and a table entry.
"""

import io
import logging
import zipfile
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Type

import docx
import pdfplumber
from docx.table import Table
from PIL import Image, UnidentifiedImageError

from workers.ingestion.errors import FormatExtractionError, TransientIOError, ValidationError
from workers.ingestion.ocr import OcrEngine

logger = logging.getLogger(__name__)

PDF_MIMETYPE = "application/pdf"
DOCX_MIMETYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
PNG_MIMETYPE = "image/png"
JPEG_MIMETYPE = "image/jpeg"


@dataclass
class RawExtraction:
    """Text pulled out of a document before preprocessing."""
    text: str
    original_format: str
    page_count: int = 0
    paragraph_count: int = 0
    scanned_pages: List[int] = field(default_factory=list)  # 1-based page numbers
    ocr_engine: Optional[str] = None
    ocr_confidence: Optional[float] = None


class FormatReader:
    original_format = ""

    def __init__(
        self,
        mimetype: str,
        ocr_engine: Optional[OcrEngine] = None,
        scanned_page_min_chars: int = 25,
        render_resolution: int = 300,
    ):
        self.mimetype = mimetype
        self.ocr_engine = ocr_engine
        self.scanned_page_min_chars = scanned_page_min_chars
        self.render_resolution = render_resolution

    def extract_raw_text(self, data: bytes) -> RawExtraction:
        raise NotImplementedError

    def _ocr(self, image: Image.Image):
        try:
            return self.ocr_engine.recognize(image)
        except TransientIOError:
            raise
        except Exception as e:
            raise FormatExtractionError(self.mimetype, e) from e


class PdfReader(FormatReader):
    """
    Per-page text extraction with pdfplumber.

    Layout mode keeps horizontal spacing so the preprocessor can detect
    columns. Pages with fewer than ``scanned_page_min_chars`` non-whitespace
    characters are flagged as scanned and, when an OCR engine is available,
    rendered and recognized instead.
    """

    original_format = "pdf"

    def extract_raw_text(self, data: bytes) -> RawExtraction:
        page_texts = []
        scanned_pages = []
        confidences = []
        engine_name = None

        try:
            with pdfplumber.open(io.BytesIO(data)) as pdf:
                for number, page in enumerate(pdf.pages, start=1):
                    text = page.extract_text(layout=True) or ""

                    if self._is_scanned(text):
                        scanned_pages.append(number)
                        if self.ocr_engine is not None:
                            image = page.to_image(resolution=self.render_resolution).original
                            result = self._ocr(image)
                            text = result.text
                            engine_name = result.engine
                            if result.confidence is not None:
                                confidences.append(result.confidence)

                    page_texts.append(text)
        except (FormatExtractionError, TransientIOError):
            raise
        except Exception as e:
            # pdfminer raises a wide range of exception types on corrupt input
            raise FormatExtractionError(self.mimetype, e) from e

        if scanned_pages:
            logger.info(f"PDF pages {scanned_pages} look scanned (< {self.scanned_page_min_chars} chars)")

        return RawExtraction(
            text="\f".join(page_texts),
            original_format=self.original_format,
            page_count=len(page_texts),
            scanned_pages=scanned_pages,
            ocr_engine=engine_name,
            ocr_confidence=sum(confidences) / len(confidences) if confidences else None,
        )

    def _is_scanned(self, text: str) -> bool:
        return sum(1 for ch in text if not ch.isspace()) < self.scanned_page_min_chars


class DocxReader(FormatReader):
    """Paragraphs and table rows in document order, one per line."""

    original_format = "docx"

    def extract_raw_text(self, data: bytes) -> RawExtraction:
        try:
            document = docx.Document(io.BytesIO(data))
            lines = []
            paragraphs = 0
            for block in document.iter_inner_content():
                if isinstance(block, Table):
                    for row in block.rows:
                        lines.append(self._row_text(row))
                else:
                    lines.append(block.text)
                    paragraphs += 1
        except Exception as e:
            raise FormatExtractionError(self.mimetype, e) from e

        return RawExtraction(
            text="\n".join(lines),
            original_format=self.original_format,
            page_count=1,
            paragraph_count=paragraphs,
        )

    @staticmethod
    def _row_text(row) -> str:
        cells = []
        for cell in row.cells:
            text = cell.text.strip()
            # Merged cells repeat once per grid column
            if text and (not cells or cells[-1] != text):
                cells.append(text)
        return "   ".join(cells)


class ImageReader(FormatReader):
    """PNG/JPEG through the OCR capability."""

    original_format = "image"

    def extract_raw_text(self, data: bytes) -> RawExtraction:
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (UnidentifiedImageError, OSError) as e:
            raise FormatExtractionError(self.mimetype, e) from e

        if self.ocr_engine is None:
            raise FormatExtractionError(self.mimetype, RuntimeError("no OCR engine configured"))

        result = self._ocr(image)

        return RawExtraction(
            text=result.text,
            original_format=self.original_format,
            page_count=1,
            ocr_engine=result.engine,
            ocr_confidence=result.confidence,
        )


READERS: Dict[str, Type[FormatReader]] = {
    PDF_MIMETYPE: PdfReader,
    DOCX_MIMETYPE: DocxReader,
    PNG_MIMETYPE: ImageReader,
    JPEG_MIMETYPE: ImageReader,
}


def get_reader(mimetype: str, **options) -> FormatReader:
    """Instantiate the reader registered for a mimetype."""
    reader_cls = READERS.get(mimetype)
    if reader_cls is None:
        raise ValidationError(f"Unsupported file type: {mimetype}")
    return reader_cls(mimetype, **options)


def sniff_mimetype(data: bytes) -> Optional[str]:
    """Identify a supported format from its file signature."""
    if data.startswith(b"%PDF-"):
        return PDF_MIMETYPE
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return PNG_MIMETYPE
    if data.startswith(b"\xff\xd8\xff"):
        return JPEG_MIMETYPE
    if data.startswith(b"PK\x03\x04"):
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as archive:
                if "word/document.xml" in archive.namelist():
                    return DOCX_MIMETYPE
        except zipfile.BadZipFile:
            return None
    return None
