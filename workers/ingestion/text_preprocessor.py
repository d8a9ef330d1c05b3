"""
Lab Text Preprocessing.

Turns raw reader output into normalized text ready for biomarker extraction:
- Reflows two-column PDF layouts so each column reads top to bottom
- Drops running headers/footers repeated across pages
- Normalizes whitespace, line endings and non-printable characters
- Standardizes common report labels ("Ref Range:", "Collection Date:", ...)
- Scores text quality (character ratios, suspected OCR errors, lab content)

Pages in raw text are separated by form feeds (``\\f``), which is how the
format readers emit multi-page documents.
"""

import re
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from rapidfuzz import fuzz

from workers.ingestion.errors import PreprocessedTextValidationError
from workers.ingestion.units import CANONICAL_UNITS, VALUE_WITH_UNIT_RE, canonical_unit

logger = logging.getLogger(__name__)

STEP_REFLOW_COLUMNS = "reflow_columns"
STEP_REMOVE_HEADERS_FOOTERS = "remove_headers_footers"
STEP_NORMALIZE = "normalize_text"
STEP_STANDARDIZE_PHRASES = "standardize_phrases"
STEP_QUALITY = "score_quality"

# Report labels rewritten to one canonical spelling
PHRASE_STANDARDIZATION = {
    "Ref Range:": "Reference Range:",
    "Normal Range:": "Reference Range:",
    "Normal Values:": "Reference Range:",
    "Test Results:": "Results:",
    "Lab Results:": "Results:",
    "Test Date:": "Date:",
    "Collection Date:": "Date:",
    "Specimen Date:": "Date:",
    "Patient Name:": "Name:",
    "Patient ID:": "ID:",
    "Medical Record Number:": "MRN:",
    "DOB:": "Date of Birth:",
    "Birth Date:": "Date of Birth:",
}

_PHRASE_LOOKUP = {phrase.lower(): label for phrase, label in PHRASE_STANDARDIZATION.items()}
_PHRASE_RE = re.compile(
    r"(?<!\S)(?:"
    + "|".join(re.escape(phrase) for phrase in sorted(PHRASE_STANDARDIZATION, key=len, reverse=True))
    + r")(?!\S)",
    re.IGNORECASE,
)

MEDICAL_TERMS = (
    "hemoglobin", "hematocrit", "glucose", "cholesterol", "triglycerides",
    "creatinine", "bun", "alt", "ast", "ggt", "ldh", "tsh", "t4", "t3", "vitamin",
    "ferritin", "iron", "transferrin", "tibc", "magnesium", "calcium", "phosphorus",
    "sodium", "potassium", "chloride", "co2", "anion gap", "albumin", "globulin",
    "bilirubin", "alkaline phosphatase", "protein", "egfr", "ldl", "hdl", "vldl",
    "lipoprotein", "homocysteine", "c-reactive", "crp", "wbc", "rbc", "platelets",
    "neutrophils", "lymphocytes", "monocytes", "eosinophils", "basophils",
    "mcv", "mch", "mchc", "rdw", "inr", "fibrinogen", "d-dimer", "fsh", "lh",
    "estradiol", "progesterone", "testosterone", "cortisol", "insulin",
    "hba1c", "a1c", "folate", "zinc", "uric acid", "amylase", "lipase",
)
_MEDICAL_TERM_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(term) for term in sorted(MEDICAL_TERMS, key=len, reverse=True)) + r")\b",
    re.IGNORECASE,
)

# Runs of digits and look-alike letters; a run mixing both suggests "1O.5", "l20", "0.O8"
_NUMERIC_RUN_RE = re.compile(r"[\dlIoO.,]+")
_CONFUSABLE_LETTERS = frozenset("lIoO")
# Lone characters between words, e.g. "Hemo g lobin"; "a", "A" and "I" are words
_ISOLATED_CHAR_RE = re.compile(r"(?<=[A-Za-z] )[B-HJ-Zb-z](?= [A-Za-z])")

_ENTRY_START_RE = re.compile(r"[A-Za-z][A-Za-z\-]{2,}(?![/A-Za-z])")

# Weights of the overall quality score
QUALITY_WEIGHTS = {
    "confidence": 0.3,
    "medical_terms": 0.2,
    "numeric_values": 0.2,
    "unit_consistency": 0.15,
    "whitespace": 0.05,
    "special_chars": 0.05,
    "numeric_chars": 0.05,
}


@dataclass
class QualityMetrics:
    whitespace_ratio: float = 0.0
    special_char_ratio: float = 0.0
    numeric_ratio: float = 0.0
    potential_ocr_errors: int = 0
    medical_term_count: int = 0
    numeric_value_count: int = 0
    unit_consistency_score: float = 0.0
    overall_quality_score: float = 0.0

    def __post_init__(self):
        for name in ("whitespace_ratio", "special_char_ratio", "numeric_ratio",
                     "unit_consistency_score", "overall_quality_score"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
                raise PreprocessedTextValidationError(f"{name} must be a ratio in [0, 1], got {value!r}")
        for name in ("potential_ocr_errors", "medical_term_count", "numeric_value_count"):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 0:
                raise PreprocessedTextValidationError(f"{name} must be a non-negative integer, got {value!r}")


@dataclass
class ProcessingMetadata:
    original_format: str
    processing_steps: List[str]
    processing_timestamp: str
    text_length: int
    line_count: int
    has_headers: bool
    has_footers: bool
    quality_metrics: QualityMetrics
    confidence: Optional[float] = None
    ocr_engine: Optional[str] = None

    def __post_init__(self):
        if not self.original_format:
            raise PreprocessedTextValidationError("processingMetadata.originalFormat is required")
        if not self.processing_timestamp:
            raise PreprocessedTextValidationError("processingMetadata.processingTimestamp is required")
        if not isinstance(self.processing_steps, list):
            raise PreprocessedTextValidationError("processingMetadata.processingSteps must be a list")
        if not isinstance(self.quality_metrics, QualityMetrics):
            raise PreprocessedTextValidationError("processingMetadata.qualityMetrics is required")
        if self.text_length < 0 or self.line_count < 0:
            raise PreprocessedTextValidationError("text length and line count must be non-negative")
        if self.confidence is not None and not 0.0 <= self.confidence <= 1.0:
            raise PreprocessedTextValidationError(f"confidence must be in [0, 1], got {self.confidence!r}")


@dataclass
class PreprocessedText:
    """Raw and normalized text plus how it was produced."""
    raw_text: str
    normalized_text: str
    metadata: ProcessingMetadata

    def __post_init__(self):
        if not isinstance(self.raw_text, str) or not isinstance(self.normalized_text, str):
            raise PreprocessedTextValidationError("rawText and normalizedText must be strings")
        if not isinstance(self.metadata, ProcessingMetadata):
            raise PreprocessedTextValidationError("processingMetadata is required")

    def to_dict(self) -> Dict[str, Any]:
        """JSON document stored under ``metadata.preprocessedText``."""
        meta = self.metadata
        return {
            "rawText": self.raw_text,
            "normalizedText": self.normalized_text,
            "processingMetadata": {
                "originalFormat": meta.original_format,
                "processingSteps": list(meta.processing_steps),
                "confidence": meta.confidence,
                "ocrEngine": meta.ocr_engine,
                "processingTimestamp": meta.processing_timestamp,
                "textLength": meta.text_length,
                "lineCount": meta.line_count,
                "hasHeaders": meta.has_headers,
                "hasFooters": meta.has_footers,
                "qualityMetrics": {
                    "whitespaceRatio": meta.quality_metrics.whitespace_ratio,
                    "specialCharRatio": meta.quality_metrics.special_char_ratio,
                    "numericRatio": meta.quality_metrics.numeric_ratio,
                    "potentialOcrErrors": meta.quality_metrics.potential_ocr_errors,
                    "medicalTermCount": meta.quality_metrics.medical_term_count,
                    "numericValueCount": meta.quality_metrics.numeric_value_count,
                    "unitConsistencyScore": meta.quality_metrics.unit_consistency_score,
                    "overallQualityScore": meta.quality_metrics.overall_quality_score,
                },
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreprocessedText":
        """Rebuild from a stored document, validating required fields."""
        try:
            meta = data["processingMetadata"]
            metrics = meta["qualityMetrics"]
            return cls(
                raw_text=data["rawText"],
                normalized_text=data["normalizedText"],
                metadata=ProcessingMetadata(
                    original_format=meta["originalFormat"],
                    processing_steps=meta["processingSteps"],
                    processing_timestamp=meta["processingTimestamp"],
                    text_length=meta["textLength"],
                    line_count=meta["lineCount"],
                    has_headers=meta["hasHeaders"],
                    has_footers=meta["hasFooters"],
                    confidence=meta.get("confidence"),
                    ocr_engine=meta.get("ocrEngine"),
                    quality_metrics=QualityMetrics(
                        whitespace_ratio=metrics["whitespaceRatio"],
                        special_char_ratio=metrics["specialCharRatio"],
                        numeric_ratio=metrics["numericRatio"],
                        potential_ocr_errors=metrics["potentialOcrErrors"],
                        # Absent from documents stored before these metrics existed
                        medical_term_count=metrics.get("medicalTermCount", 0),
                        numeric_value_count=metrics.get("numericValueCount", 0),
                        unit_consistency_score=metrics.get("unitConsistencyScore", 0.0),
                        overall_quality_score=metrics.get("overallQualityScore", 0.0),
                    ),
                ),
            )
        except (KeyError, TypeError) as e:
            raise PreprocessedTextValidationError(f"Malformed preprocessedText document: missing {e}") from e


@dataclass
class PreprocessorConfig:
    column_gap_min_spaces: int = 3
    column_min_lines: int = 3
    column_min_line_share: float = 0.3
    # Share of right-hand segments that must read like entries, not table cells
    column_entry_share: float = 0.6
    header_footer_scan_lines: int = 3
    header_footer_similarity: float = 90.0
    ocr_error_threshold_per_1000: float = 2.0

    @classmethod
    def from_settings(cls, settings) -> "PreprocessorConfig":
        pre = settings.preprocessing
        return cls(
            column_gap_min_spaces=pre.column_gap_min_spaces,
            column_min_lines=pre.column_min_lines,
            column_min_line_share=pre.column_min_line_share,
            column_entry_share=pre.column_entry_share,
            header_footer_scan_lines=pre.header_footer_scan_lines,
            header_footer_similarity=pre.header_footer_similarity,
            ocr_error_threshold_per_1000=pre.ocr_error_threshold_per_1000,
        )


class LabTextPreprocessor:
    """
    Deterministic text cleanup for extracted lab report text.

    Running it twice on the same raw text yields the same normalized text
    and quality metrics; only the processing timestamp differs.
    """

    def __init__(self, config: Optional[PreprocessorConfig] = None):
        self.config = config or PreprocessorConfig()

    def preprocess(
        self,
        raw_text: str,
        original_format: str,
        ocr_engine: Optional[str] = None,
        confidence: Optional[float] = None,
    ) -> PreprocessedText:
        """
        Run column reflow, header/footer removal, normalization, label
        standardization and quality scoring.

        Args:
            raw_text: Text from a format reader, pages separated by form feeds
            original_format: One of pdf, docx, image, text
            ocr_engine: OCR engine identifier when OCR produced the text
            confidence: OCR confidence in [0, 1]

        Returns:
            PreprocessedText with processing metadata
        """
        raw_text = raw_text or ""
        steps: List[str] = []

        text = raw_text.replace("\r\n", "\n").replace("\r", "\n")
        pages = [page.split("\n") for page in text.split("\f")]

        if original_format == "pdf":
            pages, reflowed = self._reflow_columns(pages)
            if reflowed:
                steps.append(STEP_REFLOW_COLUMNS)

        pages, has_headers, has_footers = self._remove_headers_footers(pages)
        if has_headers or has_footers:
            steps.append(STEP_REMOVE_HEADERS_FOOTERS)

        normalized = self._normalize(pages)
        steps.append(STEP_NORMALIZE)

        normalized, replaced = self._standardize_phrases(normalized)
        if replaced:
            steps.append(STEP_STANDARDIZE_PHRASES)

        metrics = self._score_quality(normalized, confidence)
        steps.append(STEP_QUALITY)

        metadata = ProcessingMetadata(
            original_format=original_format,
            processing_steps=steps,
            processing_timestamp=datetime.now(timezone.utc).isoformat(),
            text_length=len(normalized),
            line_count=len(normalized.split("\n")) if normalized else 0,
            has_headers=has_headers,
            has_footers=has_footers,
            quality_metrics=metrics,
            confidence=confidence,
            ocr_engine=ocr_engine,
        )

        logger.debug(f"Preprocessed {original_format} text: {len(raw_text)} -> {len(normalized)} chars, steps={steps}")

        return PreprocessedText(raw_text=raw_text, normalized_text=normalized, metadata=metadata)

    # ------------------------------------------------------------------
    # Column reflow
    # ------------------------------------------------------------------

    def _reflow_columns(self, pages: List[List[str]]) -> Tuple[List[List[str]], bool]:
        reflowed_pages = []
        applied = False

        for lines in pages:
            expanded = [line.expandtabs(4).rstrip() for line in lines]
            split = self._find_column_split(expanded)
            if split is None:
                reflowed_pages.append(lines)
                continue

            applied = True
            reflowed_pages.append(self._reflow_page(expanded, split))
            logger.debug(f"Reflowed two-column page at character column {split}")

        return reflowed_pages, applied

    def _find_column_split(self, lines: List[str]) -> Optional[int]:
        """
        Find the character column where a right-hand text column starts.

        Candidate positions are the starts of segments that follow a wide gap.
        Positions within one character of each other are clustered, and the
        best supported cluster in the middle of the page is checked.
        """
        content = [line for line in lines if line.strip()]
        if len(content) < self.config.column_min_lines:
            return None

        width = max(len(line) for line in content)
        gap = " " * self.config.column_gap_min_spaces
        starts = Counter()
        for line in content:
            for match in re.finditer(rf"{gap}(?=\S)", line):
                position = match.end()
                if width * 0.25 <= position <= width * 0.75:
                    starts[position] += 1

        clusters: List[List[int]] = []  # [first position, last position, support]
        for position in sorted(starts):
            if clusters and position - clusters[-1][1] <= 1:
                clusters[-1][1] = position
                clusters[-1][2] += starts[position]
            else:
                clusters.append([position, position, starts[position]])

        for start, _, _ in sorted(clusters, key=lambda c: (-c[2], c[0])):
            if self._is_column_split(content, start):
                return start
        return None

    def _is_column_split(self, content: List[str], split: int) -> bool:
        both_sides = 0
        entry_like = 0
        crossing = 0

        for line in content:
            left, right = line[:split], line[split:]
            if len(line) > split and split > 0 and line[split - 1] != " " and left.strip():
                # Text runs through the gutter (e.g. a full-width title)
                crossing += 1
                continue
            right = right.strip()
            if left.strip() and right:
                both_sides += 1
                if len(right) >= 8 and _ENTRY_START_RE.match(right):
                    entry_like += 1

        required = max(self.config.column_min_lines, self.config.column_min_line_share * len(content))
        if both_sides < required:
            return False
        if crossing > 0.2 * len(content):
            return False
        return entry_like >= self.config.column_entry_share * both_sides

    def _reflow_page(self, lines: List[str], split: int) -> List[str]:
        """Emit left column then right column, block by block between spanning lines."""
        output: List[str] = []
        left: List[str] = []
        right: List[str] = []

        def flush():
            output.extend(left)
            output.extend(right)
            left.clear()
            right.clear()

        for line in lines:
            if len(line) > split and split > 0 and line[split - 1] != " " and line[:split].strip():
                flush()
                output.append(line.strip())
                continue
            if line[:split].strip():
                left.append(line[:split].strip())
            if line[split:].strip():
                right.append(line[split:].strip())
        flush()
        return output

    # ------------------------------------------------------------------
    # Headers and footers
    # ------------------------------------------------------------------

    def _remove_headers_footers(self, pages: List[List[str]]) -> Tuple[List[List[str]], bool, bool]:
        """
        Drop lines repeated near-identically at the same position across pages.

        Only the first and last few non-blank lines of each page are
        candidates. Lines carrying a value with a clinical unit are never
        treated as headers or footers.
        """
        if len(pages) < 2:
            return pages, False, False

        k = self.config.header_footer_scan_lines
        content = [[i for i, line in enumerate(lines) if line.strip()] for lines in pages]
        min_pages = max(2, (len(pages) + 1) // 2)

        to_drop = [set() for _ in pages]
        found = {"header": False, "footer": False}

        for region in ("header", "footer"):
            for slot in range(k):
                candidates = []
                for page_index, indices in enumerate(content):
                    if slot >= len(indices):
                        candidates.append(None)
                        continue
                    line_index = indices[slot] if region == "header" else indices[-1 - slot]
                    candidates.append((page_index, line_index, self._comparable(pages[page_index][line_index])))

                for candidate in candidates:
                    if candidate is None or not candidate[2]:
                        continue
                    page_index, line_index, key = candidate
                    if VALUE_WITH_UNIT_RE.search(pages[page_index][line_index]):
                        continue
                    matches = [
                        other for other in candidates
                        if other is not None and other[2]
                        and fuzz.ratio(key, other[2]) >= self.config.header_footer_similarity
                    ]
                    if len({m[0] for m in matches}) >= min_pages:
                        to_drop[page_index].add(line_index)
                        found[region] = True

        cleaned = [
            [line for i, line in enumerate(lines) if i not in to_drop[page_index]]
            for page_index, lines in enumerate(pages)
        ]
        return cleaned, found["header"], found["footer"]

    @staticmethod
    def _comparable(line: str) -> str:
        # Page numbers differ from page to page
        return re.sub(r"\d+", "#", re.sub(r"\s+", " ", line.strip().lower()))

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def _normalize(self, pages: List[List[str]]) -> str:
        lines: List[str] = []
        for page in pages:
            for line in page:
                line = re.sub(r"[^\S\n]+", " ", line)
                line = "".join(ch for ch in line if ch.isprintable())
                lines.append(line.strip())
            lines.append("")

        # Collapse runs of blank lines to a single blank line
        collapsed: List[str] = []
        for line in lines:
            if not line and (not collapsed or not collapsed[-1]):
                continue
            collapsed.append(line)
        return "\n".join(collapsed).strip()

    @staticmethod
    def _standardize_phrases(text: str) -> Tuple[str, bool]:
        """Rewrite known report labels; returns the text and whether anything changed."""
        standardized = _PHRASE_RE.sub(lambda match: _PHRASE_LOOKUP[match.group(0).lower()], text)
        return standardized, standardized != text

    # ------------------------------------------------------------------
    # Quality
    # ------------------------------------------------------------------

    def _score_quality(self, text: str, confidence: Optional[float] = None) -> QualityMetrics:
        total = len(text)
        if total == 0:
            return QualityMetrics()

        whitespace = sum(1 for ch in text if ch.isspace())
        numeric = sum(1 for ch in text if "0" <= ch <= "9")
        special = sum(1 for ch in text if not ch.isalnum() and not ch.isspace())

        suspicious = _count_confused_numbers(text) + len(_ISOLATED_CHAR_RE.findall(text))
        per_1000 = suspicious * 1000.0 / total
        potential_ocr_errors = suspicious if per_1000 > self.config.ocr_error_threshold_per_1000 else 0

        value_units = [canonical_unit(match.group("unit")) for match in VALUE_WITH_UNIT_RE.finditer(text)]

        metrics = QualityMetrics(
            whitespace_ratio=whitespace / total,
            special_char_ratio=special / total,
            numeric_ratio=numeric / total,
            potential_ocr_errors=potential_ocr_errors,
            medical_term_count=len(_MEDICAL_TERM_RE.findall(text)),
            numeric_value_count=len(value_units),
            unit_consistency_score=_unit_consistency(value_units),
        )
        metrics.overall_quality_score = _overall_quality(metrics, confidence)
        return metrics


def _count_confused_numbers(text: str) -> int:
    """Count numeric tokens containing a letter commonly misread for a digit."""
    count = 0
    for match in _NUMERIC_RUN_RE.finditer(text):
        start, end = match.span()
        # Runs inside words ("Cholesterol", "mIU") are spelling, not numbers
        if (start > 0 and text[start - 1].isalpha()) or (end < len(text) and text[end].isalpha()):
            continue
        token = match.group(0).strip(".,")
        if len(token) < 2:
            continue
        has_digit = any(ch.isdigit() for ch in token)
        if has_digit and any(ch in _CONFUSABLE_LETTERS for ch in token):
            count += 1
    return count


def _unit_consistency(units: List[Optional[str]]) -> float:
    """
    Spread of value units over the clinical unit table.

    1.0 when units are spread evenly; a report dominated by one unit
    scores lower. 0.0 when no value carries a unit.
    """
    counts = Counter(unit for unit in units if unit)
    total = sum(counts.values())
    if total == 0:
        return 0.0
    expected = total / len(CANONICAL_UNITS)
    variance = sum((counts.get(unit, 0) - expected) ** 2 for unit in CANONICAL_UNITS) / len(CANONICAL_UNITS)
    return min(1.0, max(0.0, 1.0 - variance / (total * total)))


def _overall_quality(metrics: QualityMetrics, confidence: Optional[float]) -> float:
    # Text-layer PDF and DOCX text is exact, so it counts as fully confident
    scores = {
        "confidence": 1.0 if confidence is None else confidence,
        "medical_terms": min(metrics.medical_term_count / 20, 1.0),
        "numeric_values": min(metrics.numeric_value_count / 30, 1.0),
        "unit_consistency": metrics.unit_consistency_score,
        "whitespace": 1.0 - abs(metrics.whitespace_ratio - 0.15),
        "special_chars": 1.0 - min(metrics.special_char_ratio / 0.1, 1.0),
        "numeric_chars": min(metrics.numeric_ratio / 0.2, 1.0),
    }
    score = sum(scores[key] * weight for key, weight in QUALITY_WEIGHTS.items())
    return min(1.0, max(0.0, score))


def preprocess_lab_text(raw_text: str, original_format: str, **kwargs) -> PreprocessedText:
    """Convenience function with default configuration."""
    return LabTextPreprocessor().preprocess(raw_text, original_format, **kwargs)
