"""
Biomarker Extraction.

Scans normalized lab text line by line for ``<name> <value> <unit> [range]``
entries. Names are canonicalized through the biomarker vocabulary; lines that
look like entries but carry an unreadable value end up in ``parsing_errors``
instead of being dropped silently.
"""

import math
import re
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from workers.ingestion.units import UNIT_PATTERN, NUMBER_PATTERN, UNIT_RE, canonical_unit
from workers.ingestion.vocabulary import BIOMARKER_CATEGORIES, BiomarkerVocabulary, BiomarkerDefinition

logger = logging.getLogger(__name__)

_COMPARATOR = r"(?:<=|>=|[<>≤≥])"

# Abnormal flag printed between a value and its unit, e.g. "130 H mg/dL"
_FLAG = r"(?:\s*(?:(?:High|Low|HH|LL|H|L|A)(?![A-Za-z0-9/])|\*))"

_VALUE_RE = re.compile(
    rf"^\s*(?P<comparator>{_COMPARATOR})?\s*(?P<value>{NUMBER_PATTERN})"
    rf"(?P<flag>{_FLAG})?\s*(?P<unit>{UNIT_PATTERN})?",
    re.IGNORECASE,
)

# Filler between a name and its value: qualifiers, separators and dot leaders
_FILLER_RE = re.compile(
    r"^(?:\s*\((?:serum|plasma|blood|fasting|calc(?:ulated)?|direct|total)\))?"
    r"(?:\s*(?:result|value|level)\b)?"
    r"[\s:=]*(?:\.{2,}\s*)?",
    re.IGNORECASE,
)

_RANGE_RE = re.compile(
    rf"(?P<range>(?:\d+(?:[.,]\d+)?\s*[-–]\s*\d+(?:[.,]\d+)?|{_COMPARATOR}\s*\d+(?:[.,]\d+)?)"
    rf"(?:\s*{UNIT_PATTERN})?)",
    re.IGNORECASE,
)

# Lines shaped like "<something> <number> <unit>" for fuzzy name matching
_GENERIC_ENTRY_RE = re.compile(
    rf"^\s*(?P<name>[A-Za-z][A-Za-z0-9 ,()\-/]{{2,48}}?)\s*[:=]?\s+"
    rf"(?P<rest>{_COMPARATOR}?\s*{NUMBER_PATTERN}{_FLAG}?\s*{UNIT_PATTERN}.*)$",
    re.IGNORECASE,
)

_DATE_RE = re.compile(
    r"(?:Collection Date|Collected|Report Date|Reported|Test Date|Specimen Date|Date)\s*[:\-]?\s*"
    r"(?P<date>\d{4}-\d{1,2}-\d{1,2}|\d{1,2}[/.\-]\d{1,2}[/.\-]\d{2,4}"
    r"|[A-Za-z]{3,9}\.? \d{1,2},? \d{4}|\d{1,2} [A-Za-z]{3,9},? \d{4})",
    re.IGNORECASE,
)

_DATE_FORMATS = [
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%m-%d-%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%m/%d/%y",
    "%d/%m/%y",
    "%B %d, %Y",
    "%B %d %Y",
    "%b %d, %Y",
    "%b %d %Y",
    "%b. %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
]


@dataclass
class BiomarkerRecord:
    """One recognized lab value."""
    name: str
    value: float
    unit: str = ""
    reference_range: Optional[str] = None
    test_date: Optional[str] = None  # ISO date
    category: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.value, bool) or not isinstance(self.value, (int, float)) or not math.isfinite(self.value):
            raise ValueError(f"Biomarker value must be a finite number, got {self.value!r}")
        if self.category is not None and self.category not in BIOMARKER_CATEGORIES:
            raise ValueError(f"Unknown biomarker category: {self.category}")
        self.value = float(self.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "unit": self.unit,
            "referenceRange": self.reference_range,
            "testDate": self.test_date,
            "category": self.category,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BiomarkerRecord":
        return cls(
            name=data["name"],
            value=data["value"],
            unit=data.get("unit") or "",
            reference_range=data.get("referenceRange"),
            test_date=data.get("testDate"),
            category=data.get("category"),
        )


@dataclass
class ExtractionOutcome:
    biomarkers: List[BiomarkerRecord] = field(default_factory=list)
    parsing_errors: List[str] = field(default_factory=list)
    extracted_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """JSON document stored under ``metadata.biomarkers``."""
        return {
            "biomarkers": [record.to_dict() for record in self.biomarkers],
            "parsingErrors": list(self.parsing_errors),
            "extractedAt": self.extracted_at,
        }

    def add_missing(self, records: List[BiomarkerRecord]) -> List[BiomarkerRecord]:
        """Append records for names not already present; pattern matches win."""
        known = {record.name.lower() for record in self.biomarkers}
        added = []
        for record in records:
            if record.name.lower() in known:
                continue
            known.add(record.name.lower())
            self.biomarkers.append(record)
            added.append(record)
        return added

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtractionOutcome":
        return cls(
            biomarkers=[BiomarkerRecord.from_dict(item) for item in data.get("biomarkers", [])],
            parsing_errors=list(data.get("parsingErrors", [])),
            extracted_at=data.get("extractedAt") or datetime.now(timezone.utc).isoformat(),
        )


def parse_number(token: str) -> Optional[float]:
    """
    Parse a lab value token.

    A comma is a decimal separator only when it cannot be a thousands
    separator: "5,4" is 5.4, while "250,000" and "1,234.5" use grouping
    commas. Returns None when the token is not a finite number.
    """
    token = token.strip()
    if "," in token:
        if "." in token:
            if not re.fullmatch(r"\d{1,3}(?:,\d{3})+\.\d+", token):
                return None
            token = token.replace(",", "")
        elif re.fullmatch(r"\d{1,3}(?:,\d{3})+", token):
            token = token.replace(",", "")
        elif re.fullmatch(r"\d+,\d+", token):
            token = token.replace(",", ".")
        else:
            return None

    if not re.fullmatch(r"\d+(?:\.\d+)?", token):
        return None
    value = float(token)
    return value if math.isfinite(value) else None


def parse_test_date(text: str) -> Optional[str]:
    """Find the report/collection date and return it as an ISO date."""
    for match in _DATE_RE.finditer(text):
        raw = match.group("date").strip()
        for fmt in _DATE_FORMATS:
            try:
                return datetime.strptime(raw, fmt).date().isoformat()
            except ValueError:
                continue
    return None


class BiomarkerExtractor:
    """
    Pattern-based biomarker extraction over normalized text.

    Tier 1: known names/synonyms at the start of a line
    Tier 2: fuzzy name match for "<name> <value> <unit>" lines (OCR typos)
    """

    def __init__(self, vocabulary: BiomarkerVocabulary, line_window: int = 2):
        """
        Args:
            vocabulary: Injectable lookup table of names and synonyms
            line_window: Lines considered when a name and its value are split
        """
        self.vocabulary = vocabulary
        self.line_window = max(1, line_window)

    def extract(self, normalized_text: str) -> ExtractionOutcome:
        """
        Returns:
            ExtractionOutcome with records and human-readable parsing errors
        """
        outcome = ExtractionOutcome()
        if not normalized_text or not normalized_text.strip():
            return outcome

        test_date = parse_test_date(normalized_text)
        lines = normalized_text.split("\n")
        seen = set()
        index = 0

        while index < len(lines):
            line = lines[index]
            consumed = 1
            record = None

            name_match = self.vocabulary.name_pattern.match(line)
            if name_match:
                definition = self.vocabulary.lookup(name_match.group("name"))
                rest = _FILLER_RE.sub("", line[name_match.end():], count=1)

                if not rest.strip():
                    record, consumed = self._value_from_following_lines(lines, index, definition, test_date)
                else:
                    record = self._record_from_rest(definition, rest, line, test_date, outcome)
            else:
                record = self._fuzzy_record(line, test_date)

            if record is not None:
                key = (record.name, record.value, record.unit, record.reference_range)
                if key not in seen:
                    seen.add(key)
                    outcome.biomarkers.append(record)

            index += consumed

        outcome.parsing_errors.extend(self._unit_mismatches(outcome.biomarkers))

        logger.info(
            f"Extracted {len(outcome.biomarkers)} biomarkers with {len(outcome.parsing_errors)} parsing errors"
        )
        return outcome

    def _record_from_rest(
        self,
        definition: BiomarkerDefinition,
        rest: str,
        line: str,
        test_date: Optional[str],
        outcome: ExtractionOutcome,
    ) -> Optional[BiomarkerRecord]:
        value_match = _VALUE_RE.match(rest)
        value = parse_number(value_match.group("value")) if value_match else None

        if value is None:
            token = rest.strip().split()[0] if rest.strip() else ""
            if self._looks_like_value_slot(rest):
                outcome.parsing_errors.append(
                    f"Could not parse value '{token}' for {definition.canonical_name}: {line.strip()}"
                )
            else:
                # Narrative mention such as "Glucose tolerance test recommended"
                logger.debug(f"Skipping non-value line for {definition.canonical_name}: {line.strip()}")
            return None

        return self._build_record(definition, value, value_match, rest, test_date)

    def _value_from_following_lines(
        self,
        lines: List[str],
        index: int,
        definition: BiomarkerDefinition,
        test_date: Optional[str],
    ) -> Tuple[Optional[BiomarkerRecord], int]:
        """Join a name-only line with a value on one of the next lines."""
        for offset in range(1, self.line_window + 1):
            if index + offset >= len(lines):
                break
            candidate = lines[index + offset]
            if not candidate.strip():
                continue
            if self.vocabulary.name_pattern.match(candidate):
                break
            value_match = _VALUE_RE.match(candidate)
            value = parse_number(value_match.group("value")) if value_match else None
            if value is None:
                break
            record = self._build_record(definition, value, value_match, candidate, test_date)
            return record, offset + 1
        return None, 1

    def _fuzzy_record(self, line: str, test_date: Optional[str]) -> Optional[BiomarkerRecord]:
        entry = _GENERIC_ENTRY_RE.match(line)
        if not entry:
            return None

        found = self.vocabulary.fuzzy_lookup(entry.group("name"))
        if found is None:
            return None

        definition, score = found
        rest = entry.group("rest")
        value_match = _VALUE_RE.match(rest)
        value = parse_number(value_match.group("value")) if value_match else None
        if value is None:
            return None

        logger.debug(f"Fuzzy matched '{entry.group('name').strip()}' -> {definition.canonical_name} ({score:.2f})")
        return self._build_record(definition, value, value_match, rest, test_date)

    def _build_record(
        self,
        definition: BiomarkerDefinition,
        value: float,
        value_match,
        text: str,
        test_date: Optional[str],
    ) -> BiomarkerRecord:
        unit = canonical_unit(value_match.group("unit") or "") or ""
        remainder = text[value_match.end():]

        range_match = _RANGE_RE.search(remainder)
        reference_range = None
        if range_match:
            reference_range = re.sub(r"\s+", " ", range_match.group("range").strip())
            range_unit = UNIT_RE.search(reference_range)
            if range_unit:
                canonical = canonical_unit(range_unit.group(0))
                reference_range = reference_range[:range_unit.start()] + canonical + reference_range[range_unit.end():]

        return BiomarkerRecord(
            name=definition.canonical_name,
            value=value,
            unit=unit,
            reference_range=reference_range,
            test_date=test_date,
            category=definition.category,
        )

    @staticmethod
    def _looks_like_value_slot(rest: str) -> bool:
        tokens = rest.strip().split()
        if not tokens:
            return False
        return bool(UNIT_RE.search(rest)) or any(ch.isdigit() for ch in tokens[0])

    @staticmethod
    def _unit_mismatches(records: List[BiomarkerRecord]) -> List[str]:
        units_by_name: Dict[str, List[str]] = {}
        for record in records:
            if not record.unit:
                continue
            units = units_by_name.setdefault(record.name, [])
            if record.unit not in units:
                units.append(record.unit)

        return [
            f"Unit mismatch for {name}: found {', '.join(units)}"
            for name, units in units_by_name.items()
            if len(units) > 1
        ]


def extract_biomarkers(normalized_text: str, vocabulary: Optional[BiomarkerVocabulary] = None) -> ExtractionOutcome:
    """Convenience function using the configured vocabulary."""
    if vocabulary is None:
        from workers.ingestion.vocabulary import get_vocabulary
        vocabulary = get_vocabulary()
    return BiomarkerExtractor(vocabulary).extract(normalized_text)
