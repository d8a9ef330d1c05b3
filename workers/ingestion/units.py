"""
Clinical unit table shared by the text preprocessor and biomarker extractor.

Units are matched case-insensitively and reported in their canonical casing.
Micro prefixes written as ``u``, ``mc`` or Greek mu are folded into ``µ``.
"""

import re
from typing import Dict, Optional

CANONICAL_UNITS = [
    "mg/dL", "mg/L", "g/dL", "g/L",
    "mmol/L", "µmol/L", "nmol/L", "pmol/L", "mmol/mol",
    "mEq/L",
    "ng/mL", "ng/dL", "pg/mL", "µg/dL", "µg/L", "µg/mL",
    "mIU/L", "mIU/mL", "µIU/mL", "IU/L", "IU/mL", "U/L", "IU",
    "mL/min/1.73m²",
    "K/µL", "M/µL", "10^3/µL", "10^6/µL", "10^9/L", "10^12/L", "cells/µL",
    "fL", "pg", "mm/hr",
    "%",
]


def _variants(unit: str):
    yield unit
    if "µ" in unit:
        for prefix in ("u", "μ"):
            yield unit.replace("µ", prefix)
        if unit.startswith("µg"):
            yield unit.replace("µ", "mc")
    if unit.endswith("m²"):
        yield unit[:-1] + "2"
        yield unit[:-1] + "^2"
    if unit.startswith("10^"):
        yield "x" + unit
        yield unit.replace("10^", "x10^")
        yield unit.replace("10^", "10e")


UNIT_LOOKUP: Dict[str, str] = {}
for _unit in CANONICAL_UNITS:
    for _variant in _variants(_unit):
        UNIT_LOOKUP.setdefault(_variant.lower(), _unit)

# Longest first so "IU/L" wins over "IU" and "mg/dL" over "mg"
_UNIT_ALTERNATION = "|".join(
    re.escape(variant) for variant in sorted(UNIT_LOOKUP, key=len, reverse=True)
)

UNIT_PATTERN = rf"(?:{_UNIT_ALTERNATION})(?![A-Za-z0-9/])"

UNIT_RE = re.compile(UNIT_PATTERN, re.IGNORECASE)

NUMBER_PATTERN = r"\d+(?:[.,]\d+)*"

# A whole number (optionally after spaces) followed by a clinical unit.
# Matches only start at the head of a digit run, which keeps scans linear.
VALUE_WITH_UNIT_RE = re.compile(
    rf"(?<![A-Za-z0-9.,]){NUMBER_PATTERN}\s*(?P<unit>{UNIT_PATTERN})", re.IGNORECASE
)


def canonical_unit(raw: str) -> Optional[str]:
    """Return the canonical spelling of a clinical unit, or None if unknown."""
    if not raw:
        return None
    return UNIT_LOOKUP.get(raw.strip().lower())
