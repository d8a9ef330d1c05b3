"""
Biomarker name vocabulary.

Canonicalizes biomarker names with two tiers:
1. Exact alias matching (case and whitespace insensitive)
2. Fuzzy matching using RapidFuzz, for OCR misspellings

The vocabulary is a data asset loaded from YAML (``config/biomarkers.yaml``
by default) and can be injected anywhere a lookup table is needed.
"""

import re
import yaml
import logging
from pathlib import Path
from typing import Dict, List, Optional, Any, Pattern, Tuple
from dataclasses import dataclass, field
from rapidfuzz import fuzz, process

logger = logging.getLogger(__name__)

BIOMARKER_CATEGORIES = (
    "lipid", "metabolic", "thyroid", "vitamin", "mineral",
    "blood", "liver", "kidney", "hormone", "other",
)


@dataclass
class BiomarkerDefinition:
    """A canonical biomarker and the spellings that map to it."""
    key: str
    canonical_name: str
    category: str
    unit: Optional[str] = None
    aliases: List[str] = field(default_factory=list)


def _clean(name: str) -> str:
    return re.sub(r"\s+", " ", name.strip().lower())


class BiomarkerVocabulary:
    """Lookup table of known biomarker names and synonyms."""

    def __init__(self, mappings: Dict[str, Dict[str, Any]], fuzzy_threshold: float = 0.88):
        """
        Args:
            mappings: ``{key: {canonical_name, category, unit, aliases}}``
            fuzzy_threshold: Minimum score (0-1) for fuzzy matching
        """
        self.fuzzy_threshold = fuzzy_threshold
        self.definitions: Dict[str, BiomarkerDefinition] = {}
        self.alias_to_key: Dict[str, str] = {}

        for key, data in mappings.items():
            category = data.get("category") or "other"
            if category not in BIOMARKER_CATEGORIES:
                logger.warning(f"Unknown category '{category}' for biomarker {key}, using 'other'")
                category = "other"

            definition = BiomarkerDefinition(
                key=key,
                canonical_name=data.get("canonical_name", key),
                category=category,
                unit=data.get("unit"),
                aliases=list(data.get("aliases", [])),
            )
            self.definitions[key] = definition

            self.alias_to_key[_clean(definition.canonical_name)] = key
            for alias in definition.aliases:
                self.alias_to_key.setdefault(_clean(str(alias)), key)

        self._aliases = list(self.alias_to_key)
        self._name_pattern: Optional[Pattern] = None

        logger.info(f"Loaded {len(self.definitions)} biomarkers with {len(self.alias_to_key)} aliases")

    @classmethod
    def from_yaml(cls, path: Path, fuzzy_threshold: float = 0.88) -> "BiomarkerVocabulary":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(data.get("mappings", {}), fuzzy_threshold=fuzzy_threshold)

    def __len__(self) -> int:
        return len(self.definitions)

    def lookup(self, name: str) -> Optional[BiomarkerDefinition]:
        """Exact alias lookup."""
        key = self.alias_to_key.get(_clean(name))
        return self.definitions[key] if key else None

    def fuzzy_lookup(self, name: str) -> Optional[Tuple[BiomarkerDefinition, float]]:
        """
        Fuzzy lookup for misspelled names.

        Returns:
            (definition, score in 0-1) or None below the threshold
        """
        cleaned = _clean(name)
        if len(cleaned) < 4 or not self._aliases:
            # Short tokens like "Hb" or "K" only match exactly
            return None

        match = process.extractOne(
            cleaned,
            self._aliases,
            scorer=fuzz.ratio,
            score_cutoff=int(self.fuzzy_threshold * 100),
        )
        if match is None:
            return None

        alias, score, _ = match
        return self.definitions[self.alias_to_key[alias]], score / 100.0

    @property
    def name_pattern(self) -> Pattern:
        """
        Regex matching any known alias at the start of a line.

        Longest aliases come first so "HDL Cholesterol" wins over "HDL".
        """
        if self._name_pattern is None:
            parts = []
            for alias in sorted(self._aliases, key=len, reverse=True):
                escaped = re.escape(alias).replace(r"\ ", r"\s+")
                parts.append(escaped)
            alternation = "|".join(parts) if parts else r"(?!x)x"
            self._name_pattern = re.compile(
                rf"^\s*(?P<name>{alternation})(?![A-Za-z0-9/])",
                re.IGNORECASE,
            )
        return self._name_pattern


# Global instance
_vocabulary: Optional[BiomarkerVocabulary] = None


def get_vocabulary() -> BiomarkerVocabulary:
    """Get or create the vocabulary configured in settings."""
    global _vocabulary
    if _vocabulary is None:
        from backend.core.config import get_settings

        settings = get_settings()
        _vocabulary = BiomarkerVocabulary.from_yaml(
            Path(settings.extraction.vocabulary_path),
            fuzzy_threshold=settings.extraction.fuzzy_threshold,
        )
    return _vocabulary
