"""
Gemini text completion: narrative lab summaries and extraction assist.

Both are best-effort. Summary failures surface as SummarizationFailure and
the pipeline completes without a summary; extraction assist returns no
records when the model call or its JSON fails.
"""

import re
import json
import logging
from typing import Any, List, Optional

import google.generativeai as genai

from workers.ingestion.biomarker_extractor import BiomarkerRecord
from workers.ingestion.errors import SummarizationFailure
from workers.ingestion.units import canonical_unit
from workers.ingestion.vocabulary import BIOMARKER_CATEGORIES, BiomarkerVocabulary

logger = logging.getLogger(__name__)

# Keep prompts bounded for very long reports
MAX_PROMPT_TEXT_CHARS = 8000


class TextCompletionService:
    """Interface: summarize normalized lab text and extracted biomarkers."""

    def summarize(self, normalized_text: str, biomarkers: List[BiomarkerRecord]) -> str:
        raise NotImplementedError


class GeminiSummarizer(TextCompletionService):

    def __init__(self, api_key: Optional[str], model: str, timeout: float = 15.0):
        self.api_key = api_key
        self.model_name = model
        self.timeout = timeout

    def summarize(self, normalized_text: str, biomarkers: List[BiomarkerRecord]) -> str:
        if not self.api_key:
            raise SummarizationFailure("GEMINI_API_KEY not set")

        prompt = build_summary_prompt(normalized_text, biomarkers)

        try:
            genai.configure(api_key=self.api_key)
            model = genai.GenerativeModel(self.model_name)
            response = model.generate_content(
                prompt,
                request_options={"timeout": self.timeout},
            )
            summary = (response.text or "").strip()
        except Exception as e:
            raise SummarizationFailure(f"Summary generation failed: {e}") from e

        if not summary:
            raise SummarizationFailure("Summary generation returned no text")
        return summary


def build_summary_prompt(normalized_text: str, biomarkers: List[BiomarkerRecord]) -> str:
    """Build the lab summary prompt."""
    results_text = json.dumps([record.to_dict() for record in biomarkers], indent=2)
    report_text = normalized_text[:MAX_PROMPT_TEXT_CHARS]

    return f"""You are a medical assistant helping to summarize lab results.

Summarize the following lab report in plain language. Include:
1. A brief overview of what was tested
2. The most notable values
3. Any values outside their reference ranges
4. Patterns across related markers, if any
5. Suggested follow-up questions for a healthcare provider

Only describe values that appear below. Do not invent tests or values,
and do not give a diagnosis.

EXTRACTED BIOMARKERS:
{results_text}

REPORT TEXT:
{report_text}
"""


def build_summarizer(settings) -> Optional[TextCompletionService]:
    if not settings.gemini.summaries_enabled or not settings.gemini.api_key:
        return None
    return GeminiSummarizer(
        api_key=settings.gemini.api_key,
        model=settings.gemini.model,
        timeout=settings.gemini.summary_timeout,
    )


class ExtractionAssistant:
    """Interface: suggest biomarker records from normalized lab text."""

    def extract(self, normalized_text: str) -> List[BiomarkerRecord]:
        raise NotImplementedError


class GeminiExtractionAssistant(ExtractionAssistant):
    """
    Asks Gemini for every lab marker in the report as JSON.

    Suggestions are validated through BiomarkerRecord and canonicalized with
    the vocabulary; malformed items are dropped one by one.
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        timeout: float = 20.0,
        vocabulary: Optional[BiomarkerVocabulary] = None,
    ):
        self.api_key = api_key
        self.model_name = model
        self.timeout = timeout
        self.vocabulary = vocabulary

    def extract(self, normalized_text: str) -> List[BiomarkerRecord]:
        if not self.api_key or not normalized_text.strip():
            return []

        try:
            genai.configure(api_key=self.api_key)
            model = genai.GenerativeModel(self.model_name)
            response = model.generate_content(
                build_extraction_prompt(normalized_text),
                generation_config={"response_mime_type": "application/json"},
                request_options={"timeout": self.timeout},
            )
            data = json.loads(clean_json_response(response.text or ""))
        except Exception as e:
            logger.warning(f"Gemini extraction assist failed: {e}")
            return []

        items = data.get("biomarkers", []) if isinstance(data, dict) else data
        if not isinstance(items, list):
            logger.warning("Gemini extraction assist returned no biomarker list")
            return []

        records = [self._to_record(item) for item in items]
        return [record for record in records if record is not None]

    def _to_record(self, item: Any) -> Optional[BiomarkerRecord]:
        if not isinstance(item, dict) or not str(item.get("name") or "").strip():
            return None

        name = str(item["name"]).strip()
        category = item.get("category")
        if self.vocabulary is not None:
            definition = self.vocabulary.lookup(name)
            if definition is not None:
                name = definition.canonical_name
                category = definition.category
        if category not in BIOMARKER_CATEGORIES:
            category = None

        raw_unit = str(item.get("unit") or "").strip()
        test_date = item.get("testDate")
        if not (isinstance(test_date, str) and re.fullmatch(r"\d{4}-\d{2}-\d{2}", test_date)):
            test_date = None
        reference_range = item.get("referenceRange")

        try:
            return BiomarkerRecord(
                name=name,
                value=item.get("value"),
                unit=canonical_unit(raw_unit) or raw_unit,
                reference_range=str(reference_range) if reference_range else None,
                test_date=test_date,
                category=category,
            )
        except ValueError as e:
            logger.debug(f"Dropping suggested biomarker {item!r}: {e}")
            return None


def clean_json_response(text: str) -> str:
    """Remove markdown code fences around a JSON response."""
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]

    if text.endswith("```"):
        text = text[:-3]

    return text.strip()


def build_extraction_prompt(normalized_text: str) -> str:
    report_text = normalized_text[:MAX_PROMPT_TEXT_CHARS]
    categories = ", ".join(BIOMARKER_CATEGORIES)

    return f"""You extract lab results from medical reports and answer with JSON only.

Return an object {{"biomarkers": [...]}} where each item has:
- name (string)
- value (number, not a string)
- unit (string)
- referenceRange (optional string)
- testDate (optional ISO date, YYYY-MM-DD)
- category (optional, one of: {categories})

Omit fields that are missing. Do not add commentary.

REPORT TEXT:
{report_text}
"""


def build_extraction_assistant(settings, vocabulary: Optional[BiomarkerVocabulary] = None) -> Optional[ExtractionAssistant]:
    if not settings.gemini.extraction_assist_enabled or not settings.gemini.api_key:
        return None
    return GeminiExtractionAssistant(
        api_key=settings.gemini.api_key,
        model=settings.gemini.model,
        timeout=settings.gemini.extraction_timeout,
        vocabulary=vocabulary,
    )
