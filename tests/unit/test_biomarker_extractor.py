"""
Unit tests for biomarker extraction from normalized lab text.
"""
import math

import pytest

from tests.fixtures.sample_lab_reports import SAMPLE_LAB_TEXT

pytestmark = pytest.mark.unit


class TestKnownNames:
    """Test extraction of names found in the vocabulary."""

    def test_hdl_with_reference_range(self, extractor):
        """Test a full entry line with unit and reference range."""
        outcome = extractor.extract("HDL Cholesterol 55 mg/dL (40-60 mg/dL)")

        assert len(outcome.biomarkers) == 1
        record = outcome.biomarkers[0]
        assert record.name == "HDL Cholesterol"
        assert record.value == 55.0
        assert record.unit == "mg/dL"
        assert record.reference_range == "40-60 mg/dL"
        assert record.category == "lipid"
        assert outcome.parsing_errors == []

    def test_sample_report(self, extractor):
        """Test every result line of a panel is extracted with the report date."""
        outcome = extractor.extract(SAMPLE_LAB_TEXT)
        names = [record.name for record in outcome.biomarkers]

        assert names == ["HDL Cholesterol", "LDL Cholesterol", "Triglycerides", "Glucose", "HbA1c", "TSH"]
        assert all(record.test_date == "2024-01-15" for record in outcome.biomarkers)
        assert outcome.parsing_errors == []

        hba1c = outcome.biomarkers[4]
        assert hba1c.value == 5.4
        assert hba1c.unit == "%"

    def test_synonyms_are_canonicalized(self, extractor):
        """Test abbreviations map to canonical names."""
        outcome = extractor.extract("Hgb 14.1 g/dL\nSGPT 25 U/L\nA1C 5.9 %")
        by_name = {record.name: record for record in outcome.biomarkers}

        assert by_name["Hemoglobin"].value == 14.1
        assert by_name["ALT"].unit == "U/L"
        assert by_name["HbA1c"].value == 5.9

    def test_case_insensitive_names(self, extractor):
        """Test names are matched regardless of case."""
        outcome = extractor.extract("glucose 92 mg/dL")
        assert outcome.biomarkers[0].name == "Glucose"

    def test_missing_unit(self, extractor):
        """Test a value without a unit is kept with an empty unit."""
        outcome = extractor.extract("Glucose 92")

        assert outcome.biomarkers[0].value == 92.0
        assert outcome.biomarkers[0].unit == ""

    def test_unit_attached_to_value(self, extractor):
        """Test units written directly after the number."""
        outcome = extractor.extract("Glucose 92mg/dL")
        assert outcome.biomarkers[0].unit == "mg/dL"

    def test_micro_unit_variants(self, extractor):
        """Test ug and mcg spellings fold into the micro sign."""
        outcome = extractor.extract("Iron 95 ug/dL")
        assert outcome.biomarkers[0].unit == "µg/dL"

    def test_separator_and_qualifier(self, extractor):
        """Test colons and qualifiers between name and value are skipped."""
        outcome = extractor.extract("Creatinine (serum): 0.9 mg/dL")

        assert outcome.biomarkers[0].name == "Creatinine"
        assert outcome.biomarkers[0].value == 0.9

    def test_comparator_keeps_value(self, extractor):
        """Test values reported with a comparator keep the number."""
        outcome = extractor.extract("CRP <5 mg/L")

        assert outcome.biomarkers[0].value == 5.0
        assert outcome.biomarkers[0].unit == "mg/L"

    @pytest.mark.parametrize("line,value,unit,reference_range", [
        ("LDL Cholesterol 130 H mg/dL 0-99", 130.0, "mg/dL", "0-99"),
        ("Glucose 105 High mg/dL (70-99 mg/dL)", 105.0, "mg/dL", "70-99 mg/dL"),
        ("HDL Cholesterol 35 L mg/dL (40-60 mg/dL)", 35.0, "mg/dL", "40-60 mg/dL"),
        ("Ferritin 8 LL ng/mL", 8.0, "ng/mL", None),
        ("TSH 6.2* mIU/L", 6.2, "mIU/L", None),
        ("Creatinine 1.4 A mg/dL", 1.4, "mg/dL", None),
    ])
    def test_abnormal_flag_before_unit(self, extractor, line, value, unit, reference_range):
        """Test H/L style flags between value and unit keep the unit."""
        record = extractor.extract(line).biomarkers[0]

        assert record.value == value
        assert record.unit == unit
        assert record.reference_range == reference_range

    def test_flag_without_unit(self, extractor):
        """Test a flagged value without a unit keeps an empty unit."""
        record = extractor.extract("Glucose 140 H").biomarkers[0]

        assert record.value == 140.0
        assert record.unit == ""

    def test_value_on_next_line(self, extractor):
        """Test a name and its value split across lines are joined."""
        outcome = extractor.extract("Hemoglobin\n14.2 g/dL (13.0-17.0 g/dL)\nTSH 2.1 mIU/L")

        assert [record.name for record in outcome.biomarkers] == ["Hemoglobin", "TSH"]
        assert outcome.biomarkers[0].value == 14.2
        assert outcome.biomarkers[0].reference_range == "13.0-17.0 g/dL"

    def test_duplicates_collapsed(self, extractor):
        """Test the same entry printed twice yields one record."""
        outcome = extractor.extract("Glucose 92 mg/dL\nGlucose 92 mg/dL")
        assert len(outcome.biomarkers) == 1


class TestParsingErrors:
    """Test recorded parsing problems."""

    def test_unparseable_value(self, extractor):
        """Test a garbled value is reported instead of dropped."""
        outcome = extractor.extract("Glucose abc mg/dL")

        assert outcome.biomarkers == []
        assert len(outcome.parsing_errors) == 1
        assert "abc" in outcome.parsing_errors[0]
        assert "Glucose" in outcome.parsing_errors[0]

    def test_unparseable_value_among_valid_lines(self, extractor):
        """Test only the broken line is reported and the others still parse."""
        outcome = extractor.extract("HDL Cholesterol abc mg/dL\nGlucose 92 mg/dL")

        assert [record.name for record in outcome.biomarkers] == ["Glucose"]
        assert outcome.parsing_errors == [
            "Could not parse value 'abc' for HDL Cholesterol: HDL Cholesterol abc mg/dL"
        ]

    def test_same_name_different_units(self, extractor):
        """Test a repeated name in a second unit keeps both records."""
        outcome = extractor.extract("Glucose 90 mg/dL\nComment: repeat test\nGlucose 5.0 mmol/L")

        assert [(r.value, r.unit) for r in outcome.biomarkers] == [(90.0, "mg/dL"), (5.0, "mmol/L")]
        assert any("Glucose" in error and "mmol/L" in error for error in outcome.parsing_errors)

    def test_unit_mismatch(self, extractor):
        """Test the same biomarker in two units is flagged."""
        outcome = extractor.extract("Glucose 92 mg/dL\nBlood Glucose 5.1 mmol/L")

        assert len(outcome.biomarkers) == 2
        assert outcome.parsing_errors == ["Unit mismatch for Glucose: found mg/dL, mmol/L"]

    def test_unit_mismatch_with_flags(self, extractor):
        """Test flagged lines still take part in the unit consistency check."""
        outcome = extractor.extract("Glucose 110 H mg/dL\nBlood Glucose 6.4 H mmol/L")

        assert outcome.parsing_errors == ["Unit mismatch for Glucose: found mg/dL, mmol/L"]

    def test_narrative_mention_is_not_an_error(self, extractor):
        """Test prose mentioning a biomarker does not produce errors."""
        outcome = extractor.extract("Glucose tolerance test recommended")

        assert outcome.biomarkers == []
        assert outcome.parsing_errors == []

    def test_empty_text(self, extractor):
        """Test empty text yields an empty outcome."""
        outcome = extractor.extract("")

        assert outcome.biomarkers == []
        assert outcome.parsing_errors == []
        assert outcome.extracted_at


class TestFuzzyNames:
    """Test fuzzy fallback for misspelled names."""

    def test_ocr_misspelling(self, extractor):
        """Test a one-letter OCR typo still maps to the biomarker."""
        outcome = extractor.extract("Hemoglobn 13.5 g/dL")

        assert len(outcome.biomarkers) == 1
        assert outcome.biomarkers[0].name == "Hemoglobin"
        assert outcome.biomarkers[0].value == 13.5

    def test_ocr_misspelling_with_flag(self, extractor):
        """Test the fuzzy fallback also reads flagged values."""
        record = extractor.extract("Hemoglobn 11.2 L g/dL").biomarkers[0]

        assert record.name == "Hemoglobin"
        assert record.unit == "g/dL"

    def test_unknown_name_ignored(self, extractor):
        """Test unrelated entry-shaped lines are ignored."""
        outcome = extractor.extract("Specimen Volume 5 mL/min/1.73m2")
        assert outcome.biomarkers == []

    def test_injected_vocabulary(self):
        """Test a custom lookup table replaces the default one."""
        from workers.ingestion.biomarker_extractor import BiomarkerExtractor
        from workers.ingestion.vocabulary import BiomarkerVocabulary

        vocabulary = BiomarkerVocabulary({
            "ck": {"canonical_name": "Creatine Kinase", "category": "other", "unit": "U/L", "aliases": ["CK", "CPK"]},
        })
        outcome = BiomarkerExtractor(vocabulary).extract("CPK 120 U/L\nGlucose 92 mg/dL")

        assert [record.name for record in outcome.biomarkers] == ["Creatine Kinase"]


class TestParseNumber:
    """Test value token parsing."""

    @pytest.mark.parametrize("token,expected", [
        ("92", 92.0),
        ("5.4", 5.4),
        ("5,4", 5.4),
        ("250,000", 250000.0),
        ("1,234.5", 1234.5),
    ])
    def test_valid_tokens(self, token, expected):
        from workers.ingestion.biomarker_extractor import parse_number
        assert parse_number(token) == expected

    @pytest.mark.parametrize("token", ["abc", "1,23,4", "1.2.3", ""])
    def test_invalid_tokens(self, token):
        from workers.ingestion.biomarker_extractor import parse_number
        assert parse_number(token) is None


class TestTestDate:
    """Test report date detection."""

    @pytest.mark.parametrize("text,expected", [
        ("Report Date: 2024-03-05", "2024-03-05"),
        ("Collected: March 5, 2024", "2024-03-05"),
        ("Collection Date: 01/15/2024", "2024-01-15"),
        ("Date: 15/01/2024", "2024-01-15"),
    ])
    def test_date_formats(self, text, expected):
        from workers.ingestion.biomarker_extractor import parse_test_date
        assert parse_test_date(text) == expected

    def test_no_date(self):
        from workers.ingestion.biomarker_extractor import parse_test_date
        assert parse_test_date("Glucose 92 mg/dL") is None


class TestRecords:
    """Test record validation and stored documents."""

    def test_non_finite_value_rejected(self):
        """Test NaN values are refused."""
        from workers.ingestion.biomarker_extractor import BiomarkerRecord

        with pytest.raises(ValueError):
            BiomarkerRecord(name="Glucose", value=math.nan)

    def test_unknown_category_rejected(self):
        """Test categories outside the known set are refused."""
        from workers.ingestion.biomarker_extractor import BiomarkerRecord

        with pytest.raises(ValueError):
            BiomarkerRecord(name="Glucose", value=92, category="cardiac")

    def test_outcome_document(self, extractor):
        """Test the stored biomarkers document shape and reload."""
        from workers.ingestion.biomarker_extractor import ExtractionOutcome

        outcome = extractor.extract("HDL Cholesterol 55 mg/dL (40-60 mg/dL)")
        document = outcome.to_dict()

        assert set(document) == {"biomarkers", "parsingErrors", "extractedAt"}
        assert document["biomarkers"][0]["referenceRange"] == "40-60 mg/dL"

        restored = ExtractionOutcome.from_dict(document)
        assert restored.biomarkers == outcome.biomarkers
        assert restored.extracted_at == outcome.extracted_at

    def test_add_missing_keeps_found_names(self, extractor):
        """Test suggested records only fill names the patterns did not find."""
        from workers.ingestion.biomarker_extractor import BiomarkerRecord

        outcome = extractor.extract("HDL Cholesterol 55 mg/dL")
        added = outcome.add_missing([
            BiomarkerRecord(name="hdl cholesterol", value=99, unit="mg/dL"),
            BiomarkerRecord(name="Ferritin", value=40, unit="ng/mL"),
            BiomarkerRecord(name="Ferritin", value=41, unit="ng/mL"),
        ])

        assert [record.name for record in added] == ["Ferritin"]
        assert [(record.name, record.value) for record in outcome.biomarkers] == [
            ("HDL Cholesterol", 55.0),
            ("Ferritin", 40.0),
        ]
