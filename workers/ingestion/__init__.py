"""
Lab Result Ingestion Workers Package.

Pipeline:
- readers: PDF/DOCX/image text extraction (OCR via ocr + image_cleanup)
- text_preprocessor: column reflow, header/footer removal, quality metrics
- biomarker_extractor: name/value/unit/range detection (vocabulary, units)
- orchestrator: per-upload state machine with progress and retries
- lookup: user-scoped search over stored biomarkers and summaries
"""

from workers.ingestion.readers import RawExtraction, get_reader
from workers.ingestion.text_preprocessor import LabTextPreprocessor, PreprocessedText, preprocess_lab_text
from workers.ingestion.biomarker_extractor import (
    BiomarkerExtractor,
    BiomarkerRecord,
    ExtractionOutcome,
    extract_biomarkers,
)
from workers.ingestion.vocabulary import BiomarkerVocabulary, get_vocabulary
from workers.ingestion.orchestrator import LabUploadOrchestrator, UploadedFile
from workers.ingestion.progress import UploadProgress, InMemoryProgressStore, RedisProgressStore

__all__ = [
    # Reading
    'RawExtraction',
    'get_reader',

    # Preprocessing
    'LabTextPreprocessor',
    'PreprocessedText',
    'preprocess_lab_text',

    # Extraction
    'BiomarkerExtractor',
    'BiomarkerRecord',
    'ExtractionOutcome',
    'extract_biomarkers',
    'BiomarkerVocabulary',
    'get_vocabulary',

    # Orchestration
    'LabUploadOrchestrator',
    'UploadedFile',
    'UploadProgress',
    'InMemoryProgressStore',
    'RedisProgressStore',
]
