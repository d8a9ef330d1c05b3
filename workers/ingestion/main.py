"""
Worker entry point for lab result processing.

``process_lab_result`` is the RQ job enqueued by the API when
``processing.dispatch`` is ``queue``; the API calls the same orchestrator
from a background task otherwise.
"""

import logging
from pathlib import Path
from typing import Optional

from backend.core.config import get_settings
from backend.core.database import engine
from workers.ingestion.biomarker_extractor import BiomarkerExtractor
from workers.ingestion.lookup import LabLookupService
from workers.ingestion.ocr import build_ocr_engine
from workers.ingestion.orchestrator import LabUploadOrchestrator, RetryPolicy
from workers.ingestion.progress import build_progress_store
from workers.ingestion.repository import LabResultRepository
from workers.ingestion.storage import build_storage
from workers.ingestion.summarizer import build_extraction_assistant, build_summarizer
from workers.ingestion.text_preprocessor import LabTextPreprocessor, PreprocessorConfig
from workers.ingestion.tier_limits import YearlyUploadLimit
from workers.ingestion.vocabulary import BiomarkerVocabulary

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

settings = get_settings()

# Built once per process
_orchestrator: Optional[LabUploadOrchestrator] = None
_lookup: Optional[LabLookupService] = None


def build_orchestrator(settings, db_engine, progress_store=None) -> LabUploadOrchestrator:
    """Wire the orchestrator and its collaborators from settings."""
    repository = LabResultRepository(db_engine)
    vocabulary = BiomarkerVocabulary.from_yaml(
        Path(settings.extraction.vocabulary_path),
        fuzzy_threshold=settings.extraction.fuzzy_threshold,
    )

    return LabUploadOrchestrator(
        storage=build_storage(settings),
        repository=repository,
        progress_store=progress_store or build_progress_store(settings),
        preprocessor=LabTextPreprocessor(PreprocessorConfig.from_settings(settings)),
        extractor=BiomarkerExtractor(vocabulary, line_window=settings.extraction.line_window),
        tier_limits=YearlyUploadLimit(repository, settings.tier_limits.max_uploads_per_year),
        summarizer=build_summarizer(settings),
        extraction_assistant=build_extraction_assistant(settings, vocabulary),
        ocr_engine=build_ocr_engine(settings),
        allowed_mimetypes=settings.upload.allowed_mimetypes,
        max_size_bytes=settings.upload.max_size_bytes,
        retry_policy=RetryPolicy(
            max_retries=settings.processing.max_retries,
            initial_backoff_seconds=settings.processing.initial_backoff_seconds,
            max_backoff_seconds=settings.processing.max_backoff_seconds,
            jitter_seconds=settings.processing.backoff_jitter_seconds,
        ),
        reader_options={
            "scanned_page_min_chars": settings.ocr.scanned_page_min_chars,
            "render_resolution": settings.ocr.render_resolution,
        },
    )


def get_orchestrator() -> LabUploadOrchestrator:
    """Get or create the process-wide orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator(settings, engine)
    return _orchestrator


def get_lookup_service() -> LabLookupService:
    global _lookup
    if _lookup is None:
        vocabulary = get_orchestrator().extractor.vocabulary
        _lookup = LabLookupService(engine, vocabulary=vocabulary)
    return _lookup


def process_lab_result(lab_result_id: int) -> Optional[dict]:
    """RQ job: run the full pipeline for one lab result."""
    logger.info(f"Starting processing for lab result {lab_result_id}")
    result = get_orchestrator().process(lab_result_id)
    return result.to_dict() if result else None
