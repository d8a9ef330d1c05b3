"""
Upload Orchestrator.

Owns the per-upload state machine:

    uploading -> processing -> extracting -> summarizing -> completed
                      ^             |             |
                      +-- retrying <+-------------+        (any) -> error

Each stage writes its own key into the LabResult metadata document, so a
retry resumes after the last stage that was stored. Every write first checks
that the lab result still exists; a deleted upload stops quietly.
"""

import random
import time
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from backend.models.db import LabResult
from workers.ingestion import progress as status
from workers.ingestion.biomarker_extractor import BiomarkerExtractor, BiomarkerRecord, ExtractionOutcome, parse_test_date
from workers.ingestion.errors import (
    FormatExtractionError,
    QuotaExceededError,
    SummarizationFailure,
    TransientIOError,
    ValidationError,
)
from workers.ingestion.progress import ProgressStore, UploadProgress
from workers.ingestion.readers import get_reader, sniff_mimetype
from workers.ingestion.repository import LabResultRepository
from workers.ingestion.storage import ObjectStorage
from workers.ingestion.summarizer import ExtractionAssistant, TextCompletionService
from workers.ingestion.text_preprocessor import LabTextPreprocessor, PreprocessedText
from workers.ingestion.tier_limits import TierLimitService

logger = logging.getLogger(__name__)

# Progress percentage reported on entering each state
STAGE_PROGRESS = {
    status.UPLOADING: 10,
    status.PROCESSING: 20,
    status.EXTRACTING: 50,
    status.SUMMARIZING: 80,
    status.COMPLETED: 100,
}


@dataclass
class UploadedFile:
    """File handed over by the HTTP layer."""
    content: bytes
    mimetype: str
    filename: str

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class RetryPolicy:
    max_retries: int = 3
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    jitter_seconds: float = 0.5

    def delay(self, attempt: int) -> float:
        """Exponential backoff with jitter for the given retry number (1-based)."""
        base = min(self.initial_backoff_seconds * (2 ** (attempt - 1)), self.max_backoff_seconds)
        return base + random.uniform(0, self.jitter_seconds)


class LabResultDeleted(Exception):
    """The lab result was deleted while its upload was in flight."""


class LabUploadOrchestrator:

    def __init__(
        self,
        storage: ObjectStorage,
        repository: LabResultRepository,
        progress_store: ProgressStore,
        preprocessor: LabTextPreprocessor,
        extractor: BiomarkerExtractor,
        tier_limits: TierLimitService,
        summarizer: Optional[TextCompletionService] = None,
        ocr_engine=None,
        allowed_mimetypes: Optional[List[str]] = None,
        max_size_bytes: int = 50 * 1024 * 1024,
        retry_policy: Optional[RetryPolicy] = None,
        reader_options: Optional[dict] = None,
        sleep: Callable[[float], None] = time.sleep,
        extraction_assistant: Optional[ExtractionAssistant] = None,
    ):
        self.storage = storage
        self.repository = repository
        self.progress_store = progress_store
        self.preprocessor = preprocessor
        self.extractor = extractor
        self.tier_limits = tier_limits
        self.summarizer = summarizer
        self.ocr_engine = ocr_engine
        self.allowed_mimetypes = allowed_mimetypes
        self.max_size_bytes = max_size_bytes
        self.retry_policy = retry_policy or RetryPolicy()
        self.reader_options = reader_options or {}
        self.sleep = sleep
        self.extraction_assistant = extraction_assistant

    # ------------------------------------------------------------------
    # Acceptance
    # ------------------------------------------------------------------

    def accept_upload(self, user_id: int, upload: UploadedFile, notes: Optional[str] = None) -> int:
        """
        Check quota, validate, store the file and create the LabResult row.

        Raises:
            QuotaExceededError: the user's tier does not allow another upload
            ValidationError: bad mimetype, size or file content
            TransientIOError: storage or database unavailable

        Returns:
            The new lab result id, in ``uploading`` state
        """
        if not self.tier_limits.can_upload_lab(user_id):
            raise QuotaExceededError()

        self.validate_upload(upload.mimetype, upload.size, upload.content)

        file_ref = self.storage.save(upload.content, upload.filename)
        try:
            row = self.repository.create(
                user_id=user_id,
                file_ref=file_ref,
                file_name=upload.filename,
                file_type=upload.mimetype,
                file_size=upload.size,
                notes=notes,
            )
        except Exception:
            self._discard_stored_file(file_ref)
            raise

        self._report(row.id, status.UPLOADING, "File uploaded, starting processing...")
        logger.info(f"Accepted upload {upload.filename} for user {user_id} as lab result {row.id}")
        return row.id

    def validate_upload(self, mimetype: str, size: int, content: Optional[bytes] = None) -> None:
        if self.allowed_mimetypes is not None and mimetype not in self.allowed_mimetypes:
            raise ValidationError(
                f"Unsupported file type: {mimetype}. Allowed types: PDF, DOCX, PNG and JPEG."
            )
        if size <= 0:
            raise ValidationError("Uploaded file is empty")
        if size > self.max_size_bytes:
            limit_mb = self.max_size_bytes // (1024 * 1024)
            raise ValidationError(f"File size exceeds the {limit_mb}MB limit")
        if content is not None:
            detected = sniff_mimetype(content)
            if detected != mimetype:
                raise ValidationError(f"File content does not match its declared type ({mimetype})")

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process(self, lab_result_id: int) -> Optional[UploadProgress]:
        """
        Run the pipeline for one lab result, retrying transient failures.

        Returns:
            Final UploadProgress, or None when the lab result was deleted
        """
        retries = 0
        while True:
            try:
                self._run_stages(lab_result_id)
                break
            except LabResultDeleted:
                logger.info(f"Lab result {lab_result_id} was deleted mid-pipeline, stopping")
                self.progress_store.discard(lab_result_id)
                return None
            except (ValidationError, FormatExtractionError) as e:
                logger.error(f"Lab result {lab_result_id} failed: {e}")
                self._fail(lab_result_id, e.user_message, e.user_message)
                break
            except TransientIOError as e:
                retries += 1
                cause = f"{e}: {e.cause}" if e.cause is not None else str(e)
                if retries > self.retry_policy.max_retries:
                    logger.error(f"Lab result {lab_result_id} failed after {self.retry_policy.max_retries} retries: {cause}")
                    self._fail(
                        lab_result_id,
                        f"Processing failed after {self.retry_policy.max_retries} retries",
                        str(e),
                    )
                    break

                delay = self.retry_policy.delay(retries)
                logger.warning(
                    f"Transient failure for lab result {lab_result_id} ({cause}), "
                    f"retry {retries}/{self.retry_policy.max_retries} in {delay:.1f}s"
                )
                self._report(
                    lab_result_id,
                    status.RETRYING,
                    f"Retrying (attempt {retries} of {self.retry_policy.max_retries})...",
                    error=str(e),
                )
                self.sleep(delay)
            except Exception as e:
                logger.error(f"Unexpected error processing lab result {lab_result_id}: {e}", exc_info=True)
                self._fail(lab_result_id, "Unexpected error while processing lab result", "Unexpected error")
                break

        return self.progress_store.get(lab_result_id)

    def _run_stages(self, lab_result_id: int) -> None:
        row = self._require(lab_result_id)

        # Rows may also arrive from reprocessing, so re-check the stored file
        self.validate_upload(row.file_type, row.file_size)

        self._transition(lab_result_id, status.PROCESSING, "Processing lab result...")
        metadata = row.lab_metadata or {}

        if "preprocessedText" in metadata:
            logger.info(f"Lab result {lab_result_id}: reusing stored preprocessed text")
            preprocessed = PreprocessedText.from_dict(metadata["preprocessedText"])
        else:
            preprocessed = self._preprocess(row)
            self._write(lab_result_id, {"preprocessedText": preprocessed.to_dict()})

        self._transition(lab_result_id, status.EXTRACTING, "Extracting biomarkers...")

        if "biomarkers" in metadata:
            logger.info(f"Lab result {lab_result_id}: reusing stored biomarkers")
            outcome = ExtractionOutcome.from_dict(metadata["biomarkers"])
        else:
            outcome = self.extractor.extract(preprocessed.normalized_text)
            self._assist_extraction(lab_result_id, preprocessed, outcome)
            fallback_date = parse_test_date(preprocessed.normalized_text) or row.uploaded_at.date().isoformat()
            for record in outcome.biomarkers:
                if not record.test_date:
                    record.test_date = fallback_date
            self._write(lab_result_id, {"biomarkers": outcome.to_dict()})
            if not self.repository.replace_biomarkers(lab_result_id, row.user_id, outcome.biomarkers):
                raise LabResultDeleted(lab_result_id)

        self._transition(lab_result_id, status.SUMMARIZING, "Generating summary...")

        summary = self._summarize(lab_result_id, preprocessed, outcome.biomarkers)
        if summary:
            self._write(lab_result_id, {
                "summary": summary,
                "summarizedAt": datetime.now(timezone.utc).isoformat(),
            })

        self._transition(lab_result_id, status.COMPLETED, "Processing complete")
        logger.info(
            f"Lab result {lab_result_id} completed: {len(outcome.biomarkers)} biomarkers, "
            f"{len(outcome.parsing_errors)} parsing errors"
        )

    def _preprocess(self, row: LabResult) -> PreprocessedText:
        data = self.storage.load(row.file_ref)
        reader = get_reader(row.file_type, ocr_engine=self.ocr_engine, **self.reader_options)
        raw = reader.extract_raw_text(data)
        logger.info(
            f"Lab result {row.id}: read {len(raw.text)} chars from {raw.page_count} page(s) "
            f"of {row.file_type}"
        )
        return self.preprocessor.preprocess(
            raw.text,
            raw.original_format,
            ocr_engine=raw.ocr_engine,
            confidence=raw.ocr_confidence,
        )

    def _assist_extraction(
        self,
        lab_result_id: int,
        preprocessed: PreprocessedText,
        outcome: ExtractionOutcome,
    ) -> None:
        """Add model-suggested biomarkers for names the patterns did not find."""
        if self.extraction_assistant is None or not preprocessed.normalized_text:
            return
        try:
            suggested = self.extraction_assistant.extract(preprocessed.normalized_text)
        except Exception as e:
            logger.warning(f"Lab result {lab_result_id}: extraction assist skipped ({e})", exc_info=True)
            return

        added = outcome.add_missing(suggested)
        if added:
            logger.info(
                f"Lab result {lab_result_id}: extraction assist added {len(added)} biomarkers "
                f"({', '.join(record.name for record in added)})"
            )

    def _summarize(
        self,
        lab_result_id: int,
        preprocessed: PreprocessedText,
        biomarkers: List[BiomarkerRecord],
    ) -> Optional[str]:
        if self.summarizer is None or not preprocessed.normalized_text:
            return None
        try:
            return self.summarizer.summarize(preprocessed.normalized_text, biomarkers)
        except SummarizationFailure as e:
            logger.warning(f"Lab result {lab_result_id}: summary skipped ({e})")
            return None
        except Exception as e:
            # Summaries never decide the outcome of an upload
            logger.warning(f"Lab result {lab_result_id}: summary skipped after {type(e).__name__}: {e}", exc_info=True)
            return None

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def _require(self, lab_result_id: int) -> LabResult:
        row = self.repository.get(lab_result_id)
        if row is None:
            raise LabResultDeleted(lab_result_id)
        return row

    def _write(self, lab_result_id: int, updates: dict) -> None:
        if not self.repository.update_metadata(lab_result_id, updates):
            raise LabResultDeleted(lab_result_id)

    def _transition(self, lab_result_id: int, new_status: str, message: str) -> None:
        if not self.repository.set_status(lab_result_id, new_status):
            raise LabResultDeleted(lab_result_id)
        self._report(lab_result_id, new_status, message)
        logger.info(f"Lab result {lab_result_id}: -> {new_status}")

    def _discard_stored_file(self, file_ref: str) -> None:
        try:
            self.storage.delete(file_ref)
        except TransientIOError as e:
            logger.error(f"Could not remove orphaned upload {file_ref}: {e}")

    def _report(self, lab_result_id: int, new_status: str, message: str, error: Optional[str] = None) -> None:
        progress = STAGE_PROGRESS.get(new_status, 0)
        self.progress_store.update(lab_result_id, new_status, progress, message=message, error=error)

    def _fail(self, lab_result_id: int, user_message: str, cause: str) -> None:
        self.progress_store.update(lab_result_id, status.ERROR, 0, message=user_message, error=cause)
        try:
            self.repository.set_status(lab_result_id, status.ERROR, error_message=user_message)
        except TransientIOError as e:
            logger.error(f"Could not record error status for lab result {lab_result_id}: {e}")
