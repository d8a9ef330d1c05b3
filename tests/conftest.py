"""
Shared pytest fixtures for Lab Ingestion tests.

Provides mocked dependencies to avoid actual API calls and external services.
"""

import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import Mock, patch

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

# Settings are cached on first import, so the environment must be set up
# before any backend module is imported.
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="lab_ingestion_tests_"))
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_ROOT / 'app.db'}"
os.environ["STORAGE_BASE_PATH"] = str(_TEST_ROOT / "storage")
os.environ["GEMINI_API_KEY"] = ""
os.environ["PROGRESS_BACKEND"] = "memory"
os.environ["PROCESSING_DISPATCH"] = "background"

from tests.fixtures.sample_lab_reports import (  # noqa: E402
    SAMPLE_LAB_TEXT,
    build_docx,
    build_pdf,
    build_png,
    lab_pdf_pages,
)

VOCABULARY_PATH = PROJECT_ROOT / "config" / "biomarkers.yaml"


# =============================================================================
# Database / Storage
# =============================================================================

@pytest.fixture
def test_database_url(tmp_path: Path) -> str:
    """Create a temporary SQLite database URL."""
    return f"sqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
def db_engine(test_database_url: str):
    """Engine with all tables created."""
    from sqlmodel import create_engine
    from backend.core.database import create_db_and_tables

    engine = create_engine(test_database_url, echo=False, connect_args={"check_same_thread": False})
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def repository(db_engine):
    from workers.ingestion.repository import LabResultRepository
    return LabResultRepository(db_engine)


@pytest.fixture
def storage(tmp_path: Path):
    from workers.ingestion.storage import LocalObjectStorage
    return LocalObjectStorage(str(tmp_path / "storage"), "lab-uploads")


@pytest.fixture
def make_lab_result(repository, storage):
    """Create a stored upload and its LabResult row directly."""
    def _make(user_id: int = 1, content: bytes = b"", mimetype: str = "application/pdf",
              file_name: str = "report.pdf", metadata: Optional[Dict[str, Any]] = None):
        file_ref = storage.save(content, file_name)
        row = repository.create(user_id, file_ref, file_name, mimetype, len(content))
        if metadata:
            repository.update_metadata(row.id, metadata)
        return row.id
    return _make


# =============================================================================
# Mock Redis
# =============================================================================

@pytest.fixture
def mock_redis():
    """Create a mock Redis client using fakeredis."""
    import fakeredis
    return fakeredis.FakeRedis()


# =============================================================================
# Mock Gemini API
# =============================================================================

@pytest.fixture
def mock_gemini_model():
    """Mock Gemini model returning a fixed summary."""
    mock_model = Mock()
    mock_response = Mock()
    mock_response.text = "Cholesterol values are mostly within range; LDL is slightly elevated."
    mock_model.generate_content.return_value = mock_response
    return mock_model


@pytest.fixture
def mock_gemini(mock_gemini_model):
    """Patch Gemini configuration and model construction."""
    with patch('google.generativeai.configure') as mock_configure, \
         patch('google.generativeai.GenerativeModel', return_value=mock_gemini_model) as mock_cls:
        yield {"configure": mock_configure, "model_class": mock_cls, "model": mock_gemini_model}


# =============================================================================
# Pipeline collaborators
# =============================================================================

@pytest.fixture
def vocabulary():
    from workers.ingestion.vocabulary import BiomarkerVocabulary
    return BiomarkerVocabulary.from_yaml(VOCABULARY_PATH)


@pytest.fixture
def extractor(vocabulary):
    from workers.ingestion.biomarker_extractor import BiomarkerExtractor
    return BiomarkerExtractor(vocabulary)


@pytest.fixture
def preprocessor():
    from workers.ingestion.text_preprocessor import LabTextPreprocessor
    return LabTextPreprocessor()


@pytest.fixture
def fake_ocr():
    """OCR engine returning canned text without invoking Tesseract."""
    from workers.ingestion.ocr import OcrEngine, OcrResult

    class FakeOcrEngine(OcrEngine):
        name = "fake-ocr"

        def __init__(self):
            self.text = "Hemoglobin 14.2 g/dL (13.0-17.0 g/dL)\nFerritin 80 ng/mL"
            self.confidence = 0.87
            self.calls = 0

        def recognize(self, image):
            self.calls += 1
            return OcrResult(text=self.text, confidence=self.confidence, engine=self.name)

    return FakeOcrEngine()


@pytest.fixture
def recording_progress_store():
    """In-memory progress store that keeps every status it was given."""
    from workers.ingestion.progress import InMemoryProgressStore

    class RecordingProgressStore(InMemoryProgressStore):
        def __init__(self):
            super().__init__(ttl_seconds=300)
            self.history: List[tuple] = []

        def update(self, lab_result_id, status, progress, message=None, error=None):
            entry = super().update(lab_result_id, status, progress, message, error)
            self.history.append((lab_result_id, entry.status, entry.progress))
            return entry

        def statuses(self, lab_result_id) -> List[str]:
            return [status for key, status, _ in self.history if key == lab_result_id]

    return RecordingProgressStore()


@pytest.fixture
def allow_all_uploads():
    from workers.ingestion.tier_limits import TierLimitService

    class AllowAll(TierLimitService):
        def can_upload_lab(self, user_id: int) -> bool:
            return True

    return AllowAll()


@pytest.fixture
def make_orchestrator(storage, repository, recording_progress_store, preprocessor,
                      extractor, allow_all_uploads, fake_ocr):
    """Build an orchestrator from test collaborators; keyword overrides replace any of them."""
    from backend.core.config import UploadSettings
    from workers.ingestion.orchestrator import LabUploadOrchestrator, RetryPolicy

    def _make(**overrides):
        options = dict(
            storage=storage,
            repository=repository,
            progress_store=recording_progress_store,
            preprocessor=preprocessor,
            extractor=extractor,
            tier_limits=allow_all_uploads,
            summarizer=None,
            ocr_engine=fake_ocr,
            allowed_mimetypes=UploadSettings().allowed_mimetypes,
            max_size_bytes=UploadSettings().max_size_bytes,
            retry_policy=RetryPolicy(max_retries=3, initial_backoff_seconds=0, jitter_seconds=0),
            sleep=lambda seconds: None,
        )
        options.update(overrides)
        return LabUploadOrchestrator(**options)

    return _make


# =============================================================================
# Sample documents
# =============================================================================

@pytest.fixture
def lab_docx_bytes() -> bytes:
    """DOCX with results as paragraphs and a table."""
    return build_docx(
        paragraphs=SAMPLE_LAB_TEXT.split("\n")[:4],
        table_rows=[
            ["Test", "Result", "Units", "Reference"],
            ["Hemoglobin", "14.2", "g/dL", "13.0-17.0"],
            ["Ferritin", "80", "ng/mL", "30-400"],
        ],
    )


@pytest.fixture
def empty_docx_bytes() -> bytes:
    return build_docx()


@pytest.fixture
def lab_pdf_bytes() -> bytes:
    return build_pdf(lab_pdf_pages())


@pytest.fixture
def png_bytes() -> bytes:
    return build_png()
