"""
Unit tests for object storage, the lab result repository and upload quotas.
"""
from datetime import datetime, timedelta

import pytest

pytestmark = pytest.mark.unit


class TestLocalObjectStorage:
    """Test filesystem-backed upload storage."""

    def test_save_and_load(self, storage):
        file_ref = storage.save(b"%PDF-1.4 data", "report.pdf")

        assert file_ref.endswith("_report.pdf")
        assert storage.load(file_ref) == b"%PDF-1.4 data"

    def test_unique_refs(self, storage):
        """Test saving the same name twice does not overwrite."""
        first = storage.save(b"one", "report.pdf")
        second = storage.save(b"two", "report.pdf")

        assert first != second
        assert storage.load(first) == b"one"

    def test_unsafe_names_sanitized(self, storage):
        """Test path components and odd characters are stripped."""
        file_ref = storage.save(b"x", "../../etc/my lab (1).pdf")

        assert "/" not in file_ref
        assert ".." not in file_ref
        assert file_ref.endswith("my_lab_1_.pdf")

    def test_missing_file_is_transient(self, storage):
        """Test read failures are reported as transient."""
        from workers.ingestion.errors import TransientIOError

        with pytest.raises(TransientIOError):
            storage.load("does-not-exist.pdf")

    def test_delete(self, storage):
        """Test deleting a stored upload, twice."""
        file_ref = storage.save(b"data", "report.pdf")

        storage.delete(file_ref)
        storage.delete(file_ref)

        assert not (storage.root / file_ref).exists()


class TestLabResultRepository:
    """Test lab result persistence."""

    def _create(self, repository, user_id=1):
        return repository.create(
            user_id=user_id,
            file_ref="abc_report.pdf",
            file_name="report.pdf",
            file_type="application/pdf",
            file_size=1024,
            notes="fasting",
        )

    def test_create(self, repository):
        row = self._create(repository)

        assert row.id is not None
        assert row.status == "uploading"
        assert row.lab_metadata == {}
        assert row.uploaded_at is not None

    def test_get_for_user(self, repository):
        """Test another user's lab result is not returned."""
        row = self._create(repository, user_id=1)

        assert repository.get_for_user(row.id, 1).id == row.id
        assert repository.get_for_user(row.id, 2) is None

    def test_update_metadata_merges(self, repository):
        """Test metadata keys from separate stages accumulate."""
        row = self._create(repository)

        assert repository.update_metadata(row.id, {"preprocessedText": {"rawText": "x"}})
        assert repository.update_metadata(row.id, {"summary": "All normal"})

        stored = repository.get(row.id).lab_metadata
        assert stored["preprocessedText"] == {"rawText": "x"}
        assert stored["summary"] == "All normal"

    def test_writes_to_deleted_row(self, repository):
        """Test writes after deletion report the row is gone."""
        from workers.ingestion.biomarker_extractor import BiomarkerRecord

        row = self._create(repository)
        assert repository.delete(row.id, 1)

        assert repository.update_metadata(row.id, {"summary": "x"}) is False
        assert repository.set_status(row.id, "processing") is False
        assert repository.replace_biomarkers(row.id, 1, [BiomarkerRecord("Glucose", 92)]) is False
        assert repository.get(row.id) is None

    def test_set_status(self, repository):
        row = self._create(repository)
        repository.set_status(row.id, "error", error_message="Could not read this file")

        stored = repository.get(row.id)
        assert stored.status == "error"
        assert stored.error_message == "Could not read this file"

    def test_replace_biomarkers(self, repository, db_engine):
        """Test biomarker rows are replaced, not appended."""
        from sqlmodel import Session, select
        from backend.models.db import BiomarkerResult
        from workers.ingestion.biomarker_extractor import BiomarkerRecord

        row = self._create(repository)
        repository.replace_biomarkers(row.id, 1, [
            BiomarkerRecord("Glucose", 92, "mg/dL", "70-99", "2024-01-15", "metabolic"),
            BiomarkerRecord("TSH", 2.1, "mIU/L", None, "2024-01-15", "thyroid"),
        ])
        repository.replace_biomarkers(row.id, 1, [BiomarkerRecord("Glucose", 95, "mg/dL")])

        with Session(db_engine) as session:
            rows = session.exec(select(BiomarkerResult).where(BiomarkerResult.lab_result_id == row.id)).all()

        assert len(rows) == 1
        assert rows[0].value == 95.0
        assert rows[0].user_id == 1

    def test_delete_requires_owner(self, repository):
        """Test users cannot delete each other's lab results."""
        row = self._create(repository, user_id=1)

        assert repository.delete(row.id, 2) is False
        assert repository.get(row.id) is not None
        assert repository.delete(row.id, 1) is True
        assert repository.delete(row.id, 1) is False

    def test_count_uploads_since(self, repository):
        self._create(repository, user_id=1)
        self._create(repository, user_id=1)
        self._create(repository, user_id=2)

        since = datetime.utcnow() - timedelta(days=1)
        assert repository.count_uploads_since(1, since) == 2
        assert repository.count_uploads_since(1, datetime.utcnow() + timedelta(days=1)) == 0


class TestYearlyUploadLimit:
    """Test tier-based upload quotas."""

    def test_unlimited(self, repository):
        from workers.ingestion.tier_limits import YearlyUploadLimit
        assert YearlyUploadLimit(repository).can_upload_lab(1) is True

    def test_limit_reached(self, repository):
        """Test uploads are refused once the yearly allowance is used."""
        from workers.ingestion.tier_limits import YearlyUploadLimit

        limit = YearlyUploadLimit(repository, max_uploads_per_year=2)
        assert limit.can_upload_lab(1) is True

        for _ in range(2):
            repository.create(1, "ref", "report.pdf", "application/pdf", 10)

        assert limit.can_upload_lab(1) is False
        assert limit.can_upload_lab(2) is True

    def test_previous_year_not_counted(self, repository):
        """Test the allowance resets with the calendar year."""
        from workers.ingestion.tier_limits import YearlyUploadLimit

        repository.create(1, "ref", "report.pdf", "application/pdf", 10)
        next_year = datetime(datetime.utcnow().year + 1, 3, 1)
        limit = YearlyUploadLimit(repository, max_uploads_per_year=1, clock=lambda: next_year)

        assert limit.can_upload_lab(1) is True

    def test_zero_disables_uploads(self, repository):
        from workers.ingestion.tier_limits import YearlyUploadLimit
        assert YearlyUploadLimit(repository, max_uploads_per_year=0).can_upload_lab(1) is False
