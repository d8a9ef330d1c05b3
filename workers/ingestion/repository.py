"""
Relational store access for lab results and biomarker rows.

Every operation opens its own session. Database connection failures are
raised as TransientIOError so the orchestrator can retry them.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, Optional

from sqlalchemy import delete, func
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from backend.models.db import LabResult, BiomarkerResult
from workers.ingestion.errors import TransientIOError

logger = logging.getLogger(__name__)


class LabResultRepository:

    def __init__(self, engine):
        self.engine = engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except OperationalError as e:
            raise TransientIOError("Database operation failed", cause=e) from e

    def create(
        self,
        user_id: int,
        file_ref: str,
        file_name: str,
        file_type: str,
        file_size: int,
        notes: Optional[str] = None,
    ) -> LabResult:
        with self._session() as session:
            row = LabResult(
                user_id=user_id,
                file_ref=file_ref,
                file_name=file_name,
                file_type=file_type,
                file_size=file_size,
                notes=notes,
                status="uploading",
                lab_metadata={},
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def get(self, lab_result_id: int) -> Optional[LabResult]:
        with self._session() as session:
            return session.get(LabResult, lab_result_id)

    def get_for_user(self, lab_result_id: int, user_id: int) -> Optional[LabResult]:
        row = self.get(lab_result_id)
        if row is None or row.user_id != user_id:
            return None
        return row

    def update_metadata(self, lab_result_id: int, updates: Dict[str, Any]) -> bool:
        """
        Merge keys into the metadata document.

        Returns:
            False when the row no longer exists (nothing is written)
        """
        with self._session() as session:
            row = session.get(LabResult, lab_result_id)
            if row is None:
                return False
            # Reassign so SQLAlchemy sees the JSON column change
            row.lab_metadata = {**(row.lab_metadata or {}), **updates}
            session.add(row)
            session.commit()
            return True

    def set_status(self, lab_result_id: int, status: str, error_message: Optional[str] = None) -> bool:
        with self._session() as session:
            row = session.get(LabResult, lab_result_id)
            if row is None:
                return False
            row.status = status
            row.error_message = error_message
            session.add(row)
            session.commit()
            return True

    def replace_biomarkers(self, lab_result_id: int, user_id: int, records: Iterable) -> bool:
        """Replace the normalized biomarker rows for a lab result."""
        with self._session() as session:
            if session.get(LabResult, lab_result_id) is None:
                return False
            session.exec(delete(BiomarkerResult).where(BiomarkerResult.lab_result_id == lab_result_id))
            for record in records:
                session.add(BiomarkerResult(
                    lab_result_id=lab_result_id,
                    user_id=user_id,
                    name=record.name,
                    value=record.value,
                    unit=record.unit,
                    reference_range=record.reference_range,
                    category=record.category,
                    test_date=record.test_date,
                ))
            session.commit()
            return True

    def delete(self, lab_result_id: int, user_id: int) -> bool:
        with self._session() as session:
            row = session.get(LabResult, lab_result_id)
            if row is None or row.user_id != user_id:
                return False
            session.exec(delete(BiomarkerResult).where(BiomarkerResult.lab_result_id == lab_result_id))
            session.delete(row)
            session.commit()
            logger.info(f"Deleted lab result {lab_result_id}")
            return True

    def count_uploads_since(self, user_id: int, since: datetime) -> int:
        with self._session() as session:
            statement = (
                select(func.count())
                .select_from(LabResult)
                .where(LabResult.user_id == user_id)
                .where(LabResult.uploaded_at >= since)
            )
            return session.exec(statement).one()
