"""
Read-side search over stored biomarkers and summaries.

Every query filters on the requesting user's id in SQL, so records of
other users never reach the ranking step.
"""

import logging
from typing import Any, Dict, List, Optional

from rapidfuzz import fuzz
from sqlmodel import Session, select

from backend.models.db import LabResult, BiomarkerResult
from workers.ingestion.vocabulary import BiomarkerVocabulary

logger = logging.getLogger(__name__)


class LabLookupService:

    def __init__(
        self,
        engine,
        vocabulary: Optional[BiomarkerVocabulary] = None,
        min_score: float = 60.0,
    ):
        self.engine = engine
        self.vocabulary = vocabulary
        self.min_score = min_score

    def search_biomarkers(self, user_id: int, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Biomarker rows whose name best matches the query, newest first on ties."""
        query = (query or "").strip()
        if not query:
            return []

        canonical = None
        if self.vocabulary is not None:
            definition = self.vocabulary.lookup(query)
            canonical = definition.canonical_name if definition else None

        with Session(self.engine) as session:
            rows = session.exec(
                select(BiomarkerResult, LabResult)
                .join(LabResult, LabResult.id == BiomarkerResult.lab_result_id)
                .where(BiomarkerResult.user_id == user_id)
                .where(LabResult.user_id == user_id)
            ).all()

        scored = []
        for biomarker, lab in rows:
            if canonical and biomarker.name == canonical:
                score = 100.0
            else:
                score = fuzz.WRatio(query.lower(), biomarker.name.lower())
            if score >= self.min_score:
                scored.append((score, lab.uploaded_at, biomarker.id, biomarker, lab))

        scored.sort(key=lambda item: (-item[0], -item[1].timestamp(), item[2]))

        return [
            {
                "lab_result_id": lab.id,
                "name": biomarker.name,
                "value": biomarker.value,
                "unit": biomarker.unit,
                "reference_range": biomarker.reference_range,
                "category": biomarker.category,
                "test_date": biomarker.test_date,
                "score": round(score, 1),
            }
            for score, _, _, biomarker, lab in scored[:limit]
        ]

    def search_summaries(self, user_id: int, query: str, limit: int = 3) -> List[Dict[str, Any]]:
        """Summaries ranked by keyword overlap with the query."""
        query = (query or "").strip()
        if not query:
            return self.recent_summaries(user_id, limit)

        scored = []
        for lab in self._labs_with_summary(user_id):
            summary = lab.lab_metadata["summary"]
            score = fuzz.token_set_ratio(query.lower(), summary.lower())
            if score >= self.min_score:
                scored.append((score, lab))

        scored.sort(key=lambda item: (-item[0], -item[1].uploaded_at.timestamp(), item[1].id))
        return [self._summary_dict(lab, score) for score, lab in scored[:limit]]

    def recent_summaries(self, user_id: int, limit: int = 5) -> List[Dict[str, Any]]:
        labs = sorted(self._labs_with_summary(user_id), key=lambda lab: lab.uploaded_at, reverse=True)
        return [self._summary_dict(lab) for lab in labs[:limit]]

    def _labs_with_summary(self, user_id: int) -> List[LabResult]:
        with Session(self.engine) as session:
            labs = session.exec(select(LabResult).where(LabResult.user_id == user_id)).all()
        return [lab for lab in labs if (lab.lab_metadata or {}).get("summary")]

    @staticmethod
    def _summary_dict(lab: LabResult, score: Optional[float] = None) -> Dict[str, Any]:
        result = {
            "lab_result_id": lab.id,
            "file_name": lab.file_name,
            "uploaded_at": lab.uploaded_at.isoformat(),
            "summary": lab.lab_metadata["summary"],
            "summarized_at": lab.lab_metadata.get("summarizedAt"),
        }
        if score is not None:
            result["score"] = round(score, 1)
        return result
