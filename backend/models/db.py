from datetime import datetime
from typing import Optional, Dict, Any
from sqlmodel import Field, SQLModel, Column, JSON


class LabResult(SQLModel, table=True):
    """
    One row per uploaded lab report.

    ``lab_metadata`` holds the per-stage documents written by the pipeline:
    ``preprocessedText``, then ``biomarkers``, then ``summary``/``summarizedAt``.
    """
    __tablename__ = "lab_result"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    file_ref: str
    file_name: str
    file_type: str
    file_size: int = 0
    uploaded_at: datetime = Field(default_factory=datetime.utcnow)
    notes: Optional[str] = None
    status: str = Field(default="uploading")  # mirrors UploadProgress.status
    error_message: Optional[str] = None
    lab_metadata: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))


class BiomarkerResult(SQLModel, table=True):
    """
    Normalized biomarker row extracted from a lab result.

    ``user_id`` is copied from the owning LabResult so lookups can be
    scoped without a join.
    """
    __tablename__ = "biomarker_result"

    id: Optional[int] = Field(default=None, primary_key=True)
    lab_result_id: int = Field(foreign_key="lab_result.id", index=True)
    user_id: int = Field(index=True)
    name: str = Field(index=True)
    value: float
    unit: str = ""
    reference_range: Optional[str] = None
    category: Optional[str] = Field(default=None, index=True)
    test_date: Optional[str] = None  # ISO date
    created_at: datetime = Field(default_factory=datetime.utcnow)
