"""
Lab Result Routes - upload, progress polling, results, search.
"""

import logging
from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, Query, UploadFile

from backend.core.config import get_settings
from workers.ingestion.errors import QuotaExceededError, TransientIOError, ValidationError
from workers.ingestion.lookup import LabLookupService
from workers.ingestion.main import get_lookup_service, get_orchestrator
from workers.ingestion.orchestrator import LabUploadOrchestrator, UploadedFile

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(prefix="/labs", tags=["Lab Results"])


def get_dispatcher():
    """
    Return a callable that schedules processing of a lab result id.

    ``queue`` dispatch enqueues an RQ job; ``background`` runs the
    orchestrator after the response is sent.
    """
    if settings.processing.dispatch == "queue":
        from backend.core.queue import get_queue

        def enqueue(background_tasks: BackgroundTasks, orchestrator: LabUploadOrchestrator, lab_result_id: int):
            get_queue().enqueue(
                'workers.ingestion.main.process_lab_result',
                lab_result_id,
                job_id=f"lab_result_{lab_result_id}",
                job_timeout=settings.processing.job_timeout,
            )
        return enqueue

    def run_in_background(background_tasks: BackgroundTasks, orchestrator: LabUploadOrchestrator, lab_result_id: int):
        background_tasks.add_task(orchestrator.process, lab_result_id)
    return run_in_background


@router.post("")
def upload_lab_result(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    user_id: int = Form(...),
    notes: Optional[str] = Form(None),
    orchestrator: LabUploadOrchestrator = Depends(get_orchestrator),
    dispatch=Depends(get_dispatcher),
):
    """
    Upload a lab report (PDF, DOCX, PNG or JPEG) for processing.

    Returns the lab result id; poll ``/labs/{id}/progress`` for status.
    """
    content = file.file.read()
    upload = UploadedFile(
        content=content,
        mimetype=file.content_type or "application/octet-stream",
        filename=file.filename or "upload",
    )

    try:
        lab_result_id = orchestrator.accept_upload(user_id, upload, notes=notes)
    except QuotaExceededError as e:
        raise HTTPException(status_code=403, detail=e.user_message)
    except ValidationError as e:
        code = 413 if upload.size > orchestrator.max_size_bytes else 400
        raise HTTPException(status_code=code, detail=e.user_message)
    except TransientIOError as e:
        logger.error(f"Upload of {upload.filename} failed: {e} ({e.cause})")
        raise HTTPException(status_code=503, detail="Storage temporarily unavailable, please retry")

    dispatch(background_tasks, orchestrator, lab_result_id)

    return {"lab_result_id": lab_result_id, "status": "uploading"}


@router.get("/search/biomarkers")
def search_biomarkers(
    user_id: int,
    q: str = Query(..., min_length=1),
    limit: int = Query(10, ge=1, le=100),
    lookup: LabLookupService = Depends(get_lookup_service),
):
    """Search the user's biomarker values by name."""
    return {"results": lookup.search_biomarkers(user_id, q, limit=limit)}


@router.get("/search/summaries")
def search_summaries(
    user_id: int,
    q: str = "",
    limit: int = Query(3, ge=1, le=50),
    lookup: LabLookupService = Depends(get_lookup_service),
):
    """Search the user's lab summaries; an empty query returns the most recent."""
    return {"results": lookup.search_summaries(user_id, q, limit=limit)}


@router.get("/{lab_result_id}/progress")
def get_progress(
    lab_result_id: int,
    orchestrator: LabUploadOrchestrator = Depends(get_orchestrator),
):
    """Current processing status for a lab result."""
    progress = orchestrator.progress_store.get(lab_result_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="No progress found for this lab result")
    return progress.to_dict()


@router.get("/{lab_result_id}")
def get_lab_result(
    lab_result_id: int,
    user_id: int,
    orchestrator: LabUploadOrchestrator = Depends(get_orchestrator),
):
    """Stored lab result with its pipeline metadata."""
    row = orchestrator.repository.get_for_user(lab_result_id, user_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Lab result not found")

    return {
        "id": row.id,
        "file_name": row.file_name,
        "file_type": row.file_type,
        "uploaded_at": row.uploaded_at.isoformat(),
        "notes": row.notes,
        "status": row.status,
        "error_message": row.error_message,
        "metadata": row.lab_metadata or {},
    }


@router.delete("/{lab_result_id}")
def delete_lab_result(
    lab_result_id: int,
    user_id: int,
    orchestrator: LabUploadOrchestrator = Depends(get_orchestrator),
):
    """Delete a lab result; in-flight processing stops at its next stage."""
    if not orchestrator.repository.delete(lab_result_id, user_id):
        raise HTTPException(status_code=404, detail="Lab result not found")
    return {"deleted": lab_result_id}
