"""
Export API endpoints - start, poll, download and cancel export jobs.
"""
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from dataexport.core.database import get_db
from dataexport.core.exceptions import ExportConfigurationError, ExportNotReadyError, UnknownSchemaError
from dataexport.schemas.export import ExportJobStatus, ExportRequest, ExportStartResponse
from dataexport.services.export_service import ExportService

router = APIRouter()


def get_export_service(db: Session = Depends(get_db)) -> ExportService:
    return ExportService(db)


@router.post("/exports", response_model=ExportStartResponse, status_code=202)
def start_export(
    request: ExportRequest,
    service: ExportService = Depends(get_export_service),
):
    """
    Start an export job.

    Returns the job id right away; poll GET /exports/{job_id} for progress.
    """
    try:
        job_id = service.start_export(request)
    except UnknownSchemaError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ExportConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return ExportStartResponse(job_id=job_id)


@router.get("/exports/{job_id}", response_model=ExportJobStatus)
def get_export_status(
    job_id: str,
    service: ExportService = Depends(get_export_service),
):
    """Get the status of an export job."""
    try:
        return ExportJobStatus(**service.get_status(job_id))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/exports/{job_id}/download")
def download_export(
    job_id: str,
    service: ExportService = Depends(get_export_service),
):
    """Download the artifact of a finished export."""
    try:
        path = service.artifact_path(job_id)
        status = service.get_status(job_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ExportNotReadyError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return FileResponse(
        path,
        media_type=status["mime_type"],
        filename=f"{job_id}.{status['extension']}",
    )


@router.delete("/exports/{job_id}")
def cancel_export(
    job_id: str,
    service: ExportService = Depends(get_export_service),
):
    """Ask a running export to stop after its current batch."""
    try:
        cancelled = service.cancel(job_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))

    if not cancelled:
        raise HTTPException(status_code=409, detail=f"Export {job_id} is not running")
    return {"job_id": job_id, "cancelled": True}
