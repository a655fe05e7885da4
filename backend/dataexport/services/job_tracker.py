"""
Export job tracker - the persisted job record clients poll.

Usage:
    tracker = ExportJobTracker.create(db, schema_name="case", collection="person", export_format=fmt)
    tracker.update_step(StatusStep.RECORD_PREP)
    tracker.set_total(1200)
    tracker.set_progress(processed=500)
    tracker.complete(file_path, export_format, size_bytes)

The terminal state (success / success-with-warnings / failed) is written once.
"""
import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from dataexport.export.sinks import ExportFormat
from dataexport.models.export_job import ExportJob, ExportStatus, StatusStep

logger = logging.getLogger(__name__)

# Row errors stored on the job record; the count is always exact
ROW_ERRORS_LIMIT = 100


class ExportJobTracker:
    def __init__(self, job_id: str, db: Session):
        self.job_id = job_id
        self.db = db
        self._job: Optional[ExportJob] = None

    @classmethod
    def create(
        cls,
        db: Session,
        schema_name: str,
        collection: str,
        export_format: ExportFormat,
        created_by: Optional[str] = None,
        saved_filter: Optional[Dict] = None,
    ) -> "ExportJobTracker":
        job_id = str(uuid.uuid4())
        job = ExportJob(
            id=job_id,
            schema_name=schema_name,
            collection=collection,
            export_type=export_format.name,
            status=ExportStatus.IN_PROGRESS.value,
            status_step=StatusStep.LANGUAGE_PREP.value,
            mime_type=export_format.mime_type,
            extension=export_format.extension,
            created_by=created_by,
            filter=saved_filter,
        )
        db.add(job)
        db.commit()

        tracker = cls(job_id, db)
        tracker._job = job
        return tracker

    @classmethod
    def get(cls, db: Session, job_id: str) -> Optional["ExportJobTracker"]:
        job = db.get(ExportJob, job_id, populate_existing=True)
        if not job:
            return None
        tracker = cls(job_id, db)
        tracker._job = job
        return tracker

    @property
    def job(self) -> ExportJob:
        if self._job is None:
            self._job = self.db.get(ExportJob, self.job_id)
            if self._job is None:
                raise LookupError(f"Export job {self.job_id} not found")
        return self._job

    def update_step(self, step: StatusStep) -> None:
        job = self.job
        job.status_step = step.value
        job.updated_at = datetime.utcnow()
        self.db.commit()
        logger.info(f"Export {self.job_id}: {step.value}")

    def set_total(self, total: int) -> None:
        job = self.job
        job.total_records = total
        job.aggregate_completed_at = datetime.utcnow()
        job.updated_at = datetime.utcnow()
        self.db.commit()

    def set_progress(self, processed: int, failed: int = 0, row_errors: Optional[List[Dict]] = None) -> None:
        job = self.job
        job.processed_records = processed
        job.failed_records = failed
        if row_errors is not None:
            job.row_errors = list(row_errors[:ROW_ERRORS_LIMIT])
        job.updated_at = datetime.utcnow()
        self.db.commit()

    def complete(self, file_path: str, export_format: ExportFormat, size_bytes: int) -> None:
        job = self._ensure_open()
        job.status = (
            ExportStatus.SUCCESS_WITH_WARNINGS.value
            if job.failed_records
            else ExportStatus.SUCCESS.value
        )
        job.status_step = StatusStep.FINISHED.value
        job.file_path = file_path
        job.mime_type = export_format.mime_type
        job.extension = export_format.extension
        job.size_bytes = size_bytes
        job.completed_at = datetime.utcnow()
        job.updated_at = datetime.utcnow()
        self.db.commit()
        logger.info(f"Export {self.job_id} finished with status {job.status}")

    def fail(self, error_message: str, error_stack: Optional[str] = None) -> None:
        """Write the failed state; the status step is kept as the last reached phase."""
        job = self._ensure_open()
        job.status = ExportStatus.FAILED.value
        job.error = error_message or "Export failed"
        job.error_stack = error_stack
        job.completed_at = datetime.utcnow()
        job.updated_at = datetime.utcnow()
        self.db.commit()

    def get_status(self) -> Dict:
        job = self.job
        return {
            "job_id": job.id,
            "status": job.status,
            "status_step": job.status_step,
            "total_records": job.total_records,
            "processed_records": job.processed_records,
            "failed_records": job.failed_records,
            "mime_type": job.mime_type,
            "extension": job.extension,
            "error": job.error,
        }

    def _ensure_open(self) -> ExportJob:
        self.db.refresh(self.job)
        if self.job.is_terminal:
            raise RuntimeError(f"Export job {self.job_id} already finished as {self.job.status}")
        return self.job
