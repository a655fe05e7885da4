from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, BigInteger
from dataexport.core.database import Base
import enum


class ExportStatus(str, enum.Enum):
    IN_PROGRESS = "in-progress"
    SUCCESS = "success"
    SUCCESS_WITH_WARNINGS = "success-with-warnings"
    FAILED = "failed"


class StatusStep(str, enum.Enum):
    LANGUAGE_PREP = "language-prep"
    RECORD_PREP = "record-prep"
    LOCATION_PREP = "location-prep"
    HEADER_PREP = "header-prep"
    EXPORTING = "exporting"
    ARCHIVING = "archiving"
    ENCRYPTING = "encrypting"
    FINISHED = "finished"


TERMINAL_STATUSES = (
    ExportStatus.SUCCESS.value,
    ExportStatus.SUCCESS_WITH_WARNINGS.value,
    ExportStatus.FAILED.value,
)


class ExportJob(Base):
    """Persisted export job record polled by clients."""

    __tablename__ = "export_jobs"

    id = Column(String, primary_key=True)
    schema_name = Column(String, nullable=False)
    collection = Column(String, nullable=False)
    export_type = Column(String, nullable=False)  # json, xml, csv, xls, xlsx
    status = Column(String, default=ExportStatus.IN_PROGRESS.value, nullable=False, index=True)
    status_step = Column(String, default=StatusStep.LANGUAGE_PREP.value, nullable=False)

    total_records = Column(Integer, default=0, nullable=False)
    processed_records = Column(Integer, default=0, nullable=False)
    failed_records = Column(Integer, default=0, nullable=False)
    row_errors = Column(JSON, nullable=True)  # [{"row": 12, "error": "..."}]

    mime_type = Column(String, nullable=False)
    extension = Column(String, nullable=False)
    file_path = Column(String, nullable=True)
    size_bytes = Column(BigInteger, nullable=True)
    filter = Column(JSON, nullable=True)  # Saved only when EXPORT_SAVE_FILTER is on

    error = Column(Text, nullable=True)
    error_stack = Column(Text, nullable=True)

    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    aggregate_completed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
