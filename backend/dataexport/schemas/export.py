from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Union


class ExportFilter(BaseModel):
    where: Dict[str, Any] = Field(default_factory=dict)
    sort: Optional[Union[str, List[str], Dict[str, Any]]] = None
    include_deleted: bool = False


class ExportRequest(BaseModel):
    schema_name: str
    export_type: str = "json"  # json, xml, csv, xls, xlsx
    filter: ExportFilter = Field(default_factory=ExportFilter)
    encryption_passphrase: Optional[str] = None
    anonymize_fields: List[str] = Field(default_factory=list)
    field_groups: Optional[List[str]] = None
    language_id: Optional[str] = None  # Defaults to EXPORT_DEFAULT_LANGUAGE
    created_by: Optional[str] = None
    questionnaire: Optional[List[Dict[str, Any]]] = None  # Overrides the schema questionnaire
    use_db_columns: bool = False
    dont_translate_values: bool = False
    use_question_variable: bool = False


class ExportStartResponse(BaseModel):
    job_id: str


class ExportJobStatus(BaseModel):
    job_id: str
    status: str
    status_step: str
    total_records: int
    processed_records: int
    failed_records: int = 0
    mime_type: str
    extension: str
    error: Optional[str] = None
