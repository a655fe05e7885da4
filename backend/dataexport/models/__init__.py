from dataexport.models.record import Record
from dataexport.models.location import Location
from dataexport.models.language_token import LanguageToken
from dataexport.models.export_job import ExportJob, ExportStatus, StatusStep

__all__ = [
    "Record",
    "Location",
    "LanguageToken",
    "ExportJob",
    "ExportStatus",
    "StatusStep",
]
