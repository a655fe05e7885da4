"""
Import service - loads exported files back into a record collection.

Headers are mapped to record paths through an explicit field map; columns that
are not mapped are ignored. CSV files are read with every column as text, and
the literal ``TRUE`` / ``FALSE`` written by the flat exporters become booleans
again.
"""
import json
import logging
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import polars as pl
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dataexport.core.config import settings
from dataexport.core.exceptions import ExportConfigurationError
from dataexport.export.crypto import decrypt_file
from dataexport.export.paths import FieldPath
from dataexport.models.record import Record

logger = logging.getLogger(__name__)

SUPPORTED_FILE_TYPES = ("csv", "json")
BOOLEAN_VALUES = {"TRUE": True, "FALSE": False}


@dataclass
class ImportResult:
    imported: int = 0
    skipped: int = 0


class ImportService:
    def __init__(self, db: Session):
        self.db = db

    def import_file(
        self,
        path: Path,
        collection: str,
        field_map: Dict[str, str],
        file_type: str,
        passphrase: Optional[str] = None,
        batch_size: Optional[int] = None,
    ) -> ImportResult:
        """
        Import a CSV or JSON export into ``collection``.

        Args:
            path: File to read
            collection: Target record collection
            field_map: Header -> record path (``id`` sets the record id)
            file_type: ``csv`` or ``json``
            passphrase: Decrypt the file first when given
            batch_size: Records per insert (defaults to EXPORT_BATCH_SIZE)

        Returns:
            ImportResult with imported and skipped counts
        """
        if file_type not in SUPPORTED_FILE_TYPES:
            raise ExportConfigurationError(f"Cannot import file type '{file_type}'")

        batch_size = batch_size or settings.EXPORT_BATCH_SIZE
        paths = {header: FieldPath.parse(target) for header, target in field_map.items()}
        result = ImportResult()

        with tempfile.TemporaryDirectory(prefix="dataexport-import-") as temp_dir:
            source = Path(path)
            if passphrase:
                source = decrypt_file(source, passphrase, Path(temp_dir) / source.name)

            pending: List[Record] = []
            for row in self._read_rows(source, file_type):
                document = self._map_row(row, paths)
                if not document:
                    result.skipped += 1
                    continue

                record_id = document.pop("id", None) or str(uuid.uuid4())
                pending.append(Record(id=str(record_id), collection=collection, data=document))
                if len(pending) >= batch_size:
                    result.imported += self._flush(pending)
                    pending = []

            if pending:
                result.imported += self._flush(pending)

        logger.info(
            f"Imported {result.imported} record(s) into {collection} "
            f"({result.skipped} skipped)"
        )
        return result

    def _read_rows(self, source: Path, file_type: str) -> Iterator[Dict[str, Any]]:
        if file_type == "csv":
            frame = pl.read_csv(source, infer_schema_length=0)
            yield from frame.iter_rows(named=True)
            return

        with open(source, "r", encoding="utf-8") as f:
            rows = json.load(f)
        if not isinstance(rows, list):
            raise ExportConfigurationError("JSON import expects an array of objects")
        yield from rows

    def _map_row(self, row: Dict[str, Any], paths: Dict[str, FieldPath]) -> Dict[str, Any]:
        document: Dict[str, Any] = {}
        for header, path in paths.items():
            value = row.get(header)
            if value is None or value == "":
                continue
            if isinstance(value, str) and value in BOOLEAN_VALUES:
                value = BOOLEAN_VALUES[value]
            path.assign(document, value)
        return document

    def _flush(self, records: List[Record]) -> int:
        try:
            self.db.add_all(records)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return len(records)
