"""
Streaming writers, one per output format.

All sinks share one contract:

    sink.begin(columns)
    sink.write_row(values)   # many times; RowSerializationError rejects one row
    sink.flush()             # end of every batch
    files = sink.end()

Spreadsheet sinks split wide layouts into several sheets (same rows, next
block of columns) and long exports into several files (same columns, next
block of rows). CSV, JSON and XML never split.
"""
import io
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Sequence
from xml.sax.saxutils import XMLGenerator

import polars as pl
import xlwt
from openpyxl import Workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE

from dataexport.core.config import settings
from dataexport.core.exceptions import ExportConfigurationError, RowSerializationError
from dataexport.export.columns import Column

logger = logging.getLogger(__name__)

XLS_MAX_STRING_LENGTH = 32767
INVALID_XML_CHARACTERS = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]")


@dataclass(frozen=True)
class ExportFormat:
    name: str
    extension: str
    mime_type: str
    flat: bool


FORMATS = {
    "json": ExportFormat("json", "json", "application/json", flat=False),
    "xml": ExportFormat("xml", "xml", "application/xml", flat=False),
    "csv": ExportFormat("csv", "csv", "text/csv", flat=True),
    "xls": ExportFormat("xls", "xls", "application/vnd.ms-excel", flat=True),
    "xlsx": ExportFormat(
        "xlsx",
        "xlsx",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        flat=True,
    ),
}

ZIP_FORMAT = ExportFormat("zip", "zip", "application/zip", flat=False)


def get_format(name: str) -> ExportFormat:
    key = (name or "").lower()
    if key not in FORMATS:
        raise ExportConfigurationError(
            f"Unsupported export type '{name}'. Expected one of {sorted(FORMATS)}"
        )
    return FORMATS[key]


@dataclass(frozen=True)
class ExportLimits:
    """Per-sheet / per-file ceilings; rows include the header row."""

    xlsx_max_columns: int = 16000
    xlsx_max_rows: int = 1000000
    xls_max_columns: int = 250
    xls_max_rows: int = 12000

    def __post_init__(self):
        if min(self.xlsx_max_columns, self.xls_max_columns) < 1:
            raise ExportConfigurationError("Column ceilings must be positive")
        if min(self.xlsx_max_rows, self.xls_max_rows) < 2:
            raise ExportConfigurationError("Row ceilings must leave room for a header and one row")

    @classmethod
    def from_settings(cls) -> "ExportLimits":
        return cls(
            xlsx_max_columns=settings.EXPORT_XLSX_MAX_COLUMNS,
            xlsx_max_rows=settings.EXPORT_XLSX_MAX_ROWS,
            xls_max_columns=settings.EXPORT_XLS_MAX_COLUMNS,
            xls_max_rows=settings.EXPORT_XLS_MAX_ROWS,
        )


def _scalar(value: Any) -> Any:
    """Flat cells hold scalars; nested leftovers are written as JSON text."""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return value


class ExportSink(ABC):
    extension: str = ""

    def __init__(self, work_dir: Path, base_name: str):
        self.work_dir = Path(work_dir)
        self.work_dir.mkdir(parents=True, exist_ok=True)
        self.base_name = base_name
        self.files: List[Path] = []
        self.rows_written = 0
        self.columns: List[Column] = []

    def begin(self, columns: List[Column]) -> None:
        self.columns = list(columns)
        self._begin()

    def write_row(self, values) -> None:
        """
        Write one row.

        Raises:
            RowSerializationError: if the row cannot be represented in this format;
                nothing of the row is written in that case
        """
        try:
            prepared = self._prepare(values)
        except RowSerializationError as e:
            e.row_number = self.rows_written + 1
            raise
        except (TypeError, ValueError) as e:
            raise RowSerializationError(str(e), row_number=self.rows_written + 1) from e

        self._write(prepared)
        self.rows_written += 1

    def flush(self) -> None:
        """Push buffered rows to disk."""

    def end(self) -> List[Path]:
        self._end()
        logger.info(f"{type(self).__name__} wrote {self.rows_written} row(s) to {len(self.files)} file(s)")
        return list(self.files)

    def abort(self) -> None:
        """Release open handles without finalizing the output."""

    def _new_path(self, suffix: str = "") -> Path:
        path = self.work_dir / f"{self.base_name}{suffix}.{self.extension}"
        self.files.append(path)
        return path

    @abstractmethod
    def _begin(self) -> None:
        pass

    @abstractmethod
    def _prepare(self, values) -> Any:
        pass

    @abstractmethod
    def _write(self, prepared) -> None:
        pass

    @abstractmethod
    def _end(self) -> None:
        pass


class CsvSink(ExportSink):
    """
    CSV through polars.

    Rows are buffered per batch and written as one DataFrame with positional
    column names; the header is the first buffered row.
    """

    extension = "csv"

    def _begin(self) -> None:
        self.path = self._new_path()
        self.handle = open(self.path, "wb")
        self.schema = [(f"column_{index}", pl.Utf8) for index in range(len(self.columns))]
        self.buffer: List[List[Optional[str]]] = [[column.header for column in self.columns]]

    def _prepare(self, values: Sequence[Any]) -> List[Optional[str]]:
        row = []
        for value in values:
            value = _scalar(value)
            row.append(None if value is None else str(value))
        return row

    def _write(self, prepared) -> None:
        self.buffer.append(prepared)

    def flush(self) -> None:
        if not self.buffer:
            return
        frame = pl.DataFrame(self.buffer, schema=self.schema, orient="row")
        frame.write_csv(
            self.handle,
            include_header=False,
            separator=",",
            quote_style="necessary",
            line_terminator="\n",
        )
        self.handle.flush()
        self.buffer = []

    def _end(self) -> None:
        self.flush()
        self.handle.close()

    def abort(self) -> None:
        if getattr(self, "handle", None) and not self.handle.closed:
            self.handle.close()


class JsonSink(ExportSink):
    """JSON array, one object per record keyed by column header."""

    extension = "json"

    def _begin(self) -> None:
        self.path = self._new_path()
        self.handle = open(self.path, "w", encoding="utf-8")
        self.handle.write("[")

    def _prepare(self, values: dict) -> str:
        return json.dumps(values, ensure_ascii=False, allow_nan=False)

    def _write(self, prepared: str) -> None:
        if self.rows_written:
            self.handle.write(",")
        self.handle.write("\n")
        self.handle.write(prepared)

    def flush(self) -> None:
        self.handle.flush()

    def _end(self) -> None:
        self.handle.write("\n]\n" if self.rows_written else "]\n")
        self.handle.close()

    def abort(self) -> None:
        if getattr(self, "handle", None) and not self.handle.closed:
            self.handle.close()


class XmlSink(ExportSink):
    """
    XML document with one ``<record>`` per record.

    Scalars become ``<field name="Header">value</field>``, objects nest further
    ``<field>`` elements and lists nest ``<item>`` elements.
    """

    extension = "xml"

    def _begin(self) -> None:
        self.path = self._new_path()
        self.handle = open(self.path, "w", encoding="utf-8")
        self.handle.write('<?xml version="1.0" encoding="utf-8"?>\n<records>\n')

    def _prepare(self, values: dict) -> str:
        buffer = io.StringIO()
        generator = XMLGenerator(buffer, encoding="utf-8", short_empty_elements=True)
        generator.startElement("record", {})
        for name, value in values.items():
            self._element(generator, "field", {"name": self._text(name)}, value)
        generator.endElement("record")
        return buffer.getvalue()

    def _element(self, generator: XMLGenerator, tag: str, attributes: dict, value: Any) -> None:
        generator.startElement(tag, attributes)
        if isinstance(value, dict):
            for name, child in value.items():
                self._element(generator, "field", {"name": self._text(name)}, child)
        elif isinstance(value, list):
            for child in value:
                self._element(generator, "item", {}, child)
        elif value is not None:
            generator.characters(self._text(value))
        generator.endElement(tag)

    def _text(self, value: Any) -> str:
        if isinstance(value, bool):
            text = "true" if value else "false"
        else:
            text = str(value)
        if INVALID_XML_CHARACTERS.search(text):
            raise RowSerializationError(f"Value {text[:30]!r} contains characters not allowed in XML")
        return text

    def _write(self, prepared: str) -> None:
        self.handle.write("  ")
        self.handle.write(prepared)
        self.handle.write("\n")

    def flush(self) -> None:
        self.handle.flush()

    def _end(self) -> None:
        self.handle.write("</records>\n")
        self.handle.close()

    def abort(self) -> None:
        if getattr(self, "handle", None) and not self.handle.closed:
            self.handle.close()


class _SpreadsheetSink(ExportSink):
    """Shared sheet / file splitting for XLSX and XLS."""

    def __init__(self, work_dir: Path, base_name: str, max_columns: int, max_rows: int):
        super().__init__(work_dir, base_name)
        self.max_columns = max_columns
        self.max_rows = max_rows
        self.file_rows = 0
        self.workbook = None

    @property
    def sheet_count(self) -> int:
        return max(1, -(-len(self.columns) // self.max_columns))

    def _column_slices(self) -> List[slice]:
        return [
            slice(index * self.max_columns, (index + 1) * self.max_columns)
            for index in range(self.sheet_count)
        ]

    def _begin(self) -> None:
        self.headers = [column.header for column in self.columns]
        self._open_file()

    def _write(self, prepared: List[Any]) -> None:
        # The header takes the first row of every file
        if self.file_rows >= self.max_rows - 1:
            self._close_file()
            self._open_file()
        self._append(prepared)
        self.file_rows += 1

    def _end(self) -> None:
        self._close_file()

    def _open_file(self) -> None:
        self.file_rows = 0
        self._open_workbook()

    def _close_file(self) -> None:
        if self.workbook is None:
            return
        suffix = f"_{len(self.files) + 1}"
        self._save_workbook(self._new_path(suffix))
        self.workbook = None

    def abort(self) -> None:
        self.workbook = None

    @abstractmethod
    def _open_workbook(self) -> None:
        pass

    @abstractmethod
    def _append(self, prepared: List[Any]) -> None:
        pass

    @abstractmethod
    def _save_workbook(self, path: Path) -> None:
        pass


class XlsxSink(_SpreadsheetSink):
    """XLSX through openpyxl write-only workbooks."""

    extension = "xlsx"

    def _open_workbook(self) -> None:
        self.workbook = Workbook(write_only=True)
        self.sheets = []
        for index, columns in enumerate(self._column_slices()):
            sheet = self.workbook.create_sheet(title=f"Sheet{index + 1}")
            sheet.append(self.headers[columns])
            self.sheets.append(sheet)

    def _prepare(self, values: Sequence[Any]) -> List[Any]:
        row = []
        for value in values:
            value = _scalar(value)
            if isinstance(value, str) and ILLEGAL_CHARACTERS_RE.search(value):
                raise RowSerializationError(f"Value {value[:30]!r} contains characters not allowed in XLSX")
            row.append(value)
        return row

    def _append(self, prepared: List[Any]) -> None:
        for sheet, columns in zip(self.sheets, self._column_slices()):
            sheet.append(prepared[columns])

    def _save_workbook(self, path: Path) -> None:
        self.workbook.save(path)

    def abort(self) -> None:
        # Write-only sheets stream into temp files until the workbook is saved
        if self.workbook is not None:
            for sheet in self.sheets:
                if not sheet.closed:
                    sheet.close()
                sheet._writer.cleanup()
            self.sheets = []
        super().abort()


class XlsSink(_SpreadsheetSink):
    """Legacy XLS through xlwt."""

    extension = "xls"

    def _open_workbook(self) -> None:
        self.workbook = xlwt.Workbook(encoding="utf-8")
        self.sheets = []
        for index, columns in enumerate(self._column_slices()):
            sheet = self.workbook.add_sheet(f"Sheet{index + 1}")
            for position, header in enumerate(self.headers[columns]):
                sheet.write(0, position, header)
            self.sheets.append(sheet)

    def _prepare(self, values: Sequence[Any]) -> List[Any]:
        row = []
        for value in values:
            value = _scalar(value)
            if isinstance(value, str) and len(value) > XLS_MAX_STRING_LENGTH:
                raise RowSerializationError(
                    f"Value of {len(value)} characters exceeds the XLS cell limit of {XLS_MAX_STRING_LENGTH}"
                )
            row.append(value)
        return row

    def _append(self, prepared: List[Any]) -> None:
        row_index = self.file_rows + 1
        for sheet, columns in zip(self.sheets, self._column_slices()):
            for position, value in enumerate(prepared[columns]):
                if value is not None:
                    sheet.write(row_index, position, value)

    def _save_workbook(self, path: Path) -> None:
        self.workbook.save(str(path))


def make_sink(
    export_format: ExportFormat,
    work_dir: Path,
    base_name: str,
    limits: Optional[ExportLimits] = None,
) -> ExportSink:
    limits = limits or ExportLimits.from_settings()
    if export_format.name == "csv":
        return CsvSink(work_dir, base_name)
    if export_format.name == "json":
        return JsonSink(work_dir, base_name)
    if export_format.name == "xml":
        return XmlSink(work_dir, base_name)
    if export_format.name == "xlsx":
        return XlsxSink(work_dir, base_name, limits.xlsx_max_columns, limits.xlsx_max_rows)
    if export_format.name == "xls":
        return XlsSink(work_dir, base_name, limits.xls_max_columns, limits.xls_max_rows)
    raise ExportConfigurationError(f"No writer for export type '{export_format.name}'")
