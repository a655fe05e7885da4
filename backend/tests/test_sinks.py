"""
Tests for the streaming writers.

Validates:
- Header row and body rows per format
- Wide layouts split across ceil(columns / ceiling) sheets
- Long exports split across files with the header repeated
- Per-row serialization failures leave the output intact
"""
import json
import math
import xml.etree.ElementTree as ET
from pathlib import Path

import polars as pl
import pytest
import xlrd
from openpyxl import load_workbook

from dataexport.core.exceptions import ExportConfigurationError, RowSerializationError
from dataexport.export.columns import Column
from dataexport.export.paths import FieldPath
from dataexport.export.sinks import (
    CsvSink,
    ExportLimits,
    JsonSink,
    XlsSink,
    XlsxSink,
    XmlSink,
    get_format,
    make_sink,
)


def make_columns(count):
    return [
        Column(
            original_header=f"Column {index}",
            header=f"Column {index}",
            unique_key=f"c{index}",
            path=FieldPath.parse(f"c{index}"),
            path_without_indices=f"c{index}",
        )
        for index in range(count)
    ]


def write(sink, columns, rows):
    sink.begin(columns)
    for row in rows:
        sink.write_row(row)
    sink.flush()
    return sink.end()


class TestFormats:
    """Format registry."""

    def test_known_formats(self):
        assert get_format("xlsx").mime_type == (
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
        )
        assert get_format("csv").flat is True
        assert get_format("json").flat is False

    def test_unknown_format(self):
        with pytest.raises(ExportConfigurationError):
            get_format("pdf")

    def test_limits_must_leave_room_for_rows(self):
        with pytest.raises(ExportConfigurationError):
            ExportLimits(xls_max_rows=1)


class TestCsvSink:
    def test_header_and_rows(self, tmp_path):
        columns = make_columns(3)
        files = write(
            CsvSink(tmp_path, "job"),
            columns,
            [["a", "b, with comma", None], ["TRUE", 7, ["x", "y"]]],
        )

        assert [path.name for path in files] == ["job.csv"]
        frame = pl.read_csv(files[0], infer_schema_length=0)
        assert frame.columns == ["Column 0", "Column 1", "Column 2"]
        assert frame.height == 2
        assert frame.row(0) == ("a", "b, with comma", None)
        assert frame.row(1) == ("TRUE", "7", '["x", "y"]')


class TestJsonSink:
    def test_array_of_objects(self, tmp_path):
        files = write(JsonSink(tmp_path, "job"), [], [{"ID": "1", "Tags": ["a"]}, {"ID": "2"}])
        assert json.loads(files[0].read_text(encoding="utf-8")) == [
            {"ID": "1", "Tags": ["a"]},
            {"ID": "2"},
        ]

    def test_empty_export_is_valid_json(self, tmp_path):
        files = write(JsonSink(tmp_path, "job"), [], [])
        assert json.loads(files[0].read_text(encoding="utf-8")) == []

    def test_unserializable_row_is_rejected(self, tmp_path):
        sink = JsonSink(tmp_path, "job")
        sink.begin([])
        sink.write_row({"ID": "1"})
        with pytest.raises(RowSerializationError) as excinfo:
            sink.write_row({"ID": float("nan")})
        assert excinfo.value.row_number == 2
        sink.write_row({"ID": "3"})
        files = sink.end()

        assert [row["ID"] for row in json.loads(files[0].read_text(encoding="utf-8"))] == ["1", "3"]


class TestXmlSink:
    def test_nested_fields(self, tmp_path):
        files = write(
            XmlSink(tmp_path, "job"),
            [],
            [{"ID": "1", "Address": {"City": "Harbor"}, "Tags": ["a", "b"], "Active": True}],
        )
        root = ET.parse(files[0]).getroot()
        record = root.find("record")
        fields = {field.get("name"): field for field in record.findall("field")}

        assert fields["ID"].text == "1"
        assert fields["Address"].find("field").get("name") == "City"
        assert [item.text for item in fields["Tags"].findall("item")] == ["a", "b"]
        assert fields["Active"].text == "true"

    def test_control_characters_are_rejected(self, tmp_path):
        sink = XmlSink(tmp_path, "job")
        sink.begin([])
        with pytest.raises(RowSerializationError):
            sink.write_row({"ID": "bad\x01value"})
        sink.write_row({"ID": "ok"})
        files = sink.end()

        records = ET.parse(files[0]).getroot().findall("record")
        assert len(records) == 1


class TestXlsxSink:
    def test_wide_layout_splits_sheets(self, tmp_path):
        columns = make_columns(5)
        sink = XlsxSink(tmp_path, "job", max_columns=2, max_rows=100)
        files = write(sink, columns, [[f"r{row}c{col}" for col in range(5)] for row in range(3)])

        assert len(files) == 1
        workbook = load_workbook(files[0])
        assert len(workbook.sheetnames) == math.ceil(5 / 2)

        sheets = [list(workbook[name].iter_rows(values_only=True)) for name in workbook.sheetnames]
        assert [len(rows[0]) for rows in sheets] == [2, 2, 1]
        assert sheets[0][0] == ("Column 0", "Column 1")
        assert sheets[2][0] == ("Column 4",)
        assert all(len(rows) == 4 for rows in sheets)
        assert sheets[1][3] == ("r2c2", "r2c3")

    def test_long_export_splits_files(self, tmp_path):
        columns = make_columns(2)
        sink = XlsxSink(tmp_path, "job", max_columns=10, max_rows=3)
        files = write(sink, columns, [[f"r{row}", row] for row in range(5)])

        # Two data rows per file once the header is counted
        assert [path.name for path in files] == ["job_1.xlsx", "job_2.xlsx", "job_3.xlsx"]
        for path in files:
            rows = list(load_workbook(path).active.iter_rows(values_only=True))
            assert rows[0] == ("Column 0", "Column 1")
            assert len(rows) <= 3

    def test_abort_removes_sheet_temp_files(self, tmp_path):
        sink = XlsxSink(tmp_path, "job", max_columns=1, max_rows=3)
        sink.begin(make_columns(2))
        for row in range(3):
            sink.write_row([f"r{row}", row])
        temp_files = [Path(sheet._writer.out) for sheet in sink.sheets]
        assert len(temp_files) == 2
        assert all(path.exists() for path in temp_files)

        sink.abort()
        sink.abort()

        assert not any(path.exists() for path in temp_files)
        assert sink.workbook is None
        # Only the file completed before the abort remains
        assert [path.name for path in tmp_path.iterdir()] == ["job_1.xlsx"]

    def test_illegal_characters_are_rejected(self, tmp_path):
        sink = XlsxSink(tmp_path, "job", max_columns=10, max_rows=10)
        sink.begin(make_columns(1))
        with pytest.raises(RowSerializationError):
            sink.write_row(["bad\x01value"])
        assert sink.rows_written == 0


class TestXlsSink:
    def test_wide_layout_splits_sheets(self, tmp_path):
        columns = make_columns(7)
        sink = XlsSink(tmp_path, "job", max_columns=3, max_rows=100)
        files = write(sink, columns, [[f"r{row}c{col}" for col in range(7)] for row in range(2)])

        book = xlrd.open_workbook(str(files[0]))
        assert book.nsheets == math.ceil(7 / 3)
        assert [book.sheet_by_index(index).ncols for index in range(book.nsheets)] == [3, 3, 1]
        assert book.sheet_by_index(2).cell_value(0, 0) == "Column 6"
        assert book.sheet_by_index(1).cell_value(2, 0) == "r1c3"

    def test_oversized_cell_is_rejected(self, tmp_path):
        sink = XlsSink(tmp_path, "job", max_columns=10, max_rows=10)
        sink.begin(make_columns(1))
        with pytest.raises(RowSerializationError):
            sink.write_row(["x" * 40000])


def test_make_sink_uses_limits(tmp_path):
    limits = ExportLimits(xls_max_columns=3, xls_max_rows=50)
    sink = make_sink(get_format("xls"), tmp_path, "job", limits)
    assert isinstance(sink, XlsSink)
    assert (sink.max_columns, sink.max_rows) == (3, 50)
