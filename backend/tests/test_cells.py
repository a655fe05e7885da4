"""
Tests for per-cell value resolution.
"""
from datetime import datetime

from sample_data import CASES
from dataexport.export.cells import CellResolver
from dataexport.export.columns import ColumnSchemaBuilder, ExportOptions
from dataexport.export.references import Dictionary, LocationCache


def documents():
    return [dict(case["data"], id=case["id"]) for case in CASES]


def prepare(session, registry, options=None, flat=True, schema="person"):
    dictionary = Dictionary(session, "english_us", "english_us")
    locations = LocationCache(session)
    builder = ColumnSchemaBuilder(registry.get(schema), options or ExportOptions(), dictionary, locations, flat)
    dictionary.prefetch(builder.label_tokens())
    columns = builder.build({})
    resolver = CellResolver(columns, dictionary, locations, builder.location_fields, flat=flat)
    return dictionary, columns, resolver


def export_rows(dictionary, resolver, docs):
    dictionary.resolve_missing(resolver.collect_tokens(docs))
    return [resolver.resolve_row(document) for document in docs]


class TestAnonymization:
    """Anonymized cells short-circuit before any translation."""

    def test_placeholder_for_every_row(self, seeded, registry):
        dictionary, columns, resolver = prepare(seeded, registry, ExportOptions(anonymize_fields=["gender"]))
        position = [column.header for column in columns].index("Gender")

        rows = export_rows(dictionary, resolver, documents())
        assert [row[position] for row in rows] == ["***"] * 3

    def test_dictionary_unaffected_by_anonymized_tokens(self, seeded, registry):
        """Gender values are label tokens; anonymizing them keeps them out of the dictionary."""
        plain, _, plain_resolver = prepare(seeded, registry)
        headers_only = len(plain)
        export_rows(plain, plain_resolver, documents())
        assert len(plain) == headers_only + 2

        anonymized, _, anonymized_resolver = prepare(
            seeded, registry, ExportOptions(anonymize_fields=["gender"])
        )
        before = (len(anonymized), anonymized.lookups)
        export_rows(anonymized, anonymized_resolver, documents())

        assert (len(anonymized), anonymized.lookups) == before
        assert len(anonymized) == headers_only
        assert "LNG_REFERENCE_DATA_CATEGORY_GENDER_FEMALE" not in anonymized


class TestValues:
    """Value shaping for flat formats."""

    def test_tokens_are_translated(self, seeded, registry):
        dictionary, columns, resolver = prepare(seeded, registry)
        rows = export_rows(dictionary, resolver, documents())
        position = [column.header for column in columns].index("Gender")
        assert [row[position] for row in rows] == ["Female", "Male", "Female"]

    def test_booleans_dates_and_newlines(self, seeded, registry):
        dictionary, columns, resolver = prepare(seeded, registry)
        document = {
            "id": "x",
            "firstName": "Multi\nline\r\nname",
            "lastName": datetime(2024, 3, 1, 12, 30),
            "active": True,
        }
        cells = dict(zip([column.header for column in columns], resolver.resolve_row(document)))

        assert cells["First name"] == "Multi line name"
        assert cells["Last name"] == "2024-03-01T12:30:00"
        assert cells["Active"] == "TRUE"

    def test_id_is_never_translated(self, seeded, registry):
        dictionary, columns, resolver = prepare(seeded, registry)
        dictionary.resolve_missing(["LNG_CASE_FIELD_LABEL_ID"])
        row = resolver.resolve_row({"id": "LNG_CASE_FIELD_LABEL_ID"})
        assert row[0] == "LNG_CASE_FIELD_LABEL_ID"

    def test_hierarchical_rows_keep_booleans(self, seeded, registry):
        dictionary, _, resolver = prepare(seeded, registry, flat=False)
        row = resolver.resolve_row({"id": "x", "active": False})
        assert row["Active"] is False
        assert row["ID"] == "x"

    def test_dont_translate_values(self, seeded, registry):
        dictionary, columns, resolver = prepare(seeded, registry, ExportOptions(dont_translate_values=True))
        resolver.dont_translate_values = True
        assert resolver.collect_tokens(documents()) == set()
        row = resolver.resolve_row(documents()[0])
        assert row[[column.header for column in columns].index("Gender")] == (
            "LNG_REFERENCE_DATA_CATEGORY_GENDER_FEMALE"
        )
