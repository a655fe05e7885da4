"""
Tests for the column schema builder.

Validates:
- Array fan-out sized by the widest record
- Questionnaire fan-out for flat formats
- Header collisions and missing array definitions
- Field groups, anonymization flags and db column names
"""
import pytest

from sample_data import CASES, QUESTIONNAIRE
from dataexport.core.exceptions import ExportConfigurationError
from dataexport.export.cells import CellResolver
from dataexport.export.columns import ColumnSchemaBuilder, ExportOptions, array_counter
from dataexport.export.questionnaire import flatten_questionnaire
from dataexport.export.references import Dictionary, LocationCache
from dataexport.registry import Question, SchemaDescriptor
from dataexport.registry.loader import ANSWER_TYPE_MARKUP


def documents():
    return [dict(case["data"], id=case["id"]) for case in CASES]


def make_builder(session, descriptor, options=None, flat=True, language="english_us"):
    dictionary = Dictionary(session, language, "english_us")
    locations = LocationCache(session)
    builder = ColumnSchemaBuilder(descriptor, options or ExportOptions(), dictionary, locations, flat)
    dictionary.prefetch(builder.label_tokens())
    return builder


def maxima_for(builder, docs):
    counters = builder.counters()
    return {
        name: max(counter(document) for document in docs)
        for name, counter in counters.items()
    }


class TestArrayFanOut:
    """Indexed column groups for array fields."""

    def test_lengths_0_2_1_give_two_groups(self, seeded, registry):
        builder = make_builder(seeded, registry.get("case"))
        docs = documents()
        maxima = maxima_for(builder, docs)
        assert maxima[array_counter("addresses")] == 2

        columns = builder.build(maxima)
        headers = [column.header for column in columns]
        assert "Addresses City [1]" in headers
        assert "Addresses City [2]" in headers
        assert not any("[3]" in header for header in headers)

        indices = {
            column.path.segments[1]
            for column in columns
            if column.path.segments[0] == "addresses"
        }
        assert indices == {0, 1}

    def test_empty_array_renders_empty_cells(self, seeded, registry):
        builder = make_builder(seeded, registry.get("case"))
        docs = documents()
        columns = builder.build(maxima_for(builder, docs))
        resolver = CellResolver(
            columns, builder.dictionary, builder.locations, builder.location_fields, flat=True
        )

        row = resolver.resolve_row(docs[0])
        address_cells = [
            value for column, value in zip(columns, row)
            if column.path.segments[0] == "addresses"
        ]
        assert address_cells
        assert all(value in (None, "") for value in address_cells)

    def test_zero_width_when_no_record_has_items(self, seeded, registry):
        builder = make_builder(seeded, registry.get("case"))
        columns = builder.build({array_counter("addresses"): 0})
        assert not any(column.path.segments[0] == "addresses" for column in columns)

    def test_hierarchical_keeps_single_column(self, seeded, registry):
        builder = make_builder(seeded, registry.get("case"), flat=False)
        assert builder.counters() == {}
        columns = builder.build({})
        assert [column.header for column in columns].count("Addresses") == 1

    def test_missing_array_definition(self, seeded):
        descriptor = SchemaDescriptor(
            name="broken",
            collection="case",
            field_labels={"id": "LNG_ID", "contacts[].name": "LNG_NAME"},
        )
        builder = make_builder(seeded, descriptor)
        with pytest.raises(ExportConfigurationError, match="Missing array definition for property 'contacts\\[\\].name'"):
            builder.validate()
        with pytest.raises(ExportConfigurationError):
            builder.build({})


class TestHeaders:
    """Header text and ordering."""

    def test_order_and_translation(self, seeded, registry):
        builder = make_builder(seeded, registry.get("case"))
        headers = [column.header for column in builder.build({})]
        assert headers[:4] == ["ID", "First name", "Last name", "Gender"]

    def test_requested_language_with_fallback(self, seeded, registry):
        builder = make_builder(seeded, registry.get("case"), language="french_fr")
        headers = [column.header for column in builder.build({})]
        assert headers[:3] == ["ID", "Prénom", "Last name"]

    def test_use_db_columns(self, seeded, registry):
        builder = make_builder(seeded, registry.get("case"), ExportOptions(use_db_columns=True))
        headers = [column.header for column in builder.build({})]
        assert headers[:4] == ["id", "firstName", "lastName", "gender"]

    def test_collision_renames_both_columns(self, seeded):
        descriptor = SchemaDescriptor(
            name="dupes",
            collection="case",
            field_labels={
                "id": "LNG_CASE_FIELD_LABEL_ID",
                "firstName": "LNG_CASE_FIELD_LABEL_FIRST_NAME",
                "givenName": "LNG_CASE_FIELD_LABEL_FIRST_NAME",
            },
        )
        builder = make_builder(seeded, descriptor)
        headers = [column.header for column in builder.build({})]
        assert headers == ["ID", "First name (firstName)", "First name (givenName)"]

    def test_field_groups_select_properties(self, seeded, registry):
        options = ExportOptions(field_groups=["LNG_GROUP_DEMOGRAPHICS"])
        builder = make_builder(seeded, registry.get("case"), options)
        assert builder.header_keys() == ["id", "firstName", "lastName", "gender"]
        assert builder.include_location_data is False

    def test_field_groups_location_toggle(self, seeded, registry):
        options = ExportOptions(
            field_groups=["LNG_GROUP_ADDRESSES", "LNG_COMMON_LABEL_EXPORT_GROUP_LOCATION_ID_DATA"]
        )
        builder = make_builder(seeded, registry.get("case"), options)
        assert builder.include_location_data is True
        columns = builder.build({array_counter("addresses"): 1})
        assert "Addresses Location Location ID [1]" in [column.header for column in columns]

    def test_anonymized_columns_are_flagged(self, seeded, registry):
        options = ExportOptions(anonymize_fields=["firstName", "addresses"])
        builder = make_builder(seeded, registry.get("case"), options)
        columns = builder.build({array_counter("addresses"): 1})
        flagged = {column.path_without_indices for column in columns if column.anonymize}
        assert "firstName" in flagged
        assert "addresses[].city" in flagged
        assert "lastName" not in flagged


class TestQuestionnaire:
    """Questionnaire columns for flat formats."""

    def test_flat_questionnaire_columns(self, seeded, registry):
        builder = make_builder(seeded, registry.get("case"))
        columns = builder.build(maxima_for(builder, documents()))
        headers = [column.header for column in columns]

        assert "Fever [MV 1]" in headers
        assert "Symptoms [MD 1]" in headers
        assert "Symptoms [MV 2] 2" in headers
        assert "Symptoms [MV 3] 1" not in headers

    def test_answer_labels_are_translated(self, seeded, registry):
        builder = make_builder(seeded, registry.get("case"))
        docs = documents()
        columns = builder.build(maxima_for(builder, docs))
        resolver = CellResolver(
            columns, builder.dictionary, builder.locations, builder.location_fields, flat=True
        )
        cells = {
            column.header: value
            for column, value in zip(columns, resolver.resolve_row(docs[1]))
        }
        assert cells["Symptoms [MD 1]"] == "2024-03-01"
        assert cells["Symptoms [MV 1] 1"] == "Cough"
        assert cells["Symptoms [MV 1] 2"] == "Rash"
        assert cells["Symptoms [MV 2] 2"] is None

    def test_use_question_variable(self, seeded, registry):
        builder = make_builder(seeded, registry.get("case"), ExportOptions(use_question_variable=True))
        headers = [column.header for column in builder.build({})]
        assert "fever [MV 1]" in headers

    def test_questionnaire_override(self, seeded, registry):
        override = [Question.from_dict(QUESTIONNAIRE[0])]
        builder = make_builder(seeded, registry.get("case"), ExportOptions(questionnaire=override))
        headers = [column.header for column in builder.build({})]
        assert "Fever [MV 1]" in headers
        assert not any(header.startswith("Symptoms") for header in headers)


def test_flatten_questionnaire_nesting():
    questions = [Question.from_dict({
        "variable": "travel",
        "text": "LNG_QUESTION_TRAVEL",
        "multi_answer": True,
        "answers": [{
            "value": "yes",
            "label": "LNG_ANSWER_YES",
            "additional_questions": [
                {"variable": "where", "text": "LNG_QUESTION_WHERE"},
                {"variable": "note", "text": "LNG_NOTE", "answer_type": ANSWER_TYPE_MARKUP},
            ],
        }],
    })]

    layout = flatten_questionnaire(questions)

    assert [question.variable for question in layout.flat] == ["travel", "where"]
    assert [question.variable for question in layout.roots] == ["travel"]
    (child,) = layout.roots[0].children
    assert child.multi_answer is True
    assert layout.tokens() == ["LNG_QUESTION_TRAVEL", "LNG_ANSWER_YES", "LNG_QUESTION_WHERE"]
