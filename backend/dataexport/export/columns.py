"""
Column schema builder.

Plans the output columns of an export before the first row is written:

1. ``header_keys()`` decides which fields are exported and in what order
   (field groups, export order, excluded base properties, ``id`` first).
2. The materialized view counts array lengths and questionnaire answers per
   record (``counters()``) and returns the maxima.
3. ``build(maxima)`` fans out arrays, questionnaire answers and location
   references into concrete columns.

Flat formats (CSV / XLS / XLSX) get one scalar column per value. Hierarchical
formats (JSON / XML) get one column per top-level field and nested values are
shaped by a per-column formatter at write time.
"""
import copy
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from dataexport.core.exceptions import ExportConfigurationError
from dataexport.export.paths import FieldPath
from dataexport.export.questionnaire import (
    FlatQuestion,
    QuestionnaireLayout,
    count_answers,
    count_selections,
    find_answer_for_day,
    flatten_questionnaire,
)
from dataexport.export.references import (
    FIXED_TOKENS,
    TOKEN_ANSWER_DATE,
    TOKEN_ANSWER_VALUE,
    TOKEN_GEOGRAPHICAL_LEVEL,
    TOKEN_ID,
    TOKEN_LOCATION_ID,
    TOKEN_LOCATION_IDENTIFIER,
    TOKEN_LOCATION_IDENTIFIERS,
    TOKEN_PARENT_LOCATION,
    Dictionary,
    LocationCache,
    is_token,
)
from dataexport.registry.loader import ANSWER_TYPE_MULTIPLE, ANSWER_TYPE_SINGLE, Question, SchemaDescriptor

logger = logging.getLogger(__name__)

LOCATION_DATA_GROUP = "LNG_COMMON_LABEL_EXPORT_GROUP_LOCATION_ID_DATA"

# formatter(value, translate, record) -> value
Formatter = Callable[[Any, Callable[[Any], Any], dict], Any]
# translator(value, translate) -> value
Translator = Callable[[Any, Callable[[Any], Any]], Any]


@dataclass
class Column:
    original_header: str
    header: str
    unique_key: str
    path: FieldPath
    path_without_indices: str
    formatter: Optional[Formatter] = None
    translator: Optional[Translator] = None
    anonymize: bool = False
    no_language_tokens: bool = False


@dataclass
class ExportOptions:
    """Request scoped options that shape the column layout."""

    anonymize_fields: List[str] = field(default_factory=list)
    field_groups: Optional[List[str]] = None
    questionnaire: Optional[List[Question]] = None
    use_db_columns: bool = False
    dont_translate_values: bool = False
    use_question_variable: bool = False


class AnonymizeMatcher:
    """
    Decides whether a column path is covered by the anonymize list.

    Matching is case insensitive and prefix based: anonymizing ``addresses``
    covers ``addresses[].phoneNumber`` too. Anonymizing the questionnaire field
    covers every questionnaire column.
    """

    def __init__(self, fields: Iterable[str], questionnaire_field: str = "questionnaireAnswers"):
        self.fields = set()
        for name in fields or []:
            lowered = name.lower()
            self.fields.add(lowered)
            if lowered in ("id", "_id"):
                self.fields.update(("id", "_id"))
        self.questionnaire_field = questionnaire_field.lower()

    def __call__(self, path: str) -> bool:
        if not self.fields:
            return False

        lowered = (path or "").lower()
        so_far = ""
        for level in lowered.replace("[]", "").split("."):
            if not level:
                continue
            so_far = f"{so_far}.{level}" if so_far else level
            if so_far in self.fields:
                return True

        return self.questionnaire_field in self.fields and lowered.startswith(
            f"{self.questionnaire_field}["
        )


def array_counter(path: str) -> str:
    return f"array:{path}"


class ColumnSchemaBuilder:
    def __init__(
        self,
        descriptor: SchemaDescriptor,
        options: ExportOptions,
        dictionary: Dictionary,
        locations: LocationCache,
        flat: bool,
    ):
        self.descriptor = descriptor
        self.options = options
        self.dictionary = dictionary
        self.locations = locations
        self.flat = flat
        self.questionnaire_field = descriptor.questionnaire_field
        self.anonymize = AnonymizeMatcher(options.anonymize_fields, descriptor.questionnaire_field)
        self.dont_process = set(descriptor.dont_process_value)

        self.keys, self.labels, self.include_location_data = self._plan_keys()
        self.array_fields = {
            path: children
            for path, children in descriptor.array_fields.items()
            if path in self.labels
        }
        self.location_fields = {
            path for path in descriptor.location_fields if path.split("[]", 1)[0] in self.labels
        }

        questions = options.questionnaire if options.questionnaire is not None else descriptor.questionnaire
        self.questionnaire: QuestionnaireLayout = (
            flatten_questionnaire(questions)
            if self.questionnaire_field in self.labels
            else QuestionnaireLayout()
        )
        self.columns: List[Column] = []

    # -- planning -----------------------------------------------------------

    def header_keys(self) -> List[str]:
        return list(self.keys)

    def _plan_keys(self):
        descriptor = self.descriptor
        labels = dict(descriptor.field_labels)
        order = list(descriptor.export_fields_order)
        groups = self.options.field_groups

        if groups and descriptor.export_field_groups:
            selected = {}
            for group, properties in descriptor.export_field_groups.items():
                if group not in groups:
                    continue
                for name in properties:
                    if name in labels:
                        selected[name] = labels[name]
            if selected:
                labels = selected
                order = []

        keys: List[str] = []
        for name in order + list(labels):
            if name not in keys:
                keys.append(name)

        excluded = set(descriptor.exclude_base_properties)
        if excluded:
            keys = [
                name for name in keys
                if name.replace("[]", "").split(".", 1)[0] not in excluded
            ]

        id_label = labels.pop("_id", None) or labels.get("id") or TOKEN_ID
        keys = ["id"] + [name for name in keys if name not in ("id", "_id")]
        labels["id"] = id_label

        include_location_data = (
            LOCATION_DATA_GROUP in groups
            if groups and descriptor.export_field_groups
            else True
        )
        return keys, labels, include_location_data

    def label_tokens(self) -> List[str]:
        """Every token the headers can render, fetched before any row is written."""
        tokens = list(FIXED_TOKENS)
        tokens.extend(token for token in self.labels.values() if token)
        for children in self.array_fields.values():
            tokens.extend(token for token in children.values() if token)
        tokens.extend(self.questionnaire.tokens())
        return tokens

    def counters(self) -> Dict[str, Callable[[dict], int]]:
        """Per-record cardinalities the flat layout depends on."""
        if not self.flat:
            return {}

        counters: Dict[str, Callable[[dict], int]] = {}
        for path in self.array_fields:
            counters[array_counter(path)] = _array_length(FieldPath.parse(path))

        field_path = FieldPath.parse(self.questionnaire_field)
        for question in self.questionnaire.flat:
            counters[question.answers_counter] = _answers_counter(field_path, question.variable, count_answers)
            if question.is_multiple_choice:
                counters[question.selections_counter] = _answers_counter(
                    field_path, question.variable, count_selections
                )
        return counters

    def location_paths(self) -> List[str]:
        return sorted(self.location_fields)

    def validate(self) -> None:
        """Fail fast on layouts that can never be emitted."""
        if not self.flat:
            return
        for name in self.keys:
            if "[]" in name and name not in self.array_fields:
                if name.split("[]", 1)[0] not in self.array_fields:
                    raise ExportConfigurationError(f"Missing array definition for property '{name}'")

    # -- column emission ----------------------------------------------------

    def build(self, maxima: Optional[Dict[str, int]] = None) -> List[Column]:
        """
        Emit the ordered column list.

        Raises:
            ExportConfigurationError: for a ``[]`` field with no array definition
        """
        maxima = maxima or {}
        self.columns = []

        for name in self.keys:
            label = self._label(name)

            if self.flat and name in self.array_fields:
                self._add_array_columns(name, label, maxima.get(array_counter(name), 0))
                continue

            if "[]" in name:
                array_root = name.split("[]", 1)[0]
                if self.flat and array_root not in self.array_fields:
                    raise ExportConfigurationError(f"Missing array definition for property '{name}'")
                continue

            if "." in name:
                if not self.flat:
                    continue
                self._add_object_child_column(name, label)
            elif name == self.questionnaire_field and self.questionnaire:
                if self.flat:
                    for question in self.questionnaire.roots:
                        self._add_questionnaire_columns(question, maxima, None, None)
                else:
                    self._add_column(
                        label, name, name, name,
                        formatter=self._questionnaire_formatter,
                        no_language_tokens=True,
                    )
            else:
                self._add_column(
                    label, name, name, name,
                    formatter=None if self.flat else self._nested_formatter(name),
                )

            if self.include_location_data and name in self.location_fields:
                self._add_location_columns(label, name, name, "")

        logger.info(f"Planned {len(self.columns)} column(s) for {self.descriptor.name}")
        return self.columns

    def _add_column(
        self,
        header: str,
        path: str,
        path_without_indices: str,
        unique_key: str,
        formatter: Optional[Formatter] = None,
        translator: Optional[Translator] = None,
        no_language_tokens: bool = False,
    ) -> Column:
        column = Column(
            original_header=header,
            header=header,
            unique_key=unique_key,
            path=FieldPath.parse(path),
            path_without_indices=path_without_indices,
            formatter=formatter,
            translator=translator,
            anonymize=self.anonymize(path_without_indices),
            no_language_tokens=no_language_tokens,
        )

        for existing in self.columns:
            if existing.original_header != column.original_header:
                continue
            column.header = f"{column.original_header} ({column.unique_key})"
            existing.header = f"{existing.original_header} ({existing.unique_key})"

        self.columns.append(column)
        return column

    def _remove_last_column_if_path(self, path: str) -> None:
        if self.columns and self.columns[-1].path.text == FieldPath.parse(path).text:
            self.columns.pop()

    def _add_array_columns(self, name: str, label: str, count: int) -> None:
        children = self.array_fields[name]
        for index in range(count):
            for child, child_token in children.items():
                child_label = child if self.options.use_db_columns else self._translated(child_token, child)

                if "." in child:
                    self._remove_last_column_if_path(f"{name}[{index}].{child.split('.', 1)[0]}")

                child_path = f"{name}[{index}].{child}"
                child_without_indices = f"{name}[].{child}"
                is_location = child_without_indices in self.location_fields
                self._add_column(
                    f"{label} {child_label} [{index + 1}]",
                    child_path,
                    child_without_indices,
                    child_path,
                    no_language_tokens=is_location,
                )

                if self.include_location_data and is_location:
                    self._add_location_columns(
                        f"{label} {child_label}",
                        child_path,
                        child_without_indices,
                        f" [{index + 1}]",
                    )

    def _add_object_child_column(self, name: str, label: str) -> None:
        if self.options.use_db_columns:
            self._add_column(name, name, name, name)
            return

        parent, _, _ = name.rpartition(".")
        parent_labels = []
        so_far = ""
        for level in parent.split("."):
            so_far = f"{so_far}.{level}" if so_far else level
            self._remove_last_column_if_path(so_far)
            token = self.labels.get(so_far) or self.labels.get(level)
            translation = self.dictionary.get(token) if token else None
            if translation:
                parent_labels.append(translation)

        header = f"{' '.join(parent_labels)} {label}" if parent_labels else label
        self._add_column(header, name, name, name)

    # -- locations ----------------------------------------------------------

    def _add_location_columns(self, label: str, path: str, path_without_indices: str, index_suffix: str) -> None:
        """Id, identifier, geographical level and parent name blocks for one location reference."""
        if not self.options.dont_translate_values:
            self._add_column(
                f"{label} {self._fixed(TOKEN_LOCATION_ID)}{index_suffix}",
                path, path_without_indices, f"{path}:id",
                formatter=lambda value, translate, record: value,
                no_language_tokens=True,
            )

        identifiers_header = f"{label} {self._fixed(TOKEN_LOCATION_IDENTIFIERS)}{index_suffix}"
        levels_header = (
            f"{label}{index_suffix} {self._fixed(TOKEN_GEOGRAPHICAL_LEVEL)}"
            if index_suffix
            else f"{label} {self._fixed(TOKEN_GEOGRAPHICAL_LEVEL)}"
        )
        parents_header = (
            f"{label}{index_suffix} {self._fixed(TOKEN_PARENT_LOCATION)}"
            if index_suffix
            else f"{label} {self._fixed(TOKEN_PARENT_LOCATION)}"
        )

        if not self.flat:
            self._add_column(
                identifiers_header, path, path_without_indices, f"{path}:identifiers",
                formatter=self._location_identifier_codes,
                no_language_tokens=True,
            )
            self._add_column(
                levels_header, path, path_without_indices, f"{path}:levels",
                formatter=self._location_levels,
                translator=self._translate_levels,
            )
            self._add_column(
                parents_header, path, path_without_indices, f"{path}:parents",
                formatter=self._location_parent_names,
                no_language_tokens=True,
            )
            return

        identifier_label = self._fixed(TOKEN_LOCATION_IDENTIFIER)
        for index in range(self.locations.max_identifiers):
            self._add_column(
                f"{identifiers_header} {identifier_label} [{index + 1}]",
                path, path_without_indices, f"{path}:identifier:{index}",
                formatter=self._location_identifier(index),
                no_language_tokens=True,
            )

        for index in range(self.locations.max_parent_chain):
            self._add_column(
                f"{levels_header} [{index + 1}]",
                path, path_without_indices, f"{path}:level:{index}",
                formatter=self._location_level(index),
            )

        for index in range(self.locations.max_parent_chain):
            self._add_column(
                f"{parents_header} [{index + 1}]",
                path, path_without_indices, f"{path}:parent:{index}",
                formatter=self._location_parent_name(index),
                no_language_tokens=True,
            )

    def _location_identifier(self, index: int) -> Formatter:
        def formatter(value, translate, record):
            location = self.locations.get(value)
            if location and len(location.identifiers) > index:
                return location.identifiers[index].get("code")
            return ""
        return formatter

    def _location_level(self, index: int) -> Formatter:
        def formatter(value, translate, record):
            location = self.locations.get(value)
            if location and len(location.parent_chain) > index:
                ancestor = self.locations.get(location.parent_chain[index])
                if ancestor and ancestor.geographical_level_id:
                    return ancestor.geographical_level_id
            return ""
        return formatter

    def _location_parent_name(self, index: int) -> Formatter:
        def formatter(value, translate, record):
            location = self.locations.get(value)
            if location and len(location.parent_chain) > index:
                ancestor_id = location.parent_chain[index]
                ancestor = self.locations.get(ancestor_id)
                if ancestor and ancestor.name:
                    return ancestor_id if self.options.dont_translate_values else ancestor.name
            return ""
        return formatter

    def _location_identifier_codes(self, value, translate, record):
        location = self.locations.get(value)
        return location.identifier_codes if location else []

    def _location_levels(self, value, translate, record):
        location = self.locations.get(value)
        return list(location.parent_chain_levels) if location else []

    def _translate_levels(self, value, translate):
        if self.options.dont_translate_values:
            return value
        return [translate(level) for level in value]

    def _location_parent_names(self, value, translate, record):
        location = self.locations.get(value)
        if not location:
            return []
        if self.options.dont_translate_values:
            return list(location.parent_chain)
        return list(location.parent_chain_names)

    # -- questionnaire ------------------------------------------------------

    def _question_header(self, question: FlatQuestion) -> str:
        if self.options.use_question_variable or self.options.use_db_columns:
            return question.variable
        return self._translated(question.text, question.text)

    def _add_questionnaire_columns(
        self,
        question: FlatQuestion,
        maxima: Dict[str, int],
        parent_date_path: Optional[str],
        parent_index: Optional[int],
    ) -> None:
        answers_path = f"{self.questionnaire_field}[{json.dumps(question.variable)}]"

        if parent_date_path:
            # Children of multi answer questions render the answer given on the parent's date
            index = parent_index
            rounds = index + 1
        else:
            index = 0
            rounds = max(maxima.get(question.answers_counter, 0), 1)

        while index < rounds:
            header = self._question_header(question)

            date_path = None
            if question.multi_answer:
                date_path = parent_date_path or f"{answers_path}[{index}].date"
                self._add_column(
                    f"{header} [MD {index + 1}]",
                    date_path, date_path, question.variable,
                    no_language_tokens=True,
                )

            if question.is_multiple_choice:
                selections = max(maxima.get(question.selections_counter, 0), 1)
                for selection in range(selections):
                    path = (
                        answers_path
                        if parent_date_path
                        else f"{answers_path}[{index}].value[{selection}]"
                    )
                    self._add_column(
                        f"{header} [MV {index + 1}] {selection + 1}",
                        path, path, question.variable,
                        formatter=self._answer_formatter(question, parent_date_path, selection),
                        no_language_tokens=True,
                    )
            else:
                path = answers_path if parent_date_path else f"{answers_path}[{index}].value"
                self._add_column(
                    f"{header} [MV {index + 1}]",
                    path, path, question.variable,
                    formatter=self._answer_formatter(question, parent_date_path, None),
                    no_language_tokens=True,
                )

            child_date_path = parent_date_path or (date_path if question.multi_answer else None)
            child_index = parent_index if parent_index is not None else (
                index if question.multi_answer else None
            )
            for child in question.children:
                self._add_questionnaire_columns(child, maxima, child_date_path, child_index)

            index += 1

    def _answer_formatter(
        self,
        question: FlatQuestion,
        parent_date_path: Optional[str],
        selection: Optional[int],
    ) -> Formatter:
        date_path = FieldPath.parse(parent_date_path) if parent_date_path else None

        def formatter(value, translate, record):
            if date_path is not None:
                entry = find_answer_for_day(value, date_path.get(record))
                value = entry.get("value") if entry else None
                if selection is not None:
                    value = value[selection] if isinstance(value, list) and len(value) > selection else None

            if (
                not self.options.dont_translate_values
                and isinstance(value, str)
                and question.answer_labels.get(value)
            ):
                return self.dictionary.translate(question.answer_labels[value])
            return value

        return formatter

    def _questionnaire_formatter(self, value, translate, record):
        """Nested questionnaire value keyed by (translated) question text, in questionnaire order."""
        if self.options.use_db_columns and self.options.dont_translate_values:
            return value

        value_key = TOKEN_ANSWER_VALUE if self.options.use_db_columns else self._fixed(TOKEN_ANSWER_VALUE)
        date_key = TOKEN_ANSWER_DATE if self.options.use_db_columns else self._fixed(TOKEN_ANSWER_DATE)

        used_headers: Dict[str, str] = {}
        formatted: Dict[str, Any] = {}
        for question in self.questionnaire.flat:
            header = self._question_header(question)
            entries = copy.deepcopy(value.get(question.variable)) if isinstance(value, dict) else None

            if isinstance(entries, list):
                entries = [
                    self._format_answer(question, entry, value_key, date_key)
                    for entry in entries
                ]

            if header in used_headers:
                if header in formatted:
                    formatted[f"{header} ({used_headers[header]})"] = formatted.pop(header)
                formatted[f"{header} ({question.variable})"] = entries
            else:
                formatted[header] = entries
                used_headers[header] = question.variable

        return formatted

    def _format_answer(self, question: FlatQuestion, entry: Any, value_key: str, date_key: str):
        if not isinstance(entry, dict):
            return entry

        answer = entry.get("value")
        if not self.options.dont_translate_values and answer:
            if question.answer_type == ANSWER_TYPE_SINGLE and isinstance(answer, str):
                entry["value"] = self.dictionary.translate(question.answer_labels.get(answer) or answer)
            elif question.answer_type == ANSWER_TYPE_MULTIPLE and isinstance(answer, list):
                entry["value"] = [
                    self.dictionary.translate(question.answer_labels.get(item) or item)
                    if isinstance(item, str) else item
                    for item in answer
                ]

        if self.options.use_db_columns:
            return entry

        formatted = {}
        for key, item in entry.items():
            if key == "value":
                formatted[value_key] = item
            elif key == "date":
                formatted[date_key] = item
            else:
                formatted[key] = item
        return formatted

    # -- hierarchical values ------------------------------------------------

    def _nested_formatter(self, name: str) -> Formatter:
        def formatter(value, translate, record):
            if isinstance(value, (list, dict)):
                return self._format_nested(name, value, translate)
            if isinstance(value, str) and value and name in self.location_fields:
                return self._location_name(value)
            return value
        return formatter

    def _format_nested(self, prefix: str, value: Any, translate: Callable[[Any], Any]) -> Any:
        if not value:
            return value
        if prefix in self.dont_process:
            return value

        if isinstance(value, list):
            return [self._format_nested(f"{prefix}[]", item, translate) for item in value]

        if isinstance(value, dict):
            formatted = {}
            for key, child in value.items():
                path = f"{prefix}.{key}"
                label = key if self.options.use_db_columns else self._translated(self.labels.get(path), key)

                if isinstance(child, str) and child and path in self.location_fields:
                    formatted[label] = self._location_name(child)
                    if self.include_location_data:
                        formatted.update(self._nested_location_data(label, child, translate))
                else:
                    formatted[label] = self._format_nested(path, child, translate)
            return formatted

        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if not self.options.dont_translate_values and is_token(value):
            return translate(value)
        return value

    def _nested_location_data(self, label: str, location_id: str, translate) -> Dict[str, Any]:
        data = {}
        if not self.options.dont_translate_values:
            data[f"{label} {self._fixed(TOKEN_LOCATION_ID)}"] = location_id
        data[self._fixed(TOKEN_LOCATION_IDENTIFIERS)] = self._location_identifier_codes(location_id, translate, None)
        data[self._fixed(TOKEN_GEOGRAPHICAL_LEVEL)] = [
            translate(level) for level in self._location_levels(location_id, translate, None)
        ]
        data[self._fixed(TOKEN_PARENT_LOCATION)] = self._location_parent_names(location_id, translate, None)
        return data

    def _location_name(self, location_id: str) -> str:
        if self.options.dont_translate_values:
            return location_id
        return self.locations.name(location_id) or location_id

    # -- labels -------------------------------------------------------------

    def _label(self, name: str) -> str:
        if self.options.use_db_columns:
            return name
        return self._translated(self.labels.get(name), name)

    def _translated(self, token: Optional[str], fallback: str) -> str:
        if token and self.dictionary.get(token) is not None:
            return self.dictionary.get(token)
        return fallback

    def _fixed(self, token: str) -> str:
        return self._translated(token, token)


def _array_length(path: FieldPath) -> Callable[[dict], int]:
    def count(document: dict) -> int:
        value = path.get(document)
        return len(value) if isinstance(value, list) else 0
    return count


def _answers_counter(field_path: FieldPath, variable: str, counter) -> Callable[[dict], int]:
    def count(document: dict) -> int:
        return counter(field_path.get(document), variable)
    return count
