"""
Registry loader - parses the schema descriptor YAML into typed Python objects.

A schema descriptor tells the export engine how one kind of record is laid out:
- Field path -> label token map, in declaration order
- Array fields and the labels of their child properties
- Location reference fields
- Optional export ordering, field groups and a base scope query
- Optional embedded questionnaire (tree of questions)
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from dataexport.core.exceptions import ExportConfigurationError, UnknownSchemaError

ANSWER_TYPE_SINGLE = "LNG_REFERENCE_DATA_CATEGORY_QUESTION_ANSWER_TYPE_SINGLE_ANSWER"
ANSWER_TYPE_MULTIPLE = "LNG_REFERENCE_DATA_CATEGORY_QUESTION_ANSWER_TYPE_MULTIPLE_ANSWERS"
ANSWER_TYPE_MARKUP = "LNG_REFERENCE_DATA_CATEGORY_QUESTION_ANSWER_TYPE_MARKUP"


@dataclass
class Answer:
    """One selectable answer of a single / multiple answer question."""

    value: str
    label: Optional[str] = None
    alert: bool = False
    additional_questions: List["Question"] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Answer":
        return cls(
            value=data["value"],
            label=data.get("label"),
            alert=bool(data.get("alert", False)),
            additional_questions=[
                Question.from_dict(child)
                for child in data.get("additional_questions")
                or data.get("additionalQuestions")
                or []
            ],
        )


@dataclass
class Question:
    """Questionnaire node; children hang off the answers that unlock them."""

    variable: Optional[str]
    text: Optional[str]
    answer_type: Optional[str] = None
    multi_answer: bool = False
    answers: List[Answer] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Question":
        return cls(
            variable=data.get("variable"),
            text=data.get("text"),
            answer_type=data.get("answer_type") or data.get("answerType"),
            multi_answer=bool(data.get("multi_answer", data.get("multiAnswer", False))),
            answers=[Answer.from_dict(answer) for answer in data.get("answers") or []],
        )

    def walk(self):
        """Yield this question and every descendant, depth first."""
        yield self
        for answer in self.answers:
            for child in answer.additional_questions:
                yield from child.walk()


@dataclass
class SchemaDescriptor:
    """Everything the engine knows about one exportable record kind."""

    name: str
    collection: str
    field_labels: Dict[str, str]
    array_fields: Dict[str, Dict[str, str]] = field(default_factory=dict)
    location_fields: List[str] = field(default_factory=list)
    export_fields_order: List[str] = field(default_factory=list)
    export_field_groups: Dict[str, List[str]] = field(default_factory=dict)
    scope_query: Dict[str, Any] = field(default_factory=dict)
    questionnaire: List[Question] = field(default_factory=list)
    questionnaire_field: str = "questionnaireAnswers"
    exclude_base_properties: List[str] = field(default_factory=list)
    dont_process_value: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "SchemaDescriptor":
        """Parse a descriptor from its YAML dict."""
        if "collection" not in data:
            raise ExportConfigurationError(f"Schema {name}: 'collection' is required")

        return cls(
            name=name,
            collection=data["collection"],
            field_labels=dict(data.get("field_labels") or {}),
            array_fields={
                array_path: dict(children or {})
                for array_path, children in (data.get("array_fields") or {}).items()
            },
            location_fields=list(data.get("location_fields") or []),
            export_fields_order=list(data.get("export_fields_order") or []),
            export_field_groups={
                group: list(properties or [])
                for group, properties in (data.get("export_field_groups") or {}).items()
            },
            scope_query=dict(data.get("scope_query") or {}),
            questionnaire=[
                Question.from_dict(question) for question in data.get("questionnaire") or []
            ],
            questionnaire_field=data.get("questionnaire_field", "questionnaireAnswers"),
            exclude_base_properties=list(data.get("exclude_base_properties") or []),
            dont_process_value=list(data.get("dont_process_value") or []),
        )

    def validate(self) -> None:
        """
        Validate descriptor consistency.

        Checks:
        - Array fields are labelled and declare at least one child
        - Location fields inside arrays point at a declared array child
        - Questionnaire variables are unique
        """
        if not self.field_labels:
            raise ExportConfigurationError(f"Schema {self.name}: no field labels defined")

        for array_path, children in self.array_fields.items():
            if array_path not in self.field_labels:
                raise ExportConfigurationError(
                    f"Schema {self.name}: array field '{array_path}' has no label"
                )
            if not children:
                raise ExportConfigurationError(
                    f"Schema {self.name}: array field '{array_path}' declares no child properties"
                )

        for location_path in self.location_fields:
            if "[]" not in location_path:
                continue
            array_path, _, child = location_path.partition("[].")
            if array_path in self.array_fields and child not in self.array_fields[array_path]:
                raise ExportConfigurationError(
                    f"Schema {self.name}: location field '{location_path}' is not a child of '{array_path}'"
                )

        variables = [
            question.variable
            for root in self.questionnaire
            for question in root.walk()
            if question.variable
        ]
        duplicates = sorted({v for v in variables if variables.count(v) > 1})
        if duplicates:
            raise ExportConfigurationError(
                f"Schema {self.name}: duplicate questionnaire variables {duplicates}"
            )


@dataclass
class SchemaRegistry:
    """All descriptors known to the service, keyed by name."""

    version: int
    schemas: Dict[str, SchemaDescriptor]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchemaRegistry":
        return cls(
            version=data.get("version", 1),
            schemas={
                name: SchemaDescriptor.from_dict(name, descriptor)
                for name, descriptor in (data.get("schemas") or {}).items()
            },
        )

    def validate(self) -> None:
        for descriptor in self.schemas.values():
            descriptor.validate()

    def get(self, name: str) -> SchemaDescriptor:
        if name not in self.schemas:
            raise UnknownSchemaError(f"Schema '{name}' not found in registry")
        return self.schemas[name]


class RegistryLoader:
    """
    Loader for the schema registry.

    Loads the YAML file once and caches the parsed registry in memory.
    """

    def __init__(self, registry_path: Optional[Path] = None):
        self.registry_path = Path(registry_path or "registry/schemas.yaml")
        self._cache: Optional[SchemaRegistry] = None

    def load(self, force_reload: bool = False) -> SchemaRegistry:
        if self._cache and not force_reload:
            return self._cache

        with open(self.registry_path, "r") as f:
            data = yaml.safe_load(f) or {}

        registry = SchemaRegistry.from_dict(data)
        registry.validate()

        self._cache = registry
        return registry

    def get_schema(self, name: str) -> SchemaDescriptor:
        return self.load().get(name)
