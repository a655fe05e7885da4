"""
Cell value resolution.

For every column of a row, in order:

1. anonymized columns short-circuit to the placeholder (no lookups at all)
2. the raw value is read by path and passed through the column formatter
3. location ids become location names, label tokens become translations
4. dates become ISO strings, new lines become spaces, flat booleans TRUE / FALSE
"""
import re
from datetime import date, datetime
from typing import Any, Iterable, List, Set

from dataexport.export.columns import Column
from dataexport.export.references import Dictionary, LocationCache, is_token

NEW_LINE = re.compile(r"\r\n|\r|\n")


class CellResolver:
    def __init__(
        self,
        columns: List[Column],
        dictionary: Dictionary,
        locations: LocationCache,
        location_fields: Iterable[str],
        flat: bool,
        anonymize_value: str = "***",
        dont_translate_values: bool = False,
    ):
        self.columns = columns
        self.dictionary = dictionary
        self.locations = locations
        self.location_fields = set(location_fields)
        self.flat = flat
        self.anonymize_value = anonymize_value
        self.dont_translate_values = dont_translate_values

    def translate(self, token: Any) -> Any:
        if self.dont_translate_values:
            return token
        return self.dictionary.translate(token)

    def collect_tokens(self, documents: Iterable[dict]) -> Set[str]:
        """Label tokens the given records would render, skipping anonymized columns."""
        tokens: Set[str] = set()
        if self.dont_translate_values:
            return tokens

        seen_paths = set()
        for document in documents:
            seen_paths.clear()
            for column in self.columns:
                if column.anonymize or column.path.text in seen_paths:
                    continue
                seen_paths.add(column.path.text)
                _collect(column.path.get(document), tokens)
        return tokens

    def resolve_row(self, document: dict):
        """List of cell values for flat formats, header -> value dict otherwise."""
        if self.flat:
            return [self.resolve_cell(column, document) for column in self.columns]
        return {column.header: self.resolve_cell(column, document) for column in self.columns}

    def resolve_cell(self, column: Column, document: dict) -> Any:
        if column.anonymize:
            return self.anonymize_value

        value = column.path.get(document)
        if column.formatter:
            value = column.formatter(value, self.translate, document)
        elif (
            isinstance(value, str)
            and value
            and not self.dont_translate_values
            and column.path_without_indices in self.location_fields
        ):
            value = self.locations.name(value) or value

        if not self.dont_translate_values and value:
            if not column.no_language_tokens and column.path.text != "id" and is_token(value):
                value = self.dictionary.translate(value)
            elif column.translator:
                value = column.translator(value, self.translate)

        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, str):
            return NEW_LINE.sub(" ", value)
        if isinstance(value, bool) and self.flat:
            return "TRUE" if value else "FALSE"
        return value


def _collect(value: Any, tokens: Set[str]) -> None:
    if is_token(value):
        tokens.add(value)
    elif isinstance(value, dict):
        for child in value.values():
            _collect(child, tokens)
    elif isinstance(value, list):
        for child in value:
            _collect(child, tokens)
