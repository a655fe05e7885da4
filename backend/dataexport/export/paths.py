"""
Field path expressions.

A path addresses a value inside a record document:

    firstName
    addresses[2].locationId
    questionnaireAnswers["fever"][0].value[1]
    addresses[].locationId          (wildcard, any item)

Paths are parsed once into a tuple of segments (key, index or wildcard) and
evaluated with plain dict / list access.
"""
import json
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Iterator, Tuple, Union


class _Wildcard:
    """Marker segment for ``[]``."""

    def __repr__(self) -> str:
        return "[]"


WILDCARD = _Wildcard()

Segment = Union[str, int, _Wildcard]

_TOKEN = re.compile(
    r'(?P<key>[^.\[\]]+)'
    r'|\[(?P<index>\d+)\]'
    r'|\[(?P<quoted>"(?:[^"\\]|\\.)*")\]'
    r'|(?P<wildcard>\[\])'
)


@dataclass(frozen=True)
class FieldPath:
    segments: Tuple[Segment, ...]
    text: str

    @classmethod
    def parse(cls, text: str) -> "FieldPath":
        return _parse(text)

    @property
    def has_wildcard(self) -> bool:
        return any(segment is WILDCARD for segment in self.segments)

    def get(self, document: Any, default: Any = None) -> Any:
        """Resolve the path; wildcard segments resolve to a list of matches."""
        if self.has_wildcard:
            return list(self.iter_values(document))

        current = document
        for segment in self.segments:
            if isinstance(segment, int):
                if not isinstance(current, list) or segment >= len(current):
                    return default
                current = current[segment]
            else:
                if not isinstance(current, dict) or segment not in current:
                    return default
                current = current[segment]
        return current

    def iter_values(self, document: Any) -> Iterator[Any]:
        """Yield every value matched by the path, expanding ``[]`` over list items."""
        yield from _iter(document, self.segments)

    def assign(self, document: dict, value: Any) -> dict:
        """Set a value, creating intermediate objects and lists as needed."""
        if not self.segments or self.has_wildcard:
            raise ValueError(f"Cannot assign to path '{self.text}'")

        current: Any = document
        for position, segment in enumerate(self.segments):
            last = position == len(self.segments) - 1
            following = None if last else self.segments[position + 1]
            empty = [] if isinstance(following, int) else {}

            if isinstance(segment, int):
                while len(current) <= segment:
                    current.append(None)
                if last:
                    current[segment] = value
                elif current[segment] is None:
                    current[segment] = empty
                current = current[segment]
            else:
                if last:
                    current[segment] = value
                elif not isinstance(current.get(segment), (dict, list)):
                    current[segment] = empty
                current = current[segment]
        return document

    def __str__(self) -> str:
        return self.text


@lru_cache(maxsize=4096)
def _parse(text: str) -> FieldPath:
    segments = []
    position = 0
    while position < len(text):
        if text[position] == "." and segments:
            position += 1
        match = _TOKEN.match(text, position)
        if not match:
            raise ValueError(f"Invalid field path '{text}' at position {position}")
        if match.group("key") is not None:
            segments.append(match.group("key"))
        elif match.group("index") is not None:
            segments.append(int(match.group("index")))
        elif match.group("quoted") is not None:
            segments.append(json.loads(match.group("quoted")))
        else:
            segments.append(WILDCARD)
        position = match.end()

    return FieldPath(tuple(segments), _render(segments))


def _render(segments) -> str:
    rendered = ""
    for segment in segments:
        if segment is WILDCARD:
            rendered += "[]"
        elif isinstance(segment, int):
            rendered += f"[{segment}]"
        elif re.fullmatch(r"[^.\[\]\"]+", segment):
            rendered += f".{segment}" if rendered else segment
        else:
            rendered += f"[{json.dumps(segment)}]"
    return rendered


def _iter(current: Any, segments: Tuple[Segment, ...]) -> Iterator[Any]:
    if not segments:
        if current is not None:
            yield current
        return

    segment, rest = segments[0], segments[1:]
    if segment is WILDCARD:
        if isinstance(current, list):
            for item in current:
                yield from _iter(item, rest)
    elif isinstance(segment, int):
        if isinstance(current, list) and segment < len(current):
            yield from _iter(current[segment], rest)
    elif isinstance(current, dict) and segment in current:
        yield from _iter(current[segment], rest)


def get_value(document: Any, path: str, default: Any = None) -> Any:
    """Shortcut for ``FieldPath.parse(path).get(document)``."""
    return FieldPath.parse(path).get(document, default)
