"""
Filter normalizer.

Turns a loopback-style query description into a SQLAlchemy predicate over the
``records`` table, merged with the schema's base scope and the default
"exclude soft-deleted" rule.

    {"and": [{"firstName": "Ana"}, {"age": {"gte": 18}}]}
    {"or": [{"classification": {"inq": ["A", "B"]}}, {"dateOfOnset": None}]}

``id`` addresses the record id column, ``deleted`` the deleted flag, any other
path is read from the JSON document.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import and_, func, not_, or_, true
from sqlalchemy.sql.elements import ColumnElement

from dataexport.core.exceptions import ExportConfigurationError
from dataexport.export.paths import WILDCARD, FieldPath
from dataexport.models.record import Record

LOGICAL_OPERATORS = ("and", "or")
COMPARISON_OPERATORS = (
    "eq", "neq", "gt", "gte", "lt", "lte",
    "inq", "nin", "between", "like", "nlike", "exists",
)
SCALAR_TYPES = (str, int, float, bool)

SortSpec = Union[None, str, List[str], Dict[str, Any]]


@dataclass
class QueryFilter:
    """Caller supplied filter."""

    where: Dict[str, Any] = field(default_factory=dict)
    sort: SortSpec = None
    include_deleted: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "QueryFilter":
        data = data or {}
        return cls(
            where=data.get("where") or {},
            sort=data.get("sort", data.get("order")),
            include_deleted=bool(data.get("include_deleted", data.get("deleted", False))),
        )


@dataclass(frozen=True)
class NormalizedFilter:
    collection: str
    where: ColumnElement
    order_by: tuple
    raw: Dict[str, Any]


def merge_filters(*wheres: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """AND together non-empty where dicts."""
    parts = [where for where in wheres if where]
    if not parts:
        return {}
    if len(parts) == 1:
        return parts[0]
    return {"and": parts}


def normalize_filter(
    collection: str,
    query_filter: Optional[QueryFilter] = None,
    scope_query: Optional[Dict[str, Any]] = None,
) -> NormalizedFilter:
    """
    Build the native predicate and ordering for one export.

    Raises:
        ExportConfigurationError: if the where or sort shape is malformed
    """
    query_filter = query_filter or QueryFilter()
    raw = merge_filters(scope_query, query_filter.where)
    if not query_filter.include_deleted:
        raw = merge_filters(raw, {"deleted": False})

    where = and_(Record.collection == collection, compile_where(raw))
    order_by = tuple(compile_sort(query_filter.sort))

    return NormalizedFilter(collection=collection, where=where, order_by=order_by, raw=raw)


def compile_where(where: Dict[str, Any]) -> ColumnElement:
    if where is None:
        return true()
    if not isinstance(where, dict):
        raise ExportConfigurationError(f"Filter must be an object, got {type(where).__name__}")

    clauses = []
    for key, value in where.items():
        if key in LOGICAL_OPERATORS:
            if not isinstance(value, list):
                raise ExportConfigurationError(f"'{key}' expects a list of conditions")
            compiled = [compile_where(condition) for condition in value]
            if not compiled:
                continue
            clauses.append(and_(*compiled) if key == "and" else or_(*compiled))
        else:
            clauses.append(_compile_condition(key, value))

    if not clauses:
        return true()
    return clauses[0] if len(clauses) == 1 else and_(*clauses)


def compile_sort(sort: SortSpec) -> List[ColumnElement]:
    """Ordering clauses; the record id is always appended as tie breaker."""
    if sort is None:
        items = []
    elif isinstance(sort, str):
        items = [_parse_sort_item(sort)]
    elif isinstance(sort, list):
        items = [_parse_sort_item(item) for item in sort]
    elif isinstance(sort, dict):
        items = [(path, _parse_direction(direction)) for path, direction in sort.items()]
    else:
        raise ExportConfigurationError(f"Unsupported sort shape: {sort!r}")

    order_by = []
    for path, descending in items:
        column = _column_for(path)
        order_by.append(column.desc() if descending else column.asc())

    if not any(path in ("id", "_id") for path, _ in items):
        order_by.append(Record.id.asc())
    return order_by


def json_path(path: str) -> str:
    """SQLite JSON path for a record field path, e.g. ``$."addresses"[0]."locationId"``."""
    try:
        parsed = FieldPath.parse(path)
    except ValueError as e:
        raise ExportConfigurationError(str(e)) from e

    rendered = "$"
    for segment in parsed.segments:
        if segment is WILDCARD:
            raise ExportConfigurationError(f"Wildcards are not supported in filters: '{path}'")
        if isinstance(segment, int):
            rendered += f"[{segment}]"
        else:
            rendered += "." + json.dumps(segment)
    return rendered


def _column_for(path: str) -> ColumnElement:
    if path in ("id", "_id"):
        return Record.id
    if path == "deleted":
        return Record.deleted
    return func.json_extract(Record.data, json_path(path))


def _literal(path: str, value: Any) -> Any:
    if value is not None and not isinstance(value, SCALAR_TYPES):
        raise ExportConfigurationError(
            f"Filter value for '{path}' must be a string, number or boolean, got {type(value).__name__}"
        )
    # json_extract returns JSON booleans as 0 / 1
    if isinstance(value, bool) and path not in ("deleted",):
        return int(value)
    return value


def _compile_condition(path: str, condition: Any) -> ColumnElement:
    column = _column_for(path)

    if not isinstance(condition, dict):
        return _compare(column, path, "eq", condition)

    unknown = [key for key in condition if key not in COMPARISON_OPERATORS]
    if unknown:
        raise ExportConfigurationError(f"Unsupported operator(s) {unknown} for '{path}'")

    clauses = [_compare(column, path, operator, value) for operator, value in condition.items()]
    return clauses[0] if len(clauses) == 1 else and_(*clauses)


def _compare(column: ColumnElement, path: str, operator: str, value: Any) -> ColumnElement:
    if operator == "eq":
        return column.is_(None) if value is None else column == _literal(path, value)
    if operator == "neq":
        return column.is_not(None) if value is None else or_(column != _literal(path, value), column.is_(None))
    if operator in ("gt", "gte", "lt", "lte"):
        if value is None:
            raise ExportConfigurationError(f"'{operator}' on '{path}' needs a value")
        value = _literal(path, value)
        return {
            "gt": column > value,
            "gte": column >= value,
            "lt": column < value,
            "lte": column <= value,
        }[operator]
    if operator in ("inq", "nin"):
        if not isinstance(value, list):
            raise ExportConfigurationError(f"'{operator}' on '{path}' expects a list")
        values = [_literal(path, item) for item in value]
        if operator == "inq":
            return column.in_(values)
        return or_(not_(column.in_(values)), column.is_(None))
    if operator == "between":
        if not isinstance(value, list) or len(value) != 2:
            raise ExportConfigurationError(f"'between' on '{path}' expects [start, end]")
        return column.between(_literal(path, value[0]), _literal(path, value[1]))
    if operator in ("like", "nlike"):
        if not isinstance(value, str):
            raise ExportConfigurationError(f"'{operator}' on '{path}' expects a string")
        return column.like(value) if operator == "like" else not_(column.like(value))
    # exists
    return column.is_not(None) if value else column.is_(None)


def _parse_sort_item(item: Any):
    if not isinstance(item, str) or not item.strip():
        raise ExportConfigurationError(f"Invalid sort item: {item!r}")

    parts = item.split()
    if len(parts) == 1:
        return parts[0], False
    if len(parts) == 2:
        return parts[0], _parse_direction(parts[1])
    raise ExportConfigurationError(f"Invalid sort item: {item!r}")


def _parse_direction(direction: Any) -> bool:
    """True for descending."""
    if isinstance(direction, str) and direction.lower() in ("asc", "desc"):
        return direction.lower() == "desc"
    if direction in (1, -1):
        return direction == -1
    raise ExportConfigurationError(f"Invalid sort direction: {direction!r}")
