"""In-process record matching for RecordStore.search.

Criteria are a mapping of field path to expected value. A plain value matches
exactly, except strings which match as a case-insensitive substring. A dict
of operators (``$eq``, ``$ne``, ``$gt``, ``$gte``, ``$lt``, ``$lte``, ``$in``,
``$regex``) applies each operator in turn. Paths may be dotted to reach into
nested mappings, e.g. ``patientInfo.age``.

This is a full-scan matcher meant for small local stores.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Optional

_MISSING = object()

OPERATORS = ("$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$regex")


@dataclass
class SearchPage:
    """One page of search results.

    Attributes:
        records: Matching records for this page
        total: Number of matches before pagination
        limit: Page size requested (None means unbounded)
        offset: Number of matches skipped
    """
    records: list[dict] = field(default_factory=list)
    total: int = 0
    limit: Optional[int] = None
    offset: int = 0

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.records) < self.total


def resolve_path(record: dict, path: str) -> Any:
    """Return the value at dotted ``path`` or the module's missing sentinel."""
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _compare(actual: Any, expected: Any, op: str) -> bool:
    try:
        if op == "$gt":
            return actual > expected
        if op == "$gte":
            return actual >= expected
        if op == "$lt":
            return actual < expected
        return actual <= expected
    except TypeError:
        # Incomparable types (e.g. str vs int) never match
        return False


def _match_operator(actual: Any, op: str, expected: Any) -> bool:
    if op == "$eq":
        return actual == expected
    if op == "$ne":
        return actual != expected
    if op in ("$gt", "$gte", "$lt", "$lte"):
        if actual is _MISSING or actual is None:
            return False
        return _compare(actual, expected, op)
    if op == "$in":
        return actual in expected
    if op == "$regex":
        if not isinstance(actual, str):
            return False
        return re.search(expected, actual, re.IGNORECASE) is not None
    raise ValueError(f"Unsupported search operator: {op}")


def _match_value(actual: Any, expected: Any) -> bool:
    if isinstance(expected, dict) and expected and all(k.startswith("$") for k in expected):
        return all(_match_operator(actual, op, value) for op, value in expected.items())
    if actual is _MISSING:
        return False
    if isinstance(expected, str) and isinstance(actual, str):
        return expected.lower() in actual.lower()
    return actual == expected


def matches(record: dict, criteria: dict) -> bool:
    """Return True if ``record`` satisfies every entry of ``criteria``.

    Raises:
        ValueError: If criteria use an unsupported ``$`` operator
    """
    return all(_match_value(resolve_path(record, path), expected) for path, expected in criteria.items())


def validate_criteria(criteria: dict) -> None:
    """Reject unknown operators and bad regexes before a full scan starts.

    Raises:
        ValueError: On an unsupported operator or an invalid pattern
    """
    for path, expected in criteria.items():
        if not isinstance(path, str) or not path:
            raise ValueError("Search criteria keys must be non-empty field paths")
        if isinstance(expected, dict) and any(k.startswith("$") for k in expected):
            for op, value in expected.items():
                if op not in OPERATORS:
                    raise ValueError(f"Unsupported search operator: {op}")
                if op == "$regex":
                    try:
                        re.compile(value)
                    except (re.error, TypeError) as e:
                        raise ValueError(f"Invalid $regex for {path}: {e}") from e
                if op == "$in" and not isinstance(value, (list, tuple, set)):
                    raise ValueError("$in expects a list of values")


def paginate(items: list[dict], limit: Optional[int] = None, offset: int = 0) -> SearchPage:
    """Slice ``items`` after filtering; negative offsets are treated as 0."""
    offset = max(offset, 0)
    if limit is not None and limit < 0:
        raise ValueError("limit must be non-negative")
    end = None if limit is None else offset + limit
    return SearchPage(records=items[offset:end], total=len(items), limit=limit, offset=offset)
