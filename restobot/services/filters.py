"""In-process predicates applied to a tenant partition after it is fetched.

The store is only ever queried with the tenant equality filter; every other
predicate (status equality, numeric comparisons, relative date windows) is
evaluated here so that no compound indexes are needed on the backing store.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

DATE_WINDOWS = (
    "today",
    "yesterday",
    "this_week",
    "last_7_days",
    "this_month",
    "last_30_days",
    "this_year",
)

OPERATORS = frozenset({"eq", "ne", "gt", "gte", "lt", "lte", "in", "contains"})


def date_window(name: str, now: datetime) -> Tuple[datetime, datetime]:
    """Return the half-open ``[start, end)`` range for a named window.

    Windows are day-granular in the timezone carried by ``now``.
    """
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    tomorrow = today_start + timedelta(days=1)
    if name == "today":
        return today_start, tomorrow
    if name == "yesterday":
        return today_start - timedelta(days=1), today_start
    if name in ("this_week", "last_7_days"):
        return today_start - timedelta(days=6), tomorrow
    if name == "this_month":
        return today_start.replace(day=1), tomorrow
    if name == "last_30_days":
        return today_start - timedelta(days=29), tomorrow
    if name == "this_year":
        return today_start.replace(month=1, day=1), tomorrow
    raise ValueError(f"Unknown date window: {name}")


def coerce_datetime(value: Any, default_tz: tzinfo = timezone.utc) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=default_tz)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=default_tz)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=default_tz)
    if isinstance(value, Mapping) and "_seconds" in value:
        return datetime.fromtimestamp(float(value["_seconds"]), tz=timezone.utc)
    return None


def resolve_path(document: Mapping[str, Any], path: str) -> List[Any]:
    """Values at a dotted path; lists met on the way (or at the leaf) are expanded."""
    current: List[Any] = [document]
    for segment in path.split("."):
        following: List[Any] = []
        for node in current:
            if isinstance(node, Mapping) and segment in node:
                following.append(node[segment])
        current = _expand(following)
    return current


def _expand(values: Iterable[Any]) -> List[Any]:
    expanded: List[Any] = []
    for value in values:
        if isinstance(value, (list, tuple)):
            expanded.extend(value)
        else:
            expanded.append(value)
    return expanded


def project(document: Mapping[str, Any], fields: Iterable[str]) -> Dict[str, Any]:
    projected: Dict[str, Any] = {"id": document.get("id")}
    for field in fields:
        if "." not in field:
            if field in document:
                projected[field] = document[field]
            continue
        values = resolve_path(document, field)
        if values:
            projected[field] = values[0] if len(values) == 1 else values
    return projected


def to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def values_equal(actual: Any, expected: Any) -> bool:
    if isinstance(actual, bool) or isinstance(expected, bool):
        return actual == expected
    if isinstance(actual, (int, float)) or isinstance(expected, (int, float)):
        left, right = to_number(actual), to_number(expected)
        return left is not None and right is not None and left == right
    if isinstance(actual, str) and isinstance(expected, str):
        return actual.strip().casefold() == expected.strip().casefold()
    return actual == expected


def _compare(actual: Any, expected: Any) -> Optional[int]:
    left, right = to_number(actual), to_number(expected)
    if left is not None and right is not None:
        return (left > right) - (left < right)
    left_dt, right_dt = coerce_datetime(actual), coerce_datetime(expected)
    if left_dt is not None and right_dt is not None:
        return (left_dt > right_dt) - (left_dt < right_dt)
    return None


def _operator_matches(operator: str, values: List[Any], expected: Any) -> bool:
    if operator == "eq":
        return any(values_equal(value, expected) for value in values)
    if operator == "ne":
        return not any(values_equal(value, expected) for value in values)
    if operator == "in":
        options = expected if isinstance(expected, (list, tuple)) else [expected]
        return any(values_equal(value, option) for value in values for option in options)
    if operator == "contains":
        needle = str(expected).casefold()
        return any(isinstance(value, str) and needle in value.casefold() for value in values)
    for value in values:
        outcome = _compare(value, expected)
        if outcome is None:
            continue
        if operator == "gt" and outcome > 0:
            return True
        if operator == "gte" and outcome >= 0:
            return True
        if operator == "lt" and outcome < 0:
            return True
        if operator == "lte" and outcome <= 0:
            return True
    return False


def operator_spec(expected: Any) -> Optional[Dict[str, Any]]:
    """Normalise ``{"gt": 1}`` / ``{"$gt": 1}`` into an operator map, else None."""
    if not isinstance(expected, Mapping) or not expected:
        return None
    normalised = {str(key).lstrip("$"): value for key, value in expected.items()}
    if set(normalised) <= OPERATORS:
        return normalised
    return None


def in_window(values: List[Any], window: str, now: datetime) -> bool:
    start, end = date_window(window, now)
    for value in values:
        moment = coerce_datetime(value, now.tzinfo or timezone.utc)
        if moment is not None and start <= moment < end:
            return True
    return False


def matches(document: Mapping[str, Any], filters: Mapping[str, Any], now: datetime) -> bool:
    for field, expected in filters.items():
        values = resolve_path(document, field)
        if isinstance(expected, str) and expected in DATE_WINDOWS:
            if not in_window(values, expected, now):
                return False
            continue
        operators = operator_spec(expected)
        if operators is not None:
            if not all(_operator_matches(op, values, value) for op, value in operators.items()):
                return False
            continue
        if not values:
            if expected is not None:
                return False
            continue
        if not any(values_equal(value, expected) for value in values):
            return False
    return True


def apply_filters(
    documents: Iterable[Mapping[str, Any]], filters: Mapping[str, Any], now: datetime
) -> List[Mapping[str, Any]]:
    return [document for document in documents if matches(document, filters, now)]
