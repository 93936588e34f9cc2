"""
Data helpers shared by the loader, the resolver and the datastore.

These are the small building blocks of "priority data" handling:

- clone():       structural copy of mappings/lists, everything else by reference
- integrate():   merge priority data over a dataset (later values win,
                 ABSENT removes a field, dotted keys address nested fields)
- is_subset():   the query predicate used by datastore lookups
- get_index():   component index from a script filename
- build_query(): bracket-notation flattening of exchange parameters
"""

from __future__ import annotations

import random
import re
import time
from collections.abc import Iterator, Mapping
from typing import Any

KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

# name.py | name-1.2.3.py | name-1.2.3.min.py
SCRIPT_FILENAME_PATTERN = re.compile(
    r"^([a-z][a-z0-9_]*)(?:-(0|[1-9][0-9]*)\.(0|[1-9][0-9]*)\.(0|[1-9][0-9]*))?(?:\.min)?\.py$"
)


class _Absent:
    """Marker for "this field is not present" inside priority data."""

    _instance: _Absent | None = None

    def __new__(cls) -> _Absent:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> _Absent:
        return self

    def __deepcopy__(self, memo: dict) -> _Absent:
        return self


ABSENT = _Absent()


# =============================================================================
# Structural copies and merging
# =============================================================================


def clone(value: Any) -> Any:
    """
    Copy mappings and lists recursively.

    Instances, datastores, definitions and any other objects are kept by
    reference so that cloning a configuration never duplicates live objects.
    """
    if isinstance(value, dict):
        return {key: clone(item) for key, item in value.items()}
    if isinstance(value, list):
        return [clone(item) for item in value]
    return value


def deep_value(obj: Any, path: str, value: Any = ABSENT) -> Any:
    """
    Read or write a nested value addressed by a dotted path.

    Reading a missing path returns None. Writing creates intermediate
    mappings as needed.
    """
    parts = path.split(".")
    current = obj
    for part in parts[:-1]:
        if current is None:
            return None
        nxt = _get_item(current, part)
        if nxt is None:
            if value is ABSENT:
                return None
            nxt = {}
            _set_item(current, part, nxt)
        current = nxt
    if current is None:
        return None
    if value is ABSENT:
        return _get_item(current, parts[-1])
    _set_item(current, parts[-1], value)
    return value


def _get_item(container: Any, key: str) -> Any:
    if isinstance(container, Mapping):
        return container.get(key)
    if isinstance(container, list):
        try:
            return container[int(key)]
        except (ValueError, IndexError):
            return None
    return getattr(container, key, None)


def _set_item(container: Any, key: str, value: Any) -> None:
    if isinstance(container, dict):
        container[key] = value
    elif isinstance(container, list):
        container[int(key)] = value
    else:
        setattr(container, key, value)


def _remove(dataset: Any, key: Any) -> None:
    if isinstance(key, str) and "." in key:
        head, _, last = key.rpartition(".")
        parent = deep_value(dataset, head)
        if isinstance(parent, dict):
            parent.pop(last, None)
        return
    if isinstance(dataset, dict):
        dataset.pop(key, None)


def integrate(
    priority: Mapping[str, Any] | None,
    dataset: dict[str, Any] | None,
    *,
    as_defaults: bool = False,
) -> dict[str, Any] | None:
    """
    Integrate priority data into a dataset (in place).

    Args:
        priority: Values that win over the dataset
        dataset: Target dataset, modified in place
        as_defaults: Only fill fields the dataset does not have yet

    Returns:
        The integrated dataset
    """
    if priority is None:
        return dataset
    if dataset is None:
        return solve_dot_notation({key: value for key, value in priority.items() if value is not ABSENT})

    for key, value in priority.items():
        if value is ABSENT:
            if not as_defaults:
                _remove(dataset, key)
            continue
        if isinstance(key, str) and "." in key:
            if as_defaults and deep_value(dataset, key) is not None:
                continue
            deep_value(dataset, key, value)
        else:
            if as_defaults and dataset.get(key) is not None:
                continue
            dataset[key] = value
    return dataset


def solve_dot_notation(obj: dict[str, Any]) -> dict[str, Any]:
    """Expand dotted top-level keys into nested mappings (in place)."""
    for key in [k for k in obj if isinstance(k, str) and "." in k]:
        value = obj.pop(key)
        deep_value(obj, key, value)
    return obj


def iter_slots(container: Any) -> Iterator[tuple[Any, Any]]:
    """Yield (key, value) pairs of a mapping or list, safe against mutation."""
    if isinstance(container, dict):
        yield from list(container.items())
    elif isinstance(container, list):
        yield from list(enumerate(container))


# =============================================================================
# Queries and keys
# =============================================================================


def _strict_equal(a: Any, b: Any) -> bool:
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    return a == b


def is_subset(query: Mapping[str, Any], other: Mapping[str, Any]) -> bool:
    """
    Check whether every field of a query matches the candidate.

    Composite values (mappings and lists) are compared structurally,
    scalars strictly (True never matches 1).
    """
    for key, expected in query.items():
        actual = other.get(key, ABSENT) if isinstance(other, Mapping) else ABSENT
        if isinstance(expected, (dict, list)) and isinstance(actual, (dict, list)):
            if expected != actual:
                return False
        elif not _strict_equal(expected, actual):
            return False
    return True


def generate_key() -> str:
    """Generate a unique dataset key (timestamp + random digits)."""
    return f"{int(time.time() * 1000)}X{random.randrange(10**16):016d}"


def is_key(value: Any) -> bool:
    """Check whether a value is a valid dataset key."""
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, str) and bool(KEY_PATTERN.match(value))


def is_script_reference(value: Any) -> bool:
    """True for strings that point to a Python script resource."""
    if not isinstance(value, str):
        return False
    return value.split("?", 1)[0].endswith(".py")


def get_index(reference: str) -> str:
    """
    Derive a component index from a script URL or path.

    Examples:
        "blank"                          -> "blank"
        "https://host/comps/blank.py"    -> "blank"
        "lib/blank-2.1.0.min.py"         -> "blank-2-1-0"

    Returns an empty string when the filename is not a component filename.
    """
    if not is_script_reference(reference):
        return reference
    filename = reference.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]
    match = SCRIPT_FILENAME_PATTERN.match(filename)
    if not match:
        return ""
    name, major, minor, patch = match.groups()
    if major is None:
        return name
    return f"{name}-{major}-{minor}-{patch}"


# =============================================================================
# Exchange parameters
# =============================================================================


def build_query(params: Mapping[str, Any], prefix: str | None = None) -> list[tuple[str, str]]:
    """
    Flatten nested parameters with bracket notation.

    {"a": {"b": 1}, "c": [1, 2]} -> [("a[b]", "1"), ("c[0]", "1"), ("c[1]", "2")]
    """
    pairs: list[tuple[str, str]] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if isinstance(value, Mapping):
            pairs.extend(build_query(value, name))
        elif isinstance(value, (list, tuple)):
            pairs.extend(build_query(dict(enumerate(value)), name))
        elif isinstance(value, bool):
            pairs.append((name, "true" if value else "false"))
        elif value is None:
            pairs.append((name, ""))
        else:
            pairs.append((name, str(value)))
    return pairs


def looks_like_json(text: str) -> bool:
    """Quick check if text looks like a JSON object or array."""
    text = text.strip()
    return (text.startswith("{") and text.endswith("}")) or (
        text.startswith("[") and text.endswith("]")
    )
