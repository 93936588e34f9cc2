"""
Dependency tuples.

A dependency is a placeholder embedded anywhere inside a configuration or a
dataset meaning "replace this value once operation X completes". In JSON it
is written as a list whose first item is a tag from the reserved
``konduit.`` namespace:

    ["konduit.load", "style.css", "data.json"]
    ["konduit.register", "blank.py", {"title": "default"}]
    ["konduit.instantiate", "blank.py", {"title": "hello"}]
    ["konduit.render", "blank.py", {...}]
    ["konduit.proxy", "blank.py", {...}]
    ["konduit.store", {"table": "notes"}]
    ["konduit.get", {"table": "notes"}, "note-1"]
    ["konduit.set", {"table": "notes"}, {"key": "note-1", "text": "..."}]
    ["konduit.delete", {"table": "notes"}, "note-1"]

In Python code the typed variants below can be used directly; both forms
are recognised by parse_dependency().
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class Load:
    """Load one or more resources."""

    resources: tuple[Any, ...]


@dataclass(frozen=True)
class Register:
    """Register a component (optionally with extra default configuration)."""

    component: Any
    config: dict[str, Any] | None = None


@dataclass(frozen=True)
class Instantiate:
    """Create a nested instance."""

    component: Any
    config: Any = None


@dataclass(frozen=True)
class Render:
    """Create a nested instance and render it once the graph is initialized."""

    component: Any
    config: Any = None


@dataclass(frozen=True)
class MakeProxy:
    """Defer creation of a nested instance until it is materialized."""

    component: Any
    config: Any = None


@dataclass(frozen=True)
class OpenStore:
    """Open (or reuse) a datastore."""

    settings: Any = field(default_factory=dict)


@dataclass(frozen=True)
class GetDataset:
    """Read a dataset (or the datasets matching a query) from a datastore."""

    settings: Any
    key: Any = None


@dataclass(frozen=True)
class SetDataset:
    """Write priority data into a datastore."""

    settings: Any
    data: dict[str, Any]


@dataclass(frozen=True)
class DeleteDataset:
    """Delete a dataset from a datastore."""

    settings: Any
    key: Any = None


Dependency = Union[
    Load,
    Register,
    Instantiate,
    Render,
    MakeProxy,
    OpenStore,
    GetDataset,
    SetDataset,
    DeleteDataset,
]

DEPENDENCY_TYPES: tuple[type, ...] = (
    Load,
    Register,
    Instantiate,
    Render,
    MakeProxy,
    OpenStore,
    GetDataset,
    SetDataset,
    DeleteDataset,
)

# Dataset operations, i.e. the ones that go through a datastore
DATASET_TYPES: tuple[type, ...] = (GetDataset, SetDataset, DeleteDataset)


def _arg(args: list[Any], index: int, default: Any = None) -> Any:
    return args[index] if len(args) > index else default


def _load(args: list[Any]) -> Load:
    return Load(tuple(args))


def _register(args: list[Any]) -> Register:
    return Register(_arg(args, 0), _arg(args, 1))


def _instantiate(args: list[Any]) -> Instantiate:
    return Instantiate(_arg(args, 0), _arg(args, 1))


def _render(args: list[Any]) -> Render:
    return Render(_arg(args, 0), _arg(args, 1))


def _proxy(args: list[Any]) -> MakeProxy:
    return MakeProxy(_arg(args, 0), _arg(args, 1))


def _store(args: list[Any]) -> OpenStore:
    return OpenStore(_arg(args, 0, {}))


def _get(args: list[Any]) -> GetDataset:
    return GetDataset(_arg(args, 0, {}), _arg(args, 1))


def _set(args: list[Any]) -> SetDataset:
    return SetDataset(_arg(args, 0, {}), _arg(args, 1, {}))


def _delete(args: list[Any]) -> DeleteDataset:
    return DeleteDataset(_arg(args, 0, {}), _arg(args, 1))


# Tags live in a reserved namespace so plain word lists stay plain data
TAG_PREFIX = "konduit."

TAGS = {
    f"{TAG_PREFIX}load": _load,
    f"{TAG_PREFIX}register": _register,
    f"{TAG_PREFIX}instantiate": _instantiate,
    f"{TAG_PREFIX}render": _render,
    f"{TAG_PREFIX}proxy": _proxy,
    f"{TAG_PREFIX}store": _store,
    f"{TAG_PREFIX}get": _get,
    f"{TAG_PREFIX}set": _set,
    f"{TAG_PREFIX}delete": _delete,
}


def parse_dependency(value: Any) -> Dependency | None:
    """
    Recognise a dependency.

    Args:
        value: Any configuration value

    Returns:
        The typed dependency, or None if the value is not one
    """
    if isinstance(value, DEPENDENCY_TYPES):
        return value
    if isinstance(value, list) and value and isinstance(value[0], str):
        factory = TAGS.get(value[0])
        if factory is not None:
            return factory(list(value[1:]))
    return None


def is_dependency(value: Any) -> bool:
    return parse_dependency(value) is not None
