"""
Instance Initializer.

Runs the two lifecycle hooks of a structurally complete instance graph:

    1. init   - every reachable instance, children before their parent
    2. ready  - same order, after every init has finished

Children of an instance are the instances reachable through its fields
(directly or inside mappings/lists), except through ``parent`` and
``component``. Siblings run concurrently. A hook is removed from the
instance once it has run, so walking the graph again never runs it twice.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any

from konduit.components.definition import Proxy, is_component, is_instance
from konduit.helpers import iter_slots

logger = logging.getLogger(__name__)

PHASES = ("init", "ready")

_SKIPPED_FIELDS = frozenset({"parent", "component"})


def children_of(instance: Any) -> list[Any]:
    """Instances directly owned by an instance."""
    found: list[Any] = []
    seen: set[int] = set()

    def search(container: Any) -> None:
        for _, value in iter_slots(container):
            if is_instance(value):
                if id(value) not in seen:
                    seen.add(id(value))
                    found.append(value)
            elif isinstance(value, (dict, list)) and id(value) not in seen:
                seen.add(id(value))
                search(value)

    fields = {key: value for key, value in getattr(instance, "__dict__", {}).items() if key not in _SKIPPED_FIELDS}
    search(fields)
    return found


class Initializer:
    """Runs one lifecycle phase over an instance graph."""

    def __init__(self, phase: str):
        if phase not in PHASES:
            raise ValueError(f"Unknown lifecycle phase: {phase}")
        self.phase = phase
        self._visits: dict[int, asyncio.Future] = {}

    async def run(self, root: Any) -> None:
        await self._visit(root, frozenset())

    async def _visit(self, instance: Any, path: frozenset[int]) -> None:
        key = id(instance)
        if key in path:
            return
        existing = self._visits.get(key)
        if existing is not None:
            await existing
            return

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._visits[key] = future
        try:
            children = [child for child in children_of(instance) if not isinstance(child, Proxy)]
            if children:
                await asyncio.gather(*(self._visit(child, path | {key}) for child in children))
            await self._call_hook(instance)
        except BaseException as e:
            future.set_exception(e)
            future.exception()
            raise
        future.set_result(None)

    async def _call_hook(self, instance: Any) -> None:
        hook = getattr(instance, self.phase, None)
        if not callable(hook) or is_component(hook):
            return
        # Remove before running so a re-entrant walk cannot fire it again
        setattr(instance, self.phase, None)
        logger.debug(f"[initializer] {self.phase} {getattr(instance, 'index', instance)!r}")
        result = hook()
        if inspect.isawaitable(result):
            await result


async def initialize(root: Any) -> Any:
    """
    Run init and then ready over the graph rooted at an instance.

    Returns:
        The root instance
    """
    for phase in PHASES:
        await Initializer(phase).run(root)
    return root
