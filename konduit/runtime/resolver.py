"""
Dependency Resolver.

Turns a component reference plus a declarative configuration into a live,
initialized instance graph.

Flow (per instance node):
    1. Resolve component      - register it, loading its script if needed
    2. Resolve configuration  - fetch a dataset-backed configuration first
    3. Construct              - factory(), id/index/parent/component, then
                                defaults and configuration integrated on top
    4. Expand dependencies    - every dependency found in the instance's
                                fields is dispatched; its result replaces the
                                placeholder in place
    5. Converge               - the node's WaitGroup reaches zero

Only the outermost call then runs the initializer over the complete graph
and renders the instances that were requested through render dependencies.

Usage:
    resolver = runtime.resolver
    app = await resolver.instantiate("components/app.py", {
        "menu": ["konduit.instantiate", "components/menu.py", {"items": ["konduit.get", notes, "menu"]}],
        "css": ["konduit.load", "app.css"],
        "detail": ["konduit.proxy", "components/detail.py"],
    })
    detail = await app.detail.materialize()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from konduit.components.definition import (
    ComponentDefinition,
    ConfiguredComponent,
    Proxy,
    Slot,
    is_component,
    is_instance,
)
from konduit.dependencies import (
    Dependency,
    DeleteDataset,
    GetDataset,
    Instantiate,
    Load,
    MakeProxy,
    OpenStore,
    Register,
    Render,
    SetDataset,
    parse_dependency,
)
from konduit.errors import ComponentNotFoundError, ResolutionTimeoutError
from konduit.helpers import ABSENT, clone, integrate, iter_slots
from konduit.sync import WaitGroup

from .initializer import initialize

if TYPE_CHECKING:
    from konduit.runtime.context import Runtime

logger = logging.getLogger(__name__)

# Never copied from configuration onto an instance
RESERVED_FIELDS = frozenset({"component", "id", "index", "init", "ready", "key", "parent"})


@dataclass
class Assembly:
    """State shared by every node of one outermost instantiate call."""

    render_queue: list[Any] = field(default_factory=list)


class DependencyResolver:
    """
    Resolves dependencies and builds instance graphs for a runtime.

    Failures of any nested operation cancel its siblings and propagate out
    of the outermost call. With ``RuntimeSettings.resolve_timeout`` set, a
    graph that does not converge in time raises ResolutionTimeoutError.
    """

    def __init__(self, runtime: Runtime):
        self._runtime = runtime

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def instantiate(
        self,
        component: Any,
        config: Any = None,
        *,
        parent: Any = None,
    ) -> Any:
        """
        Create a fully resolved and initialized instance.

        Args:
            component: Definition, configured component, mapping, index or script key
            config: Instance configuration (may itself be a dependency)
            parent: Optional parent instance (non-owning back-reference)

        Returns:
            The root instance of the new graph

        Raises:
            ResolutionTimeoutError: If building and initializing (init and
                ready hooks included) exceed RuntimeSettings.resolve_timeout.
                Rendering queued instances is not covered.
        """
        assembly = Assembly()
        timeout = self._runtime.settings.resolve_timeout
        assemble = self._assemble(component, config, parent, assembly)

        if timeout is None:
            instance = await assemble
        else:
            try:
                instance = await asyncio.wait_for(assemble, timeout=timeout)
            except asyncio.TimeoutError as e:
                logger.error(f"[resolver] {component!r} did not converge within {timeout}s")
                raise ResolutionTimeoutError(component, timeout) from e

        for queued in assembly.render_queue:
            await self.render(queued)

        logger.info(f"[resolver] Instance ready: {getattr(instance, 'index', instance)!r}")
        return instance

    async def start(self, component: Any, config: Any = None, *, parent: Any = None) -> Any:
        """Instantiate and render."""
        instance = await self.instantiate(component, config, parent=parent)
        await self.render(instance)
        return instance

    async def render(self, instance: Any) -> None:
        """Hand an initialized instance to its render operation."""
        render = getattr(instance, "render", None)
        if render is None:
            return
        result = render()
        if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
            await result

    async def solve(
        self,
        dependency: Any,
        *,
        parent: Any = None,
        assembly: Assembly | None = None,
    ) -> Any:
        """
        Produce the value a dependency stands for.

        Without an assembly (a standalone call) nested instances are
        initialized right away; inside an assembly they are initialized
        together with the rest of the graph.

        Raises:
            TypeError: If the value is not a dependency
        """
        dep = parse_dependency(dependency)
        if dep is None:
            raise TypeError(f"Not a dependency: {dependency!r}")

        runtime = self._runtime

        if isinstance(dep, Load):
            return await runtime.loader.load(*dep.resources)

        if isinstance(dep, Register):
            config = clone(dep.config) if dep.config else None
            if config is not None and parent is not None:
                config["parent"] = parent
            return await runtime.registry.register(dep.component, config)

        if isinstance(dep, Instantiate):
            if assembly is None:
                return await self.instantiate(dep.component, dep.config, parent=parent)
            return await self._build(dep.component, dep.config, parent, assembly)

        if isinstance(dep, Render):
            if assembly is None:
                return await self.start(dep.component, dep.config, parent=parent)
            instance = await self._build(dep.component, dep.config, parent, assembly)
            assembly.render_queue.append(instance)
            return instance

        if isinstance(dep, MakeProxy):
            config = dep.config
            if parse_dependency(config) is not None:
                config = await self.solve(config, parent=parent)
            return Proxy(runtime, dep.component, config, parent=parent)

        if isinstance(dep, OpenStore):
            return await runtime.stores.open(dep.settings)

        if isinstance(dep, GetDataset):
            return await runtime.get(dep.settings, dep.key)

        if isinstance(dep, SetDataset):
            return await runtime.set(dep.settings, dep.data)

        if isinstance(dep, DeleteDataset):
            return await runtime.delete(dep.settings, dep.key)

        raise TypeError(f"Unhandled dependency type: {type(dep).__name__}")

    # -------------------------------------------------------------------------
    # Building
    # -------------------------------------------------------------------------

    async def _assemble(self, component: Any, config: Any, parent: Any, assembly: Assembly) -> Any:
        instance = await self._build(component, config, parent, assembly)
        await initialize(instance)
        return instance

    async def _build(self, component: Any, config: Any, parent: Any, assembly: Assembly) -> Any:
        definition, config = await self._resolve_component(component, config)
        config = await self._resolve_config(config, parent)
        instance = self._construct(definition, config, parent)
        await self._expand(instance, assembly)
        return instance

    async def _resolve_component(self, component: Any, config: Any) -> tuple[ComponentDefinition, Any]:
        if isinstance(component, ConfiguredComponent):
            definition = await self._runtime.registry.register(component.definition)
            return definition, component.apply(config)

        try:
            definition = await self._runtime.registry.register(component)
        except ComponentNotFoundError:
            logger.error(f"[resolver] Component not found: {component!r}")
            raise
        return definition, config

    async def _resolve_config(self, config: Any, parent: Any) -> dict[str, Any]:
        """
        Turn a configuration into a plain mapping.

        A dependency as configuration, or a configuration whose ``key`` is a
        mapping or a dependency, is fetched first; the remaining fields are
        integrated on top of the fetched dataset.
        """
        if config is None:
            return {}
        if parse_dependency(config) is not None:
            config = {"key": config}
        if not isinstance(config, Mapping):
            raise TypeError(f"Instance configuration must be a mapping, got {type(config).__name__}")

        config = clone(dict(config))
        base = config.get("key")

        if isinstance(base, Mapping):
            dataset = clone(dict(base))
        elif parse_dependency(base) is not None:
            dataset = await self.solve(base, parent=parent)
            if not isinstance(dataset, Mapping):
                logger.warning(f"[resolver] Configuration dataset {base!r} not found, using empty configuration")
                dataset = {}
            dataset = clone(dict(dataset))
        else:
            return config

        config.pop("key")
        dataset = integrate(config, dataset)
        dataset.pop("key", None)
        return dataset

    def _construct(self, definition: ComponentDefinition, config: dict[str, Any], parent: Any) -> Any:
        instance = definition.factory()

        merged = integrate(
            {key: value for key, value in config.items() if key not in RESERVED_FIELDS},
            clone(definition.config),
        )
        for key, value in merged.items():
            if key in RESERVED_FIELDS or value is ABSENT:
                continue
            setattr(instance, key, value)

        definition.instances += 1
        instance.id = definition.instances
        instance.index = f"{definition.index}-{instance.id}"
        instance.component = definition
        instance.parent = parent

        logger.debug(f"[resolver] Constructed {instance.index}")
        return instance

    async def _expand(self, instance: Any, assembly: Assembly) -> None:
        """Replace every dependency in the instance's fields with its value."""
        group = WaitGroup(f"expand {instance.index}")
        seen: set[int] = set()

        def search(container: Any) -> None:
            for key, value in _slots(container):
                dep = parse_dependency(value)
                if dep is not None:
                    dispatch(Slot(container, key), dep)
                elif isinstance(value, (dict, list)) and id(value) not in seen:
                    seen.add(id(value))
                    search(value)

        def dispatch(slot: Slot, dep: Dependency) -> None:
            if isinstance(dep, MakeProxy) and parse_dependency(dep.config) is None:
                slot.set(Proxy(self._runtime, dep.component, dep.config, parent=instance, slot=slot))
                return
            group.spawn(
                self._solve_into(slot, dep, instance, assembly),
            )

        search(instance)
        if group.pending:
            logger.debug(f"[resolver] {instance.index} waiting for {group.pending} dependencies")
        await group.wait()

    async def _solve_into(self, slot: Slot, dep: Dependency, owner: Any, assembly: Assembly) -> None:
        if isinstance(dep, MakeProxy):
            config = await self.solve(dep.config, parent=owner)
            slot.set(Proxy(self._runtime, dep.component, config, parent=owner, slot=slot))
            return
        value = await self.solve(dep, parent=owner, assembly=assembly)
        slot.set(value)


def _slots(container: Any) -> list[tuple[Any, Any]]:
    if isinstance(container, (dict, list)):
        return list(iter_slots(container))
    return [
        (key, value)
        for key, value in getattr(container, "__dict__", {}).items()
        if key not in ("parent", "component")
        and not is_instance(value)
        and not is_component(value)
        and not isinstance(value, Proxy)
    ]
