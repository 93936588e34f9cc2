"""
Component Registry.

The registry holds every component definition a runtime knows about,
keyed by canonical index.

Design Principle:
    Registration is idempotent. Registering an index that is already
    known returns the existing definition unchanged, so any number of
    configurations may refer to the same component without coordination.

A definition becomes available in one of three ways:
    registry.register(ComponentDefinition(...))   # object
    registry.register({"name": "blank", ...})     # plain mapping
    registry.register("components/blank.py")      # script resource

Usage:
    definition = await runtime.registry.register("components/blank.py")
    definition = runtime.registry.get("blank")
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Mapping
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from konduit.errors import ComponentNotFoundError
from konduit.helpers import get_index, is_script_reference
from konduit.sync import Waitlist

from .definition import ComponentDefinition, ConfiguredComponent

if TYPE_CHECKING:
    from konduit.runtime.context import Runtime

logger = logging.getLogger(__name__)


class ComponentRegistry:
    """
    Registry of component definitions for one runtime.

    Setup hooks may be asynchronous. While a definition's setup is running,
    further registrations of the same index wait for it to finish instead
    of running it again.
    """

    def __init__(self, runtime: Runtime) -> None:
        self._runtime = runtime
        self._components: dict[str, ComponentDefinition] = {}
        self._setup = Waitlist[str]("registry")
        self._generation = 0

    async def register(
        self,
        component: Any,
        config: Mapping[str, Any] | None = None,
    ) -> ComponentDefinition | ConfiguredComponent:
        """
        Register a component and return its definition.

        Args:
            component: Definition, mapping, registered index or script resource key
            config: Optional extra instance defaults for the returned variant

        Returns:
            The registered definition, or a configured variant if config is given

        Raises:
            ComponentNotFoundError: If the component cannot be resolved
        """
        if isinstance(component, ConfiguredComponent):
            definition = await self._register_definition(component.definition)
            if config:
                return definition.configured(component.apply(config))
            if definition is not component.definition:
                return definition.configured(component.defaults)
            return component

        definition = await self._resolve(component)
        definition = await self._register_definition(definition)
        if config:
            return definition.configured(config)
        return definition

    async def _resolve(self, component: Any) -> ComponentDefinition:
        if isinstance(component, ComponentDefinition):
            return component
        if isinstance(component, Mapping):
            return ComponentDefinition.from_mapping(component)
        if isinstance(component, str):
            index = get_index(component)
            existing = self._components.get(index) if index else None
            if existing is not None:
                return existing
            if not is_script_reference(component):
                raise ComponentNotFoundError(component)
            result = await self._runtime.loader.load(component)
            if isinstance(result, ComponentDefinition):
                return result
            raise ComponentNotFoundError(component, f"Script '{component}' does not provide a component")
        raise ComponentNotFoundError(component, f"Invalid component reference: {component!r}")

    async def _register_definition(self, definition: ComponentDefinition) -> ComponentDefinition:
        index = definition.index

        if self._setup.is_pending(index):
            logger.debug(f"[registry] Waiting for setup of {index}")
            return await self._setup.wait(index)

        existing = self._components.get(index)
        if existing is not None:
            if existing is not definition:
                logger.debug(f"[registry] {index} already registered, keeping existing definition")
            return existing

        if definition.runtime is not None and definition.runtime is not self._runtime:
            # Owned by another runtime; counters and runtime binding stay per registry
            definition = replace(definition, runtime=None, instances=0)

        self._components[index] = definition
        definition.runtime = self._runtime
        if definition.setup is None:
            logger.info(f"[registry] Registered component: {index}")
            return definition

        generation = self._generation
        self._setup.begin(index)
        try:
            result = definition.setup(definition)
            if inspect.isawaitable(result):
                await result
        except BaseException as e:
            definition.runtime = None
            if generation == self._generation:
                del self._components[index]
                self._setup.fail(index, e)
            raise
        if generation != self._generation:
            logger.debug(f"[registry] Registry cleared during setup of {index}, dropping it")
            return definition
        self._setup.resolve(index, definition)
        logger.info(f"[registry] Registered component: {index} (setup complete)")
        return definition

    def get(self, index: str) -> ComponentDefinition | None:
        """
        Get a definition by index.

        Args:
            index: Canonical index or script key

        Returns:
            Definition or None if not registered
        """
        return self._components.get(get_index(index))

    def get_required(self, index: str) -> ComponentDefinition:
        """
        Get a definition by index, raising if not registered.

        Raises:
            ComponentNotFoundError: If not registered
        """
        definition = self.get(index)
        if definition is None:
            raise ComponentNotFoundError(index)
        return definition

    def list_indexes(self) -> list[str]:
        return list(self._components.keys())

    def clear(self) -> None:
        """Forget all definitions."""
        self._generation += 1
        self._components.clear()
        self._setup.clear()

    def __len__(self) -> int:
        return len(self._components)

    def __contains__(self, index: str) -> bool:
        return get_index(index) in self._components

    def __repr__(self) -> str:
        return f"<ComponentRegistry components={list(self._components.keys())}>"
