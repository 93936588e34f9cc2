"""
Component definitions, instances and proxies.

A ComponentDefinition describes how to build instances: a default
configuration, an instance factory and an optional one-time setup hook.
Instances are plain objects (usually subclasses of Instance) whose fields
are filled from configuration and whose nested dependencies the resolver
replaces in place.

Lifecycle of an instance:
    created      - factory called, id/index/parent/component assigned
    configured   - defaults, then configuration integrated as attributes
    expanded     - every dependency tuple in its fields replaced by a value
    initialized  - ``init`` then ``ready`` awaited once, children first
    rendered     - ``render`` awaited (only for render/start requests)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from konduit.helpers import clone, integrate

if TYPE_CHECKING:
    from konduit.runtime.context import Runtime

logger = logging.getLogger(__name__)


class Instance:
    """
    Base class for component instances.

    Subclasses typically define ``async def init(self)`` and/or
    ``async def ready(self)``; both run exactly once after the whole graph
    the instance belongs to is structurally complete. ``render`` is invoked
    by whoever asked for the instance to be started.
    """

    id: int = 0
    index: str = ""
    parent: Any = None
    component: ComponentDefinition | None = None

    async def render(self) -> None:
        """Present the instance. The base implementation does nothing."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.index or '?'}>"


def _parse_version(version: Any) -> tuple[int, ...] | None:
    if version is None or version == "" or version == ():
        return None
    if isinstance(version, str):
        version = version.replace("-", ".").split(".")
    return tuple(int(part) for part in version)


@dataclass(eq=False)
class ComponentDefinition:
    """
    A loadable/registrable component.

    The canonical index is derived from name and version
    (``blank`` or ``blank-1-2-3``). An explicit index overrides both:
    ``index="blank-1-2-3"`` means name ``blank`` and version ``(1, 2, 3)``.
    """

    name: str = ""
    version: tuple[int, ...] | None = None
    config: dict[str, Any] = field(default_factory=dict)
    factory: Callable[[], Any] = Instance
    setup: Callable[..., Any] | None = None
    index: str = ""
    instances: int = 0
    runtime: Runtime | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.index:
            name, *version = self.index.split("-")
            self.name = name
            if version:
                self.version = _parse_version(version)
        else:
            self.version = _parse_version(self.version)
        if not self.name:
            raise ValueError("Component definition needs a name or an index")
        self.index = self.name
        if self.version:
            self.index += "-" + "-".join(str(part) for part in self.version)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ComponentDefinition:
        """
        Build a definition from a plain mapping, as exposed by script resources.

        Recognised keys: name, version, index, config, factory, setup.
        """
        unknown = set(data) - {"name", "version", "index", "config", "factory", "setup"}
        if unknown:
            logger.warning(f"[component] Ignoring unknown definition fields: {sorted(unknown)}")
        return cls(
            name=data.get("name", ""),
            version=data.get("version"),
            config=dict(data.get("config") or {}),
            factory=data.get("factory") or Instance,
            setup=data.get("setup"),
            index=data.get("index", ""),
        )

    @property
    def registered(self) -> bool:
        return self.runtime is not None

    def configured(self, defaults: Mapping[str, Any] | None) -> ConfiguredComponent:
        """Variant of this component with an extra layer of default configuration."""
        return ConfiguredComponent(self, clone(dict(defaults or {})))

    async def instance(self, config: Any = None) -> Any:
        """Create an initialized instance of this component."""
        return await self._require_runtime().instantiate(self, config)

    async def start(self, config: Any = None) -> Any:
        """Create an initialized instance and render it."""
        return await self._require_runtime().start(self, config)

    def _require_runtime(self) -> Runtime:
        if self.runtime is None:
            raise RuntimeError(f"Component '{self.index}' is not registered with a runtime")
        return self.runtime

    def __repr__(self) -> str:
        return f"<ComponentDefinition {self.index} instances={self.instances}>"


@dataclass(eq=False)
class ConfiguredComponent:
    """A registered component plus instance defaults given at registration time."""

    definition: ComponentDefinition
    defaults: dict[str, Any] = field(default_factory=dict)

    @property
    def index(self) -> str:
        return self.definition.index

    def apply(self, config: Any) -> Any:
        """Layer instance configuration over the registration defaults."""
        if config is None:
            return clone(self.defaults)
        if not isinstance(config, Mapping):
            return config
        return integrate(clone(dict(config)), clone(self.defaults))

    async def instance(self, config: Any = None) -> Any:
        return await self.definition._require_runtime().instantiate(self, config)

    async def start(self, config: Any = None) -> Any:
        return await self.definition._require_runtime().start(self, config)

    def __repr__(self) -> str:
        return f"<ConfiguredComponent {self.index} defaults={sorted(self.defaults)}>"


def is_instance(value: Any) -> bool:
    """True for objects created by the resolver."""
    if isinstance(value, Instance):
        return True
    if isinstance(value, (dict, list, str, bytes, int, float)) or value is None:
        return False
    return isinstance(getattr(value, "component", None), ComponentDefinition)


def is_component(value: Any) -> bool:
    return isinstance(value, (ComponentDefinition, ConfiguredComponent))


# =============================================================================
# Proxies
# =============================================================================


class Slot:
    """A field inside a container: a mapping key, a list index or an attribute."""

    __slots__ = ("container", "key")

    def __init__(self, container: Any, key: Any):
        self.container = container
        self.key = key

    def get(self) -> Any:
        if isinstance(self.container, (dict, list)):
            return self.container[self.key]
        return getattr(self.container, self.key)

    def set(self, value: Any) -> None:
        if isinstance(self.container, (dict, list)):
            self.container[self.key] = value
        else:
            setattr(self.container, self.key, value)

    def __repr__(self) -> str:
        return f"<Slot {type(self.container).__name__}[{self.key!r}]>"


class Proxy:
    """
    Stand-in for an instance that has not been created yet.

    ``await proxy.materialize()`` creates and initializes the instance and
    puts it into the exact slot the proxy occupies.
    """

    def __init__(
        self,
        runtime: Runtime,
        component: Any,
        config: Any,
        *,
        parent: Any = None,
        slot: Slot | None = None,
    ):
        self.component = component
        self.config = config
        self.parent = parent
        self._runtime = runtime
        self._slot = slot
        self._task: asyncio.Task | None = None

    @property
    def materialized(self) -> bool:
        return self._task is not None and self._task.done() and not self._task.cancelled()

    async def materialize(self) -> Any:
        """Create the instance now and replace the proxy with it."""
        if self._task is None:
            self._task = asyncio.ensure_future(self._create())
        return await asyncio.shield(self._task)

    async def start(self) -> Any:
        """Materialize and render."""
        instance = await self.materialize()
        await self._runtime.resolver.render(instance)
        return instance

    async def _create(self) -> Any:
        logger.debug(f"[proxy] Materializing {self.component!r}")
        config = clone(self.config) if self.config is not None else None
        instance = await self._runtime.resolver.instantiate(self.component, config, parent=self.parent)
        if self._slot is not None and self._slot.get() is self:
            self._slot.set(instance)
        return instance

    def __repr__(self) -> str:
        return f"<Proxy {self.component!r}>"
