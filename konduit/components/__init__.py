"""
Konduit Components

Component definitions, instances, proxies and the registry.
"""

from .definition import (
    ComponentDefinition,
    ConfiguredComponent,
    Instance,
    Proxy,
    Slot,
    is_component,
    is_instance,
)
from .registry import ComponentRegistry

__all__ = [
    "ComponentDefinition",
    "ComponentRegistry",
    "ConfiguredComponent",
    "Instance",
    "Proxy",
    "Slot",
    "is_component",
    "is_instance",
]
