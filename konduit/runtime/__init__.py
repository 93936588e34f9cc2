"""
Konduit Runtime Layer.

Connects declarative configurations to live instance graphs:
- Resource loading (ResourceLoader)
- Dependency resolution (DependencyResolver)
- Two-phase initialization (init, then ready)
- The Runtime context owning all of it

Design Principle:
    "Configuration flows down, instances flow up."

    1. A configuration names a component and its dependencies
    2. The resolver loads and registers what is missing
    3. Dependencies are solved concurrently and written back in place
    4. The finished graph is initialized children first
"""

from .context import Runtime
from .initializer import Initializer, initialize
from .loader import ResourceCache, ResourceKind, ResourceLoader, resource_kind
from .resolver import DependencyResolver

__all__ = [
    "DependencyResolver",
    "Initializer",
    "ResourceCache",
    "ResourceKind",
    "ResourceLoader",
    "Runtime",
    "initialize",
    "resource_kind",
]
