"""
Konduit - an asynchronous resolution engine for declarative component graphs.

Konduit turns declarative descriptions of resources and component instances
into fully materialized, wired-together object graphs, loading whatever is
missing on demand and reusing whatever is already loaded or in flight:

- **Resource Loader**: Fetch each resource once, park concurrent requesters
- **Component Registry**: Idempotent registration from objects, mappings or scripts
- **Dependency Resolver**: Expand dependency tuples into live instances
- **Datastores**: One get/set/delete/count contract over local, SQLite and remote backends

Quick Start:
    >>> from konduit import Runtime
    >>>
    >>> async with Runtime() as runtime:
    ...     app = await runtime.instantiate("components/app.py", {
    ...         "style": ["konduit.load", "app.css"],
    ...         "notes": ["konduit.get", {"table": "notes"}, "welcome"],
    ...     })
"""

__version__ = "0.1.0"
__license__ = "MIT"

from konduit.components import ComponentDefinition, ConfiguredComponent, Instance, Proxy
from konduit.config import Credentials, DatastoreSettings, ResourceSpec, RuntimeSettings, get_settings
from konduit.dependencies import (
    DeleteDataset,
    GetDataset,
    Instantiate,
    Load,
    MakeProxy,
    OpenStore,
    Register,
    Render,
    SetDataset,
)
from konduit.errors import (
    AuthenticationError,
    ComponentNotFoundError,
    DatastoreError,
    InvalidKeyError,
    KonduitError,
    LoadError,
    ResolutionTimeoutError,
    ServiceError,
)
from konduit.helpers import ABSENT
from konduit.runtime import Runtime
from konduit.store import Datastore

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Runtime
    "Runtime",
    "RuntimeSettings",
    "get_settings",
    # Components
    "ComponentDefinition",
    "ConfiguredComponent",
    "Instance",
    "Proxy",
    # Dependencies
    "Load",
    "Register",
    "Instantiate",
    "Render",
    "MakeProxy",
    "OpenStore",
    "GetDataset",
    "SetDataset",
    "DeleteDataset",
    "ABSENT",
    # Datastores
    "Datastore",
    "DatastoreSettings",
    "Credentials",
    "ResourceSpec",
    # Errors
    "KonduitError",
    "LoadError",
    "ComponentNotFoundError",
    "ResolutionTimeoutError",
    "InvalidKeyError",
    "DatastoreError",
    "ServiceError",
    "AuthenticationError",
]
