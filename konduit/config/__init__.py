"""
Konduit Configuration

Pydantic settings for the runtime, datastores and resources.
"""

from .schemas import Credentials, DatastoreSettings, ResourceSpec, RuntimeSettings
from .settings import get_settings

__all__ = [
    "Credentials",
    "DatastoreSettings",
    "ResourceSpec",
    "RuntimeSettings",
    "get_settings",
]
