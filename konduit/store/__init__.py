"""
Datastores for Konduit.

A datastore keeps datasets (mappings with a ``key``) in a local cache in
front of an optional remote data service or embedded SQLite table.
"""

from .channel import Channel, ChannelClosed, WebSocketChannel
from .datastore import Datastore, DatastoreBackend
from .embedded import EmbeddedBackend, EmbeddedDatabase
from .remote import ChannelTransport, HttpTransport, RemoteBackend
from .table import DatastoreTable

__all__ = [
    "Channel",
    "ChannelClosed",
    "ChannelTransport",
    "Datastore",
    "DatastoreBackend",
    "DatastoreTable",
    "EmbeddedBackend",
    "EmbeddedDatabase",
    "HttpTransport",
    "RemoteBackend",
    "WebSocketChannel",
]
