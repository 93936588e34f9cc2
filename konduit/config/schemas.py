"""
Configuration Schemas for Konduit.

Pydantic models for runtime, datastore and resource settings.

Security:
    Tokens and passwords use SecretStr to prevent accidental logging
    of credentials. Access the value with `.get_secret_value()`.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field, SecretStr

DEFAULT_ERROR_PREFIX = "[konduit]"


class RuntimeSettings(BaseModel):
    """
    Runtime settings model.

    One instance configures one Runtime: where relative resources live,
    which SQLite file backs embedded datastores and how long the engine
    waits for the network and for an instance graph to converge.
    """

    base_path: str = Field(".", description="Base directory for relative resource keys")
    database_path: str = Field(":memory:", description="SQLite file for embedded datastores")
    http_timeout: float = Field(30.0, gt=0, description="Timeout for HTTP requests in seconds")
    resolve_timeout: float | None = Field(
        None, gt=0, description="Max seconds for an instance graph to converge (None waits forever)"
    )
    error_prefix: str = Field(
        DEFAULT_ERROR_PREFIX, description="Prefix marking error responses of a data service"
    )
    channel_subprotocol: str = Field("konduit", description="Subprotocol for duplex channels")


class Credentials(BaseModel):
    """
    Credentials passed through to a data service.

    The optional session is any object with an ``invalidate()`` method; it
    is invalidated when the service rejects the credentials.
    """

    user: str | None = None
    token: SecretStr | None = None
    session: Any = Field(None, exclude=True)

    class Config:
        arbitrary_types_allowed = True

    def to_params(self) -> dict[str, str]:
        """Request parameters for a data service."""
        params: dict[str, str] = {}
        if self.user:
            params["user"] = self.user
        if self.token is not None:
            params["token"] = self.token.get_secret_value()
        return params


_SETTINGS_FIELDS = ("local", "table", "url", "db", "channel", "method", "credentials")


class DatastoreSettings(BaseModel):
    """
    Datastore settings.

    Exactly one backend combination follows from the fields:
        url set          -> local cache + remote service
        table set        -> local cache + embedded database
        neither          -> local cache only

    A ``ws://``/``wss://`` url (or ``channel=True``) talks to the service over
    a persistent duplex channel instead of independent HTTP requests.
    """

    local: dict[str, Any] | list[Any] | str | None = Field(
        None, description="Initial datasets, or a resource key to load them from"
    )
    table: str | None = Field(None, description="Table/collection name")
    url: str | None = Field(None, description="Data service URL")
    db: str | None = Field(None, description="Database name on the data service")
    channel: bool = Field(False, description="Use a persistent duplex channel")
    method: str = Field("POST", description="HTTP method for service requests")
    credentials: Credentials | None = None

    class Config:
        extra = "forbid"

    @classmethod
    def coerce(cls, value: Any) -> DatastoreSettings:
        """
        Build settings from the shorthand forms accepted in configurations.

        - None                        -> local-only datastore
        - "datasets.json"             -> {"local": "datasets.json"}
        - {"k1": {...}, "k2": {...}}  -> {"local": {...}} (no settings fields)
        - DatastoreSettings           -> unchanged
        """
        if isinstance(value, cls):
            return value
        if value is None:
            return cls()
        if isinstance(value, str):
            return cls(local=value)
        if isinstance(value, Mapping):
            if not any(name in value for name in _SETTINGS_FIELDS):
                return cls(local=dict(value))
            return cls.model_validate(dict(value))
        raise TypeError(f"Invalid datastore settings: {value!r}")

    @property
    def uses_service(self) -> bool:
        return bool(self.url)

    @property
    def uses_channel(self) -> bool:
        return bool(self.url) and (self.channel or self.url.startswith(("ws://", "wss://")))

    @property
    def uses_database(self) -> bool:
        return not self.url and bool(self.table)

    def source(self) -> str:
        """
        Identity of the datastore these settings describe.

        Structurally equal settings have the same source. Credentials are
        passed through per operation and are not part of the identity.
        """
        data = self.model_dump(exclude={"credentials"})
        return json.dumps(data, sort_keys=True, default=repr)


class ResourceSpec(BaseModel):
    """
    Description of one resource to load.

    A plain string is shorthand for ``ResourceSpec(url=...)``.
    Setting ``params`` turns the load into a data exchange with a remote
    endpoint; exchanges are never cached.
    """

    url: str
    params: dict[str, Any] | None = None
    method: str = "GET"
    jsonp: bool = False
    kind: str | None = Field(None, description="Force a resource kind instead of the suffix")
    username: str | None = None
    password: SecretStr | None = None

    class Config:
        extra = "allow"

    @classmethod
    def coerce(cls, value: Any) -> ResourceSpec:
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            return cls(url=value)
        if isinstance(value, Mapping):
            return cls.model_validate(dict(value))
        raise TypeError(f"Invalid resource spec: {value!r}")

    @property
    def key(self) -> str:
        """Cache and waitlist key (minified variants share the key)."""
        return self.url.replace(".min.", ".")

    @property
    def is_exchange(self) -> bool:
        return self.params is not None
