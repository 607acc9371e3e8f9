"""Shared dataclasses used across connection/execution modules."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

DEFAULT_DATABASE = "postgres"

# Common PostgreSQL type oids; anything else is reported as "string".
PG_TYPE_NAMES: dict[int, str] = {
    16: "bool",
    17: "bytea",
    20: "int8",
    21: "int2",
    23: "int4",
    25: "text",
    114: "json",
    1043: "varchar",
    1082: "date",
    1114: "timestamp",
    1184: "timestamptz",
    1700: "numeric",
}


class SslMode(str, Enum):
    """libpq-style TLS modes understood by the multiplexer."""

    DISABLE = "disable"
    ALLOW = "allow"
    PREFER = "prefer"
    REQUIRE = "require"
    VERIFY_CA = "verify-ca"
    VERIFY_FULL = "verify-full"


@dataclass(frozen=True, slots=True)
class SshTunnelConfig:
    """Bastion host used to reach the database through a forwarded port."""

    host: str
    username: str
    port: int = 22
    private_key_path: str | None = None


@dataclass(frozen=True, slots=True)
class ConnectionProfile:
    """Runtime representation of a connection profile.

    Passwords are never stored here; they are resolved through a secret store
    keyed by ``id`` when ``username`` is set.
    """

    id: str
    host: str = "localhost"
    port: int = 5432
    username: str | None = None
    database: str | None = None
    name: str | None = None
    sslmode: SslMode = SslMode.DISABLE
    ssl_cert_path: str | None = None
    ssl_key_path: str | None = None
    ssl_root_cert_path: str | None = None
    statement_timeout: int | None = None
    connect_timeout: float = 5.0
    application_name: str = "psqlkernel"
    options: str | None = None
    ssh: SshTunnelConfig | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.host


def connection_key(profile: ConnectionProfile, database: str | None = None) -> str:
    """Identify the pool for a profile + target database."""

    return f"{profile.id}:{database or profile.database or DEFAULT_DATABASE}"


def session_key(key: str, session_id: str) -> str:
    """Namespace a caller-supplied session id under a connection key."""

    return f"{key}:session:{session_id}"


def type_name(oid: int | None) -> str:
    """Classify a column type oid for display."""

    if oid is None:
        return "string"
    return PG_TYPE_NAMES.get(oid, "string")


__all__ = [
    "DEFAULT_DATABASE",
    "PG_TYPE_NAMES",
    "ConnectionProfile",
    "SshTunnelConfig",
    "SslMode",
    "connection_key",
    "session_key",
    "type_name",
]
