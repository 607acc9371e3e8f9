"""Connection multiplexer handing out pooled and session connections."""

from __future__ import annotations

import asyncio
import logging
import shlex
import ssl
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

import asyncpg

from .credentials import SecretStore, StaticSecretStore
from .models import DEFAULT_DATABASE, ConnectionProfile, SslMode, connection_key, session_key
from .tunnels import SshTunnelFactory, Tunnel, TunnelFactory

LOG = logging.getLogger(__name__)

DEFAULT_POOL_SIZE = 10
DEFAULT_IDLE_TIMEOUT = 30.0

PoolFactory = Callable[..., Awaitable[Any]]
ConnectFunction = Callable[..., Awaitable[Any]]


class ConnectionBackendError(RuntimeError):
    """Raised when a pool, session or tunnel cannot be established."""


@dataclass(slots=True)
class PooledLease:
    """Connection borrowed from a pool; hand it back with ``release`` once."""

    key: str
    connection: Any
    pool: Any = field(repr=False)
    released: bool = False


@dataclass(slots=True)
class SessionLease:
    """Long-lived connection bound to a caller-supplied session id.

    ``guard`` serializes work on the connection; holders run one script or
    stream at a time.
    """

    key: str
    session_id: str
    connection: Any
    guard: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def session_key(self) -> str:
        return session_key(self.key, self.session_id)


@dataclass(slots=True)
class _Endpoint:
    """Resolved connect arguments (and tunnel) shared by one connection key."""

    connect_kwargs: dict[str, Any]
    tunnel: Tunnel | None = None


def parse_server_options(options: str | None) -> dict[str, str]:
    """Turn a libpq ``options`` string (``-c name=value``) into server settings."""

    settings: dict[str, str] = {}
    if not options:
        return settings
    tokens = shlex.split(options)
    idx = 0
    while idx < len(tokens):
        token = tokens[idx]
        assignment: str | None = None
        if token == "-c" and idx + 1 < len(tokens):
            idx += 1
            assignment = tokens[idx]
        elif token.startswith("-c"):
            assignment = token[2:]
        elif token.startswith("--"):
            assignment = token[2:]
        if assignment and "=" in assignment:
            name, value = assignment.split("=", 1)
            settings[name.strip().replace("-", "_")] = value.strip()
        idx += 1
    return settings


def server_settings(profile: ConnectionProfile) -> dict[str, str]:
    settings = parse_server_options(profile.options)
    settings["application_name"] = profile.application_name
    if profile.statement_timeout:
        settings["statement_timeout"] = str(profile.statement_timeout)
    return settings


def build_ssl_context(profile: ConnectionProfile) -> ssl.SSLContext | str | bool:
    """Build the ``ssl`` argument for asyncpg.

    Unreadable certificate material is logged and skipped; the connection then
    falls back to the default TLS posture for the mode instead of failing.
    """

    mode = SslMode(profile.sslmode)
    if mode is SslMode.DISABLE:
        return False
    has_material = any((profile.ssl_root_cert_path, profile.ssl_cert_path, profile.ssl_key_path))
    if not has_material and mode in (SslMode.ALLOW, SslMode.PREFER):
        return mode.value

    if mode in (SslMode.VERIFY_CA, SslMode.VERIFY_FULL):
        context = ssl.create_default_context()
        context.check_hostname = mode is SslMode.VERIFY_FULL
    else:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    if profile.ssl_root_cert_path:
        try:
            context.load_verify_locations(cafile=profile.ssl_root_cert_path)
        except (OSError, ssl.SSLError):
            LOG.warning("Failed to read SSL root certificate", extra={"path": profile.ssl_root_cert_path})
    if profile.ssl_cert_path:
        try:
            context.load_cert_chain(profile.ssl_cert_path, keyfile=profile.ssl_key_path)
        except (OSError, ssl.SSLError):
            LOG.warning("Failed to read SSL client certificate", extra={"path": profile.ssl_cert_path})
    return context


class ConnectionMultiplexer:
    """Registry of connection pools and session connections.

    Pools are keyed by profile id + database and built lazily on first use.
    Sessions are keyed by the same connection key plus a session id and live
    until closed explicitly or until their connection terminates.
    """

    def __init__(
        self,
        *,
        secrets: SecretStore | None = None,
        tunnel_factory: TunnelFactory | None = None,
        pool_factory: PoolFactory | None = None,
        connect: ConnectFunction | None = None,
        max_pool_size: int = DEFAULT_POOL_SIZE,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
    ) -> None:
        self._secrets = secrets or StaticSecretStore()
        self._tunnel_factory = tunnel_factory or SshTunnelFactory()
        self._pool_factory = pool_factory
        self._connect = connect
        self._max_pool_size = max_pool_size
        self._idle_timeout = idle_timeout
        self._endpoints: dict[str, _Endpoint] = {}
        self._pools: dict[str, Any] = {}
        self._sessions: dict[str, SessionLease] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def __aenter__(self) -> ConnectionMultiplexer:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close_all()

    @property
    def pool_keys(self) -> tuple[str, ...]:
        return tuple(self._pools)

    @property
    def session_keys(self) -> tuple[str, ...]:
        return tuple(self._sessions)

    def has_session(self, profile: ConnectionProfile, session_id: str, *, database: str | None = None) -> bool:
        return session_key(connection_key(profile, database), session_id) in self._sessions

    async def acquire_pooled(self, profile: ConnectionProfile, *, database: str | None = None) -> PooledLease:
        """Borrow a connection from the profile's pool."""

        key = connection_key(profile, database)
        pool = await self._pool_for(profile, key, database)
        try:
            connection = await pool.acquire()
        except Exception as exc:
            LOG.warning("Pooled acquire failed", extra={"key": key})
            raise ConnectionBackendError(f"Failed to acquire a connection for '{key}': {exc}") from exc
        return PooledLease(key=key, connection=connection, pool=pool)

    async def release(self, lease: PooledLease) -> None:
        """Return a pooled connection; repeated releases are ignored."""

        if lease.released:
            LOG.warning("Pooled lease released more than once", extra={"key": lease.key})
            return
        lease.released = True
        try:
            await lease.pool.release(lease.connection)
        except Exception:
            LOG.exception("Failed to release pooled connection", extra={"key": lease.key})

    @asynccontextmanager
    async def pooled(self, profile: ConnectionProfile, *, database: str | None = None) -> AsyncIterator[PooledLease]:
        """Borrow a pooled connection for the duration of the block."""

        lease = await self.acquire_pooled(profile, database=database)
        try:
            yield lease
        finally:
            await self.release(lease)

    async def acquire_session(
        self,
        profile: ConnectionProfile,
        session_id: str,
        *,
        database: str | None = None,
    ) -> SessionLease:
        """Return the live session connection for ``session_id``, connecting if needed."""

        key = connection_key(profile, database)
        skey = session_key(key, session_id)
        async with self._lock_for(skey):
            lease = self._sessions.get(skey)
            if lease is not None:
                if not lease.connection.is_closed():
                    return lease
                self._sessions.pop(skey, None)
            endpoint = await self._endpoint_for(profile, key, database)
            connect = self._connect or asyncpg.connect
            try:
                connection = await connect(**endpoint.connect_kwargs)
            except Exception as exc:
                raise ConnectionBackendError(
                    f"Failed to connect to profile '{profile.display_name}': {exc}"
                ) from exc
            lease = SessionLease(key=key, session_id=session_id, connection=connection)
            self._watch_session(lease)
            self._sessions[skey] = lease
            LOG.debug("Session connection opened", extra={"session": skey})
            return lease

    async def close_session(
        self,
        profile: ConnectionProfile,
        session_id: str,
        *,
        database: str | None = None,
    ) -> None:
        lease = self._sessions.pop(session_key(connection_key(profile, database), session_id), None)
        if lease is not None:
            await self._close_session_lease(lease)

    async def close_all_for_key(self, key: str) -> None:
        """Close the pool, sessions and tunnel belonging to one connection key."""

        pool = self._pools.pop(key, None)
        if pool is not None:
            await self._close_pool(key, pool)
        prefix = f"{key}:session:"
        for skey in [candidate for candidate in self._sessions if candidate.startswith(prefix)]:
            lease = self._sessions.pop(skey, None)
            if lease is not None:
                await self._close_session_lease(lease)
        endpoint = self._endpoints.pop(key, None)
        if endpoint is not None:
            await self._close_endpoint(key, endpoint)

    async def close_all_for_profile_id(self, profile_id: str) -> None:
        """Tear down every pool and session of a profile, across databases."""

        prefix = f"{profile_id}:"
        keys = {key for key in self._pools if key.startswith(prefix)}
        keys.update(lease.key for lease in self._sessions.values() if lease.key.startswith(prefix))
        keys.update(key for key in self._endpoints if key.startswith(prefix))
        for key in sorted(keys):
            await self.close_all_for_key(key)
        LOG.info("Closed resources for profile", extra={"profile_id": profile_id, "keys": len(keys)})

    async def close_all(self) -> None:
        """Drain every registry; used at shutdown."""

        keys = set(self._pools) | set(self._endpoints)
        keys.update(lease.key for lease in self._sessions.values())
        for key in sorted(keys):
            await self.close_all_for_key(key)
        self._locks.clear()

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    async def _pool_for(self, profile: ConnectionProfile, key: str, database: str | None) -> Any:
        pool = self._pools.get(key)
        if pool is not None:
            return pool
        async with self._lock_for(f"{key}:pool"):
            pool = self._pools.get(key)
            if pool is not None:
                return pool
            endpoint = await self._endpoint_for(profile, key, database)
            factory = self._pool_factory or asyncpg.create_pool
            try:
                pool = await factory(
                    min_size=0,
                    max_size=self._max_pool_size,
                    max_inactive_connection_lifetime=self._idle_timeout,
                    init=self._init_pooled_connection,
                    **endpoint.connect_kwargs,
                )
            except Exception as exc:
                raise ConnectionBackendError(f"Failed to create pool for '{key}': {exc}") from exc
            self._pools[key] = pool
            LOG.debug("Pool created", extra={"key": key, "max_size": self._max_pool_size})
            return pool

    async def _endpoint_for(self, profile: ConnectionProfile, key: str, database: str | None) -> _Endpoint:
        endpoint = self._endpoints.get(key)
        if endpoint is not None:
            return endpoint
        async with self._lock_for(f"{key}:endpoint"):
            endpoint = self._endpoints.get(key)
            if endpoint is None:
                endpoint = await self._build_endpoint(profile, database)
                self._endpoints[key] = endpoint
            return endpoint

    async def _build_endpoint(self, profile: ConnectionProfile, database: str | None) -> _Endpoint:
        kwargs: dict[str, Any] = {
            "database": database or profile.database or DEFAULT_DATABASE,
            "timeout": profile.connect_timeout,
            "ssl": build_ssl_context(profile),
            "server_settings": server_settings(profile),
        }
        if profile.username:
            kwargs["user"] = profile.username
            password = await self._secrets.get_password(profile.id)
            if password:
                kwargs["password"] = password

        tunnel: Tunnel | None = None
        if profile.ssh is not None:
            ssh_password = None
            if not profile.ssh.private_key_path:
                ssh_password = await self._secrets.get_password(f"{profile.id}:ssh")
            try:
                tunnel = await self._tunnel_factory.open(
                    profile.ssh,
                    profile.host,
                    profile.port,
                    password=ssh_password,
                )
            except Exception as exc:
                raise ConnectionBackendError(f"SSH connection failed: {exc}") from exc
            kwargs["host"] = tunnel.local_host
            kwargs["port"] = tunnel.local_port
        else:
            kwargs["host"] = profile.host
            kwargs["port"] = profile.port
        return _Endpoint(connect_kwargs=kwargs, tunnel=tunnel)

    async def _init_pooled_connection(self, connection: Any) -> None:
        def _on_terminated(_connection: Any) -> None:
            # The pool replaces dropped connections on the next acquire.
            LOG.debug("Pooled connection terminated")

        connection.add_termination_listener(_on_terminated)

    def _watch_session(self, lease: SessionLease) -> None:
        def _on_terminated(_connection: Any) -> None:
            if self._sessions.get(lease.session_key) is lease:
                del self._sessions[lease.session_key]
                LOG.info("Session connection ended", extra={"session": lease.session_key})

        lease.connection.add_termination_listener(_on_terminated)

    async def _close_session_lease(self, lease: SessionLease) -> None:
        try:
            await lease.connection.close()
        except Exception:
            LOG.exception("Failed to close session", extra={"session": lease.session_key})

    async def _close_pool(self, key: str, pool: Any) -> None:
        try:
            await pool.close()
        except Exception:
            LOG.exception("Failed to close pool", extra={"key": key})

    async def _close_endpoint(self, key: str, endpoint: _Endpoint) -> None:
        if endpoint.tunnel is None:
            return
        try:
            await endpoint.tunnel.close()
        except Exception:
            LOG.exception("Failed to close SSH tunnel", extra={"key": key})


__all__ = [
    "ConnectionBackendError",
    "ConnectionMultiplexer",
    "DEFAULT_IDLE_TIMEOUT",
    "DEFAULT_POOL_SIZE",
    "PooledLease",
    "SessionLease",
    "build_ssl_context",
    "parse_server_options",
    "server_settings",
]
