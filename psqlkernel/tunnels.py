"""SSH tunnels that stand in for a direct TCP route to the database."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, runtime_checkable

from sshtunnel import SSHTunnelForwarder

from .models import SshTunnelConfig

LOG = logging.getLogger(__name__)


@runtime_checkable
class Tunnel(Protocol):
    """An open forwarded route; connect to ``local_host:local_port``."""

    @property
    def local_host(self) -> str: ...

    @property
    def local_port(self) -> int: ...

    async def close(self) -> None: ...


@runtime_checkable
class TunnelFactory(Protocol):
    """Opens tunnels from an SSH descriptor to a remote database address."""

    async def open(
        self,
        config: SshTunnelConfig,
        remote_host: str,
        remote_port: int,
        *,
        password: str | None = None,
    ) -> Tunnel: ...


class SshTunnel:
    """Running ``SSHTunnelForwarder`` bound to an ephemeral local port."""

    def __init__(self, forwarder: SSHTunnelForwarder) -> None:
        self._forwarder = forwarder

    @property
    def local_host(self) -> str:
        return self._forwarder.local_bind_host

    @property
    def local_port(self) -> int:
        return self._forwarder.local_bind_port

    async def close(self) -> None:
        await asyncio.to_thread(self._forwarder.stop)


class SshTunnelFactory:
    """Tunnel factory backed by ``sshtunnel``.

    ``sshtunnel`` runs its forwarding in background threads, so start and stop
    are pushed off the event loop.
    """

    def __init__(self, *, local_host: str = "127.0.0.1") -> None:
        self._local_host = local_host

    async def open(
        self,
        config: SshTunnelConfig,
        remote_host: str,
        remote_port: int,
        *,
        password: str | None = None,
    ) -> SshTunnel:
        forwarder = SSHTunnelForwarder(
            (config.host, config.port),
            ssh_username=config.username,
            ssh_pkey=config.private_key_path,
            ssh_password=password if not config.private_key_path else None,
            remote_bind_address=(remote_host, remote_port),
            local_bind_address=(self._local_host, 0),
        )
        await asyncio.to_thread(forwarder.start)
        LOG.debug(
            "SSH tunnel established",
            extra={"ssh_host": config.host, "local_port": forwarder.local_bind_port},
        )
        return SshTunnel(forwarder)


__all__ = ["SshTunnel", "SshTunnelFactory", "Tunnel", "TunnelFactory"]
