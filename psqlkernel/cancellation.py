"""Out-of-band cancellation of running statements."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .connections import ConnectionMultiplexer
from .models import ConnectionProfile, connection_key

LOG = logging.getLogger(__name__)


class CancellationError(RuntimeError):
    """Raised when a cancel/terminate request could not be delivered."""


@dataclass(frozen=True, slots=True)
class CancellationRequest:
    """Target of a cancel/terminate request.

    Built from the backend pid reported with a result, never from the blocked
    session connection itself.
    """

    backend_pid: int
    profile: ConnectionProfile
    database: str | None = None

    @property
    def key(self) -> str:
        return connection_key(self.profile, self.database)


class CancellationController:
    """Signals server backends through a short-lived pooled connection."""

    def __init__(self, multiplexer: ConnectionMultiplexer) -> None:
        self._multiplexer = multiplexer

    async def request_cancel(
        self,
        backend_pid: int,
        profile: ConnectionProfile,
        database: str | None = None,
    ) -> bool:
        """Interrupt the statement running on ``backend_pid``."""

        return await self.submit(CancellationRequest(backend_pid, profile, database))

    async def request_terminate(
        self,
        backend_pid: int,
        profile: ConnectionProfile,
        database: str | None = None,
    ) -> bool:
        """End the backend (and its connection) outright."""

        return await self.submit(CancellationRequest(backend_pid, profile, database), terminate=True)

    async def submit(self, request: CancellationRequest, *, terminate: bool = False) -> bool:
        """Deliver ``request``; returns whether the server signalled the backend."""

        function = "pg_terminate_backend" if terminate else "pg_cancel_backend"
        try:
            async with self._multiplexer.pooled(request.profile, database=request.database) as lease:
                signalled = await lease.connection.fetchval(f"SELECT {function}($1)", request.backend_pid)
        except Exception as exc:
            LOG.warning(
                "Cancellation request failed",
                extra={"backend_pid": request.backend_pid, "key": request.key, "terminate": terminate},
            )
            action = "terminate" if terminate else "cancel"
            raise CancellationError(f"Failed to {action} backend {request.backend_pid}: {exc}") from exc
        LOG.info(
            "Cancellation request delivered",
            extra={"backend_pid": request.backend_pid, "signalled": bool(signalled), "terminate": terminate},
        )
        return bool(signalled)


__all__ = ["CancellationController", "CancellationError", "CancellationRequest"]
