"""Application context wiring profiles, connections and execution together."""

from __future__ import annotations

import logging
from typing import AsyncIterator

from .cancellation import CancellationController
from .config import AppConfig
from .connections import ConnectionMultiplexer
from .credentials import SecretStore
from .executor import ExecutionOutcome, ScriptExecutor
from .history import HistorySink, QueryHistory
from .models import ConnectionProfile
from .streaming import StreamBatch, StreamingCursorReader
from .tunnels import TunnelFactory

LOG = logging.getLogger(__name__)


class SessionManager:
    """Owns the connection registries and the services built on them.

    One instance lives for the whole process: call :meth:`startup` before use
    and :meth:`shutdown` on exit so every pool, session and tunnel is drained.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        secrets: SecretStore | None = None,
        history: HistorySink | None = None,
        multiplexer: ConnectionMultiplexer | None = None,
        tunnel_factory: TunnelFactory | None = None,
    ) -> None:
        self._config = config
        self._profiles = {entry.id: entry.to_profile() for entry in config.profiles}
        self._history = history if history is not None else QueryHistory(config.history_limit)
        self._multiplexer = multiplexer or ConnectionMultiplexer(
            secrets=secrets,
            tunnel_factory=tunnel_factory,
            max_pool_size=config.pool.max_size,
            idle_timeout=config.pool.idle_timeout,
        )
        self._reader = StreamingCursorReader(
            batch_size=config.streaming.batch_size,
            max_rows_before_streaming=config.streaming.max_rows_before_streaming,
        )
        self._executor = ScriptExecutor(self._multiplexer, history=self._history, reader=self._reader)
        self._cancellation = CancellationController(self._multiplexer)
        self._running = False

    async def __aenter__(self) -> SessionManager:
        await self.startup()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def profiles(self) -> tuple[ConnectionProfile, ...]:
        """Profiles available in the current config."""

        return tuple(self._profiles.values())

    @property
    def history(self) -> HistorySink:
        return self._history

    @property
    def multiplexer(self) -> ConnectionMultiplexer:
        return self._multiplexer

    @property
    def executor(self) -> ScriptExecutor:
        return self._executor

    async def startup(self) -> None:
        self._running = True
        LOG.debug("Session manager started", extra={"profiles": len(self._profiles)})

    async def shutdown(self) -> None:
        """Close every pool, session and tunnel."""

        if not self._running:
            return
        self._running = False
        await self._multiplexer.close_all()
        LOG.debug("Session manager stopped")

    def profile(self, name_or_id: str) -> ConnectionProfile:
        profile = self._profiles.get(name_or_id)
        if profile is not None:
            return profile
        for candidate in self._profiles.values():
            if candidate.name == name_or_id:
                return candidate
        raise ValueError(f"Profile '{name_or_id}' not found.")

    def should_stream(self, query: str) -> bool:
        """Whether a single statement qualifies for cursor streaming."""

        return self._config.streaming.enabled and self._reader.should_stream(query)

    async def run_script(
        self,
        profile_name: str,
        script: str,
        session_id: str,
        *,
        database: str | None = None,
    ) -> AsyncIterator[ExecutionOutcome]:
        self._ensure_running()
        profile = self.profile(profile_name)
        async for outcome in self._executor.execute(script, profile, session_id, database=database):
            yield outcome

    async def stream_query(
        self,
        profile_name: str,
        query: str,
        session_id: str,
        *,
        database: str | None = None,
    ) -> AsyncIterator[StreamBatch]:
        self._ensure_running()
        profile = self.profile(profile_name)
        async for batch in self._executor.stream(query, profile, session_id, database=database):
            yield batch

    async def cancel(self, profile_name: str, backend_pid: int, *, database: str | None = None) -> bool:
        self._ensure_running()
        return await self._cancellation.request_cancel(backend_pid, self.profile(profile_name), database)

    async def terminate(self, profile_name: str, backend_pid: int, *, database: str | None = None) -> bool:
        self._ensure_running()
        return await self._cancellation.request_terminate(backend_pid, self.profile(profile_name), database)

    async def close_session(self, profile_name: str, session_id: str, *, database: str | None = None) -> None:
        await self._multiplexer.close_session(self.profile(profile_name), session_id, database=database)

    async def forget_profile(self, profile_id: str) -> None:
        """Drop every connection of a profile that was edited or deleted."""

        await self._multiplexer.close_all_for_profile_id(profile_id)

    def _ensure_running(self) -> None:
        if not self._running:
            raise RuntimeError("Session manager is not running; call startup() first.")


__all__ = ["SessionManager"]
