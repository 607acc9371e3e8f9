"""SQL script execution engine for PostgreSQL."""

from __future__ import annotations

__version__ = "0.1.0"

from .cancellation import CancellationController, CancellationError, CancellationRequest
from .connections import ConnectionBackendError, ConnectionMultiplexer, PooledLease, SessionLease
from .executor import ExecutionError, ExecutionResult, ScriptExecutor, TableInfo
from .history import HistoryEntry, HistorySink, QueryHistory
from .models import ConnectionProfile, SshTunnelConfig, SslMode, connection_key
from .session import SessionManager
from .splitter import StatementSplitter, split_statements
from .streaming import StreamBatch, StreamingCursorReader, should_stream

__all__ = [
    "CancellationController",
    "CancellationError",
    "CancellationRequest",
    "ConnectionBackendError",
    "ConnectionMultiplexer",
    "ConnectionProfile",
    "ExecutionError",
    "ExecutionResult",
    "HistoryEntry",
    "HistorySink",
    "PooledLease",
    "QueryHistory",
    "ScriptExecutor",
    "SessionLease",
    "SessionManager",
    "SshTunnelConfig",
    "SslMode",
    "StatementSplitter",
    "StreamBatch",
    "StreamingCursorReader",
    "TableInfo",
    "__version__",
    "connection_key",
    "should_stream",
    "split_statements",
]
