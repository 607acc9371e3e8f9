"""Tests for out-of-band cancellation."""

from __future__ import annotations

import pytest

from fakes import FakeConnection, PoolFactoryStub
from psqlkernel.cancellation import CancellationController, CancellationError, CancellationRequest
from psqlkernel.connections import ConnectionMultiplexer
from psqlkernel.models import ConnectionProfile


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


PROFILE = ConnectionProfile(id="local", database="appdb")


def _controller(connection: FakeConnection) -> tuple[CancellationController, PoolFactoryStub]:
    pools = PoolFactoryStub(lambda: connection)
    return CancellationController(ConnectionMultiplexer(pool_factory=pools)), pools


@pytest.mark.anyio
async def test_cancel_runs_pg_cancel_backend_on_pooled_connection() -> None:
    connection = FakeConnection()
    controller, pools = _controller(connection)

    assert await controller.request_cancel(4242, PROFILE) is True

    assert connection.fetch_args == [("SELECT pg_cancel_backend($1)", (4242,))]
    assert pools.pools[0].released == [connection]


@pytest.mark.anyio
async def test_terminate_runs_pg_terminate_backend() -> None:
    connection = FakeConnection()
    controller, _ = _controller(connection)

    await controller.request_terminate(99, PROFILE, "reporting")

    assert connection.fetch_args == [("SELECT pg_terminate_backend($1)", (99,))]


@pytest.mark.anyio
async def test_unknown_backend_reports_false() -> None:
    connection = FakeConnection()
    connection.fetchval_result = False
    controller, _ = _controller(connection)

    assert await controller.request_cancel(1, PROFILE) is False


@pytest.mark.anyio
async def test_request_targets_the_requested_database_pool() -> None:
    connection = FakeConnection()
    controller, pools = _controller(connection)

    await controller.submit(CancellationRequest(7, PROFILE, "reporting"))

    assert pools.pools[0].kwargs["database"] == "reporting"


@pytest.mark.anyio
async def test_failure_is_wrapped_and_connection_released() -> None:
    connection = FakeConnection(failures={"pg_cancel_backend": PermissionError("must be a superuser")})
    controller, pools = _controller(connection)

    with pytest.raises(CancellationError, match="Failed to cancel backend 4242"):
        await controller.request_cancel(4242, PROFILE)

    assert pools.pools[0].released == [connection]


@pytest.mark.anyio
async def test_unreachable_server_is_a_cancellation_error() -> None:
    async def _refuse(**kwargs):  # type: ignore[no-untyped-def]
        raise OSError("connection refused")

    controller = CancellationController(ConnectionMultiplexer(pool_factory=_refuse))

    with pytest.raises(CancellationError, match="terminate"):
        await controller.request_terminate(5, PROFILE)


def test_request_key_uses_database_override() -> None:
    assert CancellationRequest(1, PROFILE).key == "local:appdb"
    assert CancellationRequest(1, PROFILE, "other").key == "local:other"
