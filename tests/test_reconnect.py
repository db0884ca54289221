"""Tests for automatic reconnection after a lost link."""

import asyncio
import time
from typing import Any, Callable

import pytest

from modbus_session.config import SessionOptions
from modbus_session.errors import CommunicationError, ModbusConnectionError
from modbus_session.reconnect import ReconnectSupervisor
from modbus_session.session import ModbusSession
from modbus_session.types import ConnectionState

from conftest import FakeTransport


async def lose_link(session: ModbusSession, transport: FakeTransport) -> None:
    transport.executor.fail_with = CommunicationError("connection reset")
    with pytest.raises(CommunicationError):
        await session.read_holding_registers(0, 1)


class TestSessionReconnect:
    def test_gives_up_after_max_attempts(
        self,
        options: SessionOptions,
        make_transport: Callable[..., FakeTransport],
        connection_refused: Callable[[], ModbusConnectionError],
        wait: Callable[..., Any],
    ) -> None:
        transport = make_transport(outcomes=[True], default=connection_refused())
        session = ModbusSession("plc", options.with_reconnect(0.05, 3), transport=transport)
        attempts: list[tuple[int, int]] = []
        failed: list[bool] = []
        states: list[ConnectionState] = []
        stamps: list[float] = []
        session.reconnecting.connect(lambda attempt, limit: attempts.append((attempt, limit)))
        session.reconnecting.connect(lambda attempt, limit: stamps.append(time.monotonic()))
        session.reconnect_failed.connect(lambda: failed.append(True))
        session.reconnect_failed.connect(lambda: stamps.append(time.monotonic()))
        session.state_changed.connect(states.append)

        async def main() -> None:
            await session.connect()
            await lose_link(session, transport)
            assert session.state == ConnectionState.RECONNECTING
            assert await wait(lambda: bool(failed))

        asyncio.run(main())
        assert attempts == [(1, 3), (2, 3), (3, 3)]
        assert failed == [True]
        assert session.state == ConnectionState.DISCONNECTED
        assert transport.opens == 4
        # Waits fall only between attempts: two intervals from first attempt to give-up
        assert len(stamps) == 4
        assert 0.08 <= stamps[-1] - stamps[0] <= 0.2
        assert stamps[-1] - stamps[-2] < 0.04
        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
            ConnectionState.DISCONNECTED,
        ]

    def test_recovers_and_resets_attempts(
        self,
        options: SessionOptions,
        make_transport: Callable[..., FakeTransport],
        connection_refused: Callable[[], ModbusConnectionError],
        wait: Callable[..., Any],
    ) -> None:
        transport = make_transport(outcomes=[True, connection_refused()])
        session = ModbusSession("plc", options.with_reconnect(0.05), transport=transport)
        attempts: list[tuple[int, int]] = []
        session.reconnecting.connect(lambda attempt, limit: attempts.append((attempt, limit)))
        transport.memory.holding[0] = 42

        async def main() -> list[int]:
            await session.connect()
            await lose_link(session, transport)
            assert await wait(lambda: session.is_connected)
            return await session.read_holding_registers(0, 1)

        assert asyncio.run(main()) == [42]
        assert attempts == [(1, 0), (2, 0)]
        assert session.reconnect_attempt == 0
        assert transport.opens == 3
        assert transport.executors[0].closed is True

    def test_stop_reconnect(
        self,
        options: SessionOptions,
        make_transport: Callable[..., FakeTransport],
        connection_refused: Callable[[], ModbusConnectionError],
        wait: Callable[..., Any],
    ) -> None:
        transport = make_transport(outcomes=[True], default=connection_refused())
        session = ModbusSession("plc", options.with_reconnect(0.02), transport=transport)

        async def main() -> int:
            await session.connect()
            await lose_link(session, transport)
            assert await wait(lambda: transport.opens >= 3)
            session.stop_reconnect()
            opens = transport.opens
            await asyncio.sleep(0.1)
            return opens

        opens_at_stop = asyncio.run(main())
        assert session.state == ConnectionState.DISCONNECTED
        assert transport.opens == opens_at_stop

    def test_explicit_connect_cancels_reconnection(
        self,
        options: SessionOptions,
        make_transport: Callable[..., FakeTransport],
        connection_refused: Callable[[], ModbusConnectionError],
        wait: Callable[..., Any],
    ) -> None:
        transport = make_transport(outcomes=[True, connection_refused()])
        session = ModbusSession("plc", options.with_reconnect(1.0), transport=transport)

        async def main() -> None:
            await session.connect()
            await lose_link(session, transport)
            assert await wait(lambda: transport.opens >= 2)
            # Supervisor is now sleeping a full second before attempt 2
            await session.connect()

        asyncio.run(main())
        assert session.state == ConnectionState.CONNECTED
        assert session.reconnect_attempt == 0

    def test_stop_while_open_completes_closes_executor(self, options: SessionOptions, transport: FakeTransport) -> None:
        session = ModbusSession("plc", options.with_reconnect(0.02), transport=transport)
        real_open = transport.open

        async def open_then_stop(host: str, port: int, timeout: float) -> Any:
            executor = await real_open(host, port, timeout)
            if transport.opens > 1:
                session.stop_reconnect()
            return executor

        transport.open = open_then_stop

        async def main() -> None:
            await session.connect()
            await lose_link(session, transport)
            await asyncio.sleep(0.1)

        asyncio.run(main())
        assert session.state == ConnectionState.DISCONNECTED
        assert transport.opens == 2
        assert transport.executors[1].closed is True

    def test_disconnect_cancels_reconnection(
        self,
        options: SessionOptions,
        make_transport: Callable[..., FakeTransport],
        connection_refused: Callable[[], ModbusConnectionError],
        wait: Callable[..., Any],
    ) -> None:
        transport = make_transport(outcomes=[True], default=connection_refused())
        session = ModbusSession("plc", options.with_reconnect(0.02), transport=transport)

        async def main() -> None:
            await session.connect()
            await lose_link(session, transport)
            await session.disconnect()
            opens = transport.opens
            await asyncio.sleep(0.1)
            assert transport.opens == opens

        asyncio.run(main())
        assert session.state == ConnectionState.DISCONNECTED


class TestSupervisor:
    def test_start_is_single_flight(self) -> None:
        calls = 0

        async def connect() -> None:
            nonlocal calls
            calls += 1
            raise OSError("down")

        supervisor = ReconnectSupervisor(connect, interval=10.0)

        async def main() -> tuple[bool, bool]:
            first = supervisor.start()
            second = supervisor.start()
            await asyncio.sleep(0.02)
            supervisor.stop()
            await supervisor.wait()
            return first, second

        assert asyncio.run(main()) == (True, False)
        assert calls == 1
        assert supervisor.is_running is False
        assert supervisor.attempt == 0

    def test_success_callback(self) -> None:
        outcomes = [OSError("down"), None]
        events: list[Any] = []

        async def connect() -> None:
            outcome = outcomes.pop(0)
            if outcome is not None:
                raise outcome

        supervisor = ReconnectSupervisor(
            connect,
            interval=0.01,
            max_attempts=5,
            on_attempt=lambda attempt, limit: events.append((attempt, limit)),
            on_success=lambda: events.append("ok"),
            on_give_up=lambda: events.append("gave up"),
        )

        async def main() -> None:
            supervisor.start()
            await supervisor.wait()

        asyncio.run(main())
        assert events == [(1, 5), (2, 5), "ok"]
        assert supervisor.attempt == 0
