"""Shared fixtures: an in-memory Modbus device behind a fake transport."""

import asyncio
import time
from collections import defaultdict
from typing import Any, Callable

import pytest

from modbus_session.config import SessionOptions
from modbus_session.errors import ModbusConnectionError


class DeviceMemory:
    """Register and bit tables shared by every executor a transport opens."""

    def __init__(self) -> None:
        self.holding: defaultdict[int, int] = defaultdict(int)
        self.input: defaultdict[int, int] = defaultdict(int)
        self.coils: defaultdict[int, bool] = defaultdict(bool)
        self.discrete: defaultdict[int, bool] = defaultdict(bool)


class FakeExecutor:
    """RequestExecutor backed by DeviceMemory, with injectable failures and latency."""

    def __init__(self, memory: DeviceMemory) -> None:
        self.memory = memory
        self.alive = True
        self.closed = False
        self.delay = 0.0
        self.fail_with: BaseException | None = None
        self.calls: list[tuple[str, int, int]] = []

    async def _io(self, operation: str, address: int, unit_id: int) -> None:
        self.calls.append((operation, address, unit_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with

    async def read_coils(self, address: int, count: int, unit_id: int) -> list[bool]:
        await self._io("read_coils", address, unit_id)
        return [self.memory.coils[address + i] for i in range(count)]

    async def read_discrete_inputs(self, address: int, count: int, unit_id: int) -> list[bool]:
        await self._io("read_discrete_inputs", address, unit_id)
        return [self.memory.discrete[address + i] for i in range(count)]

    async def read_holding_registers(self, address: int, count: int, unit_id: int) -> list[int]:
        await self._io("read_holding_registers", address, unit_id)
        return [self.memory.holding[address + i] for i in range(count)]

    async def read_input_registers(self, address: int, count: int, unit_id: int) -> list[int]:
        await self._io("read_input_registers", address, unit_id)
        return [self.memory.input[address + i] for i in range(count)]

    async def write_single_coil(self, address: int, value: bool, unit_id: int) -> None:
        await self._io("write_single_coil", address, unit_id)
        self.memory.coils[address] = value

    async def write_single_register(self, address: int, value: int, unit_id: int) -> None:
        await self._io("write_single_register", address, unit_id)
        self.memory.holding[address] = value

    async def write_multiple_coils(self, address: int, values: list[bool], unit_id: int) -> None:
        await self._io("write_multiple_coils", address, unit_id)
        for i, v in enumerate(values):
            self.memory.coils[address + i] = v

    async def write_multiple_registers(self, address: int, values: list[int], unit_id: int) -> None:
        await self._io("write_multiple_registers", address, unit_id)
        for i, v in enumerate(values):
            self.memory.holding[address + i] = v

    def is_alive(self) -> bool:
        return self.alive and not self.closed

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    """
    TransportFactory whose open() outcomes are scripted.

    ``outcomes`` is consumed one per open(): True opens, an exception instance is
    raised. Once exhausted, ``default`` applies.
    """

    def __init__(self, outcomes: list[Any] | None = None, default: Any = True, delay: float = 0.0) -> None:
        self.memory = DeviceMemory()
        self.outcomes = list(outcomes or [])
        self.default = default
        self.delay = delay
        self.opens = 0
        self.executors: list[FakeExecutor] = []

    @property
    def executor(self) -> FakeExecutor:
        """Most recently opened executor."""
        return self.executors[-1]

    async def open(self, host: str, port: int, timeout: float) -> FakeExecutor:
        self.opens += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        executor = FakeExecutor(self.memory)
        self.executors.append(executor)
        return executor


def refused() -> ModbusConnectionError:
    return ModbusConnectionError("Connection refused", address="127.0.0.1:502")


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, step: float = 0.005) -> bool:
    """Poll predicate until true or timeout; returns the final value."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(step)
    return predicate()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def make_transport() -> Callable[..., FakeTransport]:
    return FakeTransport


@pytest.fixture
def connection_refused() -> Callable[[], ModbusConnectionError]:
    return refused


@pytest.fixture
def wait() -> Callable[..., Any]:
    return wait_until


@pytest.fixture
def options() -> SessionOptions:
    return SessionOptions(
        host="127.0.0.1",
        port=502,
        unit_id=1,
        connect_timeout=0.5,
        read_timeout=0.5,
        write_timeout=0.5,
    )
