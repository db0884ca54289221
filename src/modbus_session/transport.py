"""
Protocol collaborator: opens a transport and executes raw register requests.

The session only depends on the RequestExecutor / TransportFactory protocols.
PymodbusTransport is the default implementation over pymodbus's asyncio TCP
client; it owns framing and function codes and translates pymodbus failures
into CommunicationError / ProtocolError.
"""

import asyncio
import logging
from typing import Any, Protocol, Sequence

from pymodbus.client import AsyncModbusTcpClient
from pymodbus.exceptions import ModbusException as PymodbusException

from .errors import CommunicationError, ModbusConnectionError, ProtocolError

logger = logging.getLogger(__name__)


class RequestExecutor(Protocol):
    """Raw register operations against one open transport."""

    async def read_coils(self, address: int, count: int, unit_id: int) -> list[bool]: ...

    async def read_discrete_inputs(self, address: int, count: int, unit_id: int) -> list[bool]: ...

    async def read_holding_registers(self, address: int, count: int, unit_id: int) -> list[int]: ...

    async def read_input_registers(self, address: int, count: int, unit_id: int) -> list[int]: ...

    async def write_single_coil(self, address: int, value: bool, unit_id: int) -> None: ...

    async def write_single_register(self, address: int, value: int, unit_id: int) -> None: ...

    async def write_multiple_coils(self, address: int, values: Sequence[bool], unit_id: int) -> None: ...

    async def write_multiple_registers(self, address: int, values: Sequence[int], unit_id: int) -> None: ...

    def is_alive(self) -> bool:
        """Liveness of the underlying stream; must not send a request."""
        ...

    def close(self) -> None: ...


class TransportFactory(Protocol):
    """Opens a transport to host:port and returns an executor bound to it."""

    async def open(self, host: str, port: int, timeout: float) -> RequestExecutor: ...


class PymodbusExecutor:
    """RequestExecutor over a connected pymodbus AsyncModbusTcpClient."""

    def __init__(self, client: AsyncModbusTcpClient) -> None:
        self._client = client

    def _check(self, rr: Any, operation: str, address: int) -> Any:
        if rr.isError():
            code = getattr(rr, "exception_code", None)
            raise ProtocolError(
                f"{operation}({address}): device returned exception {code}",
                exception_code=code,
                operation=operation,
                address=address,
            )
        return rr

    async def _call(self, operation: str, address: int, *args: Any, unit_id: int, **kwargs: Any) -> Any:
        method = getattr(self._client, operation)
        try:
            rr = await method(address, *args, device_id=unit_id, **kwargs)
        except (PymodbusException, OSError) as e:
            raise CommunicationError(str(e), operation=operation, address=address, cause=e) from e
        return self._check(rr, operation, address)

    async def _read_bits(self, operation: str, address: int, count: int, unit_id: int) -> list[bool]:
        rr = await self._call(operation, address, unit_id=unit_id, count=count)
        bits = getattr(rr, "bits", None)
        if bits is None or len(bits) < count:
            raise CommunicationError("Short bit response", operation=operation, address=address)
        # pymodbus pads bit responses to a whole number of bytes
        return [bool(b) for b in bits[:count]]

    async def _read_registers(self, operation: str, address: int, count: int, unit_id: int) -> list[int]:
        rr = await self._call(operation, address, unit_id=unit_id, count=count)
        registers = getattr(rr, "registers", None)
        if registers is None or len(registers) < count:
            raise CommunicationError("Short register response", operation=operation, address=address)
        return [int(r) for r in registers[:count]]

    async def read_coils(self, address: int, count: int, unit_id: int) -> list[bool]:
        return await self._read_bits("read_coils", address, count, unit_id)

    async def read_discrete_inputs(self, address: int, count: int, unit_id: int) -> list[bool]:
        return await self._read_bits("read_discrete_inputs", address, count, unit_id)

    async def read_holding_registers(self, address: int, count: int, unit_id: int) -> list[int]:
        return await self._read_registers("read_holding_registers", address, count, unit_id)

    async def read_input_registers(self, address: int, count: int, unit_id: int) -> list[int]:
        return await self._read_registers("read_input_registers", address, count, unit_id)

    async def write_single_coil(self, address: int, value: bool, unit_id: int) -> None:
        await self._call("write_coil", address, bool(value), unit_id=unit_id)

    async def write_single_register(self, address: int, value: int, unit_id: int) -> None:
        await self._call("write_register", address, int(value), unit_id=unit_id)

    async def write_multiple_coils(self, address: int, values: Sequence[bool], unit_id: int) -> None:
        await self._call("write_coils", address, [bool(v) for v in values], unit_id=unit_id)

    async def write_multiple_registers(self, address: int, values: Sequence[int], unit_id: int) -> None:
        await self._call("write_registers", address, [int(v) for v in values], unit_id=unit_id)

    def is_alive(self) -> bool:
        return bool(self._client.connected)

    def close(self) -> None:
        try:
            self._client.close()
        except Exception as e:
            logger.warning("Error closing Modbus client: %s", e)


class PymodbusTransport:
    """TransportFactory creating one AsyncModbusTcpClient per connect."""

    def __init__(self, retries: int = 0) -> None:
        self._retries = retries

    async def open(self, host: str, port: int, timeout: float) -> PymodbusExecutor:
        client = AsyncModbusTcpClient(
            host,
            port=port,
            timeout=timeout,
            retries=self._retries,
            # Reconnection is driven by the session, not by pymodbus
            reconnect_delay=0,
        )
        try:
            connected = await client.connect()
        except asyncio.CancelledError:
            client.close()
            raise
        except (PymodbusException, OSError) as e:
            client.close()
            raise ModbusConnectionError(
                f"Failed to connect to {host}:{port}: {e}",
                address=f"{host}:{port}",
                cause=e,
            ) from e
        if not connected:
            client.close()
            raise ModbusConnectionError(f"Failed to connect to {host}:{port}", address=f"{host}:{port}")
        logger.debug("Transport open to %s:%s", host, port)
        return PymodbusExecutor(client)
