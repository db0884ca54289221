#!/usr/bin/env python3
"""Example: connect a session, read and write raw and typed registers."""

import asyncio
import sys

from modbus_session import ModbusSession, SessionOptions, WordOrder, typed
from modbus_session.errors import CommunicationError, ModbusConnectionError, ProtocolError


async def main() -> None:
    options = SessionOptions(host="192.168.1.10", port=502, unit_id=1).with_word_order(WordOrder.CDAB)

    try:
        async with ModbusSession("plc", options) as session:
            # Raw holding registers
            regs = await session.read_holding_registers(0, 4)
            print(f"HR 0..3 = {regs}")

            # Coils
            coils = await session.read_coils(0, 8)
            print(f"coils 0..7 = {coils}")

            # 32-bit float over two registers, session word order (CDAB)
            temperature = await typed.read_float(session, 100)
            print(f"HR 100 (float32) = {temperature:.2f}")

            # Bit 3 of HR 10
            flag = await typed.read_register_bit(session, 10, 3)
            print(f"HR 10 bit 3 = {flag}")

            # Writes (uncomment if your device allows)
            # await session.write_single_coil(0, True)
            # await typed.write_int32(session, 200, -123456)
    except ModbusConnectionError as e:
        print(f"Connection failed: {e}", file=sys.stderr)
        sys.exit(1)
    except ProtocolError as e:
        print(f"Device rejected request: {e}", file=sys.stderr)
        sys.exit(1)
    except CommunicationError as e:
        print(f"Modbus/connection error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
