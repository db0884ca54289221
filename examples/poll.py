#!/usr/bin/env python3
"""Example: poll several blocks with a poller group, reconnecting automatically; Ctrl+C to stop."""

import asyncio
import sys

from modbus_session import ConnectionState, ModbusSession, PollerGroup, SessionOptions
from modbus_session.errors import ModbusConnectionError


def configure(group: PollerGroup) -> None:
    group.add_holding_registers("fast", 0, 4, 0.5, lambda values: print(f"fast {values}"))
    group.add_coils("slow", 0, 8, 2.0, lambda values: print(f"slow {values}"))
    group.on_error(lambda name, exc: print(f"{name} failed: {exc}", file=sys.stderr))


async def main() -> None:
    options = (
        SessionOptions(host="192.168.1.10", port=502, unit_id=1)
        .with_reconnect(interval=2.0, max_attempts=10)
        .with_heartbeat(interval=5.0)
    )
    session = ModbusSession("plc", options)
    session.state_changed.connect(lambda state: print(f"state: {state.value}"))
    session.reconnecting.connect(lambda attempt, limit: print(f"reconnecting {attempt}/{limit}"))
    session.with_poller_group(configure)

    try:
        await session.connect()
        print("Polling (Ctrl+C to stop)...")
        while session.state != ConnectionState.DISCONNECTED:
            await asyncio.sleep(1.0)
        print("Gave up reconnecting.")
    except ModbusConnectionError as e:
        print(f"Connection failed: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        await session.disconnect()
        session.dispose()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nStopped.")
