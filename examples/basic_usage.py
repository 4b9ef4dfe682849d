#!/usr/bin/env python3
"""Basic usage example for atorch-load.

This example shows how to:
1. List serial ports
2. Connect and read all values
3. Display readings using metadata
4. Run a short discharge (commented out)

Requirements:
    pip install atorch-load

Usage:
    python basic_usage.py [PORT]

If no port is provided, lists the available ports first.
"""

import asyncio
import logging
import sys

from atorch_load import SerialOptions, format_readings
from atorch_load.connect import connect_serial, list_serial_ports


async def main(port: str | None = None):
    # List ports if none provided
    if not port:
        ports = list_serial_ports()

        if not ports:
            print("No serial ports found. Make sure:")
            print("  - The load is connected over USB")
            print("  - Or its Bluetooth SPP port is paired and bound")
            return

        print(f"Found {len(ports)} port(s):")
        for device, description in ports:
            print(f"  {device} - {description or 'Unknown'}")

        port = ports[0][0]
        print(f"\nConnecting to {port}...")

    # The load is switched off again when the block exits
    async with connect_serial(SerialOptions(port=port)) as load:
        readings = await load.get_readings()
        print(f"\n--- Load on {load.name} ---")
        print(format_readings(readings))

        # Example: discharge at 0.5 A down to 3.0 V
        # (commented out for safety)
        # await load.set_current_if_changed(0.5)
        # await load.set_cutoff_voltage_if_changed(3.0)
        # await load.set_load(True)
        # await asyncio.sleep(5)
        # print(f"\nDrawing {await load.read_current():.3f} A")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    port = sys.argv[1] if len(sys.argv) > 1 else None
    asyncio.run(main(port))
