#!/usr/bin/env python3
"""Dump the raw frames exchanged with a load.

Runs every query once with DEBUG logging enabled, so each request and its
response are printed as hex (``SENDING : b1 b2 10 00 00 b6`` /
``RECEIVED : ca cb 00 00 01 ce cf``). Useful when checking a new firmware
or a flaky USB-serial adapter.

Uses the Dispatcher directly: nothing is written to the load except queries.

Usage:
    python dump_frames.py PORT
"""

import asyncio
import logging
import sys

from atorch_load import AtorchError, Dispatcher, QueryType, Request, SerialChannel, SerialOptions


async def main(port: str):
    channel = SerialChannel(SerialOptions(port=port))
    await channel.open()
    try:
        dispatcher = Dispatcher(channel)
        for query_type in QueryType:
            print(f"\n--- {query_type.name} (0x{query_type:02X}) ---")
            try:
                value = await dispatcher.send(Request.query(query_type))
            except (TimeoutError, AtorchError) as e:
                print(f"  failed: {e}")
                continue
            print(f"  value: {value!r}")
    finally:
        await channel.close()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(2)

    logging.basicConfig(level=logging.DEBUG, format="%(name)s %(message)s")
    asyncio.run(main(sys.argv[1]))
