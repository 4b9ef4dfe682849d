"""Standalone connection helpers for aTorch loads.

This module provides convenience functions for connecting to a load over a
serial port (USB or Bluetooth SPP) or a BLE UART bridge, and for finding
candidate ports and bridges.

Example:
    from atorch_load import SerialOptions
    from atorch_load.connect import connect_serial

    async with connect_serial(SerialOptions(port="/dev/ttyUSB0")) as load:
        await load.set_current_if_changed(0.5)
        await load.set_load(True)
        print(await load.get_readings())
    # the load is switched off again on exit
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import serial.tools.list_ports
from bleak import BleakClient, BleakScanner

from .client import AtorchClient
from .options import SerialOptions
from .transport import UART_CHAR_UUID, UART_SERVICE_UUID, BleUartChannel, SerialChannel


@asynccontextmanager
async def _opened(load: AtorchClient, ensure_off: bool) -> AsyncIterator[AtorchClient]:
    opened = False
    try:
        await load.open()
        opened = True
        yield load
    finally:
        try:
            if ensure_off and opened:
                await load.ensure_load_off()
        finally:
            await load.close()


@asynccontextmanager
async def connect_serial(
    options: SerialOptions,
    ensure_off: bool = True,
    **client_kwargs,
) -> AsyncIterator[AtorchClient]:
    """Connect to a load on a serial port.

    Works for USB-serial adapters and for Bluetooth SPP ports that the OS
    exposes as serial devices.

    Args:
        options: Port settings
        ensure_off: Run ensure_load_off() before closing
        **client_kwargs: Passed to AtorchClient (command_pause, ...)

    Yields:
        Opened AtorchClient

    Example:
        async with connect_serial(SerialOptions(port="COM3")) as load:
            voltage = await load.read_voltage()
    """
    load = AtorchClient(
        SerialChannel(options),
        retry_count=options.retry_count,
        read_timeout=options.read_timeout,
        **client_kwargs,
    )
    async with _opened(load, ensure_off) as opened:
        yield opened


@asynccontextmanager
async def connect_ble(
    address: str,
    timeout: float = 20.0,
    notify_uuid: str = UART_CHAR_UUID,
    write_uuid: str = UART_CHAR_UUID,
    ensure_off: bool = True,
    **client_kwargs,
) -> AsyncIterator[AtorchClient]:
    """Connect to a load through a BLE UART bridge.

    Args:
        address: Bridge MAC address (or UUID on macOS)
        timeout: BLE connection timeout in seconds
        notify_uuid: Characteristic the bridge notifies on
        write_uuid: Characteristic to write to
        ensure_off: Run ensure_load_off() before disconnecting
        **client_kwargs: Passed to AtorchClient

    Yields:
        Opened AtorchClient
    """
    channel = BleUartChannel(
        BleakClient(address, timeout=timeout),
        notify_uuid=notify_uuid,
        write_uuid=write_uuid,
    )
    async with _opened(AtorchClient(channel, **client_kwargs), ensure_off) as opened:
        yield opened


def list_serial_ports() -> list[tuple[str, str]]:
    """List serial ports the load could be attached to.

    Returns:
        List of (device, description) tuples
    """
    return [
        (port.device, port.description or "")
        for port in serial.tools.list_ports.comports()
    ]


async def scan_ble(timeout: float = 10.0) -> list[tuple[str, str | None]]:
    """Scan for BLE UART bridges.

    Args:
        timeout: Scan duration in seconds

    Returns:
        List of (address, name) tuples for bridges advertising the UART service
    """
    devices = await BleakScanner.discover(timeout=timeout, return_adv=True)
    results = []
    for device, adv in devices.values():
        uuids = [uuid.lower() for uuid in adv.service_uuids]
        if UART_SERVICE_UUID in uuids:
            results.append((device.address, device.name))
    return results
