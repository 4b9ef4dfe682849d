"""aTorch Load - Unofficial asyncio client for aTorch electronic loads.

This library controls and monitors aTorch DL24-family electronic loads over
their serial protocol (the 6-byte "PX100" frames), either on a serial port
(USB-serial or Bluetooth SPP) or through a BLE UART bridge.

Disclaimer: This project is not affiliated with, endorsed by, or connected to
aTorch or any related companies. All trademarks are the property of their
respective owners.

Basic Usage:
    from atorch_load import SerialOptions
    from atorch_load.connect import connect_serial

    async with connect_serial(SerialOptions(port="/dev/ttyUSB0")) as load:
        await load.set_current_if_changed(1.0)
        await load.set_load(True)
        print(f"Voltage: {await load.read_voltage():.3f} V")

Bring your own channel:
    from atorch_load import AtorchClient, SerialChannel, SerialOptions

    load = AtorchClient(SerialChannel(SerialOptions(port="COM3")))
    await load.open()
    try:
        readings = await load.get_readings()
    finally:
        await load.ensure_load_off()
        await load.close()

Via a BLE UART bridge:
    from atorch_load.connect import connect_ble

    async with connect_ble("AA:BB:CC:DD:EE:FF") as load:
        print(await load.is_load_enabled())
"""

from __future__ import annotations

from .client import AtorchClient
from .dispatcher import Dispatcher
from .exceptions import (
    AtorchError,
    InvalidCommandTypeError,
    InvalidQueryTypeError,
    InvalidRequestTypeError,
    InvalidResponseError,
    InvalidTypeError,
    PanicError,
)
from .options import Parity, SerialOptions, StopBits
from .protocol import (
    # Enums
    CommandType,
    LoadState,
    QueryType,
    # Data classes
    CommandResult,
    LoadReadings,
    Request,
    # Functions
    classify_response,
    decode_command,
    decode_query,
    encode_duration,
    encode_fixed_point,
    encode_request,
    format_readings,
)
from .transport import BleUartChannel, Channel, SerialChannel

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Primary interface
    "AtorchClient",
    "Dispatcher",
    # Channels
    "Channel",
    "SerialChannel",
    "BleUartChannel",
    # Configuration
    "SerialOptions",
    "Parity",
    "StopBits",
    # Enums
    "CommandType",
    "QueryType",
    "LoadState",
    # Data classes
    "CommandResult",
    "LoadReadings",
    "Request",
    # Errors
    "AtorchError",
    "InvalidTypeError",
    "InvalidCommandTypeError",
    "InvalidQueryTypeError",
    "InvalidRequestTypeError",
    "InvalidResponseError",
    "PanicError",
    # Protocol functions (for advanced use)
    "classify_response",
    "decode_command",
    "decode_query",
    "encode_duration",
    "encode_fixed_point",
    "encode_request",
    "format_readings",
]
