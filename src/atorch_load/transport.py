"""Byte channels the protocol runs over.

The dispatcher only needs a handful of byte-stream operations (see
``Channel``). Two backings are provided:

- ``SerialChannel``: a pyserial port. Covers the USB-serial interface and
  Bluetooth SPP, which the OS exposes as a serial device (/dev/rfcomm0,
  /dev/cu.*, COMx).
- ``BleUartChannel``: a BLE "serial bridge" module (HM-10 style, one
  characteristic for notify and write) driven through bleak.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import serial

from .options import SerialOptions

if TYPE_CHECKING:
    from bleak import BleakClient

POLL_INTERVAL = 0.001

# HM-10 / CC254x UART bridge profile
UART_SERVICE_UUID = "0000ffe0-0000-1000-8000-00805f9b34fb"
UART_CHAR_UUID = "0000ffe1-0000-1000-8000-00805f9b34fb"  # Notify + write


@runtime_checkable
class Channel(Protocol):
    """Byte-oriented link to a load."""

    @property
    def name(self) -> str: ...

    @property
    def is_open(self) -> bool: ...

    @property
    def bytes_available(self) -> int:
        """Number of received bytes waiting to be read."""
        ...

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def write(self, data: bytes) -> None: ...

    async def flush(self) -> None:
        """Wait until written bytes have left the output buffer."""
        ...

    async def read_exactly(self, count: int, timeout: float) -> bytes:
        """Read exactly count bytes, raising TimeoutError after timeout seconds."""
        ...

    def discard_input(self) -> None: ...

    def discard_output(self) -> None: ...


class SerialChannel:
    """Channel over a pyserial port.

    The port is opened non-blocking (``timeout=0``) and reads are polled from
    the event loop, so no thread is needed. Writes and flushes block the
    event loop: a request frame is 6 bytes, about 6 ms at 9600 baud, but a
    stalled link holds the loop for up to ``write_timeout`` before pyserial
    raises ``serial.SerialTimeoutException``.

    Usage::

        channel = SerialChannel(SerialOptions(port="/dev/ttyUSB0"))
        await channel.open()
    """

    def __init__(self, options: SerialOptions) -> None:
        self._options = options
        self._port: serial.Serial | None = None

    @property
    def options(self) -> SerialOptions:
        return self._options

    @property
    def name(self) -> str:
        return self._options.port

    @property
    def is_open(self) -> bool:
        return self._port is not None and self._port.is_open

    @property
    def bytes_available(self) -> int:
        return self._require_port().in_waiting

    async def open(self) -> None:
        """Open the serial port.

        Raises:
            serial.SerialException: If the port cannot be opened
        """
        options = self._options
        port = serial.Serial()
        port.port = options.port
        port.baudrate = options.baud_rate
        port.bytesize = options.data_bits
        port.parity = options.parity.value
        port.stopbits = options.stop_bits.value
        port.timeout = 0
        port.write_timeout = options.write_timeout
        port.xonxoff = False
        port.rtscts = False
        port.dsrdtr = False
        # Set before open() so the lines are never asserted
        port.dtr = False
        port.rts = False
        port.open()
        self._port = port

    async def close(self) -> None:
        if self._port is None:
            return
        try:
            self._port.close()
        finally:
            self._port = None

    async def write(self, data: bytes) -> None:
        self._require_port().write(data)

    async def flush(self) -> None:
        self._require_port().flush()

    async def read_exactly(self, count: int, timeout: float) -> bytes:
        port = self._require_port()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        data = bytearray()
        while True:
            data += port.read(count - len(data))
            if len(data) >= count:
                return bytes(data)
            if loop.time() >= deadline:
                raise TimeoutError(
                    f"Read {len(data)} of {count} bytes from {self.name} within {timeout}s"
                )
            await asyncio.sleep(POLL_INTERVAL)

    def discard_input(self) -> None:
        self._require_port().reset_input_buffer()

    def discard_output(self) -> None:
        self._require_port().reset_output_buffer()

    def _require_port(self) -> serial.Serial:
        if self._port is None or not self._port.is_open:
            raise serial.SerialException(f"Port {self.name} is not open")
        return self._port


class BleUartChannel:
    """Channel over a BLE UART bridge.

    Wraps a BleakClient (or compatible). Notifications from the bridge are
    collected into a receive buffer; ``open()`` connects if needed and
    subscribes, ``close()`` unsubscribes and disconnects.

    Args:
        client: BleakClient for the bridge; need not be connected yet
        notify_uuid: Characteristic the bridge notifies received bytes on
        write_uuid: Characteristic to write outgoing bytes to

    Example:
        channel = BleUartChannel(BleakClient("AA:BB:CC:DD:EE:FF"))
        load = AtorchClient(channel)
        await load.open()
    """

    def __init__(
        self,
        client: "BleakClient",
        notify_uuid: str = UART_CHAR_UUID,
        write_uuid: str = UART_CHAR_UUID,
    ) -> None:
        self._client = client
        self._notify_uuid = notify_uuid
        self._write_uuid = write_uuid
        self._notify_char: Any = None
        self._write_char: Any = None
        self._subscribed = False
        self._buffer = bytearray()
        self._data_received = asyncio.Event()

    @property
    def name(self) -> str:
        return self._client.address

    @property
    def is_open(self) -> bool:
        return self._subscribed and self._client.is_connected

    @property
    def bytes_available(self) -> int:
        return len(self._buffer)

    def _find_characteristics(self) -> None:
        """Find the bridge characteristics from services.

        Characteristic objects are passed to start_notify and
        write_gatt_char so no UUID lookup happens per write.
        """
        for svc in self._client.services:
            for char in svc.characteristics:
                if char.uuid == self._notify_uuid:
                    self._notify_char = char
                if char.uuid == self._write_uuid:
                    self._write_char = char

        if not self._notify_char or not self._write_char:
            raise RuntimeError(
                f"UART characteristics not found. "
                f"Expected {self._notify_uuid} and {self._write_uuid}"
            )

    def _on_notify(self, *args: Any) -> None:
        data = args[-1]  # data is always last arg
        self._buffer.extend(data)
        self._data_received.set()

    async def open(self) -> None:
        """Connect (if needed) and subscribe to the bridge.

        Raises:
            bleak.exc.BleakError: If the connection fails
            RuntimeError: If the bridge characteristics are missing
        """
        if not self._client.is_connected:
            await self._client.connect()
        self._find_characteristics()
        self._buffer.clear()
        await self._client.start_notify(self._notify_char, self._on_notify)
        self._subscribed = True

    async def close(self) -> None:
        if not self._client.is_connected:
            self._subscribed = False
            return
        try:
            if self._subscribed:
                await self._client.stop_notify(self._notify_char)
        finally:
            self._subscribed = False
            await self._client.disconnect()

    async def write(self, data: bytes) -> None:
        await self._client.write_gatt_char(self._write_char, data, response=False)

    async def flush(self) -> None:
        # GATT writes have been handed to the stack once write() returns
        return None

    async def read_exactly(self, count: int, timeout: float) -> bytes:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while len(self._buffer) < count:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TimeoutError(
                    f"Read {len(self._buffer)} of {count} bytes from {self.name} within {timeout}s"
                )
            self._data_received.clear()
            await asyncio.wait_for(self._data_received.wait(), timeout=remaining)
        data = bytes(self._buffer[:count])
        del self._buffer[:count]
        return data

    def discard_input(self) -> None:
        self._buffer.clear()

    def discard_output(self) -> None:
        # Nothing is queued on our side of the GATT link
        return None
