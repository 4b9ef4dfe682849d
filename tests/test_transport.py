"""Tests for the serial and BLE UART channels."""

import asyncio

import pytest
import serial

from atorch_load.client import AtorchClient
from atorch_load.options import Parity, SerialOptions, StopBits
from atorch_load.transport import UART_CHAR_UUID, BleUartChannel, Channel, SerialChannel


class _Char:
    def __init__(self, uuid: str):
        self.uuid = uuid


class _Service:
    def __init__(self, characteristics):
        self.characteristics = characteristics


class _FakeBleClient:
    """Bridge that answers each write with the next queued response."""

    def __init__(self, responses: list[bytes], uuids=(UART_CHAR_UUID,)):
        self.address = "AA:BB:CC:DD:EE:FF"
        self.services = [_Service([_Char(uuid) for uuid in uuids])]
        self.is_connected = False
        self.connect_count = 0
        self.writes: list[bytes] = []
        self._responses = responses
        self._handler = None

    async def connect(self):
        self.is_connected = True
        self.connect_count += 1

    async def disconnect(self):
        self.is_connected = False

    async def start_notify(self, _char, handler):
        self._handler = handler

    async def stop_notify(self, _char):
        self._handler = None

    async def write_gatt_char(self, char, data, response=True):
        self.writes.append(bytes(data))
        if self._handler and self._responses:
            # Notifications arrive after the write completes
            pkt = self._responses.pop(0)
            asyncio.get_running_loop().call_soon(self._handler, char, bytearray(pkt))


def _voltage_response(millivolts: int) -> bytes:
    return b"\xca\xcb" + millivolts.to_bytes(3, "big") + b"\xce\xcf"


class TestBleUartChannel:
    """Tests for the notification-backed channel."""

    def test_is_a_channel(self):
        assert isinstance(BleUartChannel(_FakeBleClient([])), Channel)

    @pytest.mark.asyncio
    async def test_open_connects_and_subscribes(self):
        fake = _FakeBleClient([])
        channel = BleUartChannel(fake)

        await channel.open()

        assert fake.connect_count == 1
        assert fake._handler is not None
        assert channel.is_open
        assert channel.name == "AA:BB:CC:DD:EE:FF"

    @pytest.mark.asyncio
    async def test_open_missing_characteristics(self):
        channel = BleUartChannel(_FakeBleClient([], uuids=("0000fff1-0000-1000-8000-00805f9b34fb",)))
        with pytest.raises(RuntimeError, match="characteristics not found"):
            await channel.open()

    @pytest.mark.asyncio
    async def test_close(self):
        fake = _FakeBleClient([])
        channel = BleUartChannel(fake)
        await channel.open()

        await channel.close()

        assert not channel.is_open
        assert not fake.is_connected
        assert fake._handler is None

    @pytest.mark.asyncio
    async def test_read_exactly_timeout(self):
        channel = BleUartChannel(_FakeBleClient([]))
        await channel.open()
        with pytest.raises(TimeoutError):
            await channel.read_exactly(7, timeout=0.02)

    @pytest.mark.asyncio
    async def test_notifications_buffered(self):
        channel = BleUartChannel(_FakeBleClient([]))
        await channel.open()

        channel._on_notify(None, bytearray(b"\xca\xcb\x00"))
        channel._on_notify(None, bytearray(b"\x01\x02\xce\xcf"))

        assert channel.bytes_available == 7
        assert await channel.read_exactly(3, timeout=0.1) == b"\xca\xcb\x00"
        channel.discard_input()
        assert channel.bytes_available == 0

    @pytest.mark.asyncio
    async def test_client_over_ble(self):
        """Probe on open, then a voltage query, each answered by notification."""
        fake = _FakeBleClient([_voltage_response(5000), _voltage_response(4321)])
        load = AtorchClient(BleUartChannel(fake), read_timeout=0.2, command_pause=0)

        await load.open()
        voltage = await load.read_voltage()

        assert voltage == pytest.approx(4.321)
        assert fake.writes == [bytes.fromhex("b1b2110000b6")] * 2


class _FakeSerial:
    """Stand-in for serial.Serial that hands out queued read chunks."""

    instances: list["_FakeSerial"] = []
    fail_open = False

    def __init__(self):
        self.is_open = False
        self.chunks: list[bytes] = []
        self.written: list[bytes] = []
        self.flushes = 0
        self.input_resets = 0
        self.output_resets = 0
        self.lines_at_open = None
        _FakeSerial.instances.append(self)

    def open(self):
        if self.fail_open:
            raise serial.SerialException("could not open port")
        self.lines_at_open = (self.dtr, self.rts)
        self.is_open = True

    def close(self):
        self.is_open = False

    @property
    def in_waiting(self):
        return sum(len(chunk) for chunk in self.chunks)

    def read(self, size):
        if not self.chunks:
            return b""
        chunk = self.chunks.pop(0)
        if len(chunk) > size:
            self.chunks.insert(0, chunk[size:])
            chunk = chunk[:size]
        return chunk

    def write(self, data):
        self.written.append(bytes(data))
        return len(data)

    def flush(self):
        self.flushes += 1

    def reset_input_buffer(self):
        self.input_resets += 1
        self.chunks.clear()

    def reset_output_buffer(self):
        self.output_resets += 1


@pytest.fixture
def fake_serial(monkeypatch):
    """Patch serial.Serial and return the list of created ports."""
    _FakeSerial.instances = []
    monkeypatch.setattr(serial, "Serial", _FakeSerial)
    return _FakeSerial.instances


class TestSerialChannel:
    """Tests for the pyserial-backed channel."""

    @pytest.mark.asyncio
    async def test_open_applies_settings(self, fake_serial):
        options = SerialOptions(
            port="/dev/ttyUSB0",
            baud_rate=19200,
            parity=Parity.EVEN,
            data_bits=7,
            stop_bits=StopBits.TWO,
            write_timeout=1.5,
        )
        channel = SerialChannel(options)

        await channel.open()

        port = fake_serial[0]
        assert channel.is_open
        assert port.port == "/dev/ttyUSB0"
        assert port.baudrate == 19200
        assert port.bytesize == 7
        assert port.parity == serial.PARITY_EVEN
        assert port.stopbits == serial.STOPBITS_TWO
        assert port.timeout == 0
        assert port.write_timeout == 1.5
        assert (port.xonxoff, port.rtscts, port.dsrdtr) == (False, False, False)
        # DTR/RTS are deasserted before the port opens
        assert port.lines_at_open == (False, False)

    @pytest.mark.asyncio
    async def test_default_settings(self, fake_serial):
        await SerialChannel(SerialOptions(port="COM3")).open()
        port = fake_serial[0]
        assert port.baudrate == 9600
        assert port.parity == serial.PARITY_NONE
        assert port.stopbits == serial.STOPBITS_ONE
        assert port.write_timeout == 3.0

    @pytest.mark.asyncio
    async def test_open_failure(self, fake_serial, monkeypatch):
        monkeypatch.setattr(_FakeSerial, "fail_open", True)
        channel = SerialChannel(SerialOptions(port="COM9"))

        with pytest.raises(serial.SerialException):
            await channel.open()
        assert not channel.is_open

    @pytest.mark.asyncio
    async def test_write_flush_discard(self, fake_serial):
        channel = SerialChannel(SerialOptions(port="COM3"))
        await channel.open()
        port = fake_serial[0]
        port.chunks.append(b"\xff\x55")

        assert channel.bytes_available == 2
        await channel.write(b"\xb1\xb2\x11\x00\x00\xb6")
        channel.discard_input()
        await channel.flush()
        channel.discard_output()

        assert port.written == [b"\xb1\xb2\x11\x00\x00\xb6"]
        assert channel.bytes_available == 0
        assert (port.input_resets, port.flushes, port.output_resets) == (1, 1, 1)

    @pytest.mark.asyncio
    async def test_read_exactly_accumulates_partial_reads(self, fake_serial):
        channel = SerialChannel(SerialOptions(port="COM3"))
        await channel.open()
        fake_serial[0].chunks.extend([b"\xca", b"", b"\xcb\x00\x00", b"\x01\xce\xcf\x6f"])

        data = await channel.read_exactly(7, timeout=0.5)

        assert data == b"\xca\xcb\x00\x00\x01\xce\xcf"
        assert channel.bytes_available == 1

    @pytest.mark.asyncio
    async def test_read_exactly_timeout(self, fake_serial):
        channel = SerialChannel(SerialOptions(port="COM3"))
        await channel.open()
        fake_serial[0].chunks.append(b"\xca\xcb")

        with pytest.raises(TimeoutError, match="Read 2 of 7 bytes"):
            await channel.read_exactly(7, timeout=0.02)

    @pytest.mark.asyncio
    async def test_closed_port_raises(self, fake_serial):
        channel = SerialChannel(SerialOptions(port="COM3"))

        with pytest.raises(serial.SerialException, match="not open"):
            await channel.write(b"\x00")
        with pytest.raises(serial.SerialException):
            channel.discard_input()

        await channel.open()
        await channel.close()
        await channel.close()

        assert not channel.is_open
        assert not fake_serial[0].is_open
        with pytest.raises(serial.SerialException):
            await channel.read_exactly(1, timeout=0.01)

    @pytest.mark.asyncio
    async def test_client_over_serial(self, fake_serial, monkeypatch):
        """Probe on open is written, flushed and answered."""

        def flush_and_answer(port):
            port.flushes += 1
            port.chunks.append(_voltage_response(12000))

        monkeypatch.setattr(_FakeSerial, "flush", flush_and_answer)
        channel = SerialChannel(SerialOptions(port="COM3"))
        load = AtorchClient(channel, read_timeout=0.2, command_pause=0)

        await load.open()
        assert await load.read_voltage() == pytest.approx(12.0)

        assert fake_serial[0].written == [bytes.fromhex("b1b2110000b6")] * 2

    @pytest.mark.asyncio
    async def test_stalled_write_raises(self, fake_serial, monkeypatch):
        """A write that exceeds write_timeout surfaces pyserial's timeout."""

        def stalled_write(port, data):
            raise serial.SerialTimeoutException("Write timeout")

        monkeypatch.setattr(_FakeSerial, "write", stalled_write)
        channel = SerialChannel(SerialOptions(port="COM3", write_timeout=0.5))
        await channel.open()

        with pytest.raises(serial.SerialTimeoutException):
            await channel.write(b"\xb1\xb2\x11\x00\x00\xb6")
        assert fake_serial[0].write_timeout == 0.5
