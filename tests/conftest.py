"""Pytest configuration for aTorch load tests."""

import os
from pathlib import Path

import pytest

from atorch_load.client import AtorchClient
from atorch_load.protocol import ACK_OK, CommandType, QueryType


def _load_dotenv() -> None:
    """Load .env file if it exists."""
    env_path = Path(__file__).parent.parent / ".env"
    if env_path.exists():
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, value = line.split("=", 1)
                    os.environ.setdefault(key.strip(), value.strip())


# Load .env at import time
_load_dotenv()


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add custom command-line options for E2E tests."""
    parser.addoption(
        "--serial-port",
        action="store",
        default=None,
        help="Serial port of an aTorch load for E2E tests (e.g., /dev/ttyUSB0)",
    )


@pytest.fixture
def serial_port(request: pytest.FixtureRequest) -> str | None:
    """Fixture providing the serial port from CLI, env, or None."""
    return request.config.getoption("--serial-port") or os.environ.get("ATORCH_PORT")


class FakeLoad:
    """Simulated load speaking the protocol, usable as a Channel.

    A response is produced when the request is flushed, so it survives the
    input discard that follows the write. Knobs:

    - noise: bytes injected ahead of each response (before the discard)
    - corrupt_responses: number of upcoming query responses with a bad header
    - silent: never answer
    - stuck_on: ignore OFF commands
    - ack: byte sent for commands
    - fail_open: raise OSError from open()
    """

    def __init__(self) -> None:
        self.name = "fake"
        self.is_open = False
        self.open_count = 0
        self.close_count = 0
        self.opened_at: list[int] = []  # len(frames) at each open()
        self.frames: list[bytes] = []
        self.input_discards = 0
        self.output_discards = 0

        self.noise = b""
        self.corrupt_responses = 0
        self.silent = False
        self.stuck_on = False
        self.ack = ACK_OK
        self.fail_open = False

        # Device state
        self.load_on = False
        self.current_setting = 0  # centi-amps
        self.cutoff_setting = 0  # centi-volts
        self.timer_seconds = 0
        self.voltage_mv = 12345
        self.current_ma = 1500
        self.elapsed = (1, 2, 3)
        self.capacity_mah = 2500
        self.capacity_mwh = 30000
        self.temperature = 35

        self._rx = bytearray()
        self._pending: bytes | None = None

    @property
    def bytes_available(self) -> int:
        return len(self._rx)

    async def open(self) -> None:
        if self.fail_open:
            raise OSError("port vanished")
        self.is_open = True
        self.open_count += 1
        self.opened_at.append(len(self.frames))

    async def close(self) -> None:
        self.is_open = False
        self.close_count += 1

    async def write(self, data: bytes) -> None:
        self.frames.append(bytes(data))
        self._pending = bytes(data)
        self._rx += self.noise

    async def flush(self) -> None:
        if self._pending is None:
            return
        response = self._respond(self._pending)
        self._pending = None
        if not self.silent:
            self._rx += response

    async def read_exactly(self, count: int, timeout: float) -> bytes:
        if len(self._rx) < count:
            raise TimeoutError("fake load has no data")
        data = bytes(self._rx[:count])
        del self._rx[:count]
        return data

    def discard_input(self) -> None:
        self.input_discards += 1
        self._rx.clear()

    def discard_output(self) -> None:
        self.output_discards += 1

    def types_sent(self, start: int = 0) -> list[int]:
        """Request type byte of every frame written since frame index start."""
        return [frame[2] for frame in self.frames[start:]]

    def count(self, request_type: int) -> int:
        return self.types_sent().count(request_type)

    def _respond(self, frame: bytes) -> bytes:
        request_type, d0, d1 = frame[2], frame[3], frame[4]
        if request_type < 0x10:
            self._execute(request_type, d0, d1)
            return bytes([self.ack])

        header = b"\xca\xcb"
        if self.corrupt_responses:
            self.corrupt_responses -= 1
            header = b"\x00\xcb"
        return header + self._query_value(request_type) + b"\xce\xcf"

    def _execute(self, command: int, d0: int, d1: int) -> None:
        if command == CommandType.TOGGLE_LOAD:
            if d0:
                self.load_on = True
            elif not self.stuck_on:
                self.load_on = False
        elif command == CommandType.SET_CURRENT:
            self.current_setting = d0 * 100 + d1
        elif command == CommandType.SET_CUTOFF_VOLTAGE:
            self.cutoff_setting = d0 * 100 + d1
        elif command == CommandType.SET_TIMEOUT:
            self.timer_seconds = d0 << 8 | d1
        elif command == CommandType.RESET_COUNTERS:
            self.elapsed = (0, 0, 0)
            self.capacity_mah = 0
            self.capacity_mwh = 0

    def _query_value(self, query: int) -> bytes:
        if query == QueryType.LOAD_ENABLED:
            return bytes([0, 0, 1 if self.load_on else 0])
        if query == QueryType.ELAPSED_TIME:
            return bytes(self.elapsed)
        if query == QueryType.TIMER_SETTING:
            hours, rest = divmod(self.timer_seconds, 3600)
            return bytes([hours, rest // 60, rest % 60])
        value = {
            QueryType.VOLTAGE_READING: self.voltage_mv,
            QueryType.CURRENT_READING: self.current_ma,
            QueryType.CAPACITY_MILLI_AMP_HOURS: self.capacity_mah,
            QueryType.CAPACITY_MILLI_WATT_HOURS: self.capacity_mwh,
            QueryType.MOSFET_TEMPERATURE: self.temperature,
            QueryType.CURRENT_SETTING: self.current_setting,
            QueryType.CUTOFF_VOLTAGE_SETTING: self.cutoff_setting,
        }.get(query, 0)
        return value.to_bytes(3, "big")


@pytest.fixture
def fake_load() -> FakeLoad:
    """A closed simulated load."""
    return FakeLoad()


@pytest.fixture
def load(fake_load: FakeLoad) -> AtorchClient:
    """AtorchClient on the simulated load, with pacing turned down."""
    return AtorchClient(
        fake_load,
        read_timeout=0.05,
        command_pause=0,
        shutdown_pause=0.01,
    )
