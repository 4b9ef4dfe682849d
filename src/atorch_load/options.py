"""Serial port settings for the load.

The defaults match the DL24 family's USB-serial interface (9600 8N1). The
same settings work for a Bluetooth SPP port (rfcomm / COM port), which the
operating system exposes as an ordinary serial device.

Example:
    options = SerialOptions(port="/dev/ttyUSB0")
    options = SerialOptions.from_env()  # ATORCH_PORT=/dev/ttyUSB0 ...
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Mapping

import serial

DEFAULT_BAUD_RATE = 9600
DEFAULT_DATA_BITS = 8
DEFAULT_READ_TIMEOUT = 3.0
DEFAULT_WRITE_TIMEOUT = 3.0
DEFAULT_RETRY_COUNT = 3

ENV_PREFIX = "ATORCH_"


class Parity(Enum):
    """Parity setting, valued with the matching pyserial constant."""

    NONE = serial.PARITY_NONE
    ODD = serial.PARITY_ODD
    EVEN = serial.PARITY_EVEN
    MARK = serial.PARITY_MARK
    SPACE = serial.PARITY_SPACE


class StopBits(Enum):
    """Stop bits setting, valued with the matching pyserial constant."""

    ONE = serial.STOPBITS_ONE
    ONE_POINT_FIVE = serial.STOPBITS_ONE_POINT_FIVE
    TWO = serial.STOPBITS_TWO


@dataclass(frozen=True)
class SerialOptions:
    """Connection settings for a serial-attached load.

    Attributes:
        port: Serial device (e.g. "/dev/ttyUSB0", "/dev/rfcomm0", "COM3")
        baud_rate: Line speed
        parity: Parity
        data_bits: Data bits per character (5-8)
        stop_bits: Stop bits
        read_timeout: Seconds to wait for a complete response
        write_timeout: Seconds a write may block
        retry_count: Total attempts per request when the response is corrupt
    """

    port: str
    baud_rate: int = DEFAULT_BAUD_RATE
    parity: Parity = Parity.NONE
    data_bits: int = DEFAULT_DATA_BITS
    stop_bits: StopBits = StopBits.ONE
    read_timeout: float = DEFAULT_READ_TIMEOUT
    write_timeout: float = DEFAULT_WRITE_TIMEOUT
    retry_count: int = DEFAULT_RETRY_COUNT

    def __post_init__(self) -> None:
        if not self.port:
            raise ValueError("port must not be empty")
        if self.baud_rate <= 0:
            raise ValueError("baud_rate must be positive")
        if not 5 <= self.data_bits <= 8:
            raise ValueError("data_bits must be between 5 and 8")
        if self.read_timeout <= 0 or self.write_timeout <= 0:
            raise ValueError("timeouts must be positive")
        if self.retry_count < 1:
            raise ValueError("retry_count must be at least 1")

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        prefix: str = ENV_PREFIX,
    ) -> "SerialOptions":
        """Build options from environment variables.

        Reads ``<prefix>PORT`` (required) and optionally ``BAUD_RATE``,
        ``PARITY`` (none/odd/even/mark/space), ``DATA_BITS``, ``STOP_BITS``
        (1/1.5/2), ``READ_TIMEOUT``, ``WRITE_TIMEOUT`` and ``RETRY_COUNT``.

        Args:
            environ: Mapping to read from (default: os.environ)
            prefix: Variable name prefix

        Raises:
            ValueError: If PORT is missing or a value cannot be parsed
        """
        env = os.environ if environ is None else environ

        port = env.get(prefix + "PORT")
        if not port:
            raise ValueError(f"{prefix}PORT is not set")

        kwargs: dict = {}
        for name, convert in _ENV_FIELDS.items():
            value = env.get(prefix + name.upper())
            if value is None:
                continue
            try:
                kwargs[name] = convert(value.strip())
            except (KeyError, ValueError):
                raise ValueError(f"Invalid value for {prefix}{name.upper()}: {value!r}") from None

        return cls(port=port, **kwargs)


_STOP_BITS_NAMES = {
    "1": StopBits.ONE,
    "1.5": StopBits.ONE_POINT_FIVE,
    "2": StopBits.TWO,
}

# SerialOptions field -> parser for its environment variable
_ENV_FIELDS = {
    "baud_rate": int,
    "parity": lambda value: Parity[value.upper()],
    "data_bits": int,
    "stop_bits": lambda value: _STOP_BITS_NAMES[value],
    "read_timeout": float,
    "write_timeout": float,
    "retry_count": int,
}
