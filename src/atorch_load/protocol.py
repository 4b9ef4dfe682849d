"""aTorch electronic load protocol - Frame building and parsing.

This module contains the binary protocol spoken by aTorch DL24-family
electronic loads (the "PX100" protocol) over their serial interface.

Protocol overview:
- Every request is a fixed 6-byte frame: 0xb1 0xb2 <type> <d0> <d1> 0xb6
- Request types 0x01-0x0f are commands, 0x10-0x1f are queries
- Commands are acknowledged with a single byte: 0x6f on success, anything
  else is a device-reported error
- Queries are answered with 7 bytes: 0xca 0xcb <v0> <v1> <v2> 0xce 0xcf
- Responses carry no request identifier; a response belongs to whatever
  request was sent last

The device also emits unsolicited status reports every second or so. These
are not part of this protocol and must be discarded before reading a
response (see dispatcher.py).

Value encodings:
- Query values are 3 bytes: a boolean (last byte non-zero), a 24-bit
  big-endian unsigned integer, or a duration as hours/minutes/seconds
- Numeric command values are 2 bytes: integer part, then the first two
  decimal digits (1.5 A -> 0x01 0x32)
- Duration command values are whole seconds, 16-bit big-endian. Anything
  past 65535 s (~18.2 h) wraps around.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from enum import IntEnum
from typing import Callable, Union

from .exceptions import (
    InvalidCommandTypeError,
    InvalidQueryTypeError,
    InvalidRequestTypeError,
    InvalidResponseError,
)

# =============================================================================
# Protocol Constants
# =============================================================================

# Request framing
REQUEST_HEADER = b"\xb1\xb2"
REQUEST_TRAILER = b"\xb6"
FRAME_SIZE = 6
PAYLOAD_SIZE = 2

# Response framing
RESPONSE_HEADER = b"\xca\xcb"
RESPONSE_TRAILER = b"\xce\xcf"
ACK_OK = 0x6F

COMMAND_RESPONSE_LENGTH = 1
QUERY_RESPONSE_LENGTH = 7

# Type byte ranges
QUERY_TYPE_MIN = 0x10
REQUEST_TYPE_LIMIT = 0x20

ZERO_PAYLOAD = b"\x00\x00"


class CommandType(IntEnum):
    """Command request types (write-oriented, 1-byte ack)."""

    TOGGLE_LOAD = 0x01          # d0 = LoadState
    SET_CURRENT = 0x02          # Amps, fixed point
    SET_CUTOFF_VOLTAGE = 0x03   # Volts, fixed point
    SET_TIMEOUT = 0x04          # Seconds, 16-bit big-endian
    RESET_COUNTERS = 0x05       # Clears elapsed time and capacity counters


class QueryType(IntEnum):
    """Query request types (read-oriented, 7-byte response)."""

    LOAD_ENABLED = 0x10             # bool
    VOLTAGE_READING = 0x11          # mV
    CURRENT_READING = 0x12          # mA
    ELAPSED_TIME = 0x13             # h:m:s
    CAPACITY_MILLI_AMP_HOURS = 0x14
    CAPACITY_MILLI_WATT_HOURS = 0x15
    MOSFET_TEMPERATURE = 0x16       # °C
    CURRENT_SETTING = 0x17          # centi-amps
    CUTOFF_VOLTAGE_SETTING = 0x18   # centi-volts
    TIMER_SETTING = 0x19            # h:m:s


class LoadState(IntEnum):
    """Load switch state, as sent in a TOGGLE_LOAD payload."""

    OFF = 0x00
    ON = 0x01


QueryValue = Union[bool, int, timedelta]


# =============================================================================
# Requests
# =============================================================================


@dataclass(frozen=True)
class Request:
    """A single protocol request.

    Use the ``command()``, ``command_value()``, ``command_duration()`` and
    ``query()`` constructors; they validate the type byte against the
    protocol enumerations. The payload length is checked for every instance.
    """

    type: int
    payload: bytes
    expected_response_length: int

    def __post_init__(self) -> None:
        if len(self.payload) != PAYLOAD_SIZE:
            raise ValueError(f"Invalid payload length ({len(self.payload)})")

    @classmethod
    def command(cls, command_type: int, payload: bytes = ZERO_PAYLOAD) -> "Request":
        """Build a command request.

        Args:
            command_type: A CommandType value
            payload: Exactly two payload bytes

        Raises:
            InvalidCommandTypeError: If command_type is not a CommandType
            ValueError: If payload is not two bytes long
        """
        try:
            command_type = CommandType(command_type)
        except ValueError:
            raise InvalidCommandTypeError(command_type) from None
        return cls(int(command_type), bytes(payload), COMMAND_RESPONSE_LENGTH)

    @classmethod
    def command_value(cls, command_type: int, value: float) -> "Request":
        """Build a command carrying a fixed-point number (amps, volts)."""
        return cls.command(command_type, encode_fixed_point(value))

    @classmethod
    def command_duration(cls, command_type: int, value: timedelta) -> "Request":
        """Build a command carrying a duration in whole seconds."""
        return cls.command(command_type, encode_duration(value))

    @classmethod
    def query(cls, query_type: int) -> "Request":
        """Build a query request.

        Raises:
            InvalidQueryTypeError: If query_type is not a QueryType
        """
        try:
            query_type = QueryType(query_type)
        except ValueError:
            raise InvalidQueryTypeError(query_type) from None
        return cls(int(query_type), ZERO_PAYLOAD, QUERY_RESPONSE_LENGTH)

    @property
    def is_query(self) -> bool:
        return QUERY_TYPE_MIN <= self.type < REQUEST_TYPE_LIMIT

    def __repr__(self) -> str:
        return (
            f"Request(type=0x{self.type:02X}, payload={self.payload.hex(' ')}, "
            f"expected_response_length={self.expected_response_length})"
        )


def encode_request(request: Request) -> bytes:
    """Build the 6-byte wire frame for a request.

    Args:
        request: A well-formed Request

    Returns:
        Frame bytes: 0xb1 0xb2 <type> <d0> <d1> 0xb6
    """
    return REQUEST_HEADER + bytes([request.type]) + request.payload + REQUEST_TRAILER


def encode_fixed_point(value: float) -> bytes:
    """Encode a number as integer part and two truncated decimal digits.

    The decimal digits are taken from the number's shortest decimal
    representation, so 1.23 encodes as (1, 23) and 1.239 as (1, 23).
    Bytes wrap modulo 256.

    Args:
        value: Amps or volts

    Returns:
        Two payload bytes
    """
    number = Decimal(str(value))
    integer_part = int(number)
    fractional_part = int((number - integer_part) * 100)
    return bytes([integer_part & 0xFF, fractional_part & 0xFF])


def encode_duration(value: timedelta) -> bytes:
    """Encode a duration as whole seconds, 16-bit big-endian.

    Durations of 65536 s or more wrap around (70000 s encodes as 4464 s).
    """
    seconds = int(value.total_seconds()) & 0xFFFF
    return seconds.to_bytes(2, "big")


# =============================================================================
# Responses
# =============================================================================


@dataclass(frozen=True)
class CommandResult:
    """Acknowledgment of a command (single raw byte)."""

    raw: int

    @property
    def ok(self) -> bool:
        return self.raw == ACK_OK


def decode_command(response: bytes) -> CommandResult:
    """Parse a command acknowledgment.

    Args:
        response: The single response byte

    Returns:
        CommandResult; ``ok`` is False for device-reported errors
    """
    return CommandResult(raw=response[0])


def decode_bool(value: bytes) -> bool:
    return value[2] != 0x00


def decode_integer(value: bytes) -> int:
    """Decode a 24-bit big-endian unsigned integer."""
    return value[0] << 16 | value[1] << 8 | value[2]


def decode_duration(value: bytes) -> timedelta:
    """Decode hours, minutes, seconds bytes."""
    return timedelta(hours=value[0], minutes=value[1], seconds=value[2])


# Closed table: every QueryType has exactly one parser
QUERY_PARSERS: dict[QueryType, Callable[[bytes], QueryValue]] = {
    QueryType.LOAD_ENABLED: decode_bool,
    QueryType.VOLTAGE_READING: decode_integer,
    QueryType.CURRENT_READING: decode_integer,
    QueryType.ELAPSED_TIME: decode_duration,
    QueryType.CAPACITY_MILLI_AMP_HOURS: decode_integer,
    QueryType.CAPACITY_MILLI_WATT_HOURS: decode_integer,
    QueryType.MOSFET_TEMPERATURE: decode_integer,
    QueryType.CURRENT_SETTING: decode_integer,
    QueryType.CUTOFF_VOLTAGE_SETTING: decode_integer,
    QueryType.TIMER_SETTING: decode_duration,
}


def has_query_framing(response: bytes) -> bool:
    """Check the 7-byte query response markers."""
    return (
        len(response) == QUERY_RESPONSE_LENGTH
        and response[:2] == RESPONSE_HEADER
        and response[-2:] == RESPONSE_TRAILER
    )


def decode_query(type_: int, response: bytes) -> QueryValue:
    """Parse a query response into a typed value.

    Args:
        type_: The query type byte the response answers
        response: The 7 raw response bytes

    Returns:
        bool, int or timedelta depending on the query type

    Raises:
        InvalidResponseError: If the framing markers do not match
        InvalidQueryTypeError: If type_ is not a QueryType
    """
    response = bytes(response)
    if not has_query_framing(response):
        raise InvalidResponseError(type_, response)

    try:
        parser = QUERY_PARSERS[QueryType(type_)]
    except ValueError:
        raise InvalidQueryTypeError(type_) from None
    return parser(response[2:-2])


def classify_response(type_: int, response: bytes) -> CommandResult | QueryValue:
    """Route a raw response to the command or query parser by type range.

    Raises:
        InvalidRequestTypeError: If type_ is neither a command nor a query type
        InvalidResponseError: See decode_query()
        InvalidQueryTypeError: See decode_query()
    """
    if type_ < QUERY_TYPE_MIN:
        return decode_command(response)
    if type_ < REQUEST_TYPE_LIMIT:
        return decode_query(type_, response)
    raise InvalidRequestTypeError(type_)


# =============================================================================
# Readings snapshot
# =============================================================================


def reading(name: str, *, unit: str | None = None, precision: int | None = None) -> dict:
    """Create field metadata for a displayed reading.

    Args:
        name: Human-readable name
        unit: Unit of measurement (e.g., "V", "A", "°C")
        precision: Display precision (decimal places)
    """
    meta: dict = {"reading": True, "name": name}
    if unit:
        meta["unit"] = unit
    if precision is not None:
        meta["precision"] = precision
    return meta


@dataclass
class LoadReadings:
    """A snapshot of every value the load reports.

    Fields carry display metadata used by format_readings().
    """

    load_enabled: bool = field(metadata=reading("Load enabled"))
    voltage: float = field(metadata=reading("Voltage", unit="V", precision=3))
    current: float = field(metadata=reading("Current", unit="A", precision=3))
    elapsed_time: timedelta = field(metadata=reading("Elapsed time"))
    capacity_mah: float = field(metadata=reading("Capacity", unit="mAh", precision=3))
    capacity_mwh: float = field(metadata=reading("Energy", unit="mWh", precision=3))
    mosfet_temperature: int = field(metadata=reading("MOSFET temperature", unit="°C"))
    current_setting: float = field(metadata=reading("Current setting", unit="A", precision=2))
    cutoff_voltage_setting: float = field(
        metadata=reading("Cutoff voltage setting", unit="V", precision=2)
    )
    timer_setting: timedelta = field(metadata=reading("Timer setting"))

    @property
    def power(self) -> float:
        """Power drawn in watts."""
        return self.voltage * self.current


def format_readings(data: LoadReadings) -> str:
    """Format a readings snapshot for display using field metadata.

    Returns:
        One "name: value unit" line per reading
    """
    lines = []
    for f in dataclasses.fields(data):
        meta = f.metadata
        if not meta.get("reading"):
            continue

        value = getattr(data, f.name)
        name = meta.get("name", f.name)
        unit = meta.get("unit", "")

        if isinstance(value, bool):
            formatted = "Yes" if value else "No"
        elif isinstance(value, float):
            formatted = f"{value:.{meta.get('precision', 1)}f}"
        else:
            formatted = str(value)

        if unit:
            lines.append(f"{name}: {formatted} {unit}")
        else:
            lines.append(f"{name}: {formatted}")

    return "\n".join(lines)
