"""Exceptions raised by the aTorch load client."""

from __future__ import annotations


class AtorchError(Exception):
    """Base class for all errors raised by this library."""


class InvalidTypeError(AtorchError):
    """A type byte outside its defined enumeration.

    These indicate a programming error (a malformed request was built)
    rather than a transient line fault, and are never retried.
    """

    def __init__(self, kind: str, type_: int) -> None:
        shown = f"0x{type_:02X}" if isinstance(type_, int) else repr(type_)
        super().__init__(f"Invalid {kind} type '{shown}'")
        self.kind = kind
        self.type = type_


class InvalidCommandTypeError(InvalidTypeError):
    """Raised when a command is built from an undefined command type."""

    def __init__(self, type_: int) -> None:
        super().__init__("command", type_)


class InvalidQueryTypeError(InvalidTypeError):
    """Raised when a query type is not one the protocol defines."""

    def __init__(self, type_: int) -> None:
        super().__init__("query", type_)


class InvalidRequestTypeError(InvalidTypeError):
    """Raised when a request type falls outside both command and query ranges."""

    def __init__(self, type_: int) -> None:
        super().__init__("request", type_)


class InvalidResponseError(AtorchError):
    """Raised when a query response does not carry the expected framing.

    Usually caused by line noise or the device's unsolicited status reports
    interleaving with the response. The dispatcher retries on this error.
    """

    def __init__(self, type_: int, response: bytes) -> None:
        super().__init__(f"Invalid response to request 0x{type_:02X}: {response.hex(' ')}")
        self.type = type_
        self.response = bytes(response)

    @property
    def hex_response(self) -> str:
        """The raw response as space-separated hex."""
        return self.response.hex(" ")


class PanicError(AtorchError):
    """Raised when the load could not be confirmed off.

    Only ``AtorchClient.ensure_load_off()`` raises this, after its retry loop,
    a forced reconnect and a final attempt all failed. The device may be left
    drawing current.
    """
