"""Request/response transaction loop.

The protocol has no request identifiers: a response is matched to a request
only by being the next bytes on the line after it. The dispatcher therefore
runs one transaction at a time:

1. write the request frame
2. discard whatever is already buffered (the load emits unsolicited status
   reports roughly once a second)
3. flush the output
4. wait until the expected number of bytes has arrived, then read them
5. classify the response; on success pause before returning, since the
   load's firmware drops or garbles commands sent back to back

Corrupt query responses (``InvalidResponseError``) are retried from step 1
after discarding both buffers. Everything else propagates immediately.
"""

from __future__ import annotations

import asyncio
import logging

from .exceptions import InvalidResponseError
from .options import DEFAULT_READ_TIMEOUT, DEFAULT_RETRY_COUNT
from .protocol import CommandResult, QueryValue, Request, classify_response, encode_request
from .transport import POLL_INTERVAL, Channel

_LOGGER = logging.getLogger(__name__)

DEFAULT_COMMAND_PAUSE = 0.1


class Dispatcher:
    """Sends requests over a channel and returns typed results.

    Args:
        channel: Open channel to the load
        retry_count: Total attempts per request on corrupt responses
        read_timeout: Seconds to wait for a complete response
        command_pause: Seconds to wait after each successful transaction
        poll_interval: Seconds between checks for buffered response bytes
    """

    def __init__(
        self,
        channel: Channel,
        retry_count: int = DEFAULT_RETRY_COUNT,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        command_pause: float = DEFAULT_COMMAND_PAUSE,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        if retry_count < 1:
            raise ValueError("retry_count must be at least 1")
        self._channel = channel
        self._retry_count = retry_count
        self._read_timeout = read_timeout
        self._command_pause = command_pause
        self._poll_interval = poll_interval
        self._lock = asyncio.Lock()

    @property
    def lock(self) -> asyncio.Lock:
        """Held for the duration of every transaction."""
        return self._lock

    @property
    def retry_count(self) -> int:
        return self._retry_count

    async def send(self, request: Request) -> CommandResult | QueryValue:
        """Run one transaction.

        Args:
            request: The request to send

        Returns:
            CommandResult for commands; bool, int or timedelta for queries

        Raises:
            InvalidResponseError: If every attempt got a corrupt response
            TimeoutError: If the load did not answer within read_timeout
            InvalidRequestTypeError: If the request type is out of range
            InvalidQueryTypeError: If the query type is undefined
        """
        frame = encode_request(request)
        if _LOGGER.isEnabledFor(logging.DEBUG):
            _LOGGER.debug("SENDING : %s", frame.hex(" "))

        async with self._lock:
            last_error: InvalidResponseError | None = None
            for attempt in range(1, self._retry_count + 1):
                try:
                    await self._channel.write(frame)
                    self._channel.discard_input()
                    await self._channel.flush()
                    response = await self._read_response(request)
                    result = classify_response(request.type, response)
                    await asyncio.sleep(self._command_pause)
                    return result
                except InvalidResponseError as err:
                    last_error = err
                    _LOGGER.warning(
                        "Invalid response to 0x%02X (attempt %d/%d): %s",
                        request.type,
                        attempt,
                        self._retry_count,
                        err.hex_response,
                    )
                    self._channel.discard_input()
                    self._channel.discard_output()

        assert last_error is not None
        raise last_error

    async def _read_response(self, request: Request) -> bytes:
        """Wait for and read exactly the expected number of response bytes."""
        count = request.expected_response_length
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._read_timeout

        while self._channel.bytes_available < count:
            if loop.time() >= deadline:
                raise TimeoutError(
                    f"No response to request 0x{request.type:02X} "
                    f"within {self._read_timeout}s"
                )
            await asyncio.sleep(self._poll_interval)

        response = await self._channel.read_exactly(
            count, timeout=max(deadline - loop.time(), self._poll_interval)
        )
        if _LOGGER.isEnabledFor(logging.DEBUG):
            _LOGGER.debug("RECEIVED : %s", response.hex(" "))
        return response
