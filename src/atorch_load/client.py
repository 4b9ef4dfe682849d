"""aTorch load client - Primary interface for controlling the load.

This module provides AtorchClient, which wraps a Channel (serial port or BLE
bridge) with the load's operations.

Example:
    channel = SerialChannel(SerialOptions(port="/dev/ttyUSB0"))
    load = AtorchClient(channel)
    await load.open()
    try:
        await load.set_current_if_changed(1.5)
        await load.set_load(LoadState.ON)
        print(f"Voltage: {await load.read_voltage():.3f} V")
    finally:
        await load.ensure_load_off()
        await load.close()
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import timedelta
from typing import Awaitable, Callable, TypeVar

from .dispatcher import DEFAULT_COMMAND_PAUSE, Dispatcher
from .exceptions import PanicError
from .options import DEFAULT_READ_TIMEOUT, DEFAULT_RETRY_COUNT
from .protocol import (
    CommandResult,
    CommandType,
    LoadReadings,
    LoadState,
    QueryType,
    QueryValue,
    Request,
)
from .transport import Channel

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SHUTDOWN_RETRY_TIME = 5.0
DEFAULT_SHUTDOWN_PAUSE = 0.1

_ENABLE_LOAD = Request.command(CommandType.TOGGLE_LOAD, bytes([LoadState.ON, 0x00]))
_DISABLE_LOAD = Request.command(CommandType.TOGGLE_LOAD, bytes([LoadState.OFF, 0x00]))
_RESET_COUNTERS = Request.command(CommandType.RESET_COUNTERS)


class AtorchClient:
    """Client for controlling an aTorch electronic load.

    This is the primary interface. It owns the channel's open/closed state
    and issues every request through a single Dispatcher, so at most one
    transaction is on the line at a time.

    Setpoints are written with the ``*_if_changed`` helpers where possible:
    the load becomes unreliable when commanded too often.

    Args:
        channel: Channel to the load (opened by ``open()``)
        retry_count: Total attempts per request on corrupt responses
        read_timeout: Seconds to wait for each response
        command_pause: Seconds to wait after each successful request
        shutdown_pause: Seconds to wait after each OFF command in
            ``ensure_load_off()``
    """

    def __init__(
        self,
        channel: Channel,
        *,
        retry_count: int = DEFAULT_RETRY_COUNT,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        command_pause: float = DEFAULT_COMMAND_PAUSE,
        shutdown_pause: float = DEFAULT_SHUTDOWN_PAUSE,
    ) -> None:
        self._channel = channel
        self._dispatcher = Dispatcher(
            channel,
            retry_count=retry_count,
            read_timeout=read_timeout,
            command_pause=command_pause,
        )
        self._shutdown_pause = shutdown_pause
        self._shutdown_guard = threading.Lock()

    @property
    def name(self) -> str:
        """Name of the underlying channel (port or address)."""
        return self._channel.name

    @property
    def is_open(self) -> bool:
        return self._channel.is_open

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    async def open(self) -> None:
        """Open the channel and check the load answers.

        Does nothing if the channel is already open. A voltage query is sent
        as a probe so a dead link fails here rather than on first use; the
        channel is closed again when the probe fails.

        Raises:
            TimeoutError: If the load does not answer the probe
        """
        if self._channel.is_open:
            return
        await self._channel.open()
        _LOGGER.debug("Opened %s, probing", self.name)
        try:
            await self._query(QueryType.VOLTAGE_READING)
        except BaseException:
            # A link that never answered is not left open
            await self._channel.close()
            raise

    async def close(self) -> None:
        """Close the channel. Safe to call when already closed."""
        if self._channel.is_open:
            await self._channel.close()
            _LOGGER.debug("Closed %s", self.name)

    async def _reconnect(self) -> None:
        async with self._dispatcher.lock:
            if self._channel.is_open:
                await self._channel.close()
            await self._channel.open()
        await self._query(QueryType.VOLTAGE_READING)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def set_load(self, state: LoadState | bool) -> CommandResult:
        """Switch the load on or off."""
        request = _ENABLE_LOAD if state else _DISABLE_LOAD
        return await self._command(request)

    async def set_current(self, current: float) -> CommandResult:
        """Set the load current in amps (two decimals, truncated)."""
        return await self._command(Request.command_value(CommandType.SET_CURRENT, current))

    async def set_cutoff_voltage(self, cutoff_voltage: float) -> CommandResult:
        """Set the cutoff voltage in volts (two decimals, truncated)."""
        return await self._command(
            Request.command_value(CommandType.SET_CUTOFF_VOLTAGE, cutoff_voltage)
        )

    async def set_timeout(self, timeout: timedelta) -> CommandResult:
        """Set the load's timer.

        Whole seconds only; values of 65536 s or more wrap around.
        """
        return await self._command(Request.command_duration(CommandType.SET_TIMEOUT, timeout))

    async def reset_counters(self) -> CommandResult:
        """Reset elapsed time and capacity counters."""
        return await self._command(_RESET_COUNTERS)

    async def set_load_if_changed(self, state: LoadState | bool) -> bool:
        """Switch the load only if its current state differs.

        Returns:
            True if a command was sent
        """
        return await self._set_if_changed(
            self.read_load, LoadState.ON if state else LoadState.OFF, self.set_load
        )

    async def set_current_if_changed(self, current: float) -> bool:
        """Set the load current only if the current setting differs.

        Returns:
            True if a command was sent
        """
        return await self._set_if_changed(self.read_current_setting, current, self.set_current)

    async def set_cutoff_voltage_if_changed(self, cutoff_voltage: float) -> bool:
        """Set the cutoff voltage only if the cutoff setting differs.

        Returns:
            True if a command was sent
        """
        return await self._set_if_changed(
            self.read_cutoff_voltage_setting, cutoff_voltage, self.set_cutoff_voltage
        )

    async def set_timeout_if_changed(self, timeout: timedelta) -> bool:
        """Set the timer only if the timer setting differs.

        Returns:
            True if a command was sent
        """
        return await self._set_if_changed(self.read_timer_setting, timeout, self.set_timeout)

    @staticmethod
    async def _set_if_changed(
        read: Callable[[], Awaitable[T]],
        value: T,
        write: Callable[[T], Awaitable[CommandResult]],
    ) -> bool:
        if await read() == value:
            return False
        await write(value)
        return True

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def is_load_enabled(self) -> bool:
        return await self.read_load() == LoadState.ON

    async def read_load(self) -> LoadState:
        enabled = await self._query(QueryType.LOAD_ENABLED)
        return LoadState.ON if enabled else LoadState.OFF

    async def read_voltage(self) -> float:
        """Measured voltage in volts."""
        return await self._query(QueryType.VOLTAGE_READING) / 1000

    async def read_current(self) -> float:
        """Measured current in amps."""
        return await self._query(QueryType.CURRENT_READING) / 1000

    async def read_elapsed_time(self) -> timedelta:
        """Time the load has been on since the counters were reset."""
        return await self._query(QueryType.ELAPSED_TIME)

    async def read_capacity_mah(self) -> float:
        return await self._query(QueryType.CAPACITY_MILLI_AMP_HOURS) / 1000

    async def read_capacity_mwh(self) -> float:
        return await self._query(QueryType.CAPACITY_MILLI_WATT_HOURS) / 1000

    async def read_mosfet_temperature(self) -> int:
        """MOSFET temperature in °C."""
        return await self._query(QueryType.MOSFET_TEMPERATURE)

    async def read_current_setting(self) -> float:
        """Current setpoint in amps."""
        return await self._query(QueryType.CURRENT_SETTING) / 100

    async def read_cutoff_voltage_setting(self) -> float:
        """Cutoff voltage setpoint in volts."""
        return await self._query(QueryType.CUTOFF_VOLTAGE_SETTING) / 100

    async def read_timer_setting(self) -> timedelta:
        return await self._query(QueryType.TIMER_SETTING)

    async def get_readings(self) -> LoadReadings:
        """Read every value the load reports, one query at a time.

        Returns:
            LoadReadings snapshot
        """
        return LoadReadings(
            load_enabled=await self.is_load_enabled(),
            voltage=await self.read_voltage(),
            current=await self.read_current(),
            elapsed_time=await self.read_elapsed_time(),
            capacity_mah=await self.read_capacity_mah(),
            capacity_mwh=await self.read_capacity_mwh(),
            mosfet_temperature=await self.read_mosfet_temperature(),
            current_setting=await self.read_current_setting(),
            cutoff_voltage_setting=await self.read_cutoff_voltage_setting(),
            timer_setting=await self.read_timer_setting(),
        )

    # -------------------------------------------------------------------------
    # Safety
    # -------------------------------------------------------------------------

    async def ensure_load_off(self, retry_time: float = DEFAULT_SHUTDOWN_RETRY_TIME) -> None:
        """Make sure the load is off, reconnecting if needed.

        Keeps sending OFF for up to ``retry_time`` seconds, ignoring errors.
        If the load still reports (or cannot be confirmed) off, the channel is
        closed and reopened and one more off-and-verify attempt is made.

        The procedure runs to completion even if the calling task is
        cancelled. Concurrent calls do not queue: while one is running,
        further calls return immediately. Ordinary commands issued
        concurrently from other tasks are not blocked and may undo it.

        Args:
            retry_time: Seconds to keep retrying before reconnecting

        Raises:
            PanicError: If the load could not be confirmed off
        """
        if not self._shutdown_guard.acquire(blocking=False):
            _LOGGER.debug("Shutdown of %s already in progress", self.name)
            return

        # Own task so cancelling the caller does not cancel the procedure
        task = asyncio.ensure_future(self._ensure_load_off(retry_time))
        task.add_done_callback(self._shutdown_finished)
        await asyncio.shield(task)

    def _shutdown_finished(self, task: asyncio.Future) -> None:
        self._shutdown_guard.release()
        # Retrieve the error; a cancelled caller never will
        if not task.cancelled():
            task.exception()

    async def _ensure_load_off(self, retry_time: float) -> None:
        _LOGGER.info("Ensuring load on %s is off", self.name)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + retry_time

        await self._shutoff_until(deadline)

        load_enabled = True
        try:
            load_enabled = await self.is_load_enabled()
        except Exception as err:  # noqa: BLE001
            _LOGGER.debug("Could not read load state: %s", err)

        if not load_enabled:
            return

        _LOGGER.warning("Load on %s is still on, reconnecting to turn it off", self.name)
        try:
            await self._reconnect()
            still_enabled = await self.is_load_enabled()
            if still_enabled:
                await self.set_load(LoadState.OFF)
                await asyncio.sleep(self._shutdown_pause)
                still_enabled = await self.is_load_enabled()
        except Exception as err:
            _LOGGER.critical("Failed to turn off load on %s: %s", self.name, err)
            raise PanicError("Failed to turn off load") from err

        if still_enabled:
            _LOGGER.critical("Load on %s is still on after reconnecting", self.name)
            raise PanicError("Load is still on after reconnecting")

    async def _shutoff_until(self, deadline: float) -> None:
        """Send OFF until the load reports off or the deadline passes."""
        loop = asyncio.get_running_loop()
        while loop.time() < deadline:
            try:
                enabled = await asyncio.wait_for(
                    self.is_load_enabled(), timeout=deadline - loop.time()
                )
                if not enabled:
                    return
                await asyncio.wait_for(
                    self.set_load(LoadState.OFF), timeout=deadline - loop.time()
                )
            except Exception as err:  # noqa: BLE001
                _LOGGER.debug("Turning off load failed, retrying: %s", err)
            await asyncio.sleep(self._shutdown_pause)

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _command(self, request: Request) -> CommandResult:
        result = await self._dispatcher.send(request)
        if not result.ok:
            _LOGGER.warning(
                "Load rejected command 0x%02X (ack 0x%02X)", request.type, result.raw
            )
        return result

    async def _query(self, query_type: QueryType) -> QueryValue:
        return await self._dispatcher.send(Request.query(query_type))
