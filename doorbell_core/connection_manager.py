"""
Doorbell connection lifecycle and alarm forwarding.

The ConnectionManager drives a BleAdapter through

    IDLE -> SCANNING -> CONNECTING -> DISCOVERING_SERVICES
         -> DISCOVERING_CHARACTERISTICS -> SUBSCRIBING -> SUBSCRIBED

and back to IDLE on disconnect. A ConnectionTimer runs whenever the alarm
subscription is not confirmed; if it expires the failure event is sent and
the process is halted.

Everything runs on one asyncio loop. Adapter callbacks must be delivered on
that loop; the manager keeps no locks.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from .core_types import (
    DisconnectPolicy,
    ExitCode,
    GattHandle,
    HaltCallback,
    Peripheral,
    PowerState,
)
from .errors import AdapterError
from .gatt import (
    ALARM_CHAR_UUID,
    DOORBELL_SERVICE_UUID,
    LOCALTIME_CHAR_UUID,
    decode_device_time,
    device_label,
    normalize_address,
    uuid_matches,
)
from .logging_setup import ble_logger, logger
from .ports import BleAdapter, NotificationDispatcher
from .timer import ConnectionTimer

# Locale date, then locale time.
TIMESTAMP_FORMAT = "%x, %X"


class LinkState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    DISCOVERING_SERVICES = "discovering_services"
    DISCOVERING_CHARACTERISTICS = "discovering_characteristics"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"
    HALTED = "halted"


@dataclass
class LinkHandles:
    """Handles valid for one connect/disconnect cycle."""

    peripheral: Peripheral | None = None
    service: GattHandle | None = None
    alarm: GattHandle | None = None
    local_time: GattHandle | None = None


class ConnectionManager:
    """
    Owns the doorbell link and forwards its alarms to the dispatcher.

    `halt(code, reason)` is called exactly once for every terminal
    condition: missing characteristics or failed discovery, connection
    timeout, and (with DisconnectPolicy.HALT) any disconnect. After it, all
    further adapter events are ignored.
    """

    def __init__(
        self,
        adapter: BleAdapter,
        dispatcher: NotificationDispatcher,
        *,
        device_address: str,
        doorbell_event: str,
        halt: HaltCallback,
        failure_event: str | None = None,
        connection_timeout_s: float = 600.0,
        disconnect_policy: DisconnectPolicy | str = DisconnectPolicy.REARM,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.adapter = adapter
        self.dispatcher = dispatcher
        self.device_address = normalize_address(device_address)
        self.doorbell_event = doorbell_event
        self.failure_event = failure_event
        self.disconnect_policy = DisconnectPolicy(disconnect_policy)
        self._halt_cb = halt
        self._clock = clock

        self.timer = ConnectionTimer(connection_timeout_s, self._on_connection_timeout)
        self.state = LinkState.IDLE
        self.power_state = PowerState.UNKNOWN
        self.subscribed = False
        self.handles = LinkHandles()

        self._link_id = 0
        self._active_link: int | None = None
        self._pipeline: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._stopped = False

        self.connect_attempts = 0
        self.alarms_received = 0

    # =======================
    # Lifecycle
    # =======================
    @property
    def halted(self) -> bool:
        return self.state is LinkState.HALTED

    def start(self) -> None:
        """Register adapter callbacks and arm the connection timeout."""
        self.adapter.on_power_state(self.on_power_state)
        self.adapter.on_advertisement(self.on_advertisement)
        self.timer.arm()
        logger.info(
            {
                "event": "manager_started",
                "device": self.device_address,
                "policy": self.disconnect_policy.value,
                "timeout_s": self.timer.timeout_s,
            }
        )

    async def shutdown(self) -> None:
        """Stop supervising and release the link (operator-requested exit)."""
        if self._stopped:
            return
        self._stopped = True
        self.timer.disarm()
        current = asyncio.current_task()
        if self._pipeline is not None and self._pipeline is not current:
            self._pipeline.cancel()
        peripheral = self.handles.peripheral
        self._clear_link()
        try:
            await self.adapter.stop_scan()
            if peripheral is not None:
                await self.adapter.disconnect(peripheral)
        except AdapterError as exc:
            ble_logger.warning({"event": "shutdown_adapter_error", "error": str(exc)})
        logger.info({"event": "manager_stopped", "device": self.device_address})

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                {"event": "task_failed", "task": task.get_name(), "error": repr(exc)}
            )

    def _halt(self, code: ExitCode, reason: str) -> None:
        if self.halted:
            return
        self._stopped = True
        self.state = LinkState.HALTED
        self.timer.disarm()
        logger.critical(
            {"event": "bridge_halt", "exit_code": int(code), "reason": reason}
        )
        self._halt_cb(int(code), reason)

    # =======================
    # Adapter lifecycle
    # =======================
    def on_power_state(self, state: PowerState | str) -> None:
        if self._stopped:
            return
        self.power_state = PowerState(state)
        ble_logger.info(
            {"event": "adapter_power_state", "state": self.power_state.value}
        )
        self._apply_power_state()

    def _apply_power_state(self) -> None:
        """Scan while powered on and idle; stop scanning for any other state."""
        if self.power_state is PowerState.POWERED_ON:
            if self.state is LinkState.IDLE:
                self.state = LinkState.SCANNING
                self._spawn(self._start_scan())
            return
        if self.state is LinkState.SCANNING:
            self.state = LinkState.IDLE
        self._spawn(self._stop_scan())

    async def _start_scan(self) -> None:
        try:
            await self.adapter.start_scan([DOORBELL_SERVICE_UUID])
        except AdapterError as exc:
            ble_logger.warning({"event": "scan_start_failed", "error": str(exc)})
            if self.state is LinkState.SCANNING:
                self.state = LinkState.IDLE
            return
        ble_logger.info(
            {"event": "scan_started", "service_uuid": DOORBELL_SERVICE_UUID}
        )
        if self._stopped or self.state is not LinkState.SCANNING:
            # powered off, matched or halted while the scan was starting
            await self._stop_scan()

    async def _stop_scan(self) -> None:
        try:
            await self.adapter.stop_scan()
        except AdapterError as exc:
            ble_logger.warning({"event": "scan_stop_failed", "error": str(exc)})
            return
        ble_logger.debug({"event": "scan_stopped"})

    # =======================
    # Discovery
    # =======================
    def on_advertisement(self, peripheral: Peripheral) -> None:
        if self._stopped:
            return
        try:
            address = normalize_address(peripheral.address)
        except ValueError:
            address = str(peripheral.address).lower()
        if address != self.device_address:
            ble_logger.debug(
                {
                    "event": "advertisement_ignored",
                    "address": peripheral.address,
                    "name": peripheral.name,
                }
            )
            return
        if self.state is not LinkState.SCANNING:
            ble_logger.debug(
                {"event": "advertisement_match_ignored", "state": self.state.value}
            )
            return

        ble_logger.info(
            {
                "event": "doorbell_found",
                "address": address,
                "name": peripheral.name,
                "rssi": peripheral.rssi,
            }
        )
        self._link_id += 1
        self._active_link = self._link_id
        self.handles = LinkHandles(peripheral=peripheral)
        self.state = LinkState.CONNECTING
        self._pipeline = self._spawn(self._run_pipeline(self._link_id, peripheral))

    def _is_current(self, link_id: int) -> bool:
        return not self._stopped and self._active_link == link_id

    # =======================
    # Connection pipeline
    # =======================
    async def _run_pipeline(self, link_id: int, peripheral: Peripheral) -> None:
        await self._stop_scan()

        self.connect_attempts += 1
        try:
            await self.adapter.connect(peripheral)
        except AdapterError as exc:
            if self._is_current(link_id):
                self._on_connect_failed(exc)
            return
        if not self._is_current(link_id):
            return
        ble_logger.info({"event": "doorbell_connected", "address": self.device_address})
        self.adapter.observe_disconnect(
            peripheral, functools.partial(self.on_disconnected, link_id)
        )

        self.state = LinkState.DISCOVERING_SERVICES
        try:
            services = await self.adapter.discover_services(
                peripheral, [DOORBELL_SERVICE_UUID]
            )
        except AdapterError as exc:
            self._gatt_failure(link_id, "service_discovery_failed", str(exc))
            return
        if not self._is_current(link_id):
            return
        matching = [s for s in services if uuid_matches(s.uuid, DOORBELL_SERVICE_UUID)]
        if not matching:
            self._gatt_failure(link_id, "service_missing", DOORBELL_SERVICE_UUID)
            return
        self.handles.service = matching[0]
        ble_logger.info({"event": "service_discovered", "uuid": matching[0].uuid})

        self.state = LinkState.DISCOVERING_CHARACTERISTICS
        try:
            characteristics = await self.adapter.discover_characteristics(
                peripheral, self.handles.service
            )
        except AdapterError as exc:
            self._gatt_failure(link_id, "characteristic_discovery_failed", str(exc))
            return
        if not self._is_current(link_id):
            return
        for char in characteristics:
            if uuid_matches(char.uuid, ALARM_CHAR_UUID):
                self.handles.alarm = char
            elif uuid_matches(char.uuid, LOCALTIME_CHAR_UUID):
                self.handles.local_time = char
        missing = [
            uuid
            for uuid, handle in (
                (ALARM_CHAR_UUID, self.handles.alarm),
                (LOCALTIME_CHAR_UUID, self.handles.local_time),
            )
            if handle is None
        ]
        if missing:
            logger.error({"event": "characteristics_missing", "missing": missing})
            self._halt(ExitCode.GATT_ERROR, "required characteristic missing")
            return
        ble_logger.info({"event": "characteristics_discovered"})

        self.state = LinkState.SUBSCRIBING
        try:
            await self.adapter.subscribe(peripheral, self.handles.alarm, self.on_alarm)
        except AdapterError as exc:
            if self._is_current(link_id):
                await self._on_subscribe_failed(link_id, peripheral, exc)
            return
        if not self._is_current(link_id):
            return
        self.subscribed = True
        self.state = LinkState.SUBSCRIBED
        self.timer.disarm()
        ble_logger.info({"event": "alarm_subscribed", "address": self.device_address})

        await self._read_device_clock(link_id, peripheral)

    def _gatt_failure(self, link_id: int, event: str, detail: str) -> None:
        if not self._is_current(link_id):
            # link already lost; disconnect handling owns what happens next
            return
        logger.error({"event": event, "detail": detail})
        self._halt(ExitCode.GATT_ERROR, event)

    def _on_connect_failed(self, exc: AdapterError) -> None:
        ble_logger.warning(
            {
                "event": "connect_failed",
                "address": self.device_address,
                "error": str(exc),
            }
        )
        self._clear_link()
        if not self.timer.active:
            self.timer.arm()
        self._apply_power_state()

    async def _on_subscribe_failed(
        self, link_id: int, peripheral: Peripheral, exc: AdapterError
    ) -> None:
        ble_logger.error({"event": "subscribe_failed", "error": str(exc)})
        try:
            await self.adapter.disconnect(peripheral)
        except AdapterError as disc_exc:
            ble_logger.warning({"event": "disconnect_failed", "error": str(disc_exc)})
        if self._is_current(link_id):
            # the disconnect observer has not run; handle the loss here
            self._on_link_lost()

    async def _read_device_clock(self, link_id: int, peripheral: Peripheral) -> None:
        char = self.handles.local_time
        if char is None:
            return
        try:
            data = await self.adapter.read(peripheral, char)
        except AdapterError as exc:
            ble_logger.warning({"event": "device_clock_read_failed", "error": str(exc)})
            return
        if self._is_current(link_id):
            ble_logger.info(
                {"event": "device_clock", "device_time": decode_device_time(data)}
            )

    # =======================
    # Link events
    # =======================
    def on_alarm(self, data: bytes) -> None:
        if self._stopped or self.state not in (
            LinkState.SUBSCRIBING,
            LinkState.SUBSCRIBED,
        ):
            ble_logger.debug({"event": "alarm_ignored", "state": self.state.value})
            return
        self.alarms_received += 1
        timestamp = self._clock().strftime(TIMESTAMP_FORMAT)
        logger.info(
            {
                "event": "doorbell_alarm",
                "timestamp": timestamp,
                "device_time": decode_device_time(data),
            }
        )
        self._spawn(self.dispatcher.dispatch(self.doorbell_event, timestamp))

    def on_disconnected(self, link_id: int) -> None:
        if not self._is_current(link_id):
            ble_logger.debug({"event": "stale_disconnect", "link": link_id})
            return
        ble_logger.warning(
            {
                "event": "doorbell_disconnected",
                "address": self.device_address,
                "state": self.state.value,
            }
        )
        pipeline = self._pipeline
        if pipeline is not None and pipeline is not asyncio.current_task():
            pipeline.cancel()
        self._on_link_lost()

    def _clear_link(self) -> None:
        self._active_link = None
        self._pipeline = None
        self.handles = LinkHandles()
        self.subscribed = False
        if not self.halted:
            self.state = LinkState.IDLE

    def _on_link_lost(self) -> None:
        self._clear_link()
        if self.disconnect_policy is DisconnectPolicy.HALT:
            self._halt(ExitCode.DISCONNECTED, "peripheral disconnected")
            return
        if not self.timer.active:
            # only a lost subscription gets a fresh window
            self.timer.arm()
        self._apply_power_state()

    # =======================
    # Timeout
    # =======================
    def _on_connection_timeout(self) -> None:
        if self._stopped:
            return
        if self.subscribed:
            logger.warning({"event": "connection_timeout_ignored", "reason": "subscribed"})
            return
        logger.error(
            {
                "event": "connection_timeout",
                "device": self.device_address,
                "timeout_s": self.timer.timeout_s,
                "state": self.state.value,
            }
        )
        # From here on only the failure path runs.
        self._stopped = True
        self._spawn(self._fail_and_halt())

    async def _fail_and_halt(self) -> None:
        try:
            if self.failure_event:
                await self.dispatcher.dispatch(
                    self.failure_event, device_label(self.device_address)
                )
            else:
                logger.warning({"event": "failure_event_not_configured"})
        finally:
            self._halt(ExitCode.CONNECTION_TIMEOUT, "connection timeout")


__all__ = ["ConnectionManager", "LinkHandles", "LinkState", "TIMESTAMP_FORMAT"]
