"""BLE adapter on top of bleak.

Implements the `ports.BleAdapter` surface for the connection manager:
power-state reporting, service-filtered scanning, connect/disconnect with a
one-shot disconnect observer, GATT discovery, notifications and reads.

bleak has no power-state events. The adapter reports POWERED_ON when started;
when starting a scan fails at the backend it reports POWERED_OFF and probes
again after `power_probe_interval` seconds by reporting POWERED_ON, which
makes the manager retry the scan.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Iterable
from typing import Any

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from .core_types import (
    AdvertisementCallback,
    DisconnectCallback,
    GattHandle,
    NotificationCallback,
    Peripheral,
    PowerState,
    PowerStateCallback,
)
from .errors import AdapterError
from .gatt import normalize_uuid
from .logging_setup import ble_logger as logger

# Backend failures surfaced by bleak besides BleakError.
_BACKEND_ERRORS = (BleakError, asyncio.TimeoutError, OSError)


async def resolve_services(client: Any) -> Any | None:
    """Services discovered during connect.

    Current bleak exposes them as `client.services`; `get_services()` (removed
    in later releases, awaitable or not) is only a fallback for old clients.
    """
    services = getattr(client, "services", None)
    if services is not None:
        return services
    get_svc = getattr(client, "get_services", None)
    if get_svc is None:
        return None
    result = get_svc()
    if inspect.isawaitable(result):
        return await result
    return result


def _key(address: str) -> str:
    return str(address).lower()


class BleakAdapter:
    def __init__(
        self,
        adapter: str | None = None,
        connect_timeout: float = 20.0,
        power_probe_interval: float = 30.0,
    ) -> None:
        self.adapter = adapter
        self.connect_timeout = connect_timeout
        self.power_probe_interval = power_probe_interval
        self.power_state = PowerState.UNKNOWN
        self._scanner: BleakScanner | None = None
        self._clients: dict[str, BleakClient] = {}
        # observers are bound to the client they watch
        self._disconnect_observers: dict[
            str, tuple[BleakClient, DisconnectCallback]
        ] = {}
        self._power_cbs: list[PowerStateCallback] = []
        self._adv_cbs: list[AdvertisementCallback] = []
        self._probe_handle: asyncio.TimerHandle | None = None
        logger.info(
            {"event": "ble_adapter_init", "adapter": self.adapter or "default"}
        )

    def _backend_kwargs(self) -> dict[str, Any]:
        return {"adapter": self.adapter} if self.adapter else {}

    # ---- callbacks -----------------------------------------------------
    def on_power_state(self, cb: PowerStateCallback) -> None:
        self._power_cbs.append(cb)

    def on_advertisement(self, cb: AdvertisementCallback) -> None:
        self._adv_cbs.append(cb)

    def _set_power_state(self, state: PowerState) -> None:
        if state is self.power_state:
            return
        self.power_state = state
        logger.info({"event": "ble_power_state", "state": state.value})
        for cb in list(self._power_cbs):
            cb(state)

    def _schedule_power_probe(self) -> None:
        if self._probe_handle is not None:
            return
        loop = asyncio.get_running_loop()

        def _probe() -> None:
            self._probe_handle = None
            self._set_power_state(PowerState.POWERED_ON)

        self._probe_handle = loop.call_later(self.power_probe_interval, _probe)

    def _on_detection(self, device: Any, advertisement_data: Any) -> None:
        peripheral = Peripheral(
            address=device.address,
            name=getattr(advertisement_data, "local_name", None) or device.name,
            rssi=getattr(advertisement_data, "rssi", None),
            native=device,
        )
        for cb in list(self._adv_cbs):
            cb(peripheral)

    def _on_client_disconnected(self, client: BleakClient) -> None:
        key = _key(client.address)
        if self._clients.get(key) is client:
            del self._clients[key]
        entry = self._disconnect_observers.get(key)
        if entry is None or entry[0] is not client:
            logger.debug(
                {"event": "ble_stale_disconnect_ignored", "address": client.address}
            )
            return
        del self._disconnect_observers[key]
        logger.debug({"event": "ble_client_disconnected", "address": client.address})
        entry[1]()

    # ---- lifecycle -----------------------------------------------------
    async def start(self) -> None:
        self._set_power_state(PowerState.POWERED_ON)

    async def stop(self) -> None:
        if self._probe_handle is not None:
            self._probe_handle.cancel()
            self._probe_handle = None
        self._disconnect_observers.clear()
        try:
            await self.stop_scan()
        except AdapterError as exc:
            logger.warning({"event": "ble_stop_scan_error", "error": str(exc)})
        for key, client in list(self._clients.items()):
            try:
                await client.disconnect()
            except _BACKEND_ERRORS as exc:
                logger.warning(
                    {"event": "ble_stop_disconnect_error", "address": key, "error": str(exc)}
                )
        self._clients.clear()

    # ---- scanning ------------------------------------------------------
    async def start_scan(self, service_uuids: Iterable[str]) -> None:
        if self._scanner is not None:
            return
        uuids = [normalize_uuid(u) for u in service_uuids]
        scanner = BleakScanner(
            detection_callback=self._on_detection,
            service_uuids=uuids,
            **self._backend_kwargs(),
        )
        try:
            await scanner.start()
        except _BACKEND_ERRORS as exc:
            self._set_power_state(PowerState.POWERED_OFF)
            self._schedule_power_probe()
            raise AdapterError(f"scan start failed: {exc}") from exc
        self._scanner = scanner
        logger.debug({"event": "ble_scan_start", "service_uuids": uuids})

    async def stop_scan(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        try:
            await scanner.stop()
        except _BACKEND_ERRORS as exc:
            raise AdapterError(f"scan stop failed: {exc}") from exc
        logger.debug({"event": "ble_scan_stop"})

    # ---- connection ----------------------------------------------------
    def _client_for(self, peripheral: Peripheral) -> BleakClient:
        client = self._clients.get(_key(peripheral.address))
        if client is None:
            raise AdapterError(f"not connected to {peripheral.address}")
        return client

    async def connect(self, peripheral: Peripheral) -> None:
        key = _key(peripheral.address)
        stale = self._clients.pop(key, None)
        if stale is not None:
            self._disconnect_observers.pop(key, None)
            try:
                await stale.disconnect()
            except _BACKEND_ERRORS as exc:
                logger.warning(
                    {"event": "ble_stale_client_error", "address": peripheral.address, "error": str(exc)}
                )
        client = BleakClient(
            peripheral.native or peripheral.address,
            disconnected_callback=self._on_client_disconnected,
            timeout=self.connect_timeout,
            **self._backend_kwargs(),
        )
        logger.info({"event": "ble_connect", "address": peripheral.address})
        try:
            await client.connect()
        except _BACKEND_ERRORS as exc:
            raise AdapterError(f"connect to {peripheral.address} failed: {exc}") from exc
        self._clients[key] = client

    def observe_disconnect(self, peripheral: Peripheral, cb: DisconnectCallback) -> None:
        key = _key(peripheral.address)
        client = self._clients.get(key)
        if client is None:
            # link already dropped before anyone was watching
            asyncio.get_running_loop().call_soon(cb)
            return
        self._disconnect_observers[key] = (client, cb)

    async def disconnect(self, peripheral: Peripheral) -> None:
        key = _key(peripheral.address)
        client = self._clients.get(key)
        if client is None:
            return
        try:
            await client.disconnect()
        except _BACKEND_ERRORS as exc:
            raise AdapterError(
                f"disconnect from {peripheral.address} failed: {exc}"
            ) from exc
        finally:
            if self._clients.get(key) is client:
                del self._clients[key]

    # ---- GATT ----------------------------------------------------------
    async def discover_services(
        self, peripheral: Peripheral, service_uuids: Iterable[str]
    ) -> list[GattHandle]:
        client = self._client_for(peripheral)
        wanted = {normalize_uuid(u) for u in service_uuids}
        try:
            services = await resolve_services(client)
        except _BACKEND_ERRORS as exc:
            raise AdapterError(f"service discovery failed: {exc}") from exc
        if services is None:
            raise AdapterError("service discovery returned nothing")
        found = [
            GattHandle(uuid=normalize_uuid(svc.uuid), native=svc)
            for svc in services
            if not wanted or normalize_uuid(svc.uuid) in wanted
        ]
        logger.debug(
            {"event": "ble_services", "uuids": [svc.uuid for svc in found]}
        )
        return found

    async def discover_characteristics(
        self, peripheral: Peripheral, service: GattHandle
    ) -> list[GattHandle]:
        self._client_for(peripheral)
        chars = getattr(service.native, "characteristics", None)
        if chars is None:
            raise AdapterError(f"service {service.uuid} exposes no characteristics")
        found = [GattHandle(uuid=normalize_uuid(c.uuid), native=c) for c in chars]
        logger.debug(
            {"event": "ble_characteristics", "uuids": [c.uuid for c in found]}
        )
        return found

    async def subscribe(
        self,
        peripheral: Peripheral,
        characteristic: GattHandle,
        cb: NotificationCallback,
    ) -> None:
        client = self._client_for(peripheral)

        def _handler(_sender: Any, data: bytearray) -> None:
            cb(bytes(data))

        try:
            await client.start_notify(characteristic.native or characteristic.uuid, _handler)
        except _BACKEND_ERRORS as exc:
            raise AdapterError(
                f"subscribe to {characteristic.uuid} failed: {exc}"
            ) from exc

    async def read(self, peripheral: Peripheral, characteristic: GattHandle) -> bytes:
        client = self._client_for(peripheral)
        try:
            data = await client.read_gatt_char(characteristic.native or characteristic.uuid)
        except _BACKEND_ERRORS as exc:
            raise AdapterError(f"read of {characteristic.uuid} failed: {exc}") from exc
        return bytes(data)


__all__ = ["BleakAdapter", "resolve_services"]
