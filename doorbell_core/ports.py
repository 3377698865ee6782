"""Protocol definitions for the external ports used by the bridge.

These Protocols document the minimal surface the connection manager needs
from the BLE stack and from the notification channel. The shipped
implementations are `ble_adapter.BleakAdapter` and
`webhook.WebhookDispatcher`; tests supply fakes.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from .core_types import (
    AdvertisementCallback,
    DisconnectCallback,
    DispatchResult,
    GattHandle,
    NotificationCallback,
    Peripheral,
    PowerStateCallback,
)


@runtime_checkable
class BleAdapter(Protocol):
    """Asynchronous BLE capability interface.

    Every coroutine raises `errors.AdapterError` on failure. Callbacks are
    invoked on the event loop that runs the connection manager.
    """

    def on_power_state(self, cb: PowerStateCallback) -> None:
        """Register a callback receiving adapter power-state changes."""

    def on_advertisement(self, cb: AdvertisementCallback) -> None:
        """Register a callback receiving scan results."""

    async def start(self) -> None:
        """Bring the adapter up; reports the initial power state."""

    async def stop(self) -> None:
        """Stop scanning and drop every connection."""

    async def start_scan(self, service_uuids: Iterable[str]) -> None:
        """Start scanning for peripherals advertising `service_uuids`."""

    async def stop_scan(self) -> None:
        """Stop scanning; a no-op when not scanning."""

    async def connect(self, peripheral: Peripheral) -> None:
        """Connect to a discovered peripheral."""

    def observe_disconnect(
        self, peripheral: Peripheral, cb: DisconnectCallback
    ) -> None:
        """Call `cb` once, the next time `peripheral` disconnects."""

    async def discover_services(
        self, peripheral: Peripheral, service_uuids: Iterable[str]
    ) -> list[GattHandle]:
        """Return services of `peripheral` matching `service_uuids`."""

    async def discover_characteristics(
        self, peripheral: Peripheral, service: GattHandle
    ) -> list[GattHandle]:
        """Return every characteristic of `service`."""

    async def subscribe(
        self,
        peripheral: Peripheral,
        characteristic: GattHandle,
        cb: NotificationCallback,
    ) -> None:
        """Enable value-change notifications; `cb` receives each value."""

    async def read(self, peripheral: Peripheral, characteristic: GattHandle) -> bytes:
        """Read the current value of a characteristic."""

    async def disconnect(self, peripheral: Peripheral) -> None:
        """Disconnect `peripheral`; a no-op when not connected."""


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Outbound notification channel (one call per event).

    Implementations never raise for delivery problems; they report them in
    the returned DispatchResult.
    """

    async def dispatch(
        self, event: str, value1: str, value2: str = "", value3: str = ""
    ) -> DispatchResult:
        """Send one event carrying up to three string values."""

    async def aclose(self) -> None:
        """Release transport resources."""


__all__ = ["BleAdapter", "NotificationDispatcher"]
