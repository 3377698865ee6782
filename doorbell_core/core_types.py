"""Small stable types shared across doorbell_core.

Value records passed between the BLE adapter, the connection manager and
the webhook dispatcher. Kept free of local imports to avoid cycles.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any


class PowerState(str, Enum):
    """Adapter power states; only POWERED_ON enables scanning."""

    POWERED_ON = "poweredOn"
    POWERED_OFF = "poweredOff"
    RESETTING = "resetting"
    UNAUTHORIZED = "unauthorized"
    UNSUPPORTED = "unsupported"
    UNKNOWN = "unknown"


class DisconnectPolicy(str, Enum):
    """What the connection manager does when the doorbell drops the link."""

    REARM = "rearm"  # re-arm the timeout and wait for the next scan match
    HALT = "halt"  # terminate immediately


class ExitCode(IntEnum):
    OK = 0
    GATT_ERROR = 1
    CONFIG_ERROR = 2
    CONNECTION_TIMEOUT = 3
    DISCONNECTED = 4


@dataclass(frozen=True)
class Peripheral:
    """A scan result. `native` is the backend object (e.g. bleak BLEDevice)."""

    address: str
    name: str | None = None
    rssi: int | None = None
    native: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class GattHandle:
    """A discovered service or characteristic."""

    uuid: str
    native: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of one webhook call: a status code or a transport error."""

    event: str
    status_code: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status_code is not None and (
            200 <= self.status_code < 300
        )


# ---------------------------
# Callback signatures
# ---------------------------
PowerStateCallback = Callable[[PowerState], None]
AdvertisementCallback = Callable[[Peripheral], None]
NotificationCallback = Callable[[bytes], None]
DisconnectCallback = Callable[[], None]
HaltCallback = Callable[[int, str], None]


__all__ = [
    "AdvertisementCallback",
    "DisconnectCallback",
    "DisconnectPolicy",
    "DispatchResult",
    "ExitCode",
    "GattHandle",
    "HaltCallback",
    "NotificationCallback",
    "Peripheral",
    "PowerState",
    "PowerStateCallback",
]
