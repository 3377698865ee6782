"""DoorBell20 GATT layout and address helpers."""

from __future__ import annotations

import re

DOORBELL_SERVICE_UUID = "451e0001-dd1c-4f20-a42e-ff91a53d2992"
ALARM_CHAR_UUID = "451e0002-dd1c-4f20-a42e-ff91a53d2992"
LOCALTIME_CHAR_UUID = "451e0003-dd1c-4f20-a42e-ff91a53d2992"

# 16/32-bit UUIDs expand onto the Bluetooth base UUID.
_BASE_UUID_SUFFIX = "-0000-1000-8000-00805f9b34fb"

_MAC_RE = re.compile(r"^(?:[0-9a-f]{2}:){5}[0-9a-f]{2}$")
_HEX_RE = re.compile(r"^[0-9a-f]+$")


def is_valid_mac(mac: str) -> bool:
    """Return True if `mac` is six hex octets separated by ':' or '-'."""
    if not isinstance(mac, str):
        return False
    return bool(_MAC_RE.match(mac.strip().lower().replace("-", ":")))


def normalize_address(address: str) -> str:
    """Lower-case colon form of a hardware address.

    Raises ValueError for anything that is not six hex octets.
    """
    if not is_valid_mac(address):
        raise ValueError(f"invalid hardware address: {address!r}")
    return address.strip().lower().replace("-", ":")


def normalize_uuid(uuid: str) -> str:
    """Canonical lower-case hyphenated form of a 16, 32 or 128-bit UUID."""
    raw = str(uuid).strip().lower().replace("-", "")
    if not raw or not _HEX_RE.match(raw):
        raise ValueError(f"invalid UUID: {uuid!r}")
    if len(raw) in (4, 8):
        return raw.rjust(8, "0") + _BASE_UUID_SUFFIX
    if len(raw) != 32:
        raise ValueError(f"invalid UUID: {uuid!r}")
    return f"{raw[:8]}-{raw[8:12]}-{raw[12:16]}-{raw[16:20]}-{raw[20:]}"


def uuid_matches(a: str, b: str) -> bool:
    try:
        return normalize_uuid(a) == normalize_uuid(b)
    except ValueError:
        return False


def decode_device_time(data: bytes | bytearray | None) -> int | None:
    """Decode the device clock carried by the alarm and local-time values.

    Both characteristics hold one little-endian uint32 (seconds on the
    doorbell's own clock). Short payloads decode to None.
    """
    if not data or len(data) < 4:
        return None
    return int.from_bytes(bytes(data[:4]), "little")


def device_label(address: str) -> str:
    """Payload identifying the doorbell in failure notifications."""
    return f"Door Bell ({address})"


__all__ = [
    "ALARM_CHAR_UUID",
    "DOORBELL_SERVICE_UUID",
    "LOCALTIME_CHAR_UUID",
    "decode_device_time",
    "device_label",
    "is_valid_mac",
    "normalize_address",
    "normalize_uuid",
    "uuid_matches",
]
