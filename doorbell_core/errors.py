"""Exception types shared by the doorbell bridge."""

from __future__ import annotations


class DoorbellError(Exception):
    """Base exception for doorbell bridge operations."""

    pass


class AdapterError(DoorbellError):
    """Raised by a BLE adapter when a scan, connect or GATT operation fails."""

    pass


class ConfigError(DoorbellError):
    """Raised when the effective configuration is incomplete or invalid."""

    pass


__all__ = ["AdapterError", "ConfigError", "DoorbellError"]
