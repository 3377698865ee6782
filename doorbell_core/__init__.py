"""DoorBell20 BLE to webhook bridge."""

__version__ = "0.1.0"
