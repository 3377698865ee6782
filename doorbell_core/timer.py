from __future__ import annotations

import asyncio
from collections.abc import Callable

from .logging_setup import logger


class ConnectionTimer:
    """Single-shot, re-armable timeout on the running event loop.

    At most one expiry is pending at a time: `arm()` cancels the previous
    handle before scheduling a new one. Every arm/disarm bumps a generation
    counter and the expiry callback checks it, so a callback that was already
    queued when the timer was re-armed or disarmed does nothing.
    """

    def __init__(self, timeout_s: float, on_expire: Callable[[], None]) -> None:
        if timeout_s <= 0:
            raise ValueError("timeout_s must be positive")
        self.timeout_s = float(timeout_s)
        self._on_expire = on_expire
        self._handle: asyncio.TimerHandle | None = None
        self._generation = 0
        self._deadline: float | None = None
        self.arm_count = 0
        self.disarm_count = 0

    @property
    def active(self) -> bool:
        return self._handle is not None

    def remaining(self) -> float | None:
        """Seconds until expiry, or None when disarmed."""
        if self._handle is None or self._deadline is None:
            return None
        return max(0.0, self._deadline - asyncio.get_running_loop().time())

    def arm(self) -> None:
        loop = asyncio.get_running_loop()
        self._cancel()
        self._generation += 1
        self._deadline = loop.time() + self.timeout_s
        self._handle = loop.call_later(self.timeout_s, self._fire, self._generation)
        self.arm_count += 1
        logger.debug(
            {
                "event": "connection_timer_armed",
                "timeout_s": self.timeout_s,
                "generation": self._generation,
            }
        )

    def disarm(self) -> None:
        if self._handle is None:
            return
        self._cancel()
        self._generation += 1
        self.disarm_count += 1
        logger.debug(
            {"event": "connection_timer_disarmed", "generation": self._generation}
        )

    def _cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._deadline = None

    def _fire(self, generation: int) -> None:
        if generation != self._generation:
            logger.debug(
                {
                    "event": "connection_timer_stale",
                    "generation": generation,
                    "current": self._generation,
                }
            )
            return
        self._handle = None
        self._deadline = None
        self._on_expire()
