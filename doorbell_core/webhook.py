"""
webhook.py

Outbound notification channel: one HTTPS POST per event to a Maker-style
webhook (`/trigger/<event>/with/key/<key>`), body carrying value1..value3.
Delivery is best effort; the status code or transport error is logged and
returned, never raised.
"""

from __future__ import annotations

import json
from urllib.parse import quote

import httpx

from .addon_config import DEFAULT_HTTP_TIMEOUT_S, DEFAULT_WEBHOOK_HOST
from .core_types import DispatchResult
from .logging_setup import redact, webhook_logger as logger


def build_body(value1: str, value2: str = "", value3: str = "") -> bytes:
    return json.dumps(
        {"value1": value1, "value2": value2, "value3": value3}
    ).encode("utf-8")


class WebhookDispatcher:
    def __init__(
        self,
        key: str,
        host: str = DEFAULT_WEBHOOK_HOST,
        timeout: float = DEFAULT_HTTP_TIMEOUT_S,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.key = key
        self.host = host
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.sent = 0
        self.failed = 0

    def trigger_url(self, event: str) -> str:
        return (
            f"https://{self.host}/trigger/{quote(event, safe='')}"
            f"/with/key/{quote(self.key, safe='')}"
        )

    async def dispatch(
        self, event: str, value1: str, value2: str = "", value3: str = ""
    ) -> DispatchResult:
        body = build_body(value1, value2, value3)
        headers = {
            "Content-Type": "application/json",
            "Content-Length": str(len(body)),
        }
        url = self.trigger_url(event)
        logger.debug(
            {"event": "webhook_request", "url": redact(url), "trigger": event}
        )
        try:
            # Streamed so the response body is never read.
            async with self._client.stream(
                "POST", url, content=body, headers=headers
            ) as response:
                status = response.status_code
        except httpx.HTTPError as exc:
            self.failed += 1
            logger.warning(
                {
                    "event": "webhook_error",
                    "trigger": event,
                    "error": redact(f"{type(exc).__name__}: {exc}"),
                }
            )
            return DispatchResult(
                event=event, error=redact(str(exc) or type(exc).__name__)
            )

        self.sent += 1
        logger.info({"event": "webhook_sent", "trigger": event, "status": status})
        return DispatchResult(event=event, status_code=status)

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["WebhookDispatcher", "build_body"]
