from __future__ import annotations

import logging
import time

import httpx
import orjson

from ..models import CallbackPayload

logger = logging.getLogger(__name__)


class CallbackNotifier:
    """Best-effort POST of a task's terminal outcome. Never retried."""

    def __init__(self, client: httpx.AsyncClient, timeout_seconds: float = 10.0):
        self.client = client
        self.timeout_seconds = timeout_seconds

    async def notify(self, url: str, payload: CallbackPayload) -> bool:
        logger.info("[%s] Sending callback to %s", payload.taskId, url)
        started = time.monotonic()
        try:
            response = await self.client.post(
                url,
                content=orjson.dumps(payload.model_dump(exclude_none=True)),
                headers={"Content-Type": "application/json"},
                timeout=self.timeout_seconds,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("[%s] Callback failed: %s", payload.taskId, exc)
            return False

        elapsed_ms = (time.monotonic() - started) * 1000
        if response.status_code >= 400:
            logger.warning(
                "[%s] Callback returned error %d in %.0fms: %s",
                payload.taskId, response.status_code, elapsed_ms, response.text,
            )
            return False
        logger.info("[%s] Callback %d in %.0fms", payload.taskId, response.status_code, elapsed_ms)
        return True
