"""Outbound provider call with bounded retries and exponential backoff."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
import orjson

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_ATTEMPT_TIMEOUT_SECONDS = 4 * 60.0
DEFAULT_BACKOFF_BASE_SECONDS = 1.0
DEFAULT_BACKOFF_CAP_SECONDS = 10.0


@dataclass
class InvocationResult:
    """Result of a provider call after all attempts."""

    ok: bool
    status_code: int = 0
    content: bytes = b""
    error: Optional[str] = None
    timed_out: bool = False
    attempts: int = 0

    @property
    def client_error(self) -> bool:
        return 400 <= self.status_code < 500


def backoff_delay(attempt: int, base: float = DEFAULT_BACKOFF_BASE_SECONDS,
                  cap: float = DEFAULT_BACKOFF_CAP_SECONDS) -> float:
    return min(base * 2 ** attempt, cap)


class RetryingInvoker:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        attempt_timeout: float = DEFAULT_ATTEMPT_TIMEOUT_SECONDS,
        backoff_base: float = DEFAULT_BACKOFF_BASE_SECONDS,
        backoff_cap: float = DEFAULT_BACKOFF_CAP_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.max_attempts = max_attempts
        self.attempt_timeout = attempt_timeout
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._sleep = sleep

    async def invoke(self, url: str, body: dict, api_key: str, task_id: str = "-") -> InvocationResult:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }
        payload = orjson.dumps(body)
        last = InvocationResult(ok=False, error="no attempts made")

        for attempt in range(1, self.max_attempts + 1):
            logger.info("[%s] Attempt %d of %d: POST %s", task_id, attempt, self.max_attempts, url)
            started = time.monotonic()
            try:
                response = await asyncio.wait_for(
                    self.client.post(url, content=payload, headers=headers, timeout=self.attempt_timeout),
                    timeout=self.attempt_timeout,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException):
                elapsed = time.monotonic() - started
                logger.warning("[%s] Attempt %d timeout after %.2fs", task_id, attempt, elapsed)
                last = InvocationResult(
                    ok=False,
                    error=f"Request timeout after {self.attempt_timeout:g} seconds",
                    timed_out=True,
                    attempts=attempt,
                )
            except httpx.HTTPError as exc:
                elapsed = time.monotonic() - started
                logger.warning("[%s] Attempt %d transport_error after %.2fs: %s", task_id, attempt, elapsed, exc)
                last = InvocationResult(ok=False, error=f"Request failed: {exc}", attempts=attempt)
            else:
                elapsed = time.monotonic() - started
                status = response.status_code
                if 200 <= status < 300:
                    logger.info("[%s] Attempt %d success after %.2fs, status: %d", task_id, attempt, elapsed, status)
                    return InvocationResult(ok=True, status_code=status, content=response.content, attempts=attempt)

                error = f"API returned error {status}: {response.text}"
                if 400 <= status < 500:
                    logger.warning("[%s] Attempt %d client_error after %.2fs: %s", task_id, attempt, elapsed, error)
                    return InvocationResult(ok=False, status_code=status, content=response.content,
                                            error=error, attempts=attempt)
                logger.warning("[%s] Attempt %d server_error after %.2fs: %s", task_id, attempt, elapsed, error)
                last = InvocationResult(ok=False, status_code=status, content=response.content,
                                        error=error, attempts=attempt)

            if attempt < self.max_attempts:
                delay = backoff_delay(attempt, self.backoff_base, self.backoff_cap)
                logger.info("[%s] Waiting %.1fs before retry", task_id, delay)
                await self._sleep(delay)

        logger.error("[%s] All %d attempts failed: %s", task_id, self.max_attempts, last.error)
        return last
