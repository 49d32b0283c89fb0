from pathlib import Path
import asyncio
import logging
import re
import sys

import httpx
import orjson
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from image_proxy.services.invoker import RetryingInvoker, backoff_delay

URL = "https://provider.test/v1/chat/completions"


class Script:
    """Replays a fixed list of responses (status codes or exceptions)."""

    def __init__(self, steps):
        self.steps = list(steps)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self.steps.pop(0)
        if isinstance(step, type) and issubclass(step, Exception):
            raise step("scripted failure", request=request)
        return httpx.Response(step, json={"status": step})


def _invoke(steps, **kwargs):
    script = Script(steps)
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(script)) as client:
            invoker = RetryingInvoker(client, sleep=fake_sleep, **kwargs)
            return await invoker.invoke(URL, {"model": "sora_image"}, "secret", "task-1")

    return asyncio.run(go()), script, sleeps


@pytest.mark.parametrize("attempt, expected", [(1, 2.0), (2, 4.0), (3, 8.0), (4, 10.0), (10, 10.0)])
def test_backoff_delay(attempt, expected):
    assert backoff_delay(attempt) == expected


def test_success_on_first_attempt():
    result, script, sleeps = _invoke([200])

    assert result.ok
    assert result.attempts == 1
    assert orjson.loads(result.content) == {"status": 200}
    assert sleeps == []


def test_sends_bearer_token_and_json_body():
    _, script, _ = _invoke([200])

    request = script.requests[0]
    assert request.method == "POST"
    assert request.headers["Authorization"] == "Bearer secret"
    assert request.headers["Content-Type"] == "application/json"
    assert orjson.loads(request.content) == {"model": "sora_image"}


def test_server_errors_are_retried_until_success():
    result, script, sleeps = _invoke([500, 500, 200])

    assert result.ok
    assert result.attempts == 3
    assert len(script.requests) == 3
    assert sleeps == [2.0, 4.0]


def test_client_error_is_terminal():
    result, script, sleeps = _invoke([400, 200])

    assert not result.ok
    assert result.attempts == 1
    assert result.client_error
    assert result.error.startswith("API returned error 400")
    assert len(script.requests) == 1
    assert sleeps == []


def test_exhausted_attempts_keep_last_provider_error():
    result, _, sleeps = _invoke([502, 503, 500])

    assert not result.ok
    assert result.status_code == 500
    assert result.error.startswith("API returned error 500: ")
    assert orjson.loads(result.error.split(": ", 1)[1]) == {"status": 500}
    assert not result.timed_out
    assert sleeps == [2.0, 4.0]


def test_transport_errors_are_retried():
    result, script, _ = _invoke([httpx.ConnectError, 200])

    assert result.ok
    assert len(script.requests) == 2


def test_consecutive_timeouts_are_reported_as_timeout():
    result, script, sleeps = _invoke([httpx.ReadTimeout, httpx.ReadTimeout, httpx.ReadTimeout])

    assert not result.ok
    assert result.timed_out
    assert "timeout" in result.error.lower()
    assert len(script.requests) == 3
    assert len(sleeps) == 2


def test_timeout_then_server_error_is_not_a_timeout():
    result, _, _ = _invoke([httpx.ReadTimeout, httpx.ReadTimeout, 500])

    assert not result.timed_out
    assert result.status_code == 500


def test_per_attempt_deadline_is_enforced():
    async def slow_handler(request):
        await asyncio.sleep(1)
        return httpx.Response(200)

    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(slow_handler)) as client:
            invoker = RetryingInvoker(client, max_attempts=2, attempt_timeout=0.05, sleep=fake_sleep)
            return await invoker.invoke(URL, {}, "secret", "task-slow")

    result = asyncio.run(go())

    assert result.timed_out
    assert result.attempts == 2
    assert sleeps == [2.0]


def test_every_attempt_is_logged_with_classification(caplog):
    with caplog.at_level(logging.INFO, logger="image_proxy.services.invoker"):
        result, _, _ = _invoke([500, httpx.ReadTimeout, 400])

    assert result.client_error
    attempt_lines = [r.getMessage() for r in caplog.records if " after " in r.getMessage()]
    assert len(attempt_lines) == 3
    for number, (line, classification) in enumerate(
        zip(attempt_lines, ["server_error", "timeout", "client_error"]), start=1
    ):
        assert line.startswith(f"[task-1] Attempt {number} {classification} after ")
        assert re.search(r"after \d+\.\d{2}s", line)
