from pathlib import Path
import asyncio
import logging
import sys

import httpx
import orjson
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from image_proxy.config import Settings
from image_proxy.models import GenerationRequest
from image_proxy.services.callback import CallbackNotifier
from image_proxy.services.executor import DuplicateTask, TaskExecutor
from image_proxy.services.images import ImageLoader
from image_proxy.services.invoker import RetryingInvoker
from image_proxy.services.monitor import ResourceMonitor, TaskCounters
from image_proxy.storage.repo import TaskStore

CHAT_URL = "https://chat.test/v1/chat/completions"
GEMINI_URL = "https://gemini.test/v1beta/generate"
CALLBACK_URL = "https://hooks.test/done"

SETTINGS = Settings(chat_completions_url=CHAT_URL, gemini_generate_url=GEMINI_URL)


def chat_reply(text):
    return httpx.Response(200, json={"choices": [{"message": {"content": text}}]})


class Harness:
    def __init__(self, provider_responses, callback_status=200):
        self.provider_responses = list(provider_responses)
        self.callback_status = callback_status
        self.provider_calls = []
        self.callbacks = []
        self.store = TaskStore()

    def handler(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == CALLBACK_URL:
            self.callbacks.append(orjson.loads(request.content))
            if isinstance(self.callback_status, type):
                raise self.callback_status("callback down", request=request)
            return httpx.Response(self.callback_status)
        self.provider_calls.append(request)
        step = self.provider_responses.pop(0)
        if isinstance(step, type):
            raise step("scripted", request=request)
        return step

    def run(self, coro_factory):
        async def go():
            async with httpx.AsyncClient(transport=httpx.MockTransport(self.handler)) as client:
                async def no_sleep(_):
                    return None

                executor = TaskExecutor(
                    store=self.store,
                    invoker=RetryingInvoker(client, sleep=no_sleep),
                    notifier=CallbackNotifier(client),
                    monitor=ResourceMonitor(512, TaskCounters()),
                    images=ImageLoader(client),
                    settings=SETTINGS,
                )
                self.executor = executor
                return await coro_factory(executor)

        return asyncio.run(go())


def _request(**overrides):
    data = {"model": "sora", "prompt": "a cat", "imageSize": "1:1", "apiKey": "k", "taskId": "task-1"}
    data.update(overrides)
    return GenerationRequest(**data)


def test_success_writes_one_terminal_outcome_and_calls_back():
    harness = Harness([chat_reply("done https://cdn.test/out.png")])
    req = _request(callbackUrl=CALLBACK_URL, parentTaskId="parent-9")

    outcome = harness.run(lambda ex: ex.run(req))

    assert outcome.success
    assert outcome.image_result == "https://cdn.test/out.png"
    record = harness.store.get("task-1")
    assert record.terminal
    assert record.outcome == outcome
    assert record.raw_response == {"choices": [{"message": {"content": "done https://cdn.test/out.png"}}]}
    assert harness.callbacks == [{
        "taskId": "task-1",
        "parentTaskId": "parent-9",
        "status": "completed",
        "imageUrl": "https://cdn.test/out.png",
    }]


def test_moderation_failure_is_stored_with_raw_body():
    text = "生成失败 ❌ 失败原因：input_moderation"
    harness = Harness([chat_reply(text)])
    req = _request(callbackUrl=CALLBACK_URL)

    outcome = harness.run(lambda ex: ex.run(req))

    assert not outcome.success
    assert outcome.error == text
    assert harness.store.get("task-1").raw_response is not None
    assert harness.callbacks == [{"taskId": "task-1", "status": "failed", "error": text}]


def test_provider_client_error_skips_extraction():
    harness = Harness([httpx.Response(401, text="bad key"), chat_reply("unused")])

    outcome = harness.run(lambda ex: ex.run(_request()))

    assert outcome.error_kind == "provider_error"
    assert outcome.error == "API call failed: API returned error 401: bad key"
    assert len(harness.provider_calls) == 1
    assert harness.store.get("task-1").raw_response is None


def test_repeated_timeouts_surface_as_timeout_outcome():
    harness = Harness([httpx.ReadTimeout] * 3)

    outcome = harness.run(lambda ex: ex.run(_request()))

    assert outcome.error_kind == "timeout"
    assert harness.store.get("task-1").outcome.error_kind == "timeout"


def test_non_json_body_is_an_extraction_failure():
    harness = Harness([httpx.Response(200, text="<html>gateway</html>")])

    outcome = harness.run(lambda ex: ex.run(_request()))

    assert outcome.error_kind == "extraction"
    assert outcome.raw_response == "<html>gateway</html>"


def test_gemini_task_returns_data_uri():
    body = {"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": "QUJD"}}]}}]}
    harness = Harness([httpx.Response(200, json=body)])

    outcome = harness.run(lambda ex: ex.run(_request(model="gemini")))

    assert outcome.image_result == "data:image/png;base64,QUJD"
    assert str(harness.provider_calls[0].url) == GEMINI_URL


def test_callback_failure_does_not_change_outcome():
    harness = Harness([chat_reply("https://cdn.test/out.png")], callback_status=httpx.ConnectError)

    outcome = harness.run(lambda ex: ex.run(_request(callbackUrl=CALLBACK_URL)))

    assert outcome.success
    assert harness.store.get("task-1").outcome.success
    assert len(harness.callbacks) == 1


def test_callback_error_status_is_only_logged():
    harness = Harness([chat_reply("https://cdn.test/out.png")], callback_status=500)

    outcome = harness.run(lambda ex: ex.run(_request(callbackUrl=CALLBACK_URL)))

    assert outcome.success


def test_counters_return_to_idle():
    harness = Harness([chat_reply("https://cdn.test/out.png")])

    harness.run(lambda ex: ex.run(_request()))

    assert harness.executor.counters.active == 0
    assert harness.executor.counters.total == 1


def test_submit_runs_detached_and_rejects_duplicates():
    harness = Harness([chat_reply("https://cdn.test/out.png")])

    async def scenario(executor):
        task = executor.submit(_request())
        with pytest.raises(DuplicateTask):
            executor.submit(_request())
        outcome = await task
        with pytest.raises(DuplicateTask):
            executor.submit(_request())
        return outcome, executor.inflight

    outcome, inflight = harness.run(scenario)

    assert outcome.success
    assert inflight == 0


def test_run_and_wait_returns_none_on_timeout_but_task_completes():
    async def slow(request):
        await asyncio.sleep(0.2)
        return chat_reply("https://cdn.test/slow.png")

    harness = Harness([])
    harness.handler = slow  # type: ignore[assignment]

    async def scenario(executor):
        result = await executor.run_and_wait(_request(), timeout=0.01)
        await asyncio.sleep(0.5)
        return result

    result = harness.run(scenario)

    assert result is None
    assert harness.store.get("task-1").outcome.image_result == "https://cdn.test/slow.png"


def test_unexpected_callback_error_is_logged_and_outcome_kept(monkeypatch, caplog):
    async def exploding_notify(self, url, payload):
        raise RuntimeError("callback encoder broke")

    monkeypatch.setattr(CallbackNotifier, "notify", exploding_notify)
    harness = Harness([chat_reply("https://cdn.test/out.png")])

    with caplog.at_level(logging.ERROR, logger="image_proxy.services.executor"):
        outcome = harness.run(lambda ex: ex.run(_request(callbackUrl=CALLBACK_URL)))

    assert outcome.success
    assert harness.store.get("task-1").outcome.image_result == "https://cdn.test/out.png"
    assert harness.executor.counters.active == 0
    assert "[task-1] Callback raised, stored outcome unchanged" in caplog.text
