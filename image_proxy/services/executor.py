"""Runs one generation task end-to-end.

State machine: PENDING -> CALLING -> EXTRACTING -> DONE. A failed call skips
EXTRACTING. Every run ends with exactly one terminal write to the task store,
followed by the optional callback.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from typing import Dict, Optional

import orjson

from ..config import Settings
from ..models import CallbackPayload, GenerationRequest
from ..storage.repo import TaskStore
from ..storage.schema import Outcome
from .callback import CallbackNotifier
from .images import ImageLoader
from .invoker import RetryingInvoker
from .monitor import ResourceMonitor, TaskCounters
from .providers import select_provider

logger = logging.getLogger(__name__)


class TaskState(str, enum.Enum):
    PENDING = "pending"
    CALLING = "calling"
    EXTRACTING = "extracting"
    DONE = "done"


class DuplicateTask(RuntimeError):
    """The task id is already running or has a stored result."""


class TaskExecutor:
    def __init__(
        self,
        store: TaskStore,
        invoker: RetryingInvoker,
        notifier: CallbackNotifier,
        monitor: ResourceMonitor,
        images: ImageLoader,
        settings: Settings,
    ):
        self.store = store
        self.invoker = invoker
        self.notifier = notifier
        self.monitor = monitor
        self.images = images
        self.settings = settings
        self.counters: TaskCounters = monitor.counters
        self._inflight: Dict[str, asyncio.Task] = {}

    async def run(self, req: GenerationRequest) -> Outcome:
        task_id = req.task_id
        started = time.monotonic()
        self.counters.active += 1
        self.counters.total += 1
        self.monitor.log("RESOURCE_START", task_id)
        try:
            try:
                outcome = await self._execute(req)
            except Exception as exc:
                logger.exception("[%s] Unexpected error while processing task", task_id)
                outcome = Outcome.failed(str(exc) or exc.__class__.__name__, "internal")
            self.store.put(task_id, outcome)
            self._transition(task_id, TaskState.DONE, "SUCCESS" if outcome.success else "FAILED")
            try:
                await self._notify(req, outcome)
            except Exception:
                logger.exception("[%s] Callback raised, stored outcome unchanged", task_id)
            return outcome
        finally:
            self.counters.active -= 1
            self.monitor.log(
                "RESOURCE_END", task_id, Duration=f"{time.monotonic() - started:.2f}s"
            )

    def submit(self, req: GenerationRequest) -> asyncio.Task:
        task_id = req.task_id
        if task_id in self._inflight or self.store.contains(task_id):
            raise DuplicateTask(f"Task {task_id} already exists")
        task = asyncio.create_task(self.run(req), name=f"generation-{task_id}")
        self._inflight[task_id] = task
        task.add_done_callback(lambda _: self._inflight.pop(task_id, None))
        return task

    async def run_and_wait(self, req: GenerationRequest, timeout: float) -> Optional[Outcome]:
        task = self.submit(req)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            logger.warning("[%s] Gave up waiting after %.0fs, task keeps running", req.task_id, timeout)
            return None

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def _execute(self, req: GenerationRequest) -> Outcome:
        task_id = req.task_id
        self._transition(task_id, TaskState.PENDING)
        adapter = select_provider(req.model, self.settings)
        provider_request = await adapter.build_request(req, self.images)
        logger.info(
            "[%s] Processing %s generation via %s | Prompt length: %d | Image size: %s | Images: %d",
            task_id, req.model, adapter.name, len(req.prompt), req.image_size, len(req.image_urls),
        )

        self._transition(task_id, TaskState.CALLING)
        result = await self.invoker.invoke(provider_request.url, provider_request.body, req.api_key, task_id)
        if not result.ok:
            if result.timed_out:
                kind = "timeout"
            elif result.client_error:
                kind = "provider_error"
            else:
                kind = "upstream"
            return Outcome.failed(f"API call failed: {result.error}", kind)

        self._transition(task_id, TaskState.EXTRACTING)
        try:
            data = orjson.loads(result.content)
        except orjson.JSONDecodeError:
            raw = result.content.decode("utf-8", errors="replace")
            self.store.put_snapshot(task_id, raw)
            logger.error("[%s] Provider returned non-JSON body: %s", task_id, raw[:500])
            return Outcome.failed("Provider returned a non-JSON response", "extraction", raw_response=raw)

        self.store.put_snapshot(task_id, data)
        outcome = adapter.extract(data)
        if outcome.success:
            logger.info("[%s] Extracted image result (%d chars)", task_id, len(outcome.image_result or ""))
        else:
            logger.error("[%s] Failed to extract image: %s", task_id, outcome.error)
            logger.debug("[%s] Full response: %s", task_id, result.content.decode("utf-8", errors="replace"))
        return outcome

    async def _notify(self, req: GenerationRequest, outcome: Outcome):
        if not req.callback_url:
            return
        payload = CallbackPayload(
            taskId=req.task_id,
            parentTaskId=req.parent_task_id,
            status="completed" if outcome.success else "failed",
            imageUrl=outcome.image_result if outcome.success else None,
            error=None if outcome.success else outcome.error,
        )
        await self.notifier.notify(req.callback_url, payload)

    @staticmethod
    def _transition(task_id: str, state: TaskState, detail: str = ""):
        logger.debug("[%s] -> %s %s", task_id, state.value, detail)
