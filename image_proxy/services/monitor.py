import asyncio
import logging
import os
from dataclasses import dataclass
from typing import List

import psutil

from ..models import MemoryUsage, ResourceUsage

logger = logging.getLogger(__name__)


@dataclass
class TaskCounters:
    active: int = 0
    total: int = 0


class ResourceMonitor:
    """Read-only view of process resources and in-flight task counts."""

    def __init__(self, memory_limit_mb: int, counters: TaskCounters):
        self.memory_limit_mb = memory_limit_mb
        self.counters = counters
        self._process = psutil.Process()

    def snapshot(self) -> ResourceUsage:
        used_mb = self._process.memory_info().rss / 1024 / 1024
        total_mb = float(self.memory_limit_mb)
        return ResourceUsage(
            memoryMB=MemoryUsage(
                used=round(used_mb, 2),
                total=total_mb,
                percent=round(used_mb / total_mb * 100, 2) if total_mb else 0.0,
            ),
            cpuPercent=self._process.cpu_percent(interval=None),
            loadAvg=_load_average(),
            activeTasks=self.counters.active,
            totalProcessed=self.counters.total,
            asyncioTasks=_asyncio_task_count(),
        )

    def log(self, tag: str, task_id: str, **extra) -> ResourceUsage:
        usage = self.snapshot()
        suffix = "".join(f" | {k}: {v}" for k, v in extra.items())
        logger.info(
            "[%s] Task %s | Active: %d | Total: %d | Memory: %.2f/%.2fMB (%.2f%%) | Tasks: %d%s",
            tag, task_id, usage.activeTasks, usage.totalProcessed,
            usage.memoryMB.used, usage.memoryMB.total, usage.memoryMB.percent,
            usage.asyncioTasks, suffix,
        )
        return usage


def _load_average() -> List[float]:
    try:
        return [round(v, 2) for v in os.getloadavg()]
    except (AttributeError, OSError):
        return []


def _asyncio_task_count() -> int:
    try:
        return len(asyncio.all_tasks())
    except RuntimeError:  # no running loop
        return 0
