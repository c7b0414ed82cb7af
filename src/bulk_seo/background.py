"""Bounded fire-and-forget side effects.

Notifications and similar best-effort work run here so they never hold up a
job or a request. ``_guard`` is the only place their failures are swallowed.
"""

import asyncio
import logging
from collections.abc import Awaitable

import httpx

from bulk_seo.config import settings

logger = logging.getLogger(__name__)


class BackgroundRunner:
    def __init__(self, max_tasks: int | None = None) -> None:
        self.max_tasks = max_tasks or settings.background_max_tasks
        self._semaphore = asyncio.Semaphore(self.max_tasks)
        self._tasks: set[asyncio.Task] = set()
        self.failures = 0

    def spawn(self, coro: Awaitable, name: str) -> asyncio.Task:
        task = asyncio.create_task(self._guard(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, coro: Awaitable, name: str) -> None:
        async with self._semaphore:
            try:
                await coro
            except Exception as exc:
                self.failures += 1
                logger.error(f"Background task {name} failed: {exc}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks))


async def notify_job_finished(
    job: dict,
    duration_sec: float,
    url: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    url = url if url is not None else settings.notify_webhook_url
    if not url:
        return
    payload = {
        "type": "seo_job_finished",
        "shop": job["shop"],
        "jobId": job["job_id"],
        "status": job["status"],
        "applied": job.get("applied_count", 0),
        "failed": job.get("failed_count", 0),
        "skipped": job.get("skipped_count", 0),
        "durationSeconds": round(duration_sec, 1),
        "failReasons": (job.get("fail_reasons") or [])[:5],
    }
    async with httpx.AsyncClient(timeout=10, transport=transport) as client:
        r = await client.post(url, json=payload)
        r.raise_for_status()
