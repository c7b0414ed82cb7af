"""Process-wide, rate-limited priority queue for provider calls.

Three lanes share one concurrency budget. Waiting tasks are dispatched high
before normal before bulk, except that bulk is guaranteed one of every
``ceil(1 / bulk_min_share)`` dispatches while it has work waiting. The queue
never retries; a slot is released as soon as its work settles.
"""

import asyncio
import logging
import math
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from bulk_seo.config import settings

logger = logging.getLogger(__name__)


class Priority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    BULK = "bulk"


class QueueTimeout(TimeoutError):
    pass


class QueueCleared(RuntimeError):
    pass


@dataclass
class QueueTask:
    priority: Priority
    work: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    enqueued_at: float
    metadata: dict = field(default_factory=dict)


class AIQueue:
    def __init__(
        self,
        concurrency: int | None = None,
        bulk_min_share: float | None = None,
        interval_cap: int | None = None,
        interval_sec: float | None = None,
        timeout_sec: float | None = None,
        bulk_timeout_sec: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.concurrency = concurrency if concurrency is not None else settings.ai_queue_concurrency
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        share = bulk_min_share if bulk_min_share is not None else settings.ai_queue_bulk_min_share
        self.bulk_every = math.ceil(1 / share) if share > 0 else 0
        self.interval_cap = interval_cap if interval_cap is not None else settings.ai_queue_interval_cap
        self.interval_sec = interval_sec if interval_sec is not None else settings.ai_queue_interval_sec
        self.timeout_sec = timeout_sec if timeout_sec is not None else settings.ai_queue_timeout_sec
        self.bulk_timeout_sec = (
            bulk_timeout_sec if bulk_timeout_sec is not None else settings.ai_queue_bulk_timeout_sec
        )
        self._clock = clock

        self._lanes: dict[Priority, deque[QueueTask]] = {p: deque() for p in Priority}
        self._running = 0
        self._since_bulk = 0
        self._starts: deque[float] = deque()
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        self._started_at = self._clock()
        self.stats = {
            "total_calls": 0,
            "successful_calls": 0,
            "failed_calls": 0,
            "timeout_calls": 0,
            "total_tokens": 0,
            "dispatched": {p.value: 0 for p in Priority},
        }

    async def add(self, work: Callable[[], Awaitable[Any]], priority: Priority = Priority.NORMAL, **metadata: Any) -> Any:
        priority = Priority(priority)
        loop = asyncio.get_running_loop()
        task = QueueTask(priority, work, loop.create_future(), self._clock(), metadata)
        self._lanes[priority].append(task)
        self.stats["total_calls"] += 1
        self._idle.clear()
        self._pump()
        return await task.future

    async def add_high_priority(self, work: Callable[[], Awaitable[Any]], **metadata: Any) -> Any:
        return await self.add(work, Priority.HIGH, **metadata)

    async def add_bulk(self, work: Callable[[], Awaitable[Any]], **metadata: Any) -> Any:
        return await self.add(work, Priority.BULK, **metadata)

    @property
    def running(self) -> int:
        return self._running

    def waiting(self, priority: Priority | None = None) -> int:
        if priority is not None:
            return sum(1 for t in self._lanes[Priority(priority)] if not t.future.done())
        return sum(self.waiting(p) for p in Priority)

    def _pump(self) -> None:
        while self._running < self.concurrency and self.waiting():
            delay = self._rate_delay()
            if delay > 0:
                self._schedule_pump(delay)
                return
            task = self._next_task()
            if task is None:
                return
            self._start(task)
        self._check_idle()

    def _rate_delay(self) -> float:
        if not self.interval_cap or self.interval_sec <= 0:
            return 0.0
        now = self._clock()
        while self._starts and now - self._starts[0] >= self.interval_sec:
            self._starts.popleft()
        if len(self._starts) < self.interval_cap:
            return 0.0
        return self._starts[0] + self.interval_sec - now

    def _schedule_pump(self, delay: float) -> None:
        if self._timer is not None:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._pump()

    def _next_task(self) -> QueueTask | None:
        for lane in self._lanes.values():
            while lane and lane[0].future.done():
                lane.popleft()

        bulk_waiting = bool(self._lanes[Priority.BULK])
        if bulk_waiting and self.bulk_every and self._since_bulk >= self.bulk_every - 1:
            chosen = Priority.BULK
        else:
            chosen = next((p for p in Priority if self._lanes[p]), None)
        if chosen is None:
            return None

        if chosen is Priority.BULK or not bulk_waiting:
            self._since_bulk = 0
        else:
            self._since_bulk += 1
        return self._lanes[chosen].popleft()

    def _start(self, task: QueueTask) -> None:
        self._running += 1
        self._starts.append(self._clock())
        self.stats["dispatched"][task.priority.value] += 1
        runner = asyncio.create_task(self._run(task))
        self._tasks.add(runner)
        runner.add_done_callback(self._tasks.discard)

    async def _run(self, task: QueueTask) -> None:
        timeout = self.bulk_timeout_sec if task.priority is Priority.BULK else self.timeout_sec
        started = self._clock()
        try:
            if timeout and timeout > 0:
                result = await asyncio.wait_for(task.work(), timeout)
            else:
                result = await task.work()
        except asyncio.TimeoutError:
            self.stats["timeout_calls"] += 1
            logger.error(f"[{task.priority.value}] timeout after {self._clock() - started:.1f}s {task.metadata}")
            self._settle(task, exc=QueueTimeout(f"queue_timeout_{timeout}s"))
        except asyncio.CancelledError:
            task.future.cancel()
            raise
        except Exception as exc:
            self.stats["failed_calls"] += 1
            logger.warning(f"[{task.priority.value}] work failed: {exc} {task.metadata}")
            self._settle(task, exc=exc)
        else:
            self.stats["successful_calls"] += 1
            self.stats["total_tokens"] += int(getattr(result, "total_tokens", 0) or 0)
            self._settle(task, result=result)
        finally:
            self._running -= 1
            self._pump()

    @staticmethod
    def _settle(task: QueueTask, result: Any = None, exc: BaseException | None = None) -> None:
        if task.future.done():
            return
        if exc is not None:
            task.future.set_exception(exc)
        else:
            task.future.set_result(result)

    def _check_idle(self) -> None:
        if self._running == 0 and not self.waiting():
            self._idle.set()

    async def on_idle(self) -> None:
        await self._idle.wait()

    def clear(self) -> int:
        """Reject every task still waiting for a slot. Running work is left alone."""
        cleared = 0
        for lane in self._lanes.values():
            while lane:
                task = lane.popleft()
                if not task.future.done():
                    task.future.set_exception(QueueCleared("queue_cleared"))
                    cleared += 1
        self._check_idle()
        return cleared

    def get_stats(self) -> dict:
        done = self.stats["successful_calls"] + self.stats["failed_calls"] + self.stats["timeout_calls"]
        return {
            "concurrency": self.concurrency,
            "running": self._running,
            "waiting": {p.value: self.waiting(p) for p in Priority},
            "stats": {
                **self.stats,
                "uptime_minutes": int((self._clock() - self._started_at) // 60),
                "success_rate": round(self.stats["successful_calls"] / done, 4) if done else None,
                "avg_tokens_per_call": (
                    round(self.stats["total_tokens"] / self.stats["successful_calls"])
                    if self.stats["successful_calls"]
                    else 0
                ),
            },
        }
