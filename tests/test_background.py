import json

import httpx
import pytest

from bulk_seo.background import BackgroundRunner, notify_job_finished

JOB = {
    "job_id": "job-1",
    "shop": "demo.myshopify.com",
    "status": "completed",
    "applied_count": 5,
    "failed_count": 1,
    "skipped_count": 0,
    "fail_reasons": ["p2: de: PROVIDER_ERROR: transient_http_503"],
}


@pytest.mark.asyncio
async def test_runner_swallows_and_counts_failures() -> None:
    runner = BackgroundRunner(max_tasks=2)
    done = []

    async def ok():
        done.append(1)

    async def boom():
        raise RuntimeError("webhook down")

    runner.spawn(ok(), name="ok")
    runner.spawn(boom(), name="boom")
    await runner.drain()

    assert done == [1]
    assert runner.failures == 1
    assert runner.pending == 0


@pytest.mark.asyncio
async def test_notify_posts_summary() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(204)

    await notify_job_finished(JOB, 125.04, url="https://hooks.example/seo", transport=httpx.MockTransport(handler))

    assert seen["body"]["jobId"] == "job-1"
    assert seen["body"]["applied"] == 5
    assert seen["body"]["durationSeconds"] == 125.0


@pytest.mark.asyncio
async def test_notify_without_url_does_nothing() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    await notify_job_finished(JOB, 10, transport=httpx.MockTransport(handler))
