import asyncio

import pytest

from bulk_seo import config
from bulk_seo.ai_queue import AIQueue
from bulk_seo.db import init_db
from bulk_seo.openrouter import GeneratedSeo
from bulk_seo.platform import ApplyResult
from bulk_seo.ratelimit import ShopRateLimiter
from bulk_seo.worker import JobOrchestrator


class FakeProvider:
    def __init__(self, tokens: int = 100, fail: dict | None = None, gate: asyncio.Event | None = None) -> None:
        self.tokens = tokens
        self.fail = fail or {}
        self.gate = gate
        self.calls: list[tuple[str, str]] = []

    async def generate_seo(self, product_id, language, model=None, title=None, description=None) -> GeneratedSeo:
        self.calls.append((product_id, language))
        if self.gate is not None:
            await self.gate.wait()
        exc = self.fail.get((product_id, language))
        if exc is not None:
            raise exc
        data = {"title": f"{title or product_id} ({language})", "metaDescription": "Generated description."}
        return GeneratedSeo(language=language, data=data, total_tokens=self.tokens)


class FakePlatform:
    def __init__(self, reject: set | None = None) -> None:
        self.reject = reject or set()
        self.applied: list[tuple[str, str, str]] = []

    async def apply(self, shop, product_id, language, content, options=None) -> ApplyResult:
        if (product_id, language) in self.reject:
            return ApplyResult(ok=False, errors=["metafield rejected"])
        self.applied.append((shop, product_id, language))
        return ApplyResult(ok=True)


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    db_path = tmp_path / "bulk_seo.db"

    monkeypatch.setattr(config.settings, "database_path", str(db_path))
    monkeypatch.setattr(config.settings, "admin_api_token", "test-admin-token")
    monkeypatch.setattr(config.settings, "openrouter_api_key", "test-key")
    monkeypatch.setattr(config.settings, "notify_webhook_url", "")
    monkeypatch.setattr(config.settings, "ai_queue_interval_cap", 0)

    init_db()
    yield


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def orchestrator(provider, platform) -> JobOrchestrator:
    return JobOrchestrator(AIQueue(concurrency=3), provider, platform, unit_concurrency=2)


@pytest.fixture
def api_state(monkeypatch, provider, platform):
    from bulk_seo.api.main import app

    monkeypatch.setattr(app.state, "orchestrator", JobOrchestrator(AIQueue(concurrency=3), provider, platform, unit_concurrency=2))
    monkeypatch.setattr(app.state, "rate_limiter", ShopRateLimiter(limit=3))
    return app.state
