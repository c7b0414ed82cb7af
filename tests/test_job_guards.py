from fastapi.testclient import TestClient

from bulk_seo import ledger
from bulk_seo.api.main import app
from bulk_seo.db import upsert_shop

SHOP = "demo.myshopify.com"


def _batch(model: str | None = None) -> dict:
    payload = {"shop": SHOP, "products": [{"productId": "101", "languages": ["en"], "existingLanguages": []}]}
    if model:
        payload["model"] = model
    return payload


def test_insufficient_balance(api_state) -> None:
    c = TestClient(app)
    r = c.post('/generate-apply-batch', json=_batch())
    assert r.status_code == 402
    detail = r.json()['detail']
    assert detail['tokensRequired'] == 1100
    assert detail['tokensAvailable'] == 0


def test_model_not_allowed_for_plan(api_state) -> None:
    upsert_shop(SHOP, plan="starter")
    ledger.grant_tokens(SHOP, 10_000)
    c = TestClient(app)
    r = c.post('/generate-apply-batch', json=_batch(model="openai/gpt-4o"))
    assert r.status_code == 403


def test_batch_rate_limit(api_state) -> None:
    c = TestClient(app)
    codes = [c.post('/generate-apply-batch', json=_batch()).status_code for _ in range(4)]
    assert codes == [402, 402, 402, 429]


def test_empty_products_rejected(api_state) -> None:
    c = TestClient(app)
    r = c.post('/generate-apply-batch', json={"shop": SHOP, "products": []})
    assert r.status_code == 422


def test_status_when_no_job() -> None:
    c = TestClient(app)
    r = c.get('/job-status', params={"shop": SHOP})
    assert r.status_code == 200
    data = r.json()['data']
    assert data['status'] == 'idle'
    assert data['inProgress'] is False


def test_cancel_without_active_job() -> None:
    c = TestClient(app)
    r = c.post('/job-cancel', json={"shop": SHOP})
    assert r.status_code == 200
    assert r.json()['data'] == {"success": False}
