from fastapi.testclient import TestClient

from bulk_seo.api.main import app

ADMIN = {"x-admin-token": "test-admin-token"}


def test_admin_grant_and_balance() -> None:
    c = TestClient(app)

    payload = {
        "shop": "demo.myshopify.com",
        "tokens": 5000,
        "note": "manual purchase",
        "externalRef": "ORDER-1001",
    }
    r = c.post('/admin/tokens/grant', json=payload, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()['data']['balance'] == 5000

    rb = c.get('/token-balance', params={"shop": "demo.myshopify.com"})
    assert rb.status_code == 200
    bal = rb.json()['data']
    assert bal['balance'] == 5000
    assert bal['totalPurchased'] == 5000
    assert bal['totalUsed'] == 0
    assert bal['pendingReservations'] == 0
    assert bal['recentEvents'][0]['note'] == "manual purchase (ORDER-1001)"


def test_unknown_shop_has_zero_balance() -> None:
    c = TestClient(app)
    r = c.get('/token-balance', params={"shop": "nobody.myshopify.com"})
    assert r.status_code == 200
    assert r.json()['data']['balance'] == 0


def test_admin_auth_required() -> None:
    c = TestClient(app)
    r = c.post('/admin/tokens/grant', json={"shop": "demo.myshopify.com", "tokens": 10})
    assert r.status_code == 401


def test_grant_must_be_positive() -> None:
    c = TestClient(app)
    r = c.post('/admin/tokens/grant', json={"shop": "demo.myshopify.com", "tokens": 0}, headers=ADMIN)
    assert r.status_code == 422


def test_admin_shop_plan() -> None:
    c = TestClient(app)
    r = c.post('/admin/shops', json={"shop": "demo.myshopify.com", "plan": "growth_extra", "accessToken": "shpat_x"}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()['data']['languageLimit'] == 6

    bad = c.post('/admin/shops', json={"shop": "demo.myshopify.com", "plan": "platinum"}, headers=ADMIN)
    assert bad.status_code == 400


def test_admin_queue_stats_and_sweep() -> None:
    c = TestClient(app)
    r = c.get('/admin/queue-stats', headers=ADMIN)
    assert r.status_code == 200
    assert 'concurrency' in r.json()['data']

    s = c.post('/admin/sweep', headers=ADMIN)
    assert s.status_code == 200
    assert s.json()['data'] == {"recovered_jobs": 0, "swept_reservations": 0}


def test_admin_shop_update_keeps_stored_plan() -> None:
    c = TestClient(app)
    c.post('/admin/shops', json={"shop": "demo.myshopify.com", "plan": "enterprise"}, headers=ADMIN)

    r = c.post('/admin/shops', json={"shop": "demo.myshopify.com", "accessToken": "shpat_new"}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()['data']['plan'] == "Enterprise"
    assert r.json()['data']['languageLimit'] == 10
