from fastapi.testclient import TestClient

from bulk_seo.api.main import app


def test_version() -> None:
    c = TestClient(app)
    r = c.get('/version')
    assert r.status_code == 200
    assert 'version' in r.json()['data']
    assert r.json()['meta']['model_version'] == r.json()['data']['version']
