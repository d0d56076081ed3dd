from fastapi.testclient import TestClient

from whatsmetrics.main import app


def test_health() -> None:
    client = TestClient(app)
    response = client.get("/api/v1/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_root_health_echoes_request_id() -> None:
    client = TestClient(app)
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "req-123"
