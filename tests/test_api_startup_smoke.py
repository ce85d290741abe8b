import httpx
from fastapi.testclient import TestClient

from orderflow.container import build_container
from tests.fixtures_data import build_encryption

REQUIRED_ROUTES = {
    "/webhooks/whatsapp",
    "/api/meta/exchange-token",
    "/api/orders",
    "/api/orders/{order_id}",
    "/api/payments/providers",
    "/api/payments/webhook/{tenant_id}/{provider}",
    "/api/whatsapp/status",
    "/api/whatsapp/health-check",
}


def test_api_startup_and_router_registration(monkeypatch):
    from orderflow import main

    monkeypatch.setattr(main, "_startup_tasks", lambda: None)
    monkeypatch.setattr(
        main,
        "build_container",
        lambda: build_container(
            http=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={}))),
            encryption=build_encryption(),
        ),
    )

    with TestClient(main.app) as client:
        response = client.get("/")
        health_response = client.get("/health")
        openapi_response = client.get("/openapi.json")
        assert main.app.state.container.engine is not None

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert health_response.json() == {"status": "healthy"}
    assert openapi_response.status_code == 200
    assert response.headers["X-Request-ID"]

    paths = {route.path for route in main.app.routes}
    assert REQUIRED_ROUTES.issubset(paths)
