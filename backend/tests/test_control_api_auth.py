from fastapi import FastAPI
from fastapi.testclient import TestClient

from api import control as control_api


def _build_client(monkeypatch, *, client=("testclient", 50000)) -> TestClient:
    async def _ensure_started(_factory) -> None:
        return None

    async def _stop():
        return {"status": "stopped", "run_id": None, "was_running": False, "cancelled_timers": 0}

    monkeypatch.setattr(control_api.runtime_state, "ensure_started", _ensure_started)
    monkeypatch.setattr(control_api.runtime_state, "stop", _stop)

    app = FastAPI()
    app.include_router(control_api.router)
    return TestClient(app, client=client)


def test_control_auth_rejects_when_api_key_not_configured_by_default(monkeypatch) -> None:
    monkeypatch.delenv("ORCHESTRATOR_API_KEY", raising=False)
    monkeypatch.delenv("ORCHESTRATOR_API_KEY_ALLOW_INSECURE_LOCAL", raising=False)
    with _build_client(monkeypatch) as client:
        response = client.post("/runs/stop")
    assert response.status_code == 401
    detail = response.json().get("detail") or {}
    assert detail.get("error") == "orchestrator_auth_failed"
    assert detail.get("reason") == "api_key_not_configured"


def test_control_auth_allows_loopback_with_insecure_local_override(monkeypatch) -> None:
    monkeypatch.delenv("ORCHESTRATOR_API_KEY", raising=False)
    monkeypatch.setenv("ORCHESTRATOR_API_KEY_ALLOW_INSECURE_LOCAL", "true")
    with _build_client(monkeypatch, client=("127.0.0.1", 50000)) as client:
        response = client.post("/runs/stop")
    assert response.status_code == 200
    assert response.json().get("status") == "stopped"


def test_control_auth_rejects_insecure_local_override_for_non_loopback_client(monkeypatch) -> None:
    monkeypatch.delenv("ORCHESTRATOR_API_KEY", raising=False)
    monkeypatch.setenv("ORCHESTRATOR_API_KEY_ALLOW_INSECURE_LOCAL", "true")
    with _build_client(monkeypatch, client=("203.0.113.10", 50000)) as client:
        response = client.post("/runs/stop")
    assert response.status_code == 401
    detail = response.json().get("detail") or {}
    assert detail.get("reason") == "insecure_local_override_requires_loopback"


def test_control_auth_rejects_wrong_api_key(monkeypatch) -> None:
    monkeypatch.setenv("ORCHESTRATOR_API_KEY", "orchestrator-secret")
    headers = {"X-Orchestrator-API-Key": "nope"}
    with _build_client(monkeypatch) as client:
        response = client.post("/runs/stop", headers=headers)
    assert response.status_code == 401
    detail = response.json().get("detail") or {}
    assert detail.get("reason") == "invalid_or_missing_api_key"


def test_control_auth_accepts_header_key(monkeypatch) -> None:
    monkeypatch.setenv("ORCHESTRATOR_API_KEY", "orchestrator-secret")
    headers = {"X-Orchestrator-API-Key": "orchestrator-secret"}
    with _build_client(monkeypatch) as client:
        response = client.post("/runs/stop", headers=headers)
    assert response.status_code == 200


def test_control_auth_accepts_bearer_token(monkeypatch) -> None:
    monkeypatch.setenv("ORCHESTRATOR_API_KEY", "orchestrator-secret")
    headers = {"Authorization": "Bearer orchestrator-secret"}
    with _build_client(monkeypatch) as client:
        response = client.post("/runs/stop", headers=headers)
    assert response.status_code == 200
