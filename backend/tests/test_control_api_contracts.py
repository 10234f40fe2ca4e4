import asyncio
from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api import control as control_api
from db.state_store import StateStore
from errors import AlreadyRunningError, SuggestionApiError
from runtime_state import RuntimeState
from session_fakes import FakeWorker, fast_settings, sqlite_url, success_result

_HEADERS = {"X-Orchestrator-API-Key": "contract-secret"}


@pytest.fixture(autouse=True)
def _api_key(monkeypatch) -> None:
    monkeypatch.setenv("ORCHESTRATOR_API_KEY", "contract-secret")


def _stub_client(monkeypatch, **methods) -> TestClient:
    async def _ensure_started(_factory) -> None:
        return None

    monkeypatch.setattr(control_api.runtime_state, "ensure_started", _ensure_started)
    for name, fn in methods.items():
        monkeypatch.setattr(control_api.runtime_state, name, fn)

    app = FastAPI()
    app.include_router(control_api.router)
    return TestClient(app)


def test_start_conflict_returns_409_with_active_run_id(monkeypatch) -> None:
    async def _start(_keywords):
        raise AlreadyRunningError("run-1700000000000-abc123")

    with _stub_client(monkeypatch, start=_start) as client:
        response = client.post("/runs/start", json={"keywords": ["a"]}, headers=_HEADERS)

    assert response.status_code == 409
    payload = response.json()
    assert payload["error"] == "already_running"
    assert payload["run_id"] == "run-1700000000000-abc123"


def test_start_immediate_passes_keywords_through(monkeypatch) -> None:
    received = {}

    async def _start_immediate(keywords):
        received["keywords"] = keywords
        return "immediate-1-ffffff"

    with _stub_client(monkeypatch, start_immediate=_start_immediate) as client:
        response = client.post(
            "/runs/start-immediate", json={"keywords": ["x", "y"]}, headers=_HEADERS
        )

    assert response.status_code == 200
    assert response.json() == {"status": "started", "run_id": "immediate-1-ffffff"}
    assert received["keywords"] == ["x", "y"]


def test_suggest_keywords_failure_is_reported_as_error_message(monkeypatch) -> None:
    async def _suggest(_topic):
        raise SuggestionApiError("API error: 403", status_code=403)

    with _stub_client(monkeypatch, suggest_keywords=_suggest) as client:
        response = client.post("/runs/suggest-keywords", json={"topic": "bread"}, headers=_HEADERS)

    assert response.status_code == 200
    assert response.json() == {"error": "API error: 403"}


def test_suggest_keywords_success(monkeypatch) -> None:
    async def _suggest(topic):
        return [f"{topic} recipes", f"{topic} tips"]

    with _stub_client(monkeypatch, suggest_keywords=_suggest) as client:
        response = client.post("/runs/suggest-keywords", json={"topic": "bread"}, headers=_HEADERS)

    assert response.json() == {"keywords": ["bread recipes", "bread tips"]}


def test_logs_limit_is_validated(monkeypatch) -> None:
    async def _logs(_limit):
        return []

    with _stub_client(monkeypatch, logs=_logs) as client:
        response = client.get("/runs/logs", params={"limit": 0}, headers=_HEADERS)

    assert response.status_code == 422


def test_full_flow_against_real_runtime(tmp_path, monkeypatch) -> None:
    url = sqlite_url(tmp_path / "api.db")
    bootstrap = StateStore(url)

    async def _bootstrap() -> None:
        await bootstrap.init_db()
        await bootstrap.close()

    asyncio.run(_bootstrap())

    store = StateStore(url)
    runtime = RuntimeState(fast_settings())
    runtime.worker = FakeWorker(auto_result=success_result)
    monkeypatch.setattr(control_api, "runtime_state", runtime)
    monkeypatch.setattr(control_api, "get_state_store", lambda: store)

    @asynccontextmanager
    async def _lifespan(_app):
        yield
        await runtime.shutdown()
        await store.close()

    app = FastAPI(lifespan=_lifespan)
    app.include_router(control_api.router)

    with TestClient(app) as client:
        started = client.post("/runs/start", json={"keywords": [" a ", "b"]}, headers=_HEADERS)
        assert started.status_code == 200
        run_id = started.json()["run_id"]

        again = client.post("/runs/start", headers=_HEADERS)
        assert again.status_code == 409
        assert again.json()["run_id"] == run_id

        status_payload = client.get("/runs/status", headers=_HEADERS).json()
        assert status_payload["isRunning"] is True
        assert status_payload["runId"] == run_id
        assert status_payload["keywords"] == ["a", "b"]
        assert 22 <= status_payload["pendingTimers"] <= 36

        stopped = client.post("/runs/stop", headers=_HEADERS).json()
        assert stopped["status"] == "stopped"
        assert stopped["run_id"] == run_id

        status_payload = client.get("/runs/status", headers=_HEADERS).json()
        assert status_payload["isRunning"] is False
        assert status_payload["pendingTimers"] == 0

        notifications = client.get("/runs/notifications", headers=_HEADERS).json()
        kinds = [item["kind"] for item in notifications["notifications"]]
        assert kinds == ["run_stopped", "already_running", "run_started"]

        assert client.get("/runs/logs", headers=_HEADERS).json() == {"logs": []}
        assert client.delete("/runs/logs", headers=_HEADERS).json() == {"ok": True}

        credential = client.put(
            "/runs/credential", json={"credential": "gemini-key"}, headers=_HEADERS
        ).json()
        assert credential == {"ok": True, "hasCredential": True}
