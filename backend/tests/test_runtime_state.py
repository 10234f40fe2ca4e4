from typing import List, Optional

import pytest

from errors import SuggestionApiError
from runtime_state import DiagnosticsTracker, NotificationFeed, RuntimeState
from session_fakes import build_runtime, fast_settings, make_store


class _RecordingSuggester:
    def __init__(self) -> None:
        self.calls: List[tuple] = []

    async def suggest(self, topic: str, credential: Optional[str]) -> List[str]:
        self.calls.append((topic, credential))
        if not credential:
            raise SuggestionApiError("No API key configured. Add your Gemini API key first.")
        return [f"{topic} basics"]


@pytest.mark.asyncio
async def test_suggest_keywords_persists_topic_and_prefers_stored_credential(tmp_path) -> None:
    store = await make_store(tmp_path)
    runtime = await build_runtime(store, settings=fast_settings(keyword_api_key="env-key"))
    suggester = _RecordingSuggester()
    runtime.keyword_client = suggester

    assert await runtime.suggest_keywords(" pottery ") == ["pottery basics"]
    await runtime.set_credential("stored-key")
    await runtime.suggest_keywords("glazes")

    assert suggester.calls == [("pottery", "env-key"), ("glazes", "stored-key")]
    assert (await store.get(["lastTopic"]))["lastTopic"] == "glazes"
    await runtime.shutdown()
    await store.close()


@pytest.mark.asyncio
async def test_suggest_keywords_failure_leaves_run_state_alone(tmp_path) -> None:
    store = await make_store(tmp_path)
    runtime = await build_runtime(store)
    runtime.keyword_client = _RecordingSuggester()
    run_id = await runtime.start(["a"])

    with pytest.raises(SuggestionApiError):
        await runtime.suggest_keywords("pottery")
    with pytest.raises(SuggestionApiError, match="No topic provided"):
        await runtime.suggest_keywords("  ")

    assert await store.get(["isRunning", "runId"]) == {"isRunning": True, "runId": run_id}
    await runtime.shutdown()
    await store.close()


@pytest.mark.asyncio
async def test_status_read_model(tmp_path) -> None:
    store = await make_store(tmp_path)
    runtime = await build_runtime(store)
    run_id = await runtime.start(["a"])

    status = await runtime.status()
    health = await runtime.health()

    assert status["isRunning"] is True
    assert status["runId"] == run_id
    assert status["mode"] == "scheduled"
    assert status["days"] == 7
    assert status["pendingTimers"] == len(await store.timer_names_for_run(run_id))
    assert status["immediateLoop"]["state"] == "idle"
    assert status["hasCredential"] is False
    assert health["started"] is True
    assert health["timers"]["armed"] == status["pendingTimers"]
    assert health["diagnostics"]["stale_total"] == 0
    await runtime.shutdown()
    await store.close()


@pytest.mark.asyncio
async def test_operations_require_started_runtime() -> None:
    runtime = RuntimeState(fast_settings())

    with pytest.raises(RuntimeError, match="not started"):
        await runtime.start(["a"])
    assert (await runtime.health())["started"] is False


@pytest.mark.asyncio
async def test_notification_feed_is_bounded_newest_first_and_calls_listener() -> None:
    feed = NotificationFeed(limit=2)
    heard: List[str] = []

    async def _listener(event) -> None:
        heard.append(event.kind)

    feed.set_listener(_listener)
    await feed.publish("run_started", "started", run_id="r1", timers=3)
    await feed.publish("session_complete", "Watched: a", run_id="r1")
    await feed.publish("run_stopped", "stopped", run_id="r1")

    recent = await feed.recent()
    assert [item["kind"] for item in recent] == ["run_stopped", "session_complete"]
    assert heard == ["run_started", "session_complete", "run_stopped"]
    assert len(await feed.recent(limit=1)) == 1


@pytest.mark.asyncio
async def test_notification_listener_failure_does_not_propagate() -> None:
    feed = NotificationFeed()

    def _listener(_event) -> None:
        raise RuntimeError("listener down")

    feed.set_listener(_listener)
    event = await feed.publish("run_finished", "done")
    assert event.kind == "run_finished"


def test_diagnostics_tracker_counts_per_source() -> None:
    tracker = DiagnosticsTracker(limit=2)
    tracker.record_stale("timer", "run-a", "run-b", detail="session:run-a:000:1")
    tracker.record_stale("result", "run-a", "run-b")
    tracker.record_stale("result", "run-a", None)

    summary = tracker.summary()
    assert summary["stale_total"] == 3
    assert summary["stale_by_source"] == {
        "timer": 1,
        "end_timer": 0,
        "result": 2,
        "immediate_loop": 0,
    }
    assert len(summary["recent_stale"]) == 2
    assert summary["recent_stale"][0]["active_run_id"] is None
