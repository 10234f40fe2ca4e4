import pytest

from errors import AlreadyRunningError
from models import (
    DAY_MS,
    TIMER_KIND_END,
    TIMER_KIND_SESSION,
    TIMER_STATUS_CANCELLED,
    TIMER_STATUS_PENDING,
    RunMode,
    ScheduleEntry,
)
from run_manager import days_completed, normalize_keywords
from session_fakes import START_TS, FakeWorker, ManualClock, build_runtime, fast_settings, make_store


@pytest.mark.asyncio
async def test_start_registers_week_of_sessions_plus_terminal_timer(tmp_path) -> None:
    store = await make_store(tmp_path)
    runtime = await build_runtime(store)

    run_id = await runtime.start(["a", "b"])

    entries = await store.list_schedule_entries(run_id=run_id)
    sessions = [item for item in entries if item.kind == TIMER_KIND_SESSION]
    ends = [item for item in entries if item.kind == TIMER_KIND_END]
    assert 21 <= len(sessions) <= 35
    assert len(ends) == 1
    assert ends[0].fires_at_ms == START_TS + 7 * DAY_MS + 60 * 1000
    assert all(item.status == TIMER_STATUS_PENDING for item in entries)
    assert sorted(runtime.timers.armed_names(run_id)) == sorted(item.timer_name for item in entries)

    state = await store.get(["isRunning", "runId", "mode", "keywords", "startTs", "daysCompleted"])
    assert state == {
        "isRunning": True,
        "runId": run_id,
        "mode": RunMode.SCHEDULED.value,
        "keywords": ["a", "b"],
        "startTs": START_TS,
        "daysCompleted": 0,
    }
    await runtime.shutdown()
    await store.close()


@pytest.mark.asyncio
async def test_second_start_fails_and_keeps_original_run(tmp_path) -> None:
    store = await make_store(tmp_path)
    runtime = await build_runtime(store)
    first = await runtime.start(["a"])

    with pytest.raises(AlreadyRunningError) as exc_info:
        await runtime.start(["b"])
    with pytest.raises(AlreadyRunningError):
        await runtime.start_immediate(["c"])

    assert exc_info.value.run_id == first
    state = await store.get(["isRunning", "runId", "keywords"])
    assert state == {"isRunning": True, "runId": first, "keywords": ["a"]}
    assert len(await store.list_schedule_entries()) == len(
        await store.list_schedule_entries(run_id=first)
    )
    kinds = [item["kind"] for item in await runtime.notifications.recent()]
    assert kinds.count("already_running") == 2
    await runtime.shutdown()
    await store.close()


@pytest.mark.asyncio
async def test_start_survives_restart_check_against_persisted_state(tmp_path) -> None:
    store = await make_store(tmp_path)
    runtime = await build_runtime(store)
    first = await runtime.start(["a"])
    await runtime.shutdown()

    restarted = await build_runtime(store)
    with pytest.raises(AlreadyRunningError) as exc_info:
        await restarted.start(["b"])

    assert exc_info.value.run_id == first
    assert sorted(restarted.timers.armed_names(first)) == sorted(
        await store.timer_names_for_run(first)
    )
    await restarted.shutdown()
    await store.close()


@pytest.mark.asyncio
async def test_restart_cancels_timers_left_pending_by_interrupted_stop(tmp_path) -> None:
    store = await make_store(tmp_path)
    runtime = await build_runtime(store)
    run_id = await runtime.start(["a"])
    await runtime.shutdown()
    # Run state cleared, but the process died before its timers were cancelled.
    await store.set({"isRunning": False, "runId": None})

    restarted = await build_runtime(store)

    assert restarted.timers.armed_names() == []
    entries = await store.list_schedule_entries(run_id=run_id)
    assert entries
    assert all(item.status == TIMER_STATUS_CANCELLED for item in entries)
    await restarted.shutdown()
    await store.close()


@pytest.mark.asyncio
async def test_stop_cancels_only_active_run_timers_and_keeps_logs(tmp_path) -> None:
    store = await make_store(tmp_path)
    runtime = await build_runtime(store)
    leftover = ScheduleEntry(
        timer_name="session:run-old:000:1", run_id="run-old", fires_at_ms=START_TS + DAY_MS
    )
    await runtime.timers.register([leftover])
    await store.set({"logs": [{"kind": "success", "keyword": "old", "watchSeconds": 1, "timestamp": 1}]})
    run_id = await runtime.start(["a"])

    result = await runtime.stop()

    assert result["status"] == "stopped"
    assert result["run_id"] == run_id
    assert result["was_running"] is True
    statuses = {item.status for item in await store.list_schedule_entries(run_id=run_id)}
    assert statuses == {TIMER_STATUS_CANCELLED}
    assert runtime.timers.armed_names(run_id) == []
    assert runtime.timers.armed_names("run-old") == [leftover.timer_name]
    assert await store.timer_names_for_run("run-old") == [leftover.timer_name]

    state = await store.get(["isRunning", "runId", "mode", "keywords", "logs"])
    assert state["isRunning"] is False
    assert state["runId"] is None
    assert state["mode"] is None
    assert state["keywords"] == ["a"]
    assert len(state["logs"]) == 1
    await runtime.shutdown()
    await store.close()


@pytest.mark.asyncio
async def test_stop_without_active_run_is_a_noop(tmp_path) -> None:
    store = await make_store(tmp_path)
    runtime = await build_runtime(store)

    first = await runtime.stop()
    second = await runtime.stop()

    assert first == second == {
        "status": "stopped",
        "run_id": None,
        "was_running": False,
        "cancelled_timers": 0,
    }
    await runtime.shutdown()
    await store.close()


@pytest.mark.asyncio
async def test_end_timer_finishes_run_regardless_of_progress(tmp_path) -> None:
    store = await make_store(tmp_path)
    runtime = await build_runtime(store)
    run_id = await runtime.start(["a"])

    assert await runtime.timers.fire(f"end:{run_id}") is True

    state = await store.get(["isRunning", "runId", "daysCompleted"])
    assert state["isRunning"] is False
    assert state["runId"] is None
    assert await store.timer_names_for_run(run_id) == []
    assert runtime.timers.armed_names(run_id) == []
    kinds = [item["kind"] for item in await runtime.notifications.recent()]
    assert kinds[0] == "run_finished"
    await runtime.shutdown()
    await store.close()


@pytest.mark.asyncio
async def test_stale_end_timer_does_not_touch_the_new_run(tmp_path) -> None:
    store = await make_store(tmp_path)
    runtime = await build_runtime(store)
    await store.upsert_schedule_entries(
        [ScheduleEntry(timer_name="end:run-old", run_id="run-old", fires_at_ms=START_TS, kind=TIMER_KIND_END)]
    )
    run_id = await runtime.start(["a"])

    assert await runtime.timers.fire("end:run-old") is True

    state = await store.get(["isRunning", "runId"])
    assert state == {"isRunning": True, "runId": run_id}
    assert runtime.diagnostics.stale_count("end_timer") == 1
    await runtime.shutdown()
    await store.close()


@pytest.mark.asyncio
async def test_record_progress_counts_started_days_and_clamps(tmp_path) -> None:
    store = await make_store(tmp_path)
    clock = ManualClock()
    runtime = await build_runtime(store, clock=clock)
    run_id = await runtime.start(["a"])

    clock.advance(int(2.5 * DAY_MS))
    assert await runtime.run_manager.record_progress(run_id) == 3
    clock.advance(10 * DAY_MS)
    assert await runtime.run_manager.record_progress(run_id) == 7
    assert await runtime.run_manager.record_progress("run-other") is None

    assert (await store.get(["daysCompleted"]))["daysCompleted"] == 7
    await runtime.shutdown()
    await store.close()


def test_normalize_keywords_trims_caps_and_falls_back() -> None:
    settings = fast_settings(max_keywords=3)

    assert normalize_keywords(["  a ", "", "b", "c", "d"], settings) == ["a", "b", "c"]
    assert normalize_keywords(["  ", ""], settings) == list(settings.default_keywords)
    assert normalize_keywords(None, settings) == list(settings.default_keywords)


def test_days_completed_formula() -> None:
    assert days_completed(START_TS, 7, START_TS) == 1
    assert days_completed(START_TS, 7, START_TS + DAY_MS - 1) == 1
    assert days_completed(START_TS, 7, START_TS + DAY_MS) == 2
    assert days_completed(START_TS, 7, START_TS + 30 * DAY_MS) == 7


@pytest.mark.asyncio
async def test_immediate_start_registers_no_timers(tmp_path) -> None:
    store = await make_store(tmp_path)
    worker = FakeWorker()
    runtime = await build_runtime(store, worker=worker)

    run_id = await runtime.start_immediate([])

    assert await store.list_schedule_entries(run_id=run_id) == []
    state = await store.get(["mode", "keywords", "isRunning"])
    assert state["mode"] == RunMode.IMMEDIATE.value
    assert state["keywords"] == list(runtime.settings.default_keywords)
    await runtime.stop()
    for handle in worker.handles:
        if handle.pending:
            handle.resolve()
    await runtime.shutdown()
    await store.close()
