import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from neon_scheduler.core.agent_registry import AgentHandlerRegistry
from neon_scheduler.core.errors import ConcurrentModification
from neon_scheduler.database.models import models as db_models
from neon_scheduler.schemas.scheduler import (
    AgentResult,
    ExecutionOutcome,
    RetryConfig,
    ScheduleCreate,
    ScheduleRunStatus,
    TriggeringEvent,
)
from neon_scheduler.services.dispatcher import Dispatcher
from neon_scheduler.services.execution_history import ExecutionHistory, execution_history
from neon_scheduler.services.schedule_store import schedule_store
from neon_scheduler.services.scheduler_service import scheduler_service

START = datetime(2024, 6, 1, 10, 5, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _create(session_factory, cron="*/5 * * * *", next_run=START, enabled=True, retry_config=None):
    db = session_factory()
    try:
        schedule_in = ScheduleCreate(
            agent_type="EchoAgent",
            cron=cron,
            enabled=enabled,
            config={"topic": "ai"},
            retry_config=retry_config or RetryConfig(max_retries=2),
        )
        return schedule_store.create_schedule(db, schedule_in, timezone_name="UTC", next_run=next_run)
    finally:
        db.close()


def _get(session_factory, schedule_id):
    db = session_factory()
    try:
        return schedule_store.get_schedule(db, schedule_id)
    finally:
        db.close()


def _history(session_factory, schedule_id):
    db = session_factory()
    try:
        return list(reversed(execution_history.query(db, schedule_id=schedule_id)))
    finally:
        db.close()


def _dispatcher(session_factory, registry, clock, **kwargs) -> Dispatcher:
    return Dispatcher(registry, session_factory=session_factory, clock=clock, **kwargs)


def test_successful_run_resets_and_advances_cadence(session_factory) -> None:
    received = []

    async def echo(config):
        received.append(config)
        return {"echo": config["topic"]}

    registry = AgentHandlerRegistry()
    registry.register("EchoAgent", echo)
    clock = FakeClock(START)
    schedule = _create(session_factory)
    dispatcher = _dispatcher(session_factory, registry, clock)

    async def scenario():
        claims = await dispatcher.tick()
        assert [c.schedule.id for c in claims] == [schedule.id]
        await dispatcher.wait_idle()

    asyncio.run(scenario())

    assert received == [{"topic": "ai"}]
    updated = _get(session_factory, schedule.id)
    assert updated.last_status == ScheduleRunStatus.SUCCESS
    assert updated.retry_count == 0
    assert updated.next_run == START + timedelta(minutes=5)
    assert updated.last_run == START
    assert updated.success_rate == 100.0

    [record] = _history(session_factory, schedule.id)
    assert record.outcome == ExecutionOutcome.SUCCESS
    assert record.trigger == TriggeringEvent.CRON
    assert record.result == {"echo": "ai"}


def test_failure_failure_success_follows_backoff_then_resumes(session_factory) -> None:
    calls = []

    async def flaky(config):
        calls.append(config)
        if len(calls) <= 2:
            raise RuntimeError("boom")
        return AgentResult(success=True, output="done")

    registry = AgentHandlerRegistry()
    registry.register("EchoAgent", flaky)
    clock = FakeClock(START)
    schedule = _create(
        session_factory,
        retry_config=RetryConfig(
            max_retries=2, retry_delay_ms=5000, backoff_multiplier=2, max_retry_delay_ms=60000
        ),
    )
    dispatcher = _dispatcher(session_factory, registry, clock)

    async def run_at(moment):
        clock.now = moment
        claims = await dispatcher.tick()
        await dispatcher.wait_idle()
        return claims

    async def scenario():
        assert len(await run_at(START)) == 1
        state = _get(session_factory, schedule.id)
        assert state.last_status == ScheduleRunStatus.PENDING
        assert state.retry_count == 1
        assert state.next_run == START + timedelta(seconds=5)
        assert state.last_error == "boom"

        # Not due yet
        assert await run_at(START + timedelta(seconds=4)) == []

        assert len(await run_at(START + timedelta(seconds=5))) == 1
        state = _get(session_factory, schedule.id)
        assert state.retry_count == 2
        assert state.next_run == START + timedelta(seconds=15)

        assert len(await run_at(START + timedelta(seconds=15))) == 1

    asyncio.run(scenario())

    final = _get(session_factory, schedule.id)
    assert final.last_status == ScheduleRunStatus.SUCCESS
    assert final.retry_count == 0
    assert final.next_run == datetime(2024, 6, 1, 10, 10, tzinfo=timezone.utc)
    assert final.success_rate == pytest.approx(33.33)

    history = _history(session_factory, schedule.id)
    assert [r.trigger for r in history] == [
        TriggeringEvent.CRON,
        TriggeringEvent.RETRY,
        TriggeringEvent.RETRY,
    ]
    assert [r.outcome for r in history] == [
        ExecutionOutcome.FAILURE,
        ExecutionOutcome.FAILURE,
        ExecutionOutcome.SUCCESS,
    ]
    assert [r.retry_attempt for r in history] == [0, 1, 2]


def test_exhausted_retries_mark_failed_and_skip_to_next_occurrence(session_factory) -> None:
    def always_fails(config):
        return AgentResult(success=False, error="upstream unavailable")

    registry = AgentHandlerRegistry()
    registry.register("EchoAgent", always_fails)
    clock = FakeClock(START)
    schedule = _create(session_factory, retry_config=RetryConfig(max_retries=1))
    dispatcher = _dispatcher(session_factory, registry, clock)

    async def scenario():
        await dispatcher.tick()
        await dispatcher.wait_idle()
        clock.now = START + timedelta(seconds=5)
        await dispatcher.tick()
        await dispatcher.wait_idle()

    asyncio.run(scenario())

    final = _get(session_factory, schedule.id)
    assert final.last_status == ScheduleRunStatus.FAILED
    assert final.retry_count == 0
    assert final.last_error == "upstream unavailable"
    assert final.next_run == datetime(2024, 6, 1, 10, 10, tzinfo=timezone.utc)
    # Exhaustion does not disable the schedule
    assert final.enabled is True


def test_timeout_is_recorded_and_retried(session_factory, monkeypatch: pytest.MonkeyPatch) -> None:
    async def slow(config):
        await asyncio.sleep(5)

    registry = AgentHandlerRegistry()
    registry.register("EchoAgent", slow)
    clock = FakeClock(START)
    schedule = _create(session_factory)
    dispatcher = _dispatcher(session_factory, registry, clock)
    monkeypatch.setattr(dispatcher, "_timeout_seconds", lambda schedule: 0.05)

    async def scenario():
        await dispatcher.tick()
        await dispatcher.wait_idle()

    asyncio.run(scenario())

    [record] = _history(session_factory, schedule.id)
    assert record.outcome == ExecutionOutcome.TIMEOUT
    assert "timed out" in record.error
    state = _get(session_factory, schedule.id)
    assert state.last_status == ScheduleRunStatus.PENDING
    assert state.retry_count == 1


def test_unknown_agent_type_is_recorded_as_failure(session_factory) -> None:
    clock = FakeClock(START)
    schedule = _create(session_factory)
    dispatcher = _dispatcher(session_factory, AgentHandlerRegistry(), clock)

    async def scenario():
        await dispatcher.tick()
        await dispatcher.wait_idle()

    asyncio.run(scenario())

    [record] = _history(session_factory, schedule.id)
    assert record.outcome == ExecutionOutcome.FAILURE
    assert "EchoAgent" in record.error


def test_concurrency_limit_bounds_claims_per_tick(session_factory) -> None:
    release = None

    async def blocked(config):
        await release.wait()
        return "ok"

    registry = AgentHandlerRegistry()
    registry.register("EchoAgent", blocked)
    clock = FakeClock(START)
    ids = [_create(session_factory).id for _ in range(3)]
    dispatcher = _dispatcher(session_factory, registry, clock, max_concurrency=2)

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        assert len(await dispatcher.tick()) == 2
        assert dispatcher.in_flight == 2
        # No free slots, nothing claimed
        assert await dispatcher.tick() == []

        release.set()
        await dispatcher.wait_idle()
        assert len(await dispatcher.tick()) == 1
        await dispatcher.wait_idle()

    asyncio.run(scenario())

    assert all(_get(session_factory, i).last_status == ScheduleRunStatus.SUCCESS for i in ids)


def test_manual_trigger_runs_disabled_schedule_and_keeps_next_run(session_factory) -> None:
    async def echo(config):
        return "ok"

    registry = AgentHandlerRegistry()
    registry.register("EchoAgent", echo)
    clock = FakeClock(START)
    future_run = datetime(2024, 6, 2, 9, 0, tzinfo=timezone.utc)
    schedule = _create(session_factory, cron="0 9 * * *", next_run=future_run, enabled=False)
    dispatcher = _dispatcher(session_factory, registry, clock)

    async def scenario():
        response = await dispatcher.trigger(schedule.id)
        assert response.schedule_id == schedule.id
        assert response.status == ScheduleRunStatus.RUNNING
        await dispatcher.wait_idle()
        return response

    response = asyncio.run(scenario())

    state = _get(session_factory, schedule.id)
    assert state.last_status == ScheduleRunStatus.SUCCESS
    assert state.next_run == future_run
    assert state.last_run == START
    [record] = _history(session_factory, schedule.id)
    assert record.id == response.execution_id
    assert record.trigger == TriggeringEvent.MANUAL


def test_manual_trigger_while_running_is_rejected(session_factory) -> None:
    release = None

    async def blocked(config):
        await release.wait()

    registry = AgentHandlerRegistry()
    registry.register("EchoAgent", blocked)
    clock = FakeClock(START)
    schedule = _create(session_factory)
    dispatcher = _dispatcher(session_factory, registry, clock)

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        await dispatcher.trigger(schedule.id)
        with pytest.raises(ConcurrentModification):
            await dispatcher.trigger(schedule.id)
        # The cron tick does not claim it either
        assert await dispatcher.tick() == []
        release.set()
        await dispatcher.wait_idle()

    asyncio.run(scenario())

    assert len(_history(session_factory, schedule.id)) == 1


def test_disabled_schedule_is_not_dispatched(session_factory) -> None:
    registry = AgentHandlerRegistry()
    registry.register("EchoAgent", lambda config: "ok")
    clock = FakeClock(START)
    _create(session_factory, enabled=False)
    dispatcher = _dispatcher(session_factory, registry, clock)

    assert asyncio.run(dispatcher.tick()) == []


def test_schedule_deleted_while_running_is_discarded(session_factory) -> None:
    release = None

    async def blocked(config):
        await release.wait()
        return "ok"

    registry = AgentHandlerRegistry()
    registry.register("EchoAgent", blocked)
    clock = FakeClock(START)
    schedule = _create(session_factory)
    dispatcher = _dispatcher(session_factory, registry, clock)

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        await dispatcher.tick()
        db = session_factory()
        try:
            schedule_store.delete_schedule(db, schedule.id)
        finally:
            db.close()
        release.set()
        await dispatcher.wait_idle()

    asyncio.run(scenario())

    db = session_factory()
    try:
        assert db.query(db_models.Schedule).count() == 0
        assert db.query(db_models.ExecutionRecord).count() == 0
    finally:
        db.close()


def test_late_outcome_after_reclaim_is_discarded(session_factory) -> None:
    release = None

    async def blocked(config):
        await release.wait()
        return "late"

    registry = AgentHandlerRegistry()
    registry.register("EchoAgent", blocked)
    clock = FakeClock(START)
    schedule = _create(session_factory)
    dispatcher = _dispatcher(session_factory, registry, clock)

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        [first] = await dispatcher.tick()

        # Another worker reclaims the schedule after the lease runs out
        db = session_factory()
        try:
            lease_end = START + timedelta(milliseconds=schedule.timeout_ms, seconds=3600)
            [second] = schedule_store.claim_due_schedules(db, lease_end)
        finally:
            db.close()
        assert second.generation == first.generation + 1

        release.set()
        await dispatcher.wait_idle()

    asyncio.run(scenario())

    state = _get(session_factory, schedule.id)
    assert state.last_status == ScheduleRunStatus.RUNNING
    assert state.next_run == START


def test_shutdown_cancels_stragglers(session_factory) -> None:
    async def hangs(config):
        await asyncio.sleep(60)

    registry = AgentHandlerRegistry()
    registry.register("EchoAgent", hangs)
    clock = FakeClock(START)
    schedule = _create(session_factory)
    dispatcher = _dispatcher(session_factory, registry, clock)

    async def scenario():
        await dispatcher.tick()
        await asyncio.sleep(0)
        await dispatcher.shutdown(timeout=0.05)
        assert dispatcher.in_flight == 0
        # No new claims after shutdown
        assert await dispatcher.tick() == []

    asyncio.run(scenario())

    [record] = _history(session_factory, schedule.id)
    assert record.outcome == ExecutionOutcome.FAILURE
    assert record.error == "Cancelled during shutdown"
    # The claim stays until its lease expires
    assert _get(session_factory, schedule.id).last_status == ScheduleRunStatus.RUNNING


def test_enabling_an_enabled_schedule_keeps_its_retry(session_factory) -> None:
    def fails(config):
        raise RuntimeError("boom")

    registry = AgentHandlerRegistry()
    registry.register("EchoAgent", fails)
    clock = FakeClock(START)
    schedule = _create(session_factory, cron="0 9 * * *")
    dispatcher = _dispatcher(session_factory, registry, clock)

    async def scenario():
        await dispatcher.tick()
        await dispatcher.wait_idle()

    asyncio.run(scenario())
    before = _get(session_factory, schedule.id)
    assert before.retry_count == 1

    db = session_factory()
    try:
        toggled = scheduler_service.toggle_schedule(db, schedule.id, True)
    finally:
        db.close()

    assert toggled.enabled is True
    assert toggled.last_status == ScheduleRunStatus.PENDING
    assert toggled.retry_count == 1
    assert toggled.next_run == before.next_run == START + timedelta(seconds=5)


def test_manual_trigger_is_refused_when_all_slots_are_busy(session_factory) -> None:
    release = None

    async def blocked(config):
        await release.wait()

    registry = AgentHandlerRegistry()
    registry.register("EchoAgent", blocked)
    clock = FakeClock(START)
    busy = _create(session_factory)
    idle = _create(session_factory, next_run=START + timedelta(hours=1))
    dispatcher = _dispatcher(session_factory, registry, clock, max_concurrency=1)

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        assert len(await dispatcher.tick()) == 1
        with pytest.raises(ConcurrentModification):
            await dispatcher.trigger(idle.id)
        release.set()
        await dispatcher.wait_idle()

    asyncio.run(scenario())

    assert _get(session_factory, idle.id).last_status == ScheduleRunStatus.PENDING
    assert _history(session_factory, idle.id) == []
    assert len(_history(session_factory, busy.id)) == 1


class FlakyHistory(ExecutionHistory):
    def __init__(self, fail_on_call: int) -> None:
        super().__init__()
        self.fail_on_call = fail_on_call
        self.calls = 0

    def start(self, db, **kwargs):
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise RuntimeError("disk full")
        return super().start(db, **kwargs)


def test_claim_is_released_when_execution_cannot_be_recorded(session_factory) -> None:
    async def echo(config):
        return "ok"

    registry = AgentHandlerRegistry()
    registry.register("EchoAgent", echo)
    clock = FakeClock(START)
    first = _create(session_factory)
    second = _create(session_factory)
    dispatcher = _dispatcher(session_factory, registry, clock, history=FlakyHistory(fail_on_call=2))

    async def scenario():
        claims = await dispatcher.tick()
        assert [c.schedule.id for c in claims] == [first.id]
        await dispatcher.wait_idle()

        released = _get(session_factory, second.id)
        assert released.last_status == ScheduleRunStatus.PENDING
        assert released.next_run == START

        # Picked up again on the next tick
        assert [c.schedule.id for c in await dispatcher.tick()] == [second.id]
        await dispatcher.wait_idle()

    asyncio.run(scenario())

    assert _get(session_factory, first.id).last_status == ScheduleRunStatus.SUCCESS
    assert _get(session_factory, second.id).last_status == ScheduleRunStatus.SUCCESS
