import gc
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from timeflow_server import schemas
from timeflow_server.core.models import SyncEvent, TrackingSession
from timeflow_server.core.utils import ms_to_datetime
from timeflow_server.errors import ActivityNotFoundError
from timeflow_server.services.reconciliation import SessionReconciler, _timeline_locks

T0 = 1_718_000_000_000  # ms since epoch
MINUTE = 60_000


def event(local_id, type_, timestamp, to_activity_id=None, from_activity_id=None):
    return schemas.SyncQueueEvent(
        local_id=local_id,
        type=type_,
        timestamp=timestamp,
        to_activity_id=to_activity_id,
        from_activity_id=from_activity_id,
    )


async def all_sessions(db, user_id):
    result = await db.execute(
        select(TrackingSession).where(TrackingSession.user_id == user_id).order_by(TrackingSession.started_at)
    )
    return result.scalars().all()


async def open_count(db, user_id):
    result = await db.execute(
        select(func.count()).select_from(TrackingSession).where(
            TrackingSession.user_id == user_id, TrackingSession.ended_at.is_(None)
        )
    )
    return result.scalar_one()


def test_switch_closes_previous_at_the_same_instant(make_user, run_db):
    user_id, ids = make_user()

    async def scenario(db):
        reconciler = SessionReconciler(db, user_id)
        async with reconciler.transaction():
            first = await reconciler.switch(ids["Work"], timestamp_ms=T0)
        async with reconciler.transaction():
            second = await reconciler.switch(ids["Exercise"], timestamp_ms=T0 + 30 * MINUTE)
        return first, second, await open_count(db, user_id)

    first, second, open_sessions = run_db(scenario)

    assert first.previous is None
    assert second.previous.id == first.current.id
    assert second.previous.ended_at == second.current.started_at == ms_to_datetime(T0 + 30 * MINUTE)
    assert second.current.activity.name == "Exercise"
    assert open_sessions == 1


def test_switch_to_unknown_activity_changes_nothing(make_user, run_db):
    user_id, ids = make_user()
    _, other_ids = make_user(email="other@example.com")

    async def scenario(db):
        reconciler = SessionReconciler(db, user_id)
        async with reconciler.transaction():
            await reconciler.switch(ids["Work"], timestamp_ms=T0)
        with pytest.raises(ActivityNotFoundError):
            async with reconciler.transaction():
                await reconciler.switch(other_ids["Work"], timestamp_ms=T0 + MINUTE, local_id="switch_x")
        open_session = await reconciler.get_open_session()
        return open_session, await reconciler.already_processed(["switch_x"])

    open_session, processed = run_db(scenario)

    assert open_session.activity_id == ids["Work"]
    assert processed == set()


def test_stop_while_idle_is_a_noop_but_recorded(make_user, run_db):
    user_id, _ = make_user()

    async def scenario(db):
        reconciler = SessionReconciler(db, user_id)
        async with reconciler.transaction():
            result = await reconciler.stop(timestamp_ms=T0, local_id="stop_1")
        return result, await reconciler.already_processed(["stop_1"]), await all_sessions(db, user_id)

    result, processed, sessions = run_db(scenario)

    assert result.session is None
    assert processed == {"stop_1"}
    assert sessions == []


def test_stop_before_session_start_collapses_to_zero_length(make_user, run_db):
    user_id, ids = make_user()

    async def scenario(db):
        reconciler = SessionReconciler(db, user_id)
        async with reconciler.transaction():
            await reconciler.switch(ids["Work"], timestamp_ms=T0)
        async with reconciler.transaction():
            return await reconciler.stop(timestamp_ms=T0 - 5 * MINUTE)

    result = run_db(scenario)

    assert result.session.ended_at == result.session.started_at


def test_reloaded_sessions_carry_utc_timestamps(make_user, run_db):
    user_id, ids = make_user()

    async def scenario(db):
        reconciler = SessionReconciler(db, user_id)
        async with reconciler.transaction():
            await reconciler.switch(ids["Work"], timestamp_ms=T0)
        db.expire_all()
        async with reconciler.transaction():
            result = await reconciler.stop(timestamp_ms=T0 + MINUTE)
        db.expire_all()
        return result, await all_sessions(db, user_id)

    result, sessions = run_db(scenario)

    assert result.session.started_at == ms_to_datetime(T0)
    assert sessions[0].started_at.tzinfo is not None
    assert sessions[0].ended_at == ms_to_datetime(T0 + MINUTE)
    assert sessions[0].created_at.tzinfo is not None


def test_timeline_locks_are_dropped_once_idle(make_user, run_db):
    user_id, ids = make_user()

    async def scenario(db):
        reconciler = SessionReconciler(db, user_id)
        async with reconciler.transaction():
            held = user_id in _timeline_locks
            await reconciler.switch(ids["Work"], timestamp_ms=T0)
        return held

    assert run_db(scenario)
    gc.collect()
    assert user_id not in _timeline_locks


def test_repeated_switch_local_id_is_idempotent(make_user, run_db):
    user_id, ids = make_user()

    async def scenario(db):
        reconciler = SessionReconciler(db, user_id)
        async with reconciler.transaction():
            first = await reconciler.switch(ids["Work"], timestamp_ms=T0, local_id="switch_a")
        async with reconciler.transaction():
            again = await reconciler.switch(ids["Work"], timestamp_ms=T0, local_id="switch_a")
        return first, again, await all_sessions(db, user_id)

    first, again, sessions = run_db(scenario)

    assert again.replayed
    assert again.current.id == first.current.id
    assert len(sessions) == 1


def test_replay_applies_events_in_timestamp_order(make_user, run_db):
    user_id, ids = make_user()
    batch = [
        event("stop_3", "STOP", T0 + 90 * MINUTE, from_activity_id=ids["Exercise"]),
        event("switch_1", "SWITCH", T0, to_activity_id=ids["Work"]),
        event("switch_2", "SWITCH", T0 + 60 * MINUTE, to_activity_id=ids["Exercise"], from_activity_id=ids["Work"]),
    ]

    async def scenario(db):
        outcome = await SessionReconciler(db, user_id).replay(batch)
        return outcome, await all_sessions(db, user_id), await open_count(db, user_id)

    outcome, sessions, open_sessions = run_db(scenario)

    assert outcome.processed_local_ids == ["switch_1", "switch_2", "stop_3"]
    assert outcome.skipped_count == 0
    assert [s.activity_id for s in sessions] == [ids["Work"], ids["Exercise"]]
    assert sessions[0].ended_at == sessions[1].started_at
    assert sessions[1].ended_at - sessions[1].started_at == timedelta(minutes=30)
    assert open_sessions == 0


def test_replaying_the_same_batch_twice_skips_everything(make_user, run_db):
    user_id, ids = make_user()
    batch = [
        event("switch_1", "SWITCH", T0, to_activity_id=ids["Work"]),
        event("switch_2", "SWITCH", T0 + MINUTE, to_activity_id=ids["Exercise"]),
    ]

    async def scenario(db):
        first = await SessionReconciler(db, user_id).replay(batch)
        before = [(s.id, s.ended_at) for s in await all_sessions(db, user_id)]
        second = await SessionReconciler(db, user_id).replay(batch)
        db.expire_all()
        after = [(s.id, s.ended_at) for s in await all_sessions(db, user_id)]
        return first, second, before, after

    first, second, before, after = run_db(scenario)

    assert first.processed_local_ids == ["switch_1", "switch_2"]
    assert second.processed_local_ids == []
    assert second.skipped_count == 2
    assert sorted(second.skipped_local_ids) == ["switch_1", "switch_2"]
    assert before == after


def test_duplicates_within_one_batch_are_skipped(make_user, run_db):
    user_id, ids = make_user()
    batch = [
        event("switch_1", "SWITCH", T0, to_activity_id=ids["Work"]),
        event("switch_1", "SWITCH", T0, to_activity_id=ids["Work"]),
    ]

    async def scenario(db):
        return await SessionReconciler(db, user_id).replay(batch), await all_sessions(db, user_id)

    outcome, sessions = run_db(scenario)

    assert outcome.processed_local_ids == ["switch_1"]
    assert outcome.skipped_count == 1
    assert len(sessions) == 1


def test_bad_event_is_rejected_without_blocking_the_batch(make_user, run_db):
    user_id, ids = make_user()
    batch = [
        event("switch_1", "SWITCH", T0, to_activity_id=ids["Work"]),
        event("switch_bad", "SWITCH", T0 + MINUTE, to_activity_id=999_999),
        event("switch_missing", "SWITCH", T0 + 2 * MINUTE),
        event("stop_1", "STOP", T0 + 3 * MINUTE),
    ]

    async def scenario(db):
        outcome = await SessionReconciler(db, user_id).replay(batch)
        ledger = (await db.execute(select(SyncEvent.local_id).where(SyncEvent.user_id == user_id))).scalars().all()
        return outcome, set(ledger), await all_sessions(db, user_id)

    outcome, ledger, sessions = run_db(scenario)

    assert outcome.processed_local_ids == ["switch_1", "stop_1"]
    assert outcome.rejected_local_ids == ["switch_bad", "switch_missing"]
    assert ledger == {"switch_1", "stop_1"}
    assert len(sessions) == 1
    assert sessions[0].ended_at == ms_to_datetime(T0 + 3 * MINUTE)


def test_users_do_not_see_each_others_ledger(make_user, run_db):
    alice, alice_ids = make_user(email="alice@example.com")
    bob, bob_ids = make_user(email="bob@example.com")

    async def scenario(db):
        a = await SessionReconciler(db, alice).replay([event("switch_1", "SWITCH", T0, to_activity_id=alice_ids["Work"])])
        b = await SessionReconciler(db, bob).replay([event("switch_1", "SWITCH", T0, to_activity_id=bob_ids["Work"])])
        return a, b

    a, b = run_db(scenario)

    assert a.processed_local_ids == ["switch_1"]
    assert b.processed_local_ids == ["switch_1"]
