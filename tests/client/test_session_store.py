from datetime import timedelta

import pytest

from timeflow_client import config
from timeflow_client.errors import AuthError, ConflictError, RequestRejectedError, TransientNetworkError
from timeflow_client.timer import (
    TEMP_SESSION_ID,
    InvalidTransitionError,
    LocalSessionStore,
    SessionSyncState,
    format_elapsed,
)


def queued(driver):
    return [(e.type, e.from_activity_id, e.to_activity_id) for e in driver.queue.events]


@pytest.fixture
def confirmed_work(timer, api, activities, clock, server_session):
    """The store tracking Work (session 10), confirmed by the server."""
    api.switch.return_value = {"currentSession": server_session(10, activities.get(2), clock())}
    timer.switch_activity(2, activities.get(2))
    api.switch.reset_mock()
    return timer


def test_online_switch_adopts_the_server_session(timer, api, activities, clock, server_session, store):
    api.switch.return_value = {"currentSession": server_session(10, activities.get(2), clock())}

    timer.switch_activity(2, activities.get(2))

    args = api.switch.call_args.args
    assert args[0] == 2
    assert args[2].startswith("switch_")
    assert timer.current_session.id == 10
    assert timer.sync_state == SessionSyncState.CONFIRMED
    assert store.get_json(config.STORAGE_KEY_SESSION)["id"] == 10


def test_offline_switch_is_queued_and_kept(timer, api, driver, activities, clock):
    driver.go_offline()

    timer.switch_activity(3, activities.get(3))

    api.switch.assert_not_called()
    assert timer.current_session.id == TEMP_SESSION_ID
    assert timer.current_session.activity.name == "Coding"
    assert timer.current_session.started_at == clock()
    assert timer.is_tracking
    assert timer.sync_state == SessionSyncState.OPTIMISTIC
    assert queued(driver) == [("SWITCH", None, 3)]


def test_failed_online_switch_reverts_and_queues(confirmed_work, api, driver, activities):
    timer = confirmed_work
    api.switch.side_effect = TransientNetworkError("timeout")

    timer.switch_activity(3, activities.get(3))

    assert timer.current_session.id == 10
    assert timer.current_session.activity.name == "Work"
    assert timer.is_tracking
    assert timer.sync_state == SessionSyncState.OPTIMISTIC
    assert queued(driver) == [("SWITCH", 2, 3)]
    assert not driver.network_reachable


def test_auth_failure_on_switch_also_queues(confirmed_work, api, driver, activities):
    api.switch.side_effect = AuthError("expired")

    confirmed_work.switch_activity(3, activities.get(3))

    assert confirmed_work.current_session.activity_id == 2
    assert queued(driver) == [("SWITCH", 2, 3)]
    assert driver.network_reachable


def test_conflicting_switch_is_queued_for_retry(confirmed_work, api, driver, activities):
    api.switch.side_effect = ConflictError("Session timeline changed concurrently, retry the request")

    confirmed_work.switch_activity(3, activities.get(3))

    assert confirmed_work.current_session.id == 10
    assert confirmed_work.sync_state == SessionSyncState.OPTIMISTIC
    assert queued(driver) == [("SWITCH", 2, 3)]
    assert driver.network_reachable


def test_rejected_switch_reverts_without_queueing(confirmed_work, api, driver):
    api.switch.side_effect = RequestRejectedError(404, "Target activity not found")

    confirmed_work.switch_activity(99, {"id": 99, "name": "Gone"})

    assert confirmed_work.current_session.id == 10
    assert confirmed_work.sync_state == SessionSyncState.CONFIRMED
    assert driver.pending_count == 0


def test_queued_events_are_flushed_before_a_direct_call(confirmed_work, api, driver, activities, clock, server_session):
    driver.go_offline()
    confirmed_work.stop_tracking()
    driver.forced_offline = False
    api.switch.return_value = {"currentSession": server_session(11, activities.get(3), clock())}
    api.reset_mock()

    confirmed_work.switch_activity(3, activities.get(3))

    calls = [name for name, _, _ in api.mock_calls if name in ("sync", "switch", "get_current_session")]
    assert calls == ["sync", "switch"]
    assert driver.pending_count == 0
    assert confirmed_work.current_session.id == 11


def test_switch_is_queued_behind_events_that_failed_to_flush(confirmed_work, api, driver, activities):
    driver.go_offline()
    confirmed_work.stop_tracking()
    driver.forced_offline = False
    api.sync.side_effect = TransientNetworkError("down")

    confirmed_work.switch_activity(3, activities.get(3))

    api.switch.assert_not_called()
    assert [t for t, _, _ in queued(driver)] == ["STOP", "SWITCH"]
    assert confirmed_work.current_session.activity_id == 3


def test_stop_online(confirmed_work, api, store):
    stopped = confirmed_work.stop_tracking()

    assert stopped.id == 10
    api.stop.assert_called_once()
    assert api.stop.call_args.args[1].startswith("stop_")
    assert confirmed_work.current_session is None
    assert not confirmed_work.is_tracking
    assert confirmed_work.sync_state == SessionSyncState.CONFIRMED
    assert store.get_json(config.STORAGE_KEY_SESSION) is None


def test_failed_stop_stays_stopped_and_queues(confirmed_work, api, driver):
    api.stop.side_effect = TransientNetworkError("timeout")

    confirmed_work.stop_tracking()

    assert confirmed_work.current_session is None
    assert not confirmed_work.is_tracking
    assert confirmed_work.sync_state == SessionSyncState.OPTIMISTIC
    assert queued(driver) == [("STOP", 2, None)]


def test_stop_while_idle_does_nothing(timer, api, driver):
    assert timer.stop_tracking() is None
    api.stop.assert_not_called()
    assert driver.pending_count == 0


def test_resume_switches_to_the_default_activity(timer, api, driver):
    driver.go_offline()
    timer.resume_tracking()
    assert timer.current_session.activity.name == "Idle"


def test_live_clock_has_a_single_handle(timer, scheduler, driver, activities, clock):
    driver.go_offline()

    timer.switch_activity(2, activities.get(2))
    timer.switch_activity(3, activities.get(3))
    assert len(scheduler.get_jobs()) == 1
    assert timer.clock_running

    clock.advance(hours=1, minutes=2, seconds=3)
    timer.tick()
    assert timer.formatted_time == "01:02:03"

    timer.stop_tracking()
    assert scheduler.get_jobs() == []
    assert not timer.clock_running
    assert timer.elapsed_ms == 0

    timer.teardown()
    timer.teardown()
    assert scheduler.get_jobs() == []


def test_restore_uses_the_snapshot_without_a_fetch(
    store, api, driver, activities, scheduler, clock, confirmed_work
):
    clock.advance(minutes=5)
    restarted = LocalSessionStore(store, api, driver, activities, scheduler, clock=clock)
    api.get_current_session.reset_mock()

    restarted.init()

    api.get_current_session.assert_not_called()
    assert restarted.current_session.id == 10
    assert restarted.is_tracking
    assert restarted.elapsed_ms == 5 * 60 * 1000
    assert not restarted.is_loading
    restarted.teardown()


def test_corrupt_snapshot_falls_back_to_the_server(store, api, driver, activities, scheduler, clock, server_session):
    store.set_json(config.STORAGE_KEY_SESSION, {"id": "nope"})
    api.get_current_session.return_value = server_session(7, activities.get(2), clock() - timedelta(minutes=1))
    restored = LocalSessionStore(store, api, driver, activities, scheduler, clock=clock)

    restored.init()

    assert restored.current_session.id == 7
    assert restored.elapsed_ms == 60 * 1000
    restored.teardown()


def test_failed_fetch_keeps_the_local_snapshot(confirmed_work, api, store):
    api.get_current_session.side_effect = TransientNetworkError("down")

    confirmed_work.fetch_current_session()

    assert confirmed_work.current_session.id == 10
    assert store.get_json(config.STORAGE_KEY_SESSION)["id"] == 10


def test_fetch_does_not_override_unsynced_changes(confirmed_work, api, driver):
    driver.go_offline()
    confirmed_work.stop_tracking()
    driver.forced_offline = False
    api.get_current_session.reset_mock()

    confirmed_work.fetch_current_session()

    api.get_current_session.assert_not_called()
    assert confirmed_work.current_session is None


def test_sync_refreshes_the_session_from_the_server(timer, api, driver, activities, clock, server_session):
    driver.go_offline()
    timer.switch_activity(3, activities.get(3))
    api.get_current_session.return_value = server_session(12, activities.get(3), clock())

    driver.try_go_online()

    assert driver.pending_count == 0
    assert timer.current_session.id == 12
    assert timer.sync_state == SessionSyncState.CONFIRMED


def test_transition_table_rejects_unknown_moves(timer):
    assert timer.sync_state == SessionSyncState.CONFIRMED
    with pytest.raises(InvalidTransitionError):
        timer._transition(SessionSyncState.REVERT_PENDING)


def test_format_elapsed():
    assert format_elapsed(0) == "00:00:00"
    assert format_elapsed(59_999) == "00:00:59"
    assert format_elapsed(36 * 3600 * 1000) == "36:00:00"
