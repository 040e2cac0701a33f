import asyncio

import pytest

from errors import CommandTransientError, SessionGoneError
from models import NO_SUBTITLES
from services.detector import Normal, OverrideActive
from services.monitor import MonitoringState
from services.override import Active, Inactive

from conftest import make_session


async def poll(monitor, client, clock, t, position, **kwargs):
    clock.now = t
    client.sessions = [make_session(position, **kwargs)]
    await monitor.run_cycle()


async def test_rewind_scenario(monitor, client, clock):
    await poll(monitor, client, clock, 0, 100)
    await poll(monitor, client, clock, 2, 102)
    await poll(monitor, client, clock, 4, 70)

    record = monitor.sessions["plex-1"]
    assert record.override == Active(saved=NO_SUBTITLES, forced="42", confirmed=True)
    assert client.commands == [("plex-1", "42")]

    await poll(monitor, client, clock, 6, 72, subtitle="42")
    assert client.commands == [("plex-1", "42")]

    await poll(monitor, client, clock, 8, 74, subtitle="42")
    assert client.commands == [("plex-1", "42"), ("plex-1", NO_SUBTITLES)]
    assert record.override == Inactive()
    assert record.detector_state == Normal()


async def test_forward_playback_never_overrides(monitor, client, clock):
    for t in range(0, 30, 1):
        await poll(monitor, client, clock, t, 500 + t)
    assert client.commands == []
    assert monitor.sessions["plex-1"].detector_state == Normal()


async def test_repeated_rewinds_keep_original_selection(monitor, client, clock):
    await poll(monitor, client, clock, 0, 100)
    await poll(monitor, client, clock, 1, 101)
    await poll(monitor, client, clock, 2, 97)
    await poll(monitor, client, clock, 3, 90, subtitle="42")
    await poll(monitor, client, clock, 4, 80, subtitle="42")

    record = monitor.sessions["plex-1"]
    assert record.override.saved == NO_SUBTITLES
    assert client.commands == [("plex-1", "42")]


async def test_new_session_is_never_overridden_on_first_sight(monitor, client, clock):
    await poll(monitor, client, clock, 0, 10)
    assert monitor.sessions["plex-1"].detector_state == Normal()
    assert client.commands == []


async def test_vanished_session_is_restored_once_and_removed(monitor, client, clock):
    await poll(monitor, client, clock, 0, 100)
    await poll(monitor, client, clock, 2, 50)
    assert isinstance(monitor.sessions["plex-1"].detector_state, OverrideActive)

    client.sessions = []
    client.command_errors.append(CommandTransientError("player offline"))
    await monitor.run_cycle()
    assert "plex-1" in monitor.sessions  # still within the grace period
    assert monitor.sessions["plex-1"].missed_polls == 1

    await monitor.run_cycle()
    assert "plex-1" not in monitor.sessions
    assert client.commands == [("plex-1", "42"), ("plex-1", NO_SUBTITLES)]

    await monitor.run_cycle()
    assert len(client.commands) == 2


async def test_reappearing_session_resets_missed_polls(monitor, client, clock):
    await poll(monitor, client, clock, 0, 100)
    client.sessions = []
    await monitor.run_cycle()
    await poll(monitor, client, clock, 2, 102)
    assert monitor.sessions["plex-1"].missed_polls == 0


async def test_failed_fetch_leaves_table_untouched(monitor, client, clock):
    await poll(monitor, client, clock, 0, 100)
    client.fail_fetch = True
    for _ in range(5):
        await monitor.run_cycle()

    assert monitor.sessions["plex-1"].missed_polls == 0
    assert monitor.state is MonitoringState.ACTIVE


async def test_transient_command_failure_is_retried_then_dropped(monitor, client, clock):
    client.command_errors = [CommandTransientError("busy"), CommandTransientError("busy")]
    await poll(monitor, client, clock, 0, 100)
    await poll(monitor, client, clock, 2, 50)

    record = monitor.sessions["plex-1"]
    assert len(record.pending) == 1
    assert record.override == Active(saved=NO_SUBTITLES, forced="42", confirmed=False)

    await poll(monitor, client, clock, 4, 52)
    assert len(record.pending) == 0
    assert client.commands == [("plex-1", "42"), ("plex-1", "42")]
    # Override left as-is for a later cycle
    assert isinstance(record.override, Active)


async def test_transient_failure_then_success(monitor, client, clock):
    client.command_errors = [CommandTransientError("busy")]
    await poll(monitor, client, clock, 0, 100)
    await poll(monitor, client, clock, 2, 50)
    await poll(monitor, client, clock, 4, 52)

    record = monitor.sessions["plex-1"]
    assert record.override == Active(saved=NO_SUBTITLES, forced="42", confirmed=True)
    assert not record.pending


async def test_abandoned_restore_is_attempted_again(monitor, client, clock):
    await poll(monitor, client, clock, 0, 100)
    await poll(monitor, client, clock, 2, 50)
    client.command_errors = [CommandTransientError("busy"), CommandTransientError("busy")]
    await poll(monitor, client, clock, 4, 52, subtitle="42")
    await poll(monitor, client, clock, 6, 54, subtitle="42")
    await poll(monitor, client, clock, 8, 56, subtitle="42")

    record = monitor.sessions["plex-1"]
    assert record.detector_state == Normal()
    assert isinstance(record.override, Active)

    await poll(monitor, client, clock, 10, 58, subtitle="42")
    assert record.override == Inactive()
    assert client.commands[-1] == ("plex-1", NO_SUBTITLES)


async def test_session_gone_during_command_disposes(monitor, client, clock):
    await poll(monitor, client, clock, 0, 100)
    client.command_errors = [SessionGoneError("404")]
    await poll(monitor, client, clock, 2, 50)

    assert "plex-1" not in monitor.sessions
    # One best-effort restore after the failed override
    assert client.commands == [("plex-1", "42"), ("plex-1", NO_SUBTITLES)]


async def test_manual_subtitle_change_keeps_users_choice(monitor, client, clock):
    await poll(monitor, client, clock, 0, 100)
    await poll(monitor, client, clock, 2, 50)
    await poll(monitor, client, clock, 4, 52, subtitle="41")
    await poll(monitor, client, clock, 6, 54, subtitle="41")
    await poll(monitor, client, clock, 8, 56, subtitle="41")

    record = monitor.sessions["plex-1"]
    assert record.override == Inactive()
    assert client.commands == [("plex-1", "42")]


async def test_duty_cycle_switches(monitor, client, clock, settings):
    await monitor.run_cycle()
    assert monitor.state is MonitoringState.IDLE
    assert monitor.poll_interval == settings.idle_poll_interval_seconds

    await poll(monitor, client, clock, 0, 100)
    assert monitor.state is MonitoringState.ACTIVE
    assert monitor.poll_interval == settings.active_poll_interval_seconds

    client.sessions = []
    await monitor.run_cycle()
    assert monitor.state is MonitoringState.ACTIVE
    await monitor.run_cycle()
    assert monitor.state is MonitoringState.IDLE


async def test_graceful_stop_restores_overrides(monitor, client, clock):
    await poll(monitor, client, clock, 0, 100)
    await poll(monitor, client, clock, 2, 50)

    monitor.stop()
    await monitor.run()

    assert client.commands == [("plex-1", "42"), ("plex-1", NO_SUBTITLES)]
    assert monitor.running is False


async def test_cancel_leaves_override_active(monitor, client, clock):
    await poll(monitor, client, clock, 0, 100)
    await poll(monitor, client, clock, 2, 50)

    task = asyncio.create_task(monitor.run())
    while monitor.cycles < 3:
        await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert isinstance(monitor.sessions["plex-1"].override, Active)
    assert client.commands == [("plex-1", "42")]


async def test_wake_cuts_idle_sleep_short(monitor):
    task = asyncio.create_task(monitor.run())
    while monitor.cycles < 1:
        await asyncio.sleep(0)
    monitor.wake()
    await asyncio.wait_for(_until(lambda: monitor.cycles >= 2), timeout=2)

    monitor.stop()
    await asyncio.wait_for(task, timeout=2)


async def _until(predicate):
    while not predicate():
        await asyncio.sleep(0)


def test_status(monitor):
    status = monitor.status()
    assert status.state == "idle"
    assert status.tracked_sessions == 0
    assert status.running is False


async def test_rewind_reported_while_buffering_still_overrides(monitor, client, clock):
    await poll(monitor, client, clock, 0, 100)
    await poll(monitor, client, clock, 1, 101)
    await poll(monitor, client, clock, 2, 71, paused=True)
    assert client.commands == []

    await poll(monitor, client, clock, 3, 72)
    await poll(monitor, client, clock, 4, 73)

    assert client.commands == [("plex-1", "42")]
    assert isinstance(monitor.sessions["plex-1"].detector_state, OverrideActive)


async def test_rewind_caught_by_early_wake_poll_still_overrides(monitor, client, clock):
    await poll(monitor, client, clock, 0, 100)
    await poll(monitor, client, clock, 1, 101)
    await poll(monitor, client, clock, 1.2, 71)
    await poll(monitor, client, clock, 2.2, 72)

    assert client.commands == [("plex-1", "42")]


async def test_long_rewind_restores_and_cools_down(monitor, client, clock):
    await poll(monitor, client, clock, 0, 1000)
    await poll(monitor, client, clock, 2, 970)
    assert client.commands == [("plex-1", "42")]

    await poll(monitor, client, clock, 4, 500, subtitle="42")
    record = monitor.sessions["plex-1"]
    assert client.commands == [("plex-1", "42"), ("plex-1", NO_SUBTITLES)]
    assert record.override == Inactive()
    assert record.detector_state == Normal(cooldown=2)

    # Stepping further back with the remote stays quiet during the cooldown
    await poll(monitor, client, clock, 6, 490)
    await poll(monitor, client, clock, 8, 480)
    assert len(client.commands) == 2


async def test_long_rewind_without_override_is_ignored(monitor, client, clock):
    await poll(monitor, client, clock, 0, 1000)
    await poll(monitor, client, clock, 2, 100)
    assert client.commands == []
    assert monitor.sessions["plex-1"].detector_state == Normal(cooldown=2)
