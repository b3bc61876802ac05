"""Heartbeat marker, watchdog health states and restart behaviour."""
import asyncio
import os
import threading
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest

from ingest_agent.heartbeat import HeartbeatWriter, marker_age, touch
from watchdog_agent.main import EmailAlerter, HealthState, Watchdog, restart_argv

T0 = 1_700_000_000.0


class Clock:
    def __init__(self, start: float):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def marker(tmp_path):
    return tmp_path / "heartbeat.txt"


@pytest.fixture
def clock():
    return Clock(T0)


def _watchdog(marker, clock, restart=None, alerter=None, grace=60.0):
    return Watchdog(
        heartbeat_path=marker,
        stale_after=15.0,
        restart=restart or MagicMock(return_value=4321),
        alerter=alerter,
        restart_grace=grace,
        clock=clock,
    )


# =============================================================================
# Heartbeat marker
# =============================================================================


def test_touch_sets_mtime_and_age(marker):
    touch(marker, now=T0)

    assert os.path.getmtime(marker) == pytest.approx(T0)
    assert marker_age(marker, now=T0 + 4) == pytest.approx(4)
    assert "pid=" in marker.read_text()


def test_marker_age_of_missing_file_is_none(marker):
    assert marker_age(marker) is None


@pytest.mark.asyncio
async def test_writer_touches_only_after_successful_check(marker):
    check = MagicMock()

    async def alive():
        check()

    writer = HeartbeatWriter(marker, interval=0.01, check=alive)
    await writer.beat()

    assert marker.exists()
    assert writer.beats == 1
    check.assert_called_once()


@pytest.mark.asyncio
async def test_writer_stops_on_failed_check(marker):
    async def dead():
        raise TimeoutError("no answer")

    writer = HeartbeatWriter(marker, interval=0.01, check=dead)

    with pytest.raises(ConnectionError, match="Active check failed"):
        await writer.run(asyncio.Event())
    assert not marker.exists()


@pytest.mark.asyncio
async def test_writer_run_exits_when_stopped(marker):
    stop = asyncio.Event()
    writer = HeartbeatWriter(marker, interval=0.01)

    task = asyncio.create_task(writer.run(stop))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    assert writer.beats >= 2


# =============================================================================
# Watchdog
# =============================================================================


def test_age_exactly_at_threshold_is_healthy(marker, clock):
    touch(marker, now=T0)
    watchdog = _watchdog(marker, clock)

    assert watchdog.check(T0 + 15.0) == HealthState.HEALTHY
    assert watchdog.check(T0 + 15.001) == HealthState.STALE


def test_missing_marker_triggers_restart(marker, clock):
    restart = MagicMock(return_value=99)
    watchdog = _watchdog(marker, clock, restart=restart)

    assert watchdog.poll_once() == HealthState.MISSING
    restart.assert_called_once()
    assert watchdog.restart_pending


def test_missing_marker_restarts_even_after_healthy_history(marker, clock):
    restart = MagicMock(return_value=99)
    watchdog = _watchdog(marker, clock, restart=restart)
    touch(marker, now=T0)
    assert watchdog.poll_once() == HealthState.HEALTHY

    marker.unlink()
    clock.advance(10)

    assert watchdog.poll_once() == HealthState.MISSING
    restart.assert_called_once()


def test_stale_marker_restarts_exactly_once_across_polls(marker, clock):
    restart = MagicMock(return_value=99)
    watchdog = _watchdog(marker, clock, restart=restart)
    touch(marker, now=T0 - 20)

    for _ in range(5):
        assert watchdog.poll_once() == HealthState.STALE
        clock.advance(10)

    assert restart.call_count == 1
    assert watchdog.restarts == 1


def test_restart_is_retried_after_grace_expires(marker, clock):
    restart = MagicMock(return_value=99)
    watchdog = _watchdog(marker, clock, restart=restart, grace=30.0)
    touch(marker, now=T0 - 20)

    watchdog.poll_once()
    clock.advance(31)
    watchdog.poll_once()

    assert restart.call_count == 2


def test_healthy_poll_clears_pending_restart(marker, clock):
    restart = MagicMock(return_value=99)
    watchdog = _watchdog(marker, clock, restart=restart)
    touch(marker, now=T0 - 20)
    watchdog.poll_once()

    touch(marker, now=clock.now)
    assert watchdog.poll_once() == HealthState.HEALTHY
    assert not watchdog.restart_pending

    clock.advance(20)
    watchdog.poll_once()
    assert restart.call_count == 2


def test_launch_failure_is_retried_on_next_poll(marker, clock):
    restart = MagicMock(side_effect=[OSError("no such file"), 99])
    watchdog = _watchdog(marker, clock, restart=restart)

    watchdog.poll_once()
    assert not watchdog.restart_pending
    watchdog.poll_once()

    assert restart.call_count == 2
    assert watchdog.restarts == 1


def test_alert_failure_does_not_block_restart(marker, clock):
    alerter = MagicMock()
    alerter.send.side_effect = RuntimeError("smtp down")
    restart = MagicMock(return_value=99)
    watchdog = _watchdog(marker, clock, restart=restart, alerter=alerter)

    watchdog.poll_once()

    restart.assert_called_once()
    alerter.send.assert_called_once()
    subject, body = alerter.send.call_args.args
    assert subject == "OPC UA System Restarted"
    assert "missing" in body


def test_run_polls_until_stopped(marker, clock):
    touch(marker, now=T0)
    watchdog = _watchdog(marker, clock)
    stop = threading.Event()
    original = watchdog.poll_once

    def poll_and_stop():
        state = original()
        stop.set()
        return state

    watchdog.poll_once = poll_and_stop
    watchdog.run(0.01, stop)

    assert watchdog.last_state == HealthState.HEALTHY


# =============================================================================
# Alerts
# =============================================================================


def test_alerter_without_credentials_skips_sending():
    alerter = EmailAlerter(user=None, password=None)

    with patch("watchdog_agent.main.smtplib.SMTP_SSL") as smtp:
        assert alerter.send("subject", "body") is False
    smtp.assert_not_called()


def test_alerter_sends_over_ssl():
    alerter = EmailAlerter(user="ops@example.com", password="secret", host="smtp.example.com", port=465)

    with patch("watchdog_agent.main.smtplib.SMTP_SSL") as smtp:
        assert alerter.send("OPC UA System Restarted", "body") is True

    smtp.assert_called_once_with("smtp.example.com", 465, timeout=10.0)
    session = smtp.return_value.__enter__.return_value
    session.login.assert_called_once_with("ops@example.com", "secret")
    message = session.send_message.call_args.args[0]
    assert message["To"] == "ops@example.com"


def test_alerter_reports_smtp_errors():
    alerter = EmailAlerter(user="ops@example.com", password="secret")

    with patch("watchdog_agent.main.smtplib.SMTP_SSL", side_effect=OSError("unreachable")):
        assert alerter.send("s", "b") is False


def test_restart_argv_defaults_to_restart_entrypoint(settings):
    argv = restart_argv(settings)

    assert argv[-2:] == ["-m", "orchestrator.restart"]


def test_restart_argv_uses_configured_command(settings):
    argv = restart_argv(replace(settings, restart_command="systemctl restart 'historian ingest'"))

    assert argv == ["systemctl", "restart", "historian ingest"]
