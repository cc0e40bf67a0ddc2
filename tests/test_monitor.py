"""Unit tests for the security monitor and countdown."""

import asyncio

import pytest

from cbt_portal.session.events import (
    EnvironmentSignal,
    FullscreenChanged,
    KeyPress,
    ShortcutBlocked,
    SignalKind,
    TimeExpired,
    VisibilityLost,
    WarningThreshold,
)
from cbt_portal.session.monitor import SecurityMonitor, format_time, is_blocked_shortcut
from tests.fakes import FakeSignalSource


def _monitor(remaining=3600, **kwargs):
    events = []
    monitor = SecurityMonitor(events.append, remaining, **kwargs)
    return monitor, events


class TestFormatTime:
    @pytest.mark.parametrize(
        "seconds,expected",
        [(3000, "50:00"), (59, "00:59"), (300, "05:00"), (3661, "61:01"), (0, "00:00"), (-4, "00:00")],
    )
    def test_format(self, seconds, expected):
        assert format_time(seconds) == expected


class TestViolations:
    def test_focus_and_visibility_loss_count_once(self):
        monitor, events = _monitor()
        monitor.activate()

        monitor.handle_signal(EnvironmentSignal(SignalKind.FOCUS, active=False))
        monitor.handle_signal(EnvironmentSignal(SignalKind.VISIBILITY, active=False))

        assert monitor.violations == 1
        assert events == [VisibilityLost(count=1, source=SignalKind.FOCUS)]

    def test_second_loss_after_return_counts_again(self):
        source = FakeSignalSource()
        monitor, events = _monitor(source=source)
        monitor.activate()

        source.emit(SignalKind.VISIBILITY, active=False)
        source.emit(SignalKind.VISIBILITY, active=True)
        source.emit(SignalKind.FOCUS, active=False)

        assert monitor.violations == 2
        assert [e.count for e in events] == [1, 2]

    def test_returning_alone_is_not_a_violation(self):
        source = FakeSignalSource()
        monitor, events = _monitor(source=source)
        monitor.activate()

        source.emit(SignalKind.FOCUS, active=True)
        source.emit(SignalKind.VISIBILITY, active=True)

        assert monitor.violations == 0
        assert events == []

    def test_seeded_with_prior_violations(self):
        source = FakeSignalSource()
        monitor, events = _monitor(source=source, violations=1)
        monitor.activate()

        source.emit(SignalKind.VISIBILITY, active=False)

        assert events == [VisibilityLost(count=2, source=SignalKind.VISIBILITY)]

    def test_inactive_monitor_ignores_signals(self):
        source = FakeSignalSource()
        monitor, events = _monitor(source=source)
        monitor.activate()
        monitor.deactivate()

        source.emit(SignalKind.VISIBILITY, active=False)

        assert events == []
        assert source.handlers == []


class TestShortcuts:
    @pytest.mark.parametrize(
        "key",
        [
            KeyPress("F12"),
            KeyPress("I", ctrl=True, shift=True),
            KeyPress("c", ctrl=True, shift=True),
            KeyPress("u", ctrl=True),
            KeyPress("s", ctrl=True),
            KeyPress("Tab", alt=True),
        ],
    )
    def test_blocked(self, key):
        assert is_blocked_shortcut(key)

    @pytest.mark.parametrize(
        "key", [KeyPress("a"), KeyPress("c", ctrl=True), KeyPress("ArrowRight")]
    )
    def test_allowed(self, key):
        assert not is_blocked_shortcut(key)

    def test_blocked_key_is_suppressed_and_counted(self):
        source = FakeSignalSource()
        monitor, events = _monitor(source=source)
        monitor.activate()

        suppressed = source.emit(SignalKind.KEY, key=KeyPress("F12"))

        assert suppressed is True
        assert events == [ShortcutBlocked(count=1, combo="F12")]

    def test_ordinary_key_passes_through(self):
        source = FakeSignalSource()
        monitor, events = _monitor(source=source)
        monitor.activate()

        assert source.emit(SignalKind.KEY, key=KeyPress("b")) is False
        assert events == []


class TestFullscreen:
    def test_activate_requests_and_deactivate_exits(self):
        source = FakeSignalSource()
        monitor, _ = _monitor(source=source)

        monitor.activate()
        monitor.activate()
        monitor.deactivate()
        monitor.deactivate()

        assert source.fullscreen_requests == 1
        assert source.fullscreen_exits == 1

    def test_changes_are_reported_once(self):
        source = FakeSignalSource()
        monitor, events = _monitor(source=source)
        monitor.activate()

        source.emit(SignalKind.FULLSCREEN, active=True)
        source.emit(SignalKind.FULLSCREEN, active=True)
        source.emit(SignalKind.FULLSCREEN, active=False)

        assert events == [FullscreenChanged(active=True), FullscreenChanged(active=False)]
        assert monitor.violations == 0

    def test_exit_failure_is_not_raised(self):
        source = FakeSignalSource()

        def broken_exit():
            raise RuntimeError("not in fullscreen")

        source.exit_fullscreen = broken_exit
        monitor, _ = _monitor(source=source)
        monitor.activate()
        monitor.deactivate()
        assert monitor.active is False


class TestClock:
    def test_warning_fires_exactly_once(self):
        monitor, events = _monitor(remaining=302, warning_seconds=300)

        for _ in range(5):
            monitor.tick()

        assert monitor.remaining_seconds == 297
        assert events == [WarningThreshold(remaining_seconds=300)]

    def test_no_warning_when_resumed_below_threshold(self):
        monitor, events = _monitor(remaining=250, warning_seconds=300)

        for _ in range(10):
            monitor.tick()

        assert events == []

    def test_time_expires_once(self):
        monitor, events = _monitor(remaining=2, warning_seconds=0)

        for _ in range(4):
            monitor.tick()

        assert monitor.remaining_seconds == 0
        assert events == [TimeExpired()]
        assert monitor.expired

    def test_run_clock_counts_down_to_zero(self):
        slept = []

        async def instant(seconds):
            slept.append(seconds)

        monitor, events = _monitor(remaining=3, warning_seconds=0, sleep=instant)
        monitor.activate()
        asyncio.run(monitor.run_clock())

        assert slept == [1, 1, 1]
        assert events == [TimeExpired()]

    def test_run_clock_with_no_time_left_expires_immediately(self):
        async def never(_seconds):
            raise AssertionError("should not sleep")

        monitor, events = _monitor(remaining=0, sleep=never)
        monitor.activate()
        asyncio.run(monitor.run_clock())

        assert events == [TimeExpired()]
