"""Security monitor — violation detection and the exam countdown.

The monitor never touches the attempt itself. It turns environment signals
and clock ticks into typed session events and hands them to ``emit``; the
controller decides what each event means (warning or termination).
"""

import asyncio
import logging
from typing import Awaitable, Callable

from cbt_portal.session.events import (
    EnvironmentSignal,
    EnvironmentSignalSource,
    FullscreenChanged,
    KeyPress,
    SessionEvent,
    ShortcutBlocked,
    SignalKind,
    TimeExpired,
    VisibilityLost,
    WarningThreshold,
)

logger = logging.getLogger(__name__)

DEFAULT_WARNING_SECONDS = 300

# Shortcuts that open devtools, save/view the page or switch context.
_BLOCKED_SHORTCUTS: tuple[Callable[[KeyPress], bool], ...] = (
    lambda k: k.key == "F12",
    lambda k: k.ctrl and k.shift and k.key.upper() == "I",
    lambda k: k.ctrl and k.shift and k.key.upper() == "C",
    lambda k: k.ctrl and not k.shift and k.key.lower() == "u",
    lambda k: k.ctrl and not k.shift and k.key.lower() == "s",
    lambda k: k.alt and k.key == "Tab",
    lambda k: k.ctrl and k.key == "Tab",
)


def is_blocked_shortcut(key: KeyPress) -> bool:
    return any(rule(key) for rule in _BLOCKED_SHORTCUTS)


def format_time(seconds: int) -> str:
    """Render a countdown as ``MM:SS`` (minutes are not wrapped at 60)."""
    seconds = max(0, int(seconds))
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


class SecurityMonitor:
    """Observes the exam surface and drives the countdown for one attempt.

    Args:
        emit: Receives every session event; must not block.
        remaining_seconds: Countdown seed, already adjusted for resume.
        warning_seconds: One-time warning fires when the countdown first
            crosses this value. A countdown seeded at or below it never warns.
        violations: Violations already recorded for this attempt.
        source: Environment signal source; optional for request-scoped use.
        sleep: Awaitable used between ticks (tests substitute their own).
    """

    def __init__(
        self,
        emit: Callable[[SessionEvent], None],
        remaining_seconds: int,
        *,
        warning_seconds: int = DEFAULT_WARNING_SECONDS,
        violations: int = 0,
        source: EnvironmentSignalSource | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._emit = emit
        self._source = source
        self._sleep = sleep
        self._unsubscribe: Callable[[], None] | None = None

        self.remaining_seconds = max(0, int(remaining_seconds))
        self.warning_seconds = warning_seconds
        self.violations = violations
        self.active = False

        self._warned = self.remaining_seconds <= warning_seconds
        self._expired = False
        self._visible = True
        self._focused = True
        self._fullscreen = False

    # ── lifecycle ────────────────────────────────────────────────────────

    def activate(self) -> None:
        if self.active:
            return
        self.active = True
        if self._source is not None:
            self._unsubscribe = self._source.subscribe(self.handle_signal)
            self._source.request_fullscreen()

    def deactivate(self) -> None:
        """Stop listening and release fullscreen. Safe to call repeatedly."""
        if not self.active:
            return
        self.active = False
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._source is not None:
            try:
                self._source.exit_fullscreen()
            except Exception:
                logger.warning("Could not leave fullscreen", exc_info=True)

    @property
    def expired(self) -> bool:
        return self._expired

    @property
    def is_foreground(self) -> bool:
        return self._visible and self._focused

    # ── signals ──────────────────────────────────────────────────────────

    def handle_signal(self, signal: EnvironmentSignal) -> bool:
        """Apply one environment signal. Returns True if it must be suppressed."""
        if not self.active:
            return False

        if signal.kind in (SignalKind.VISIBILITY, SignalKind.FOCUS):
            was_foreground = self.is_foreground
            if signal.kind is SignalKind.VISIBILITY:
                self._visible = signal.active
            else:
                self._focused = signal.active
            # A tab switch fires blur and visibilitychange; count it once.
            if was_foreground and not self.is_foreground:
                self.report_visibility_lost(signal.kind)
            return False

        if signal.kind is SignalKind.FULLSCREEN:
            if signal.active != self._fullscreen:
                self._fullscreen = signal.active
                self._emit(FullscreenChanged(active=signal.active))
            return False

        if signal.kind is SignalKind.KEY and signal.key is not None:
            if is_blocked_shortcut(signal.key):
                self.report_blocked_shortcut(signal.key.describe())
                return True
        return False

    def report_visibility_lost(
        self, source: SignalKind = SignalKind.VISIBILITY
    ) -> None:
        self.violations += 1
        logger.info("Focus lost (%s) — violation #%d", source.value, self.violations)
        self._emit(VisibilityLost(count=self.violations, source=source))

    def report_blocked_shortcut(self, combo: str) -> None:
        self.violations += 1
        logger.info("Blocked shortcut %s — violation #%d", combo, self.violations)
        self._emit(ShortcutBlocked(count=self.violations, combo=combo))

    # ── clock ────────────────────────────────────────────────────────────

    def tick(self) -> None:
        """Advance the countdown by one second."""
        if self._expired:
            return
        self.remaining_seconds = max(0, self.remaining_seconds - 1)

        if (
            not self._warned
            and 0 < self.remaining_seconds <= self.warning_seconds
        ):
            self._warned = True
            self._emit(WarningThreshold(remaining_seconds=self.remaining_seconds))

        if self.remaining_seconds == 0:
            self._expired = True
            self._emit(TimeExpired())

    async def run_clock(self) -> None:
        """Tick once a second until time runs out or the monitor stops."""
        if self.remaining_seconds == 0 and not self._expired:
            self._expired = True
            self._emit(TimeExpired())
        while self.active and not self._expired:
            await self._sleep(1)
            if not self.active:
                break
            self.tick()
