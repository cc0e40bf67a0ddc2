"""Typed messages flowing into the session controller, and the environment
signal interface the security monitor listens to."""

import enum
from dataclasses import dataclass
from typing import Callable, Protocol, Union


# ── Environment signals (inputs to the monitor) ───────────────────────────────


class SignalKind(str, enum.Enum):
    VISIBILITY = "visibility"
    FOCUS = "focus"
    FULLSCREEN = "fullscreen"
    KEY = "key"


@dataclass(frozen=True)
class KeyPress:
    key: str
    ctrl: bool = False
    shift: bool = False
    alt: bool = False
    meta: bool = False

    def describe(self) -> str:
        mods = [name for name, on in (("Ctrl", self.ctrl), ("Alt", self.alt),
                                      ("Shift", self.shift), ("Meta", self.meta)) if on]
        return "+".join(mods + [self.key])


@dataclass(frozen=True)
class EnvironmentSignal:
    """A raw observation from the exam surface.

    ``active`` carries the boolean state for visibility / focus / fullscreen;
    ``key`` is set for key presses.
    """

    kind: SignalKind
    active: bool = True
    key: KeyPress | None = None


SignalHandler = Callable[[EnvironmentSignal], bool]


class EnvironmentSignalSource(Protocol):
    """Where visibility, focus, fullscreen and keyboard signals come from.

    The handler returns True for key presses the source must suppress.
    """

    def subscribe(self, handler: SignalHandler) -> Callable[[], None]:
        """Register *handler*; returns a callable that unsubscribes it."""

    def request_fullscreen(self) -> None:
        ...

    def exit_fullscreen(self) -> None:
        ...


# ── Session events (monitor → controller) ─────────────────────────────────────


@dataclass(frozen=True)
class VisibilityLost:
    """The exam surface stopped being the visible, focused view."""

    count: int
    source: SignalKind = SignalKind.VISIBILITY


@dataclass(frozen=True)
class ShortcutBlocked:
    count: int
    combo: str


@dataclass(frozen=True)
class WarningThreshold:
    remaining_seconds: int


@dataclass(frozen=True)
class TimeExpired:
    pass


@dataclass(frozen=True)
class FullscreenChanged:
    active: bool


Violation = Union[VisibilityLost, ShortcutBlocked]
SessionEvent = Union[
    VisibilityLost, ShortcutBlocked, WarningThreshold, TimeExpired, FullscreenChanged
]


# ── Notices (controller → UI) ─────────────────────────────────────────────────


class NoticeKind(str, enum.Enum):
    VIOLATION_WARNING = "violation_warning"
    TIME_WARNING = "time_warning"
    SAVE_FAILED = "save_failed"
    FULLSCREEN_EXITED = "fullscreen_exited"
    SESSION_ENDED = "session_ended"


@dataclass(frozen=True)
class SessionNotice:
    """Dismissible, informational message for the student. Never pauses the clock."""

    kind: NoticeKind
    message: str
