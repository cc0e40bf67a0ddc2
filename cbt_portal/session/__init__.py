"""Exam-taking core: session controller, security monitor and scoring engine."""

from cbt_portal.session.controller import (  # noqa: F401
    ExamSession,
    LostResult,
    SessionOutcome,
    SessionState,
    remaining_seconds,
)
from cbt_portal.session.errors import (  # noqa: F401
    ConflictError,
    ExamSessionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from cbt_portal.session.events import (  # noqa: F401
    EnvironmentSignal,
    EnvironmentSignalSource,
    KeyPress,
    NoticeKind,
    SessionNotice,
    SignalKind,
)
from cbt_portal.session.monitor import SecurityMonitor, format_time  # noqa: F401
from cbt_portal.session.scoring import ScoreCard, fold_analytics, score_attempt  # noqa: F401
from cbt_portal.session.store import RecordStore  # noqa: F401
