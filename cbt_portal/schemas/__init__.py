"""Pydantic schemas — re‑exported for convenience."""

from cbt_portal.schemas.common import ErrorResponse  # noqa: F401
from cbt_portal.schemas.user import (  # noqa: F401
    AuthResponse,
    UserCreate,
    UserLogin,
    UserRead,
)
from cbt_portal.schemas.exam import (  # noqa: F401
    AnalyticsRead,
    ExamCreate,
    ExamDetailRead,
    ExamRead,
    ExamUpdate,
    QuestionWrite,
)
from cbt_portal.schemas.attempt import (  # noqa: F401
    AnswerSelect,
    AttemptSession,
    AttemptState,
    OutcomeRead,
    ResultReview,
    SecurityEventReport,
)
