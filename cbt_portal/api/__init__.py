"""API route package — imports all routers for main.py."""

from cbt_portal.api.health import router as health_router  # noqa: F401
from cbt_portal.api.users import router as users_router  # noqa: F401
from cbt_portal.api.exams import router as exams_router  # noqa: F401
from cbt_portal.api.attempts import router as attempts_router  # noqa: F401
