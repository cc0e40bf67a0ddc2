"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from cbt_portal.api import (
    attempts_router,
    exams_router,
    health_router,
    users_router,
)
from cbt_portal.config import settings
from cbt_portal.schemas.common import ErrorResponse
from cbt_portal.session.errors import (
    ConflictError,
    ExamSessionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s  %(name)-25s  %(levelname)-8s  %(message)s",
)
logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    PersistenceError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 CBT portal backend starting…")
    yield
    logger.info("✅ CBT portal backend shut down")


app = FastAPI(
    title="CBT Portal API",
    description="Timed, monitored computer-based testing",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Middleware ─────────────────────────────────────────────────────────────────

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.ALLOWED_HOSTS)

# ── Errors ────────────────────────────────────────────────────────────────────


@app.exception_handler(ExamSessionError)
async def exam_session_error_handler(request: Request, exc: ExamSessionError):
    code = next(
        (code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=code,
        content=ErrorResponse(
            error_code=exc.error_code, message=exc.message, details=exc.details
        ).model_dump(),
    )


# ── Routers ───────────────────────────────────────────────────────────────────

app.include_router(health_router, tags=["Health"])
app.include_router(users_router, prefix="/api/users", tags=["Users"])
app.include_router(exams_router, prefix="/api/exams", tags=["Exams"])
app.include_router(attempts_router, prefix="/api", tags=["Attempts"])


@app.get("/")
async def root():
    return {
        "name": "CBT Portal API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }
