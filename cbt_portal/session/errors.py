"""Error taxonomy for the exam session core."""


class ExamSessionError(Exception):
    """Base class for every error raised by the exam session core."""

    error_code = "exam_session_error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details or None


class NotFoundError(ExamSessionError):
    """Exam or attempt missing, or the exam is not active."""

    error_code = "not_found"


class ConflictError(ExamSessionError):
    """Duplicate in-progress attempt or a second terminal transition."""

    error_code = "conflict"


class PersistenceError(ExamSessionError):
    """Any failure of the underlying record store. Safe to retry."""

    error_code = "persistence_error"


class ValidationError(ExamSessionError):
    """Malformed input such as an unknown question or option label."""

    error_code = "validation_error"
