"""Error taxonomy shared by the API boundary and the pipeline.

API-facing errors carry the HTTP status they render as. Stage errors never
reach clients directly: the executor classifies them and the projection only
ever reports that a run failed.
"""

from typing import Optional


class ComicPipeError(Exception):
    """Base class for all comicpipe errors."""

    status_code: int = 500
    retryable: bool = False
    public_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message

    def to_dict(self) -> dict:
        return {"error": self.message}


class ValidationError(ComicPipeError):
    """Malformed or out-of-range request."""

    status_code = 400
    public_message = "Invalid request"

    def __init__(self, message: Optional[str] = None, fields: Optional[dict[str, str]] = None):
        super().__init__(message)
        self.fields = fields or {}

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.fields:
            body["fields"] = self.fields
        return body


class AuthError(ComicPipeError):
    """Missing or invalid identity."""

    status_code = 401
    public_message = "Unauthorized. Please log in to continue."


class AuthorizationError(ComicPipeError):
    """Authenticated, but not allowed to touch the resource."""

    status_code = 403
    public_message = "Permission denied"


class NotFoundError(ComicPipeError):
    """Unknown resource, or one the caller does not own."""

    status_code = 404
    public_message = "Project not found"


class ConflictError(ComicPipeError):
    """The project already has (or had) a run that blocks this request."""

    status_code = 409
    public_message = "Project already has an active generation run"


class InternalError(ComicPipeError):
    """Unexpected failure; details are logged, never returned."""

    status_code = 500


class StageError(ComicPipeError):
    """Failure raised while executing a pipeline stage."""

    def __init__(self, message: Optional[str] = None, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class RetryableStageError(StageError):
    """Transient worker failure (network, timeout, rate limit)."""

    retryable = True
    public_message = "Transient stage failure"


class FatalStageError(StageError):
    """Malformed worker output, validation failure or exhausted retries."""

    public_message = "Stage failed"
