"""
Error taxonomy and error-message sanitizing.

Handlers and the upload pipeline raise the typed errors below; the FastAPI
handlers registered by ``register_error_handlers`` turn them into JSON
responses. Internal details (paths, tool output) are logged, never returned.
"""
import logging
import re
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 500

    def __init__(self, message: str = "Internal server error"):
        self.message = message
        super().__init__(message)


class BadRequestError(APIError):
    """Malformed, oversized or wrong-type input."""

    status_code = 400


class UnauthorizedError(APIError):
    """Missing or invalid credential."""

    status_code = 401


class UserForbiddenError(APIError):
    """Authenticated, but not the owner of the resource."""

    status_code = 403


class NotFoundError(APIError):
    status_code = 404


class ExternalToolError(APIError):
    """An external media tool exited non-zero, could not run, or produced unusable output.

    The tool's diagnostic output is kept on the exception for logging; the
    client only ever sees a sanitized message.
    """

    status_code = 500

    def __init__(
        self,
        tool: str,
        message: str,
        exit_code: Optional[int] = None,
        diagnostic: str = "",
    ):
        self.tool = tool
        self.exit_code = exit_code
        self.diagnostic = diagnostic
        super().__init__(f"{tool}: {message}")

    def __str__(self) -> str:
        text = self.message
        if self.exit_code is not None:
            text += f" (exit code {self.exit_code})"
        if self.diagnostic:
            text += f": {self.diagnostic}"
        return text


# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r"/home/\w+/",  # Home directory paths
    r"/tmp/\w+",  # Temp paths
    r"/var/\w+/",  # Var paths
    r"line \d+",  # Line numbers in stack traces
    r'File "[^"]+\.py"',  # Python file paths
    r"ffmpeg:.*\.mp4",  # FFmpeg with file paths
    r"ffprobe:.*\.mp4",  # FFprobe with file paths
    r"Permission denied",
    r"No such file or directory",
    r"UNIQUE constraint failed",
    r"sqlite3?\.",
]

ERROR_MESSAGES = {
    "ffmpeg": "Video processing failed. Please try uploading again.",
    "ffprobe": "Could not read video file. The file may be corrupted or in an unsupported format.",
    "timeout": "Video processing timed out. Please try again.",
    "database": "A database error occurred. Please try again.",
    "general": "An error occurred while processing your request. Please try again.",
}


def truncate_error(message: Optional[str], max_length: int) -> Optional[str]:
    """Truncate an error message to max_length characters, marking the cut with '...'."""
    if message is None:
        return None
    if len(message) <= max_length:
        return message
    if max_length <= 3:
        return message[:max_length]
    return message[: max_length - 3] + "..."


def sanitize_error_message(error: Optional[str], log_original: bool = True, context: str = "") -> Optional[str]:
    """
    Sanitize an error message for safe display to API clients.

    Args:
        error: The original error message (may contain internal details)
        log_original: Whether to log the original message before sanitizing
        context: Additional context for logging (e.g., "video_id=...")

    Returns:
        A sanitized, user-friendly error message, or None if input was None
    """
    if error is None:
        return None

    if log_original and error:
        log_msg = "Original error"
        if context:
            log_msg += f" ({context})"
        log_msg += f": {error}"
        logger.warning(log_msg)

    error_lower = error.lower()

    if "timed out" in error_lower or "timeout" in error_lower:
        return ERROR_MESSAGES["timeout"]

    if "ffprobe" in error_lower:
        return ERROR_MESSAGES["ffprobe"]

    if "ffmpeg" in error_lower:
        return ERROR_MESSAGES["ffmpeg"]

    if "sqlite" in error_lower or "database" in error_lower or "constraint" in error_lower:
        return ERROR_MESSAGES["database"]

    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return ERROR_MESSAGES["general"]

    if len(error) < 100 and "/" not in error and "\\" not in error:
        return error

    return ERROR_MESSAGES["general"]


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    """Render a typed API error as {"detail": ...} with its mapped status."""
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


async def external_tool_error_handler(request: Request, exc: ExternalToolError) -> JSONResponse:
    """Log the tool diagnostic and return a generic 500."""
    detail = sanitize_error_message(str(exc), context=f"path={request.url.path}")
    return JSONResponse(status_code=exc.status_code, content={"detail": detail})


def register_error_handlers(app: FastAPI) -> None:
    """Install the handlers for the error taxonomy on a FastAPI app."""
    app.add_exception_handler(ExternalToolError, external_tool_error_handler)
    app.add_exception_handler(APIError, api_error_handler)
