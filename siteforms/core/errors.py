"""
=============================================================================
SITE FORMS - ERROR HANDLING MODULE
=============================================================================
Error taxonomy for the submission pipeline and the global exception
handlers that turn it into JSON responses.

Taxonomy:
- SubmissionValidationError (400): field-level, returns every violation
- RateLimitError (429): returns Retry-After
- VerificationError (400): bot verification rejected the token
- ConfigurationError (500): operator-caused, opaque to the client
- DispatchError (502): email provider failure, opaque to the client

Usage:
    # In main.py
    from siteforms.core.errors import register_exception_handlers
    register_exception_handlers(app)
=============================================================================
"""

import logging
import traceback
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from siteforms.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldError:
    """A single field violation (dotted field path + readable reason)."""

    field: str
    message: str


class SiteFormsError(Exception):
    """Base class for every failure the pipeline maps to a response."""

    status_code: int = 500
    code: str = "internal_error"
    public_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.public_message)

    def to_content(self) -> Dict[str, Any]:
        return {"error": self.public_message, "code": self.code}

    def headers(self) -> Optional[Dict[str, str]]:
        return None


class SubmissionValidationError(SiteFormsError):
    status_code = 400
    code = "validation_error"
    public_message = "Invalid request data"

    def __init__(self, errors: Sequence[FieldError]) -> None:
        self.errors: List[FieldError] = list(errors)
        summary = "; ".join(f"{e.field}: {e.message}" for e in self.errors)
        super().__init__(summary or self.public_message)

    def to_content(self) -> Dict[str, Any]:
        content = super().to_content()
        content["details"] = [asdict(e) for e in self.errors]
        return content


class RateLimitError(SiteFormsError):
    status_code = 429
    code = "rate_limited"
    public_message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int) -> None:
        self.retry_after = max(1, int(retry_after))
        super().__init__(f"Rate limit exceeded, retry after {self.retry_after}s")

    def to_content(self) -> Dict[str, Any]:
        content = super().to_content()
        content["retry_after"] = self.retry_after
        return content

    def headers(self) -> Optional[Dict[str, str]]:
        return {"Retry-After": str(self.retry_after)}


class VerificationError(SiteFormsError):
    status_code = 400
    code = "verification_failed"
    public_message = "Invalid captcha"


class ConfigurationError(SiteFormsError):
    status_code = 500
    code = "configuration_error"
    public_message = "Internal server error"


class DispatchError(SiteFormsError):
    status_code = 502
    code = "dispatch_failed"
    public_message = "Failed to send email"

    def __init__(self, message: str, transient: bool = False) -> None:
        self.transient = transient
        super().__init__(message)


def register_exception_handlers(app: FastAPI) -> None:
    """Register pipeline and global exception handlers on the FastAPI app."""

    @app.exception_handler(SiteFormsError)
    async def site_forms_exception_handler(request: Request, exc: SiteFormsError):
        # Internal detail stays in the logs; the client sees public_message only.
        if exc.status_code >= 500:
            logger.error(
                "Submission failed on %s %s: %s (%s)",
                request.method,
                request.url.path,
                exc.code,
                exc,
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_content(),
            headers=exc.headers(),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """
        Catch-all handler for unhandled exceptions.

        - Logs the full traceback for debugging
        - Returns a generic error message to prevent info leakage
        - In debug mode, includes more details
        """
        logger.error(
            f"Unhandled exception on {request.method} {request.url.path}:\n"
            f"{traceback.format_exc()}"
        )

        content: Dict[str, Any] = {
            "error": "Internal server error",
            "code": "internal_error",
        }
        if settings.DEBUG:
            content["error_type"] = type(exc).__name__
            content["message"] = str(exc)
            content["path"] = request.url.path
        return JSONResponse(status_code=500, content=content)
