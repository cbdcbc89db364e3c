"""
Public form submission endpoint (contact and executive coach RFP).

Accepts JSON or multipart/form-data; attachments require multipart.
"""
from __future__ import annotations

import json
import logging
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel
from starlette.datastructures import UploadFile

from siteforms.core.errors import FieldError, SubmissionValidationError
from siteforms.core.rate_limiter import get_client_address, get_rate_limiter
from siteforms.schemas.submission import SubmissionAttachment
from siteforms.services.email_service import EmailDispatcher
from siteforms.services.submission_service import SubmissionPipeline
from siteforms.services.verification_service import VerificationService

logger = logging.getLogger(__name__)

router = APIRouter()


class SendResponse(BaseModel):
    success: bool = True


_pipeline: Optional[SubmissionPipeline] = None
_pipeline_lock = Lock()


def get_submission_pipeline() -> SubmissionPipeline:
    """Return the process-wide pipeline, building it from settings on first use.

    Raises ConfigurationError before any stage runs; a failed build is not
    cached, so fixing the environment and restarting is enough.
    """
    global _pipeline
    if _pipeline is None:
        with _pipeline_lock:
            if _pipeline is None:
                _pipeline = SubmissionPipeline(
                    rate_limiter=get_rate_limiter(),
                    verifier=VerificationService.from_settings(),
                    dispatcher=EmailDispatcher.from_settings(),
                )
    return _pipeline


def close_submission_pipeline() -> None:
    """Release provider connections held by the cached pipeline."""
    global _pipeline
    with _pipeline_lock:
        if _pipeline is not None:
            _pipeline.close()
            _pipeline = None


def _invalid_body(message: str) -> SubmissionValidationError:
    return SubmissionValidationError([FieldError("body", message)])


async def _read_json(request: Request) -> Any:
    raw = await request.body()
    try:
        return json.loads(raw or b"null")
    except (ValueError, UnicodeDecodeError) as exc:
        raise _invalid_body("Malformed JSON body") from exc


async def _read_multipart(
    request: Request,
) -> Tuple[Dict[str, Any], List[SubmissionAttachment]]:
    form = await request.form()
    fields: Dict[str, Any] = {}
    attachments: List[SubmissionAttachment] = []

    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            if key != "attachments":
                raise _invalid_body(f"Unexpected file field '{key}'")
            content = await value.read()
            # Browsers post an empty part for a file input left blank.
            if not value.filename and not content:
                continue
            attachments.append(
                SubmissionAttachment(
                    filename=value.filename or "",
                    content_type=value.content_type or "application/octet-stream",
                    content=content,
                )
            )
        else:
            if key in fields:
                raise _invalid_body(f"Field '{key}' appears more than once")
            fields[key] = value

    return fields, attachments


@router.post(
    "/send",
    response_model=SendResponse,
    status_code=status.HTTP_200_OK,
    summary="Submit a contact or RFP form",
    description="Rate limits, validates, verifies the hCaptcha token and emails the submission.",
)
async def send_submission(
    request: Request,
    pipeline: SubmissionPipeline = Depends(get_submission_pipeline),
) -> SendResponse:
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    client_address = get_client_address(request)
    request_id = getattr(request.state, "request_id", None)

    pipeline.admit(client_address)

    attachments: List[SubmissionAttachment] = []
    if content_type == "multipart/form-data":
        payload, attachments = await _read_multipart(request)
    elif content_type == "application/json":
        payload = await _read_json(request)
    else:
        raise _invalid_body(
            "Content-Type must be application/json or multipart/form-data"
        )

    logger.info(
        "Submission received id=%s content_type=%s",
        request_id,
        content_type,
        extra={"event": "submission_received", "request_id": request_id},
    )
    await pipeline.submit(
        payload,
        client_address=client_address,
        attachments=attachments,
        request_id=request_id,
    )
    return SendResponse(success=True)
