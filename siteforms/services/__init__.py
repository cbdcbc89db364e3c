"""
Site Forms Services Module.

Services:
    - VerificationService: hCaptcha siteverify client
    - EmailDispatcher: renders submissions and hands them to a transport
    - SubmissionPipeline: rate limit, validation, verification and dispatch
"""

from .email_service import EmailDispatcher, RenderedEmail
from .submission_service import SubmissionPipeline, SubmissionStage
from .verification_service import VerificationService

__all__ = [
    "EmailDispatcher",
    "RenderedEmail",
    "SubmissionPipeline",
    "SubmissionStage",
    "VerificationService",
]
