from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Optional, Sequence

from siteforms.core.errors import (
    DispatchError,
    RateLimitError,
    SubmissionValidationError,
    VerificationError,
)
from siteforms.core.rate_limiter import SlidingWindowRateLimiter
from siteforms.schemas.submission import (
    Submission,
    SubmissionAttachment,
    parse_submission,
)
from siteforms.services.email_service import EmailDispatcher
from siteforms.services.verification_service import VerificationService

logger = logging.getLogger(__name__)


class SubmissionStage(str, Enum):
    RECEIVED = "received"
    RATE_LIMIT_CHECKED = "rate_limit_checked"
    VALIDATED = "validated"
    VERIFIED = "verified"
    DISPATCHED = "dispatched"


class SubmissionPipeline:
    """Rate limit -> validate -> verify -> dispatch, stopping at the first failure.

    Each stage raises its own SiteFormsError subclass; nothing after a failed
    stage runs.
    """

    def __init__(
        self,
        rate_limiter: SlidingWindowRateLimiter,
        verifier: VerificationService,
        dispatcher: EmailDispatcher,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.verifier = verifier
        self.dispatcher = dispatcher

    def close(self) -> None:
        self.verifier.close()
        self.dispatcher.close()

    def admit(self, client_address: str) -> None:
        """Record the attempt or raise RateLimitError."""
        decision = self.rate_limiter.hit(client_address)
        if not decision.allowed:
            logger.warning(
                "Submission rate limited retry_after=%s",
                decision.retry_after,
                extra={"event": "submission_rate_limited"},
            )
            raise RateLimitError(retry_after=decision.retry_after)

    @staticmethod
    def _validate(
        payload: Any, attachments: Sequence[SubmissionAttachment]
    ) -> Submission:
        try:
            return parse_submission(payload, attachments)
        except SubmissionValidationError as exc:
            logger.info(
                "Submission rejected by validation fields=%s",
                [e.field for e in exc.errors],
                extra={"event": "submission_invalid"},
            )
            raise

    async def process(
        self,
        payload: Any,
        client_address: str,
        attachments: Sequence[SubmissionAttachment] = (),
        request_id: Optional[str] = None,
    ) -> Submission:
        """Run the whole pipeline for one request and return the sent submission."""
        logger.info(
            "Submission received id=%s",
            request_id,
            extra={"event": "submission_received", "request_id": request_id},
        )
        self.admit(client_address)
        return await self.submit(payload, client_address, attachments, request_id)

    async def submit(
        self,
        payload: Any,
        client_address: str,
        attachments: Sequence[SubmissionAttachment] = (),
        request_id: Optional[str] = None,
    ) -> Submission:
        """Stages after the rate limit check: validate, verify, dispatch."""
        stage = SubmissionStage.RATE_LIMIT_CHECKED

        submission = self._validate(payload, attachments)
        stage = SubmissionStage.VALIDATED

        try:
            await asyncio.to_thread(
                self.verifier.verify, submission.verification_token, client_address
            )
        except VerificationError as exc:
            logger.warning(
                "Submission failed verification id=%s: %s",
                request_id,
                exc,
                extra={"event": "submission_verification_failed", "stage": stage.value},
            )
            raise
        stage = SubmissionStage.VERIFIED

        try:
            message_id = await asyncio.to_thread(self.dispatcher.dispatch, submission)
        except DispatchError as exc:
            logger.error(
                "Submission dispatch failed id=%s: %s",
                request_id,
                exc,
                extra={"event": "submission_dispatch_failed", "stage": stage.value},
            )
            raise
        stage = SubmissionStage.DISPATCHED

        logger.info(
            "AUDIT: Submission dispatched id=%s kind=%s attachments=%d message_id=%s",
            request_id,
            submission.kind,
            len(submission.attachments),
            message_id,
            extra={
                "event": "submission_dispatched",
                "request_id": request_id,
                "kind": submission.kind,
                "stage": stage.value,
            },
        )
        return submission
