import os

# Keep test runs off the filesystem and away from real providers.
os.environ.setdefault("LOG_DIR", "")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")

from typing import List
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from siteforms.api.v1.send import close_submission_pipeline, get_submission_pipeline
from siteforms.core.email import EmailTransport, OutboundEmail
from siteforms.core.rate_limiter import get_rate_limiter, reset_rate_limiter_state
from siteforms.main import app
from siteforms.services.email_service import EmailDispatcher
from siteforms.services.submission_service import SubmissionPipeline
from siteforms.services.verification_service import VerificationService

CONTACT_EMAIL = "owner@example.com"
EMAIL_FROM = "Contact Form <onboarding@resend.dev>"


class RecordingTransport(EmailTransport):
    """Transport double that keeps every message instead of sending it."""

    name = "recording"

    def __init__(self) -> None:
        self.sent: List[OutboundEmail] = []
        self.error: Exception | None = None

    def send(self, message: OutboundEmail) -> str:
        if self.error is not None:
            raise self.error
        self.sent.append(message)
        return f"msg-{len(self.sent)}"


def make_provider_response(status_code: int = 200, payload=None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    response.text = str(payload)
    return response


@pytest.fixture(autouse=True)
def reset_limiter():
    """Reset rate limiter state before each test."""
    reset_rate_limiter_state()
    yield
    reset_rate_limiter_state()


@pytest.fixture(autouse=True)
def reset_pipeline():
    """Drop any pipeline cached by a test that built one from settings."""
    close_submission_pipeline()
    yield
    close_submission_pipeline()


@pytest.fixture()
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture()
def captcha_session() -> MagicMock:
    """requests.Session double answering siteverify with success."""
    session = MagicMock()
    session.post.return_value = make_provider_response(200, {"success": True})
    return session


@pytest.fixture()
def verifier(captcha_session) -> VerificationService:
    return VerificationService(
        secret="0x0000000000000000000000000000000000000000",
        site_key="live-site-key",
        retries=0,
        retry_delay=0,
        session=captcha_session,
    )


@pytest.fixture()
def dispatcher(transport) -> EmailDispatcher:
    return EmailDispatcher(
        transport=transport, to_address=CONTACT_EMAIL, from_address=EMAIL_FROM
    )


@pytest.fixture()
def pipeline(verifier, dispatcher) -> SubmissionPipeline:
    return SubmissionPipeline(
        rate_limiter=get_rate_limiter(), verifier=verifier, dispatcher=dispatcher
    )


@pytest.fixture()
def client(pipeline):
    """TestClient with the submission pipeline wired to test doubles."""
    app.dependency_overrides[get_submission_pipeline] = lambda: pipeline

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
