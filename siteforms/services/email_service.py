from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from siteforms.core.config import settings
from siteforms.core.email import (
    EmailAttachment,
    EmailTransport,
    OutboundEmail,
    build_transport,
)
from siteforms.core.errors import ConfigurationError
from siteforms.schemas.submission import ContactSubmission, RFPSubmission, Submission

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    text: str


def _render_contact(submission: ContactSubmission) -> RenderedEmail:
    body_lines = [
        "Contact Form Submission",
        "",
        f"Name: {submission.name}",
        f"Email: {submission.email}",
        f"Subject: {submission.subject}",
        "",
        "Message:",
        submission.message,
    ]
    return RenderedEmail(
        subject=f"Contact Form: {submission.subject}",
        text="\n".join(body_lines),
    )


def _render_rfp(submission: RFPSubmission) -> RenderedEmail:
    body_lines = [
        "Executive Coach RFP Submission",
        "",
        f"Name: {submission.name}",
        f"Email: {submission.email}",
    ]
    if submission.company:
        body_lines.append(f"Company/Organization: {submission.company}")

    for heading, value in (
        ("Coaching Experience:", submission.experience),
        ("Coaching Approach:", submission.approach),
        ("References:", submission.references),
    ):
        if value:
            body_lines.extend(["", heading, value])

    subject = f"Executive Coach RFP: {submission.name}"
    if submission.company:
        subject += f" from {submission.company}"
    return RenderedEmail(subject=subject, text="\n".join(body_lines))


class EmailDispatcher:
    """Formats submissions and hands them to the outbound email transport."""

    def __init__(
        self,
        transport: EmailTransport,
        to_address: Optional[str],
        from_address: str,
    ) -> None:
        if not to_address:
            raise ConfigurationError("CONTACT_EMAIL is not configured")
        self.transport = transport
        self.to_address = to_address
        self.from_address = from_address

    @classmethod
    def from_settings(cls) -> "EmailDispatcher":
        return cls(
            transport=build_transport(),
            to_address=settings.CONTACT_EMAIL,
            from_address=settings.EMAIL_FROM,
        )

    @staticmethod
    def render(submission: Submission) -> RenderedEmail:
        if isinstance(submission, ContactSubmission):
            return _render_contact(submission)
        return _render_rfp(submission)

    def build_message(self, submission: Submission) -> OutboundEmail:
        rendered = self.render(submission)
        return OutboundEmail(
            from_address=self.from_address,
            to=self.to_address,
            reply_to=submission.email,
            subject=rendered.subject,
            text=rendered.text,
            attachments=tuple(
                EmailAttachment(
                    filename=a.filename,
                    content=a.content,
                    content_type=a.content_type,
                )
                for a in submission.attachments
            ),
        )

    def close(self) -> None:
        self.transport.close()

    def dispatch(self, submission: Submission) -> str:
        """Send the submission; raises DispatchError on provider failure."""
        message = self.build_message(submission)
        message_id = self.transport.send(message)
        logger.info(
            "Submission email sent via %s kind=%s attachments=%d message_id=%s",
            self.transport.name,
            submission.kind,
            len(message.attachments),
            message_id,
        )
        return message_id
