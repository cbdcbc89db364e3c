from __future__ import annotations

import base64
import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import List, Optional, Tuple

import requests

from siteforms.core.config import settings
from siteforms.core.errors import ConfigurationError, DispatchError
from siteforms.core.retry import call_with_retries

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailAttachment:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class OutboundEmail:
    """Provider-neutral message handed to a transport."""

    from_address: str
    to: str
    reply_to: str
    subject: str
    text: str
    attachments: Tuple[EmailAttachment, ...] = field(default_factory=tuple)


class EmailTransport(ABC):
    """Outbound email mechanism. ``send`` returns a provider message id."""

    name: str = "transport"

    @abstractmethod
    def send(self, message: OutboundEmail) -> str:
        """Deliver the message or raise DispatchError."""

    def close(self) -> None:
        """Release any connections held by the transport."""


def _is_transient(exc: Exception) -> bool:
    return isinstance(exc, DispatchError) and exc.transient


class ResendTransport(EmailTransport):
    """Resend HTTP API (https://resend.com/docs/api-reference/emails/send-email)."""

    name = "resend"

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://api.resend.com/emails",
        timeout: float = 10.0,
        retries: int = 2,
        retry_delay: float = 1.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not api_key:
            raise ConfigurationError("RESEND_API_KEY is not configured")
        self.api_key = api_key
        self.api_url = api_url
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self._session = session or requests.Session()

    def _payload(self, message: OutboundEmail) -> dict:
        payload = {
            "from": message.from_address,
            "to": [message.to],
            "reply_to": message.reply_to,
            "subject": message.subject,
            "text": message.text,
        }
        if message.attachments:
            payload["attachments"] = [
                {
                    "filename": a.filename,
                    "content": base64.b64encode(a.content).decode("ascii"),
                }
                for a in message.attachments
            ]
        return payload

    def _post(self, payload: dict) -> str:
        try:
            response = self._session.post(
                self.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise DispatchError(f"Resend request failed: {exc}", transient=True) from exc
        except requests.RequestException as exc:
            raise DispatchError(f"Resend request failed: {exc}") from exc

        if response.status_code >= 500:
            raise DispatchError(
                f"Resend returned {response.status_code}: {response.text[:500]}",
                transient=True,
            )
        if response.status_code >= 400:
            # Quota, invalid recipient, unverified domain...
            raise DispatchError(
                f"Resend rejected message ({response.status_code}): {response.text[:500]}"
            )

        try:
            data = response.json()
        except ValueError:
            data = {}
        return str(data.get("id", "")) if isinstance(data, dict) else ""

    def close(self) -> None:
        self._session.close()

    def send(self, message: OutboundEmail) -> str:
        payload = self._payload(message)
        return call_with_retries(
            lambda: self._post(payload),
            retries=self.retries,
            retry_delay=self.retry_delay,
            is_transient=_is_transient,
            retry_on=(DispatchError,),
            operation="Email send",
        )


class SMTPTransport(EmailTransport):
    """STARTTLS SMTP relay."""

    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 10.0,
        retries: int = 2,
        retry_delay: float = 1.0,
    ) -> None:
        if not host:
            raise ConfigurationError("SMTP_HOST is not configured")
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay

    @staticmethod
    def build_message(message: OutboundEmail) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = message.from_address
        msg["To"] = message.to
        msg["Reply-To"] = message.reply_to
        msg["Subject"] = message.subject
        msg.set_content(message.text)

        for attachment in message.attachments:
            maintype, subtype = ("application", "octet-stream")
            if attachment.content_type and "/" in attachment.content_type:
                maintype, subtype = attachment.content_type.split("/", 1)
            msg.add_attachment(
                attachment.content,
                maintype=maintype,
                subtype=subtype,
                filename=attachment.filename,
            )
        return msg

    def _send_sync(self, msg: EmailMessage) -> str:
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls()
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.send_message(msg)
        except smtplib.SMTPResponseException as exc:
            raise DispatchError(
                f"SMTP rejected message ({exc.smtp_code}): {exc.smtp_error!r}",
                transient=400 <= exc.smtp_code < 500,
            ) from exc
        except smtplib.SMTPRecipientsRefused as exc:
            raise DispatchError(f"SMTP refused recipients: {exc}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise DispatchError(f"SMTP send failed: {exc}", transient=True) from exc
        return msg.get("Message-ID", "")

    def send(self, message: OutboundEmail) -> str:
        msg = self.build_message(message)
        return call_with_retries(
            lambda: self._send_sync(msg),
            retries=self.retries,
            retry_delay=self.retry_delay,
            is_transient=_is_transient,
            retry_on=(DispatchError,),
            operation="Email send",
        )


def build_transport() -> EmailTransport:
    """Create the transport selected by EMAIL_BACKEND, failing fast on missing credentials."""
    if settings.EMAIL_BACKEND == "smtp":
        return SMTPTransport(
            host=settings.SMTP_HOST or "",
            port=settings.SMTP_PORT,
            user=settings.SMTP_USER,
            password=(
                settings.SMTP_PASSWORD.get_secret_value()
                if settings.SMTP_PASSWORD
                else None
            ),
            timeout=settings.EMAIL_TIMEOUT_SECONDS,
            retries=settings.EMAIL_RETRIES,
            retry_delay=settings.EMAIL_RETRY_DELAY,
        )

    return ResendTransport(
        api_key=(
            settings.RESEND_API_KEY.get_secret_value() if settings.RESEND_API_KEY else ""
        ),
        api_url=settings.RESEND_API_URL,
        timeout=settings.EMAIL_TIMEOUT_SECONDS,
        retries=settings.EMAIL_RETRIES,
        retry_delay=settings.EMAIL_RETRY_DELAY,
    )
