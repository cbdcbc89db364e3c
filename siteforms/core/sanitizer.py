"""Redaction of submitter data and provider credentials before logging.

Form submissions carry the submitter's email and client address, and every
request holds an hCaptcha response token. Provider calls carry the hCaptcha
secret, the Resend API key and SMTP credentials. None of these may reach a
log line in clear text.
"""
import re
from typing import Callable, List, Tuple, Union

Replacement = Union[str, Callable[["re.Match[str]"], str]]


def _mask_email(match: "re.Match[str]") -> str:
    local, domain = match.group().split("@", 1)
    return f"{local[0]}***@{domain}"


# Applied in order; earlier patterns must not leave text a later one mangles.
_REDACTIONS: List[Tuple["re.Pattern[str]", Replacement]] = [
    # Submitter email: jo.lee+site@example.com -> j***@example.com
    (re.compile(r"[\w.+-]+@[\w.-]+\.\w+"), _mask_email),
    # Client address (rate limiter key): 203.0.113.10 -> 203.0.113.***
    (re.compile(r"\b(\d{1,3}\.\d{1,3}\.\d{1,3}\.)\d{1,3}\b"), r"\1***"),
    # Form token fields, whatever their value looks like
    (
        re.compile(
            r"(verification_?token|hcaptcha_?token|h-captcha-response)"
            r"[\"']?\s*[:=]\s*[\"']?[^\"'&\s,}]+",
            re.IGNORECASE,
        ),
        r"\1=[CAPTCHA_TOKEN_REDACTED]",
    ),
    # Bare hCaptcha response tokens (P0_/P1_ prefixed)
    (re.compile(r"\bP\d_[A-Za-z0-9_.-]{20,}"), "[CAPTCHA_TOKEN_REDACTED]"),
    # JWTs
    (
        re.compile(r"eyJ[A-Za-z0-9_-]+\.eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+"),
        "[JWT_REDACTED]",
    ),
    # Resend API keys
    (re.compile(r"\bre_[A-Za-z0-9_]{8,}\b"), "[API_KEY_REDACTED]"),
    # hCaptcha secrets (0x + 40 hex) and other long hex keys
    (re.compile(r"\b(?:0x)?[a-fA-F0-9]{32,}\b"), "[API_KEY_REDACTED]"),
    # Anything left in an Authorization header
    (re.compile(r"\bBearer\s+[A-Za-z0-9._~+/-]+=*"), "Bearer [REDACTED]"),
    # key=value credentials (SMTP password, hCaptcha secret)
    (
        re.compile(
            r"(password|passwd|pwd|secret|api_key)[\"']?\s*[:=]\s*[\"']?[^\"'&\s]+",
            re.IGNORECASE,
        ),
        r"\1=[REDACTED]",
    ),
]


def redact_pii(message: str) -> str:
    """Return ``message`` with submitter data and credentials masked."""
    if not isinstance(message, str):
        return str(message)

    for pattern, replacement in _REDACTIONS:
        message = pattern.sub(replacement, message)
    return message
