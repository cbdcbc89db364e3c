from __future__ import annotations

import logging
from typing import Optional

import requests

from siteforms.core.config import HCAPTCHA_TEST_SITE_KEY, settings
from siteforms.core.errors import ConfigurationError, VerificationError
from siteforms.core.retry import call_with_retries

logger = logging.getLogger(__name__)


class _TransientVerificationFailure(Exception):
    """Timeout, connection error or 5xx from the provider."""


class VerificationService:
    """Service for hCaptcha siteverify checks."""

    def __init__(
        self,
        secret: Optional[str],
        site_key: Optional[str],
        verify_url: str = "https://api.hcaptcha.com/siteverify",
        timeout: float = 5.0,
        retries: int = 1,
        retry_delay: float = 0.5,
        session: Optional[requests.Session] = None,
    ):
        self.site_key = site_key
        self.verify_url = verify_url
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self._session = session or requests.Session()

        # Exact comparison against the published test key, never the environment name.
        self.bypass = site_key == HCAPTCHA_TEST_SITE_KEY
        if not self.bypass and not secret:
            raise ConfigurationError("HCAPTCHA_SECRET_KEY is not configured")
        self._secret = secret or ""

    @classmethod
    def from_settings(cls) -> "VerificationService":
        return cls(
            secret=(
                settings.HCAPTCHA_SECRET_KEY.get_secret_value()
                if settings.HCAPTCHA_SECRET_KEY
                else None
            ),
            site_key=settings.HCAPTCHA_SITE_KEY,
            verify_url=settings.HCAPTCHA_VERIFY_URL,
            timeout=settings.HCAPTCHA_TIMEOUT_SECONDS,
            retries=settings.HCAPTCHA_RETRIES,
        )

    def close(self) -> None:
        self._session.close()

    def _post(self, data: dict) -> requests.Response:
        try:
            response = self._session.post(
                self.verify_url, data=data, timeout=self.timeout
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise _TransientVerificationFailure(str(exc)) from exc
        if response.status_code >= 500:
            raise _TransientVerificationFailure(
                f"provider returned {response.status_code}"
            )
        return response

    def verify(self, token: str, remote_ip: Optional[str] = None) -> None:
        """Raise VerificationError unless the provider confirms ``token``."""
        if self.bypass:
            logger.debug("hCaptcha test site key configured, skipping verification")
            return

        if not token:
            raise VerificationError("Missing verification token")

        data = {"secret": self._secret, "response": token}
        if remote_ip and remote_ip != "unknown":
            data["remoteip"] = remote_ip

        try:
            response = call_with_retries(
                lambda: self._post(data),
                retries=self.retries,
                retry_delay=self.retry_delay,
                is_transient=lambda exc: isinstance(exc, _TransientVerificationFailure),
                retry_on=(_TransientVerificationFailure,),
                operation="hCaptcha verification",
            )
        except _TransientVerificationFailure as exc:
            logger.warning("hCaptcha verification request failed: %s", exc)
            raise VerificationError(f"Verification provider unavailable: {exc}") from exc
        except requests.RequestException as exc:
            logger.warning("hCaptcha verification request failed: %s", exc)
            raise VerificationError(f"Verification request failed: {exc}") from exc

        if response.status_code >= 400:
            logger.warning("hCaptcha verification rejected with HTTP %s", response.status_code)
            raise VerificationError(f"Verification provider returned {response.status_code}")

        try:
            result = response.json()
        except ValueError as exc:
            logger.warning("hCaptcha response is not valid json")
            raise VerificationError("Malformed verification response") from exc

        if not isinstance(result, dict):
            raise VerificationError("Malformed verification response")

        if result.get("success") is not True:
            logger.warning(
                "hCaptcha verification failed: error_codes=%s",
                result.get("error-codes"),
            )
            raise VerificationError("Verification token rejected")
