from typing import List, Optional

from pydantic import AliasChoices, Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Public hCaptcha test site key. Any token verifies against it.
HCAPTCHA_TEST_SITE_KEY = "10000000-ffff-ffff-ffff-000000000001"


class Settings(BaseSettings):
    PROJECT_NAME: str = "Site Forms API"
    VERSION: str = "1.0.0"
    API_PREFIX: str = "/api"
    API_V1_PREFIX: str = "/api/v1"

    # --- Environment & Debug ---
    ENVIRONMENT: str = "local"
    DEBUG: bool = False  # Default to False for security
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[str] = "logs"

    # --- Bot verification (hCaptcha) ---
    HCAPTCHA_SECRET_KEY: Optional[SecretStr] = None
    HCAPTCHA_SITE_KEY: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "HCAPTCHA_SITE_KEY", "NEXT_PUBLIC_HCAPTCHA_SITE_KEY"
        ),
        description="Public site key. The hCaptcha test key disables verification.",
    )
    HCAPTCHA_VERIFY_URL: str = "https://api.hcaptcha.com/siteverify"
    HCAPTCHA_TIMEOUT_SECONDS: float = 5.0
    HCAPTCHA_RETRIES: int = Field(default=1, ge=0)

    # --- Outbound email ---
    EMAIL_BACKEND: str = "resend"
    RESEND_API_KEY: Optional[SecretStr] = None
    RESEND_API_URL: str = "https://api.resend.com/emails"
    EMAIL_TIMEOUT_SECONDS: float = 10.0
    EMAIL_RETRIES: int = Field(default=2, ge=0)
    EMAIL_RETRY_DELAY: float = Field(default=1.0, ge=0)
    CONTACT_EMAIL: Optional[str] = None  # Mailbox receiving all submissions
    EMAIL_FROM: str = "Contact Form <onboarding@resend.dev>"
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[SecretStr] = None

    # --- Rate Limiting ---
    RATE_LIMIT_BACKEND: str = "memory"
    RATE_LIMIT_PER_WINDOW: int = 5
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_MAX_TRACKED_CLIENTS: int = 10_000
    REDIS_URL: str = "redis://localhost:6379/0"

    # --- Attachments ---
    MAX_ATTACHMENTS: int = 3
    MAX_ATTACHMENT_BYTES: int = 5 * 1024 * 1024  # 5MB

    # --- CORS ---
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=list,
        description="List of allowed CORS origins. Configure in .env",
    )

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=True, extra="ignore"
    )

    @field_validator("ALLOWED_ORIGINS", mode="before")
    @classmethod
    def default_allowed_origins(
        cls, v: Optional[List[str]], info: ValidationInfo
    ) -> Optional[List[str]]:
        env = info.data.get("ENVIRONMENT") or "local"
        if env != "production":
            if v is None:
                return ["http://localhost:3000"]
            if isinstance(v, str) and v.strip() in ("", "[]"):
                return ["http://localhost:3000"]
            if isinstance(v, list) and len(v) == 0:
                return ["http://localhost:3000"]
        return v

    @field_validator("EMAIL_BACKEND", mode="after")
    @classmethod
    def validate_email_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("resend", "smtp"):
            raise ValueError("EMAIL_BACKEND must be 'resend' or 'smtp'")
        return v

    @field_validator("RATE_LIMIT_BACKEND", mode="after")
    @classmethod
    def validate_rate_limit_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("memory", "redis"):
            raise ValueError("RATE_LIMIT_BACKEND must be 'memory' or 'redis'")
        return v

    @property
    def verification_bypassed(self) -> bool:
        """True only when the configured site key is the hCaptcha test key."""
        return self.HCAPTCHA_SITE_KEY == HCAPTCHA_TEST_SITE_KEY


settings = Settings()
