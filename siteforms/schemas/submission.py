from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    ValidationError,
    field_validator,
)

from siteforms.core.config import settings
from siteforms.core.errors import FieldError, SubmissionValidationError

CONTACT_FIELDS = ("subject", "message")
RFP_FIELDS = ("company", "experience", "approach", "references")

ALLOWED_ATTACHMENT_EXTENSIONS = {
    ".pdf",
    ".png",
    ".jpg",
    ".jpeg",
    ".doc",
    ".docx",
    ".txt",
}


class SubmissionAttachment(BaseModel):
    filename: str
    content_type: str = "application/octet-stream"
    content: bytes

    @property
    def size_bytes(self) -> int:
        return len(self.content)


class _SubmissionBase(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    verification_token: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices(
            "verificationToken", "hcaptchaToken", "verification_token"
        ),
    )
    attachments: List[SubmissionAttachment] = Field(default_factory=list)


class ContactSubmission(_SubmissionBase):
    kind: Literal["contact"] = "contact"
    subject: str = Field(..., min_length=3, max_length=100)
    message: str = Field(..., min_length=10, max_length=1000)


class RFPSubmission(_SubmissionBase):
    kind: Literal["rfp"] = "rfp"
    company: Optional[str] = Field(None, max_length=100)
    experience: Optional[str] = Field(None, max_length=2000)
    approach: Optional[str] = Field(None, max_length=2000)
    references: Optional[str] = Field(None, max_length=1000)

    @field_validator("company", "experience", "approach", "references", mode="before")
    @classmethod
    def blank_as_absent(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


Submission = Union[ContactSubmission, RFPSubmission]

_MODELS: Dict[str, type[_SubmissionBase]] = {
    "contact": ContactSubmission,
    "rfp": RFPSubmission,
}


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _present(payload: Mapping[str, Any], fields: Sequence[str]) -> bool:
    return any(not _is_blank(payload.get(f)) for f in fields)


def _drop_blank_foreign_fields(data: Dict[str, Any], kind: str) -> None:
    """Remove the other kind's fields when a form posted them empty."""
    foreign = RFP_FIELDS if kind == "contact" else CONTACT_FIELDS
    for f in foreign:
        if f in data and _is_blank(data[f]):
            del data[f]


def _field_errors(exc: ValidationError) -> List[FieldError]:
    errors = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "body"
        errors.append(FieldError(field=loc, message=err["msg"]))
    return errors


def _validate_model(
    model: type[_SubmissionBase], data: Mapping[str, Any]
) -> tuple[Optional[_SubmissionBase], List[FieldError]]:
    try:
        return model.model_validate(data), []
    except ValidationError as exc:
        return None, _field_errors(exc)


def _attachment_errors(attachments: Sequence[SubmissionAttachment]) -> List[FieldError]:
    errors: List[FieldError] = []
    if len(attachments) > settings.MAX_ATTACHMENTS:
        errors.append(
            FieldError(
                "attachments",
                f"At most {settings.MAX_ATTACHMENTS} attachments are allowed",
            )
        )

    for index, attachment in enumerate(attachments):
        field = f"attachments.{index}"
        if not attachment.filename:
            errors.append(FieldError(field, "Attachment filename is required"))
            continue
        if Path(attachment.filename).suffix.lower() not in ALLOWED_ATTACHMENT_EXTENSIONS:
            errors.append(FieldError(field, "Unsupported attachment extension"))
        if attachment.size_bytes > settings.MAX_ATTACHMENT_BYTES:
            errors.append(
                FieldError(
                    field,
                    f"Attachment exceeds {settings.MAX_ATTACHMENT_BYTES} bytes",
                )
            )
    return errors


def resolve_kind(payload: Mapping[str, Any]) -> tuple[Optional[str], List[FieldError]]:
    """Pick the submission kind from an explicit ``kind`` or from field presence.

    Returns ``(None, errors)`` when the kind cannot be decided.
    """
    kind = payload.get("kind")
    if kind is not None:
        if isinstance(kind, str) and kind in _MODELS:
            return kind, []
        return None, [FieldError("kind", "Input should be 'contact' or 'rfp'")]

    has_contact = _present(payload, CONTACT_FIELDS)
    has_rfp = _present(payload, RFP_FIELDS)
    if has_contact and has_rfp:
        return None, [
            FieldError("kind", "Submission mixes contact and RFP fields")
        ]
    if has_contact:
        return "contact", []
    if has_rfp:
        return "rfp", []
    return None, [
        FieldError("kind", "Cannot determine submission kind; set 'kind' explicitly")
    ]


def parse_submission(
    payload: Any,
    attachments: Sequence[SubmissionAttachment] = (),
) -> Submission:
    """Validate an untyped payload into a contact or RFP submission.

    Raises SubmissionValidationError listing every field violation.
    """
    if not isinstance(payload, Mapping):
        raise SubmissionValidationError(
            [FieldError("body", "Request body must be a JSON object")]
        )

    errors: List[FieldError] = []
    data = dict(payload)

    if "attachments" in data:
        data.pop("attachments")
        errors.append(
            FieldError(
                "attachments",
                "Attachments require a multipart/form-data submission",
            )
        )
    data["attachments"] = list(attachments)
    errors.extend(_attachment_errors(attachments))

    kind, kind_errors = resolve_kind(data)
    if kind is None:
        # Report the union of what each shape rejects.
        errors.extend(kind_errors)
        data.pop("kind", None)
        for model in _MODELS.values():
            _, model_errors = _validate_model(model, data)
            for err in model_errors:
                if err not in errors:
                    errors.append(err)
        raise SubmissionValidationError(errors)

    _drop_blank_foreign_fields(data, kind)
    submission, model_errors = _validate_model(_MODELS[kind], data)
    errors.extend(model_errors)
    if errors or submission is None:
        raise SubmissionValidationError(errors)
    return submission  # type: ignore[return-value]
