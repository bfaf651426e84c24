from datetime import datetime

from pydantic import BaseModel, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from mailflow.models.email import EmailAction
from mailflow.utils.sanitization import sanitize_string


class CamelModel(BaseModel):
    """API payloads use camelCase on the wire and accept snake_case too."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# ── Template schemas ────────────────────────────────────

class TemplateBase(CamelModel):
    subject_template: str = Field(..., min_length=1, max_length=500)
    html_body_template: str | None = None
    text_body_template: str | None = None
    default_from_email: EmailStr | None = None
    default_from_name: str | None = Field(None, max_length=255)

    @field_validator("default_from_name", mode="before")
    @classmethod
    def sanitize(cls, v):
        return sanitize_string(v)


class TemplateCreate(TemplateBase):
    name: str = Field(..., min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_.\-]+$")


class TemplateUpdate(CamelModel):
    subject_template: str | None = Field(None, min_length=1, max_length=500)
    html_body_template: str | None = None
    text_body_template: str | None = None
    default_from_email: EmailStr | None = None
    default_from_name: str | None = Field(None, max_length=255)
    is_active: bool | None = None

    @field_validator("default_from_name", mode="before")
    @classmethod
    def sanitize(cls, v):
        return sanitize_string(v)


class TemplateView(TemplateBase):
    id: int
    name: str
    default_from_email: str | None = None
    is_active: bool
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime


class EmailTemplateResponse(CamelModel):
    success: bool
    message: str
    template: TemplateView | None = None


# ── Outbox schemas ──────────────────────────────────────

class EnqueueEmailRequest(CamelModel):
    template_name: str = Field(..., min_length=1, max_length=100)
    recipient: EmailStr
    cc: list[EmailStr] = Field(default_factory=list)
    bcc: list[EmailStr] = Field(default_factory=list)
    variables: dict[str, str] = Field(default_factory=dict)
    from_email: EmailStr | None = None
    from_name: str | None = Field(None, max_length=255)
    scheduled_for: datetime | None = None
    idempotency_key: str | None = Field(None, max_length=64)

    @field_validator("from_name", mode="before")
    @classmethod
    def sanitize(cls, v):
        return sanitize_string(v)


class SendTestEmailRequest(CamelModel):
    recipient: EmailStr
    variables: dict[str, str] = Field(default_factory=dict)


class EmailQueuedResponse(CamelModel):
    success: bool
    message: str
    email_id: int | None = None
    queue_position: int | None = None


class EmailCancelResponse(CamelModel):
    success: bool
    message: str


class EmailStatusResponse(CamelModel):
    id: int
    template_name: str | None = None
    to_email: str
    cc_email: str | None = None
    bcc_email: str | None = None
    subject: str
    status: EmailAction
    attempts: int
    next_attempt_at: datetime
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime
    sent_at: datetime | None = None


class EmailHistoryEntry(CamelModel):
    action: EmailAction
    details: str | None = None
    created_at: datetime


class EmailStatisticsResponse(CamelModel):
    total: int
    by_status: dict[str, int]
    sent_last_24_hours: int
    sent_last_7_days: int
    sent_last_30_days: int
    average_delivery_seconds: float | None = None
    success_rate: float
