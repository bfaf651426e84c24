import enum

from sqlalchemy import Boolean, Column, DateTime, Enum, ForeignKey, Integer, String, Text
from mailflow.database import Base


class EmailAction(str, enum.Enum):
    """Delivery status of an outbox entry, also the action recorded in its log."""

    QUEUED = "Queued"
    PROCESSING = "Processing"
    SENT = "Sent"
    FAILED = "Failed"
    RETRIED = "Retried"
    CANCELLED = "Cancelled"


def _action_column_type():
    # Persist the readable value ("Queued") rather than the member name
    return Enum(
        EmailAction,
        name="email_action",
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


class EmailTemplate(Base):
    __tablename__ = "email_templates"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, index=True, nullable=False)  # e.g. welcome_email
    subject_template = Column(String(500), nullable=False)
    html_body_template = Column(Text, nullable=True)
    text_body_template = Column(Text, nullable=True)
    default_from_email = Column(String(255), nullable=True)
    default_from_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class EmailOutbox(Base):
    __tablename__ = "email_outbox"

    id = Column(Integer, primary_key=True, index=True)
    template_id = Column(Integer, ForeignKey("email_templates.id"), nullable=True, index=True)
    template_name = Column(String(100), nullable=True)
    to_email = Column(String(255), nullable=False)
    # Comma separated address lists
    cc_email = Column(Text, nullable=True)
    bcc_email = Column(Text, nullable=True)
    from_email = Column(String(255), nullable=True)
    from_name = Column(String(255), nullable=True)

    # Snapshot taken at enqueue time, never re-rendered
    subject = Column(String(998), nullable=False)
    html_body = Column(Text, nullable=True)
    text_body = Column(Text, nullable=True)

    status = Column(_action_column_type(), nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    next_attempt_at = Column(DateTime(timezone=True), nullable=False, index=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)
    claimed_by = Column(String(100), nullable=True)
    version = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    requested_by = Column(Integer, ForeignKey("users.user_id"), nullable=True)
    idempotency_key = Column(String(64), unique=True, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=True)


class EmailLog(Base):
    __tablename__ = "email_logs"

    id = Column(Integer, primary_key=True, index=True)
    email_outbox_id = Column(
        Integer, ForeignKey("email_outbox.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action = Column(_action_column_type(), nullable=False)
    details = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
