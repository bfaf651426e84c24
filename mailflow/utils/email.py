import logging
from email.errors import MessageError
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from typing import Sequence

import aiosmtplib

from mailflow.config import settings
from mailflow.services.transport import Delivered, DeliveryResult, PermanentFailure, TransientFailure

logger = logging.getLogger(__name__)


def build_message(
    subject: str,
    html_body: str | None,
    text_body: str | None,
    recipient: str,
    from_email: str,
    from_name: str | None = None,
    cc: Sequence[str] = (),
) -> MIMEMultipart:
    # Bcc addresses only go to the SMTP envelope, never into a header
    msg = MIMEMultipart("alternative")
    msg["From"] = formataddr((from_name, from_email)) if from_name else from_email
    msg["To"] = recipient
    if cc:
        msg["Cc"] = ", ".join(cc)
    msg["Subject"] = subject
    msg["Date"] = formatdate(localtime=False)
    msg["Message-ID"] = make_msgid()

    # Plain part first so clients prefer the HTML alternative when present
    if text_body is not None or html_body is None:
        msg.attach(MIMEText(text_body or "", "plain", "utf-8"))
    if html_body is not None:
        msg.attach(MIMEText(html_body, "html", "utf-8"))
    return msg


class SmtpTransport:
    """
    Asynchronous SMTP delivery using aiosmtplib.
    5xx replies, refused recipients and messages that cannot be serialized are
    permanent; everything else is retried.
    """

    def __init__(
        self,
        hostname: str | None = None,
        port: int | None = None,
        username: str | None = None,
        password: str | None = None,
        default_from: str | None = None,
        default_from_name: str | None = None,
        start_tls: bool | None = None,
        timeout: float | None = None,
    ):
        self.hostname = hostname or settings.EMAIL_HOST
        self.port = port or settings.EMAIL_PORT
        self.username = username if username is not None else settings.EMAIL_USER
        self.password = password if password is not None else settings.EMAIL_PASS
        self.default_from = default_from or settings.EMAIL_FROM
        self.default_from_name = default_from_name or settings.EMAIL_FROM_NAME
        self.start_tls = settings.EMAIL_USE_TLS if start_tls is None else start_tls
        self.timeout = timeout or settings.EMAIL_TIMEOUT

    async def send(
        self,
        *,
        subject: str,
        html_body: str | None,
        text_body: str | None,
        recipient: str,
        from_email: str | None = None,
        from_name: str | None = None,
        cc: Sequence[str] = (),
        bcc: Sequence[str] = (),
    ) -> DeliveryResult:
        sender = from_email or self.default_from
        if not sender:
            return PermanentFailure("No sender address configured")

        try:
            msg = build_message(
                subject, html_body, text_body, recipient, sender,
                from_name or self.default_from_name, cc=cc,
            )
        except (MessageError, ValueError) as e:
            return PermanentFailure(f"Malformed message: {e}")

        try:
            # STARTTLS is the common setup for port 587
            await aiosmtplib.send(
                msg,
                recipients=[recipient, *cc, *bcc],
                hostname=self.hostname,
                port=self.port,
                username=self.username or None,
                password=self.password or None,
                start_tls=self.start_tls,
                timeout=self.timeout,
            )
        except aiosmtplib.SMTPRecipientsRefused as e:
            return PermanentFailure(f"Recipients refused: {e}")
        except aiosmtplib.SMTPResponseException as e:
            reason = f"SMTP {e.code}: {e.message}"
            if 500 <= e.code < 600:
                return PermanentFailure(reason)
            return TransientFailure(reason)
        except MessageError as e:
            # Raised while flattening headers, e.g. a line break in the subject
            return PermanentFailure(f"Malformed message: {e}")
        except (aiosmtplib.SMTPException, OSError) as e:
            return TransientFailure(f"{e.__class__.__name__}: {e}")

        logger.info("[EMAIL SENT] To %s: %s", recipient, subject)
        return Delivered(message_id=msg["Message-ID"])


class LogOnlyTransport:
    """Used when no SMTP host is configured: records the send and reports success."""

    async def send(
        self,
        *,
        subject: str,
        html_body: str | None,
        text_body: str | None,
        recipient: str,
        from_email: str | None = None,
        from_name: str | None = None,
        cc: Sequence[str] = (),
        bcc: Sequence[str] = (),
    ) -> DeliveryResult:
        copies = len(cc) + len(bcc)
        logger.warning("[EMAIL SKIPPED] Config missing - to %s (+%s copies): %s",
                       recipient, copies, subject[:50])
        return Delivered()


def get_transport():
    if settings.EMAIL_HOST:
        return SmtpTransport()
    return LogOnlyTransport()
