import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from pydantic import BaseModel

from matlinks import config

logger = logging.getLogger(__name__)


class EmailResult(BaseModel):
    success: bool
    error: Optional[str] = None


def send_email(to: str, subject: str, html: str, text: str, from_email: Optional[str] = None) -> EmailResult:
    """Send a multipart email. Without an SMTP host the message is only logged."""
    if not to or not subject or not (html or text):
        return EmailResult(success=False, error="Missing required email fields")

    sender = from_email or config.DEFAULT_FROM_EMAIL
    if not config.SMTP_HOST:
        logger.info("email (not sent, SMTP disabled) to=%s from=%s subject=%s\n%s", to, sender, subject, text)
        return EmailResult(success=True)

    message = MIMEMultipart("alternative")
    message["Subject"] = subject
    message["From"] = sender
    message["To"] = to
    message.attach(MIMEText(text, "plain"))
    message.attach(MIMEText(html, "html"))
    try:
        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=30) as server:
            if config.SMTP_USE_TLS:
                server.starttls()
            if config.SMTP_USER:
                server.login(config.SMTP_USER, config.SMTP_PASSWORD)
            server.send_message(message)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("email send failed to=%s subject=%s: %s", to, subject, exc)
        return EmailResult(success=False, error=str(exc))
    return EmailResult(success=True)
