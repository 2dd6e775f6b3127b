"""
SMTP mail adapter.

Credentials come from settings; when SMTP is not configured the message
is logged and skipped, which is the normal mode for local development
and tests.
"""
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from cms.config import settings

logger = logging.getLogger(__name__)


def send_email(subject: str, to_email: str, html_body: str, text_body: str | None = None) -> bool:
    """Send one message; returns False when SMTP is unconfigured or fails."""
    if not (settings.SMTP_HOST and settings.SMTP_FROM):
        logger.info("SMTP not configured; skipping mail %r to %s", subject, to_email)
        return False

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = settings.SMTP_FROM
    msg["To"] = to_email
    msg.attach(MIMEText(text_body or html_body, "plain", "utf-8"))
    msg.attach(MIMEText(html_body, "html", "utf-8"))

    port = settings.SMTP_PORT or 465
    try:
        if port == 465:
            with smtplib.SMTP_SSL(settings.SMTP_HOST, port, context=ssl.create_default_context()) as server:
                if settings.SMTP_USER and settings.SMTP_PASSWORD:
                    server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
                server.sendmail(settings.SMTP_FROM, [to_email], msg.as_string())
        else:
            with smtplib.SMTP(settings.SMTP_HOST, port) as server:
                server.ehlo()
                server.starttls(context=ssl.create_default_context())
                if settings.SMTP_USER and settings.SMTP_PASSWORD:
                    server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
                server.sendmail(settings.SMTP_FROM, [to_email], msg.as_string())
        logger.info("Mail %r sent to %s", subject, to_email)
        return True
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Failed to send mail %r to %s: %s", subject, to_email, exc)
        return False
