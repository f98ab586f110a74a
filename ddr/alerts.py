from __future__ import annotations

import smtplib
from email.message import EmailMessage

from .settings import settings


def _smtp_configured() -> bool:
    return all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    )


def send_email(subject: str, body: str) -> bool:
    """Send an operator alert if SMTP is configured.

    Environment variables:
      - DDR_ENABLE_EMAIL=true
      - DDR_SMTP_HOST / DDR_SMTP_PORT
      - DDR_SMTP_USER / DDR_SMTP_PASSWORD
      - DDR_EMAIL_FROM / DDR_EMAIL_TO

    Returns False when alerting is disabled or delivery failed; alert
    delivery never interrupts reconciliation.
    """
    if not settings.enable_email or not _smtp_configured():
        return False

    msg = EmailMessage()
    msg["From"] = settings.email_from
    msg["To"] = settings.email_to
    msg["Subject"] = subject
    msg.set_content(body)

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.send_message(msg)
        return True
    except (smtplib.SMTPException, OSError):
        return False


def workload_alert(workload: str, state: str, detail: str) -> bool:
    subject = f"[ddr] {state}: {workload}"
    body = f"Workload: {workload}\nState: {state}\nDetail: {detail}"
    return send_email(subject, body)
