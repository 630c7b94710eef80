from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .settings import Settings, settings as default_settings


def send_email(subject: str, body: str, settings: Settings | None = None) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - GEC_ENABLE_EMAIL=true
      - GEC_SMTP_HOST / GEC_SMTP_PORT
      - GEC_SMTP_USER / GEC_SMTP_PASSWORD
      - GEC_EMAIL_FROM / GEC_EMAIL_TO
    """
    settings = settings or default_settings
    if not settings.enable_email:
        return False
    if not all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    ):
        return False

    try:
        msg = MIMEMultipart()
        msg["From"] = settings.email_from
        msg["To"] = settings.email_to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
        return True
    except Exception:
        return False


def eviction_timeout_alert(binding_key: str, cluster: str, settings: Settings | None = None) -> bool:
    subject = f"EVICTION TIMED OUT: {binding_key} ({cluster})"
    body = (
        f"Binding: {binding_key}\n"
        f"Cluster: {cluster}\n"
        "The graceful eviction grace period ran out before the workload was\n"
        "confirmed healthy on another cluster. The eviction was finalized anyway."
    )
    return send_email(subject, body, settings=settings)
