from __future__ import annotations

import smtplib
from email.message import EmailMessage

from .events import log_event
from .models import ReconcileRequest
from .settings import settings


def recipients() -> list[str]:
    """MICRO_EMAIL_TO split on commas; empty when alerting is not configured."""
    return [a.strip() for a in (settings.email_to or "").split(",") if a.strip()]


def compose(request: ReconcileRequest, failing: bool, failures: int, detail: str) -> EmailMessage:
    state = "FAILING" if failing else "RECOVERED"
    msg = EmailMessage()
    msg["From"] = settings.email_from
    msg["To"] = ", ".join(recipients())
    msg["Subject"] = f"{state}: Micro {request}"
    lines = [
        f"Micro: {request}",
        f"Namespace: {request.namespace}",
        f"State: {state.lower()}",
        f"Consecutive failures: {failures}",
        f"Detail: {detail}",
    ]
    if failing:
        lines.append("The operator keeps retrying with backoff; see /events on its status server.")
    msg.set_content("\n".join(lines) + "\n")
    return msg


def send_alert(request: ReconcileRequest, failing: bool, failures: int, detail: str) -> bool:
    """Mail a failing/recovered notice for one Micro.

    Enabled by MICRO_ENABLE_EMAIL=true with MICRO_SMTP_HOST, MICRO_EMAIL_FROM
    and MICRO_EMAIL_TO (comma separated). MICRO_SMTP_USER and
    MICRO_SMTP_PASSWORD are optional; without them no login is attempted.
    Returns whether the message was handed to the SMTP server.
    """
    if not settings.enable_email:
        return False
    if not (settings.smtp_host and settings.email_from and recipients()):
        log_event("WARN", "Email alerts enabled but SMTP host, sender or recipients missing")
        return False

    msg = compose(request, failing, failures, detail)
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            server.starttls()
            if settings.smtp_user and settings.smtp_password:
                server.login(settings.smtp_user, settings.smtp_password)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        log_event("WARN", f"Alert email not sent: {type(e).__name__}: {e}", namespace=request.namespace, name=request.name)
        return False
    log_event("INFO", f"Sent {msg['Subject']!r} to {msg['To']}", namespace=request.namespace, name=request.name)
    return True
