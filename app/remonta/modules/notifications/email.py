"""
Transactional email over SMTP.

Bodies are Jinja templates under templates/email/. When SMTP is not configured
(local dev, tests) messages are logged and skipped rather than failing the caller.
"""
from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from flask import current_app, render_template

logger = logging.getLogger(__name__)


class EmailError(RuntimeError):
    pass


def smtp_configured(config: dict | None = None) -> bool:
    cfg = config if config is not None else current_app.config
    return bool(cfg.get("SMTP_HOST"))


def send_email(to: str | list[str], subject: str, template: str, *, reply_to: str | None = None, **context: Any) -> bool:
    """
    Render email/<template>.html and send it. Returns False when SMTP is not configured.
    Raises EmailError when the SMTP conversation fails.
    """
    cfg = current_app.config
    recipients = [to] if isinstance(to, str) else [r for r in to if r]
    if not recipients:
        logger.warning("send_email called without recipients (template=%s)", template)
        return False

    context.setdefault("app_url", cfg.get("APP_URL", ""))
    html = render_template(f"email/{template}.html", subject=subject, **context)

    if not smtp_configured(cfg):
        logger.warning("SMTP not configured; skipping email %r to %s", subject, ", ".join(recipients))
        return False

    msg = MIMEMultipart("alternative")
    msg["From"] = cfg.get("EMAIL_FROM") or ""
    msg["To"] = ", ".join(recipients)
    msg["Subject"] = subject
    if reply_to:
        msg["Reply-To"] = reply_to
    msg.attach(MIMEText(html, "html", "utf-8"))

    host = cfg["SMTP_HOST"]
    port = int(cfg.get("SMTP_PORT") or 587)
    try:
        with smtplib.SMTP(host, port, timeout=30) as server:
            server.ehlo()
            if cfg.get("SMTP_USE_TLS", True):
                server.starttls()
                server.ehlo()
            if cfg.get("SMTP_USERNAME"):
                server.login(cfg["SMTP_USERNAME"], cfg.get("SMTP_PASSWORD") or "")
            server.send_message(msg, to_addrs=recipients)
    except (smtplib.SMTPException, OSError) as e:
        raise EmailError(f"Failed to send email {subject!r}: {e}") from e

    logger.info("Email %r sent to %s", subject, ", ".join(recipients))
    return True


def send_email_safe(to: str | list[str], subject: str, template: str, **context: Any) -> bool:
    """Fire-and-forget variant for flows where email is a side effect."""
    try:
        return send_email(to, subject, template, **context)
    except EmailError as e:
        logger.error("%s", e)
        return False


def send_verification_code(email: str, code: str, *, first_name: str | None = None) -> bool:
    return send_email_safe(
        email, "Your Remonta verification code", "verification_code", code=code, first_name=first_name
    )


def send_password_reset(email: str, token: str) -> bool:
    link = f"{current_app.config.get('APP_URL', '')}/reset-password?token={token}"
    return send_email_safe(email, "Reset your Remonta password", "password_reset", link=link)


def send_password_setup(email: str, token: str, *, first_name: str | None = None) -> bool:
    link = f"{current_app.config.get('APP_URL', '')}/setup-password?token={token}"
    return send_email_safe(
        email, "Set up your Remonta account", "password_setup", link=link, first_name=first_name
    )


def send_welcome(email: str, *, first_name: str | None, role: str) -> bool:
    return send_email_safe(email, "Welcome to Remonta", "welcome", first_name=first_name, role=role)


def send_document_decision(
    email: str, *, first_name: str | None, document_name: str, approved: bool, reason: str | None = None
) -> bool:
    subject = f"{document_name} {'approved' if approved else 'needs attention'}"
    return send_email_safe(
        email,
        subject,
        "document_decision",
        first_name=first_name,
        document_name=document_name,
        approved=approved,
        reason=reason,
    )


def send_verification_decision(email: str, *, first_name: str | None, approved: bool, notes: str | None = None) -> bool:
    subject = "Your Remonta profile is verified" if approved else "Your Remonta verification needs attention"
    return send_email_safe(
        email, subject, "verification_decision", first_name=first_name, approved=approved, notes=notes
    )
