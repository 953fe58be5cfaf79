from __future__ import annotations

from flask import Blueprint, current_app, jsonify
from pydantic import ValidationError

from app.remonta import ratelimit
from app.remonta.modules.notifications import email as mailer
from app.remonta.modules.notifications.schemas import ContactMessage, FeedbackMessage
from app.remonta.schemas import validation_failed
from app.remonta.utils import json_body

bp = Blueprint("notifications", __name__)


def _inbox() -> str | None:
    return current_app.config.get("CONTACT_EMAIL") or current_app.config.get("EMAIL_FROM") or None


def _deliver(subject: str, template: str, *, reply_to: str, **context):
    to = _inbox()
    if not to:
        current_app.logger.error("CONTACT_EMAIL not configured; dropping %s message", template)
        return jsonify({"error": "Messaging is not configured"}), 503
    try:
        mailer.send_email(to, subject, template, reply_to=reply_to, **context)
    except mailer.EmailError as e:
        current_app.logger.error("%s", e)
        return jsonify({"error": "Failed to send message. Please try again later."}), 502
    return jsonify({"success": True, "message": "Message sent successfully"})


@bp.post("/api/send-contact")
@ratelimit.rate_limited(ratelimit.STRICT_API)
def send_contact():
    try:
        data = ContactMessage.model_validate(json_body())
    except ValidationError as e:
        return validation_failed(e)
    return _deliver(
        f"Contact form: {data.subject}",
        "contact",
        reply_to=data.email,
        support_type=data.support_type,
        email=data.email,
        first_name=data.first_name,
        last_name=data.last_name,
        pronouns=data.pronouns,
        enquiry_about=data.enquiry_about,
        topic=data.subject,
        description=data.description,
    )


@bp.post("/api/send-feedback")
@ratelimit.rate_limited(ratelimit.STRICT_API)
def send_feedback():
    try:
        data = FeedbackMessage.model_validate(json_body())
    except ValidationError as e:
        return validation_failed(e)
    return _deliver(
        f"Feedback: {data.feedback_type}",
        "feedback",
        reply_to=data.email,
        **data.model_dump(),
    )
