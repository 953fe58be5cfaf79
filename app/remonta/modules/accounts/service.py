from __future__ import annotations

import json
import logging
import secrets
import threading
import urllib.request
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from app.remonta.audit import record_event
from app.remonta.geocoding import geocode_location, parse_location
from app.remonta.models import User
from app.remonta.modules.accounts.models import AuthToken, VerificationCode
from app.remonta.modules.accounts.schemas import ClientRegistration, CoordinatorRegistration, WorkerDetails
from app.remonta.modules.clients.models import ClientProfile, CoordinatorProfile, Participant
from app.remonta.modules.workers.models import WorkerProfile
from app.remonta.modules.workers.service import replace_worker_services
from app.remonta.security import sha256_hex
from app.remonta.seed import get_or_create_role

logger = logging.getLogger(__name__)

TOKEN_TTL = {
    "password_reset": timedelta(hours=1),
    "password_setup": timedelta(hours=72),
}
CODE_TTL = timedelta(minutes=10)
CODE_MAX_ATTEMPTS = 5


class DuplicateEmailError(ValueError):
    pass


def email_exists(s: Session, email: str) -> bool:
    return s.query(User.id).filter(User.email == email.strip().lower()).first() is not None


def _create_user(s: Session, email: str, password_hash: str, role_key: str) -> User:
    if email_exists(s, email):
        raise DuplicateEmailError("An account with this email already exists")
    user = User(email=email.strip().lower(), password_hash=password_hash, is_active=True, status="ACTIVE")
    user.roles.append(get_or_create_role(s, role_key))
    s.add(user)
    s.flush()
    return user


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def create_worker_account(
    s: Session,
    data: WorkerDetails,
    *,
    password_hash: str,
    geocode_api_key: str = "",
    actor: User | None = None,
) -> User:
    """
    User + WorkerProfile + WorkerService rows. Caller owns the transaction (commit/rollback).
    Geocoding failures leave coordinates empty.
    """
    user = _create_user(s, data.email, password_hash, "worker")
    geo = geocode_location(data.location, api_key=geocode_api_key)
    profile = WorkerProfile(
        user_id=user.id,
        first_name=data.first_name,
        last_name=data.last_name,
        mobile=data.mobile,
        location=data.location,
        city=geo["city"],
        state=geo["state"],
        postal_code=geo["postal_code"],
        latitude=geo["latitude"],
        longitude=geo["longitude"],
        age=data.age,
        gender=(data.gender or "").lower() or None,
        gender_identity=data.gender_identity,
        languages=data.languages,
        services=data.services,
        has_vehicle=data.has_vehicle,
        experience=data.experience,
        introduction=data.introduction,
        qualifications=data.qualifications,
        hobbies=data.hobbies,
        unique_service=data.unique_service,
        why_enjoy_work=data.why_enjoy_work,
        additional_info=data.additional_info,
        photos=data.photos,
        verification_status="NOT_STARTED",
        is_published=False,
        extra={
            "consentProfileShare": data.consent_profile_share,
            "consentMarketing": data.consent_marketing,
        },
    )
    s.add(profile)
    s.flush()
    if data.service_selections:
        replace_worker_services(s, profile, [sel.model_dump(by_alias=True) for sel in data.service_selections])
        # Keep any free-text service names the form sent alongside the catalogue selection.
        for name in data.services:
            if name not in profile.services:
                profile.services = profile.services + [name]
    record_event(
        s,
        actor=actor or user,
        action="account.register",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"role": "worker", "geocoded": geo["latitude"] is not None},
    )
    return user


def create_client_account(s: Session, data: ClientRegistration) -> tuple[User, Participant]:
    user = _create_user(s, data.email, hash_password(data.password), "client")
    s.add(
        ClientProfile(
            user_id=user.id,
            first_name=data.first_name,
            last_name=data.last_name,
            mobile=data.mobile,
            is_self_managed=data.is_self_managed,
            funding_type=data.funding_type.value,
            relationship_to_client=None if data.is_self_managed else data.relationship_to_client.value,
        )
    )
    parsed = parse_location(data.location)
    participant = Participant(
        owner_user_id=user.id,
        first_name=data.first_name if data.is_self_managed else data.client_first_name,
        last_name=data.last_name if data.is_self_managed else data.client_last_name,
        date_of_birth=data.date_of_birth,
        funding_type=data.funding_type.value,
        relationship_to_client="OTHER" if data.is_self_managed else data.relationship_to_client.value,
        location=data.location,
        city=parsed.city,
        state=parsed.state,
        postal_code=parsed.postal_code,
        services_requested=data.services_requested,
        additional_info=data.additional_info,
    )
    s.add(participant)
    s.flush()
    record_event(
        s,
        actor=user,
        action="account.register",
        entity_type="User",
        entity_id=str(user.id),
        metadata={
            "role": "client",
            "registrationType": "CLIENT_SELF" if data.is_self_managed else "CLIENT_REPRESENTATIVE",
            "fundingType": data.funding_type.value,
        },
    )
    return user, participant


def create_coordinator_account(s: Session, data: CoordinatorRegistration) -> User:
    user = _create_user(s, data.email, hash_password(data.password), "coordinator")
    s.add(
        CoordinatorProfile(
            user_id=user.id,
            first_name=data.first_name,
            last_name=data.last_name,
            mobile=data.mobile,
            organization=data.organization,
            client_types=data.client_types,
        )
    )
    s.flush()
    record_event(
        s,
        actor=user,
        action="account.register",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"role": "coordinator"},
    )
    return user


def first_name_for(s: Session, user: User) -> str | None:
    for model in (WorkerProfile, ClientProfile, CoordinatorProfile):
        profile = s.query(model).filter(model.user_id == user.id).one_or_none()
        if profile is not None:
            return profile.first_name
    return None


# --- One-time tokens (password reset / setup) ---


def issue_token(s: Session, user: User, purpose: str) -> str:
    """
    Create a one-time token and return the raw value (only its hash is stored).
    Older unused tokens for the same purpose are invalidated.
    """
    if purpose not in TOKEN_TTL:
        raise ValueError(f"Unknown token purpose: {purpose}")
    now = datetime.utcnow()
    for old in (
        s.query(AuthToken)
        .filter(AuthToken.user_id == user.id, AuthToken.purpose == purpose, AuthToken.used_at.is_(None))
        .all()
    ):
        old.used_at = now
    raw = secrets.token_urlsafe(32)
    s.add(AuthToken(user_id=user.id, purpose=purpose, token_hash=sha256_hex(raw), expires_at=now + TOKEN_TTL[purpose]))
    s.flush()
    return raw


def find_valid_token(s: Session, raw: str, purpose: str) -> AuthToken | None:
    if not raw:
        return None
    tok = s.query(AuthToken).filter(AuthToken.token_hash == sha256_hex(raw)).one_or_none()
    if not tok or tok.purpose != purpose or tok.used_at is not None:
        return None
    if tok.expires_at < datetime.utcnow():
        return None
    return tok


# --- Verification codes (email / sms) ---


def _generate_code() -> str:
    return f"{secrets.randbelow(900000) + 100000}"


def issue_code(s: Session, channel: str, target: str) -> str:
    now = datetime.utcnow()
    for old in (
        s.query(VerificationCode)
        .filter(
            VerificationCode.channel == channel,
            VerificationCode.target == target,
            VerificationCode.consumed_at.is_(None),
        )
        .all()
    ):
        old.consumed_at = now
    code = _generate_code()
    s.add(VerificationCode(channel=channel, target=target, code_hash=sha256_hex(code), expires_at=now + CODE_TTL))
    s.flush()
    return code


def check_code(s: Session, channel: str, target: str, code: str) -> tuple[bool, str | None]:
    """
    Returns (ok, error). A code is consumed on success; wrong guesses count toward CODE_MAX_ATTEMPTS.
    """
    vc = (
        s.query(VerificationCode)
        .filter(
            VerificationCode.channel == channel,
            VerificationCode.target == target,
            VerificationCode.consumed_at.is_(None),
        )
        .order_by(VerificationCode.created_at.desc(), VerificationCode.id.desc())
        .first()
    )
    if vc is None:
        return False, "No verification code found. Please request a new code."
    if vc.expires_at < datetime.utcnow():
        return False, "Verification code has expired. Please request a new code."
    if vc.attempts >= CODE_MAX_ATTEMPTS:
        return False, "Too many attempts. Please request a new code."
    if sha256_hex((code or "").strip()) != vc.code_hash:
        vc.attempts += 1
        remaining = CODE_MAX_ATTEMPTS - vc.attempts
        return False, f"Invalid verification code. {remaining} attempt(s) remaining."
    vc.consumed_at = datetime.utcnow()
    return True, None


# --- Outbound hooks ---


def notify_registration_webhook(url: str, payload: dict[str, Any]) -> None:
    """
    POST the registration to the automation webhook without blocking the request. Failures are logged only.
    """
    if not url:
        return

    def _post() -> None:
        try:
            req = urllib.request.Request(
                url,
                data=json.dumps(payload, default=str).encode("utf-8"),
                method="POST",
                headers={"Content-Type": "application/json"},
            )
            with urllib.request.urlopen(req, timeout=10) as resp:
                resp.read()
        except Exception as e:
            logger.warning("Registration webhook failed: %s", e)

    threading.Thread(target=_post, name="registration-webhook", daemon=True).start()
