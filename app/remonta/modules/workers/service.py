from __future__ import annotations

import re
from typing import Any

from sqlalchemy.orm import Session

from app.remonta.geocoding import geocode_location
from app.remonta.modules.workers.models import Category, Subcategory, WorkerProfile, WorkerService
from app.remonta.utils import as_str_list, clean_str, iso, normalize_au_mobile, parse_iso_date

# Account-setup steps and the profile fields each one may write.
UPDATE_STEPS: dict[str, tuple[str, ...]] = {
    "name": ("first_name", "middle_name", "last_name"),
    "photo": ("photo",),
    "personal-info": ("age", "date_of_birth", "gender", "gender_identity", "languages", "has_vehicle"),
    "address": ("street_address", "city", "state", "postal_code"),
    "abn": ("abn",),
    "emergency-contact": ("emergency_contact_name", "emergency_contact_phone", "emergency_contact_relationship"),
    "about": (
        "introduction",
        "experience",
        "qualifications",
        "hobbies",
        "unique_service",
        "why_enjoy_work",
        "additional_info",
    ),
}

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")

_ABN_WEIGHTS = (10, 1, 3, 5, 7, 9, 11, 13, 15, 17, 19)


def _snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


def get_profile_for_user(s: Session, user_id: int) -> WorkerProfile | None:
    return s.query(WorkerProfile).filter(WorkerProfile.user_id == user_id).one_or_none()


def is_valid_abn(abn: str) -> bool:
    """
    ABN checksum: subtract 1 from the first digit, weight each digit, sum must divide by 89.
    """
    digits = re.sub(r"\s", "", abn or "")
    if not re.fullmatch(r"\d{11}", digits):
        return False
    nums = [int(c) for c in digits]
    nums[0] -= 1
    return sum(w * n for w, n in zip(_ABN_WEIGHTS, nums)) % 89 == 0


def replace_worker_services(s: Session, profile: WorkerProfile, selections: list[dict[str, Any]]) -> list[WorkerService]:
    """
    Replace the worker's service selection. Every category/subcategory must exist in the catalogue.
    Also refreshes profile.services (category names) used by search.
    """
    wanted: list[tuple[Category, Subcategory | None]] = []
    seen: set[tuple[str, str]] = set()
    for sel in selections:
        if not isinstance(sel, dict):
            raise ValueError("Each service selection must be an object with categoryId.")
        cat_id = clean_str(sel.get("categoryId") or sel.get("category_id"))
        sub_id = clean_str(sel.get("subcategoryId") or sel.get("subcategory_id"))
        if not cat_id:
            raise ValueError("categoryId is required for each service selection.")
        category = s.get(Category, cat_id)
        if category is None:
            raise ValueError(f"Unknown service category: {cat_id}")
        subcategory = None
        if sub_id:
            subcategory = s.get(Subcategory, sub_id)
            if subcategory is None or subcategory.category_id != category.id:
                raise ValueError(f"Unknown subcategory {sub_id} for category {cat_id}")
        key = (category.id, subcategory.id if subcategory else "")
        if key in seen:
            continue
        seen.add(key)
        wanted.append((category, subcategory))

    profile.worker_services.clear()
    s.flush()
    rows: list[WorkerService] = []
    for category, subcategory in wanted:
        row = WorkerService(
            category_id=category.id,
            category_name=category.name,
            subcategory_id=subcategory.id if subcategory else "",
            subcategory_name=subcategory.name if subcategory else None,
        )
        profile.worker_services.append(row)
        rows.append(row)

    names: list[str] = []
    for category, _ in wanted:
        if category.name not in names:
            names.append(category.name)
    profile.services = names
    s.flush()
    return rows


def apply_step(profile: WorkerProfile, step: str, data: dict[str, Any], *, geocode_api_key: str = "") -> list[str]:
    """
    Apply one account-setup step. Only the step's whitelisted fields are written; returns the fields changed.
    Raises ValueError for unknown steps or invalid values.
    """
    if step not in UPDATE_STEPS:
        raise ValueError(f"Unknown step: {step}")
    allowed = UPDATE_STEPS[step]
    values = {_snake(k): v for k, v in (data or {}).items()}
    values = {k: v for k, v in values.items() if k in allowed}
    changed: list[str] = []

    if step == "name":
        first = clean_str(values.get("first_name"), max_len=100)
        last = clean_str(values.get("last_name"), max_len=100)
        if not first or not last:
            raise ValueError("First and last name are required.")
        profile.first_name = first
        profile.last_name = last
        profile.middle_name = clean_str(values.get("middle_name"), max_len=100)
        return ["first_name", "middle_name", "last_name"]

    if step == "photo":
        photo = clean_str(values.get("photo"))
        if not photo:
            raise ValueError("photo is required.")
        # First photo is the profile photo.
        profile.photos = [photo] + [p for p in (profile.photos or []) if p != photo]
        return ["photos"]

    if step == "address":
        city = clean_str(values.get("city"), max_len=128)
        state = clean_str(values.get("state"), max_len=8)
        postal = clean_str(values.get("postal_code"), max_len=8)
        if not city or not state or not postal:
            raise ValueError("City, state and postal code are required.")
        street = clean_str(values.get("street_address"), max_len=255)
        city_state_postal = f"{city}, {state.upper()} {postal}"
        profile.street_address = street
        profile.city = city
        profile.state = state.upper()
        profile.postal_code = postal
        profile.location = f"{street}, {city_state_postal}" if street else city_state_postal
        geo = geocode_location(profile.location, api_key=geocode_api_key)
        profile.latitude = geo["latitude"]
        profile.longitude = geo["longitude"]
        return ["street_address", "city", "state", "postal_code", "location", "latitude", "longitude"]

    if step == "abn":
        abn = re.sub(r"\s", "", str(values.get("abn") or ""))
        if not is_valid_abn(abn):
            raise ValueError("Please enter a valid 11-digit ABN.")
        profile.abn = abn
        return ["abn"]

    if step == "emergency-contact":
        name = clean_str(values.get("emergency_contact_name"), max_len=200)
        phone = clean_str(values.get("emergency_contact_phone"), max_len=20)
        if not name or not phone:
            raise ValueError("Emergency contact name and phone are required.")
        profile.emergency_contact_name = name
        profile.emergency_contact_phone = normalize_au_mobile(phone)
        profile.emergency_contact_relationship = clean_str(values.get("emergency_contact_relationship"), max_len=64)
        return ["emergency_contact_name", "emergency_contact_phone", "emergency_contact_relationship"]

    for field in allowed:
        if field not in values:
            continue
        raw = values[field]
        if field == "languages":
            setattr(profile, field, as_str_list(raw))
        elif field == "date_of_birth":
            setattr(profile, field, parse_iso_date(raw) if raw else None)
        elif field == "gender":
            setattr(profile, field, (clean_str(raw) or "").lower() or None)
        else:
            setattr(profile, field, clean_str(raw))
        changed.append(field)
    return changed


def serialize_services(profile: WorkerProfile) -> list[dict[str, Any]]:
    return [
        {
            "categoryId": ws.category_id,
            "categoryName": ws.category_name,
            "subcategoryId": ws.subcategory_id or None,
            "subcategoryName": ws.subcategory_name,
        }
        for ws in profile.worker_services
    ]


def serialize_profile(profile: WorkerProfile, *, private: bool = True) -> dict[str, Any]:
    """
    Worker profile as JSON. Public views omit contact, identity and emergency details.
    """
    out: dict[str, Any] = {
        "id": profile.id,
        "userId": profile.user_id,
        "firstName": profile.first_name,
        "lastName": profile.last_name if private else (profile.last_name[:1] + "." if profile.last_name else ""),
        "city": profile.city,
        "state": profile.state,
        "gender": profile.gender,
        "languages": profile.languages or [],
        "services": profile.services or [],
        "serviceSelections": serialize_services(profile),
        "hasVehicle": profile.has_vehicle,
        "experience": profile.experience,
        "introduction": profile.introduction,
        "qualifications": profile.qualifications,
        "hobbies": profile.hobbies,
        "uniqueService": profile.unique_service,
        "whyEnjoyWork": profile.why_enjoy_work,
        "photos": profile.photos or [],
        "verificationStatus": profile.verification_status,
        "isPublished": profile.is_published,
    }
    if private:
        out.update(
            {
                "email": profile.user.email if profile.user else None,
                "middleName": profile.middle_name,
                "mobile": profile.mobile,
                "location": profile.location,
                "streetAddress": profile.street_address,
                "postalCode": profile.postal_code,
                "latitude": profile.latitude,
                "longitude": profile.longitude,
                "age": profile.age,
                "dateOfBirth": iso(profile.date_of_birth),
                "genderIdentity": profile.gender_identity,
                "additionalInfo": profile.additional_info,
                "abn": profile.abn,
                "emergencyContactName": profile.emergency_contact_name,
                "emergencyContactPhone": profile.emergency_contact_phone,
                "emergencyContactRelationship": profile.emergency_contact_relationship,
                "verificationSubmittedAt": iso(profile.verification_submitted_at),
                "verificationReviewedAt": iso(profile.verification_reviewed_at),
                "verificationNotes": profile.verification_notes,
                "zohoContactId": profile.zoho_contact_id,
                "createdAt": iso(profile.created_at),
                "updatedAt": iso(profile.updated_at),
            }
        )
    return out


def _account_setup_sections(profile: WorkerProfile) -> dict[str, bool]:
    return {
        "name": bool(profile.first_name and profile.last_name),
        "photo": bool(profile.photos),
        "personal-info": bool(profile.gender and profile.languages),
        "address": bool(profile.city and profile.state and profile.postal_code),
        "abn": bool(profile.abn),
        "emergency-contact": bool(profile.emergency_contact_name and profile.emergency_contact_phone),
        "about": bool(profile.introduction),
    }


def _percent(done: int, total: int) -> int:
    return int(round(100 * done / total)) if total else 100


def setup_progress(s: Session, profile: WorkerProfile) -> dict[str, Any]:
    from app.remonta.modules.compliance.catalog import catalogue_for_services
    from app.remonta.modules.compliance.models import VerificationRequirement

    sections = _account_setup_sections(profile)
    account_done = sum(1 for v in sections.values() if v)

    stored = {
        r.requirement_type: r
        for r in s.query(VerificationRequirement).filter(VerificationRequirement.worker_profile_id == profile.id).all()
    }
    required = [spec for spec in catalogue_for_services(profile.services or []) if spec.is_required]
    req_sections = {
        spec.type: stored.get(spec.type) is not None and stored[spec.type].status in ("SUBMITTED", "APPROVED")
        for spec in required
    }
    req_done = sum(1 for v in req_sections.values() if v)

    return {
        "accountSetup": {
            "sections": sections,
            "completed": account_done,
            "total": len(sections),
            "percentage": _percent(account_done, len(sections)),
        },
        "requirements": {
            "sections": req_sections,
            "completed": req_done,
            "total": len(req_sections),
            "percentage": _percent(req_done, len(req_sections)),
        },
        "services": {"completed": bool(profile.worker_services), "count": len(profile.worker_services)},
        "verificationStatus": profile.verification_status,
        "overallPercentage": _percent(account_done + req_done, len(sections) + len(req_sections)),
    }


def serialize_categories(categories: list[Category]) -> list[dict[str, Any]]:
    return [
        {
            "id": c.id,
            "name": c.name,
            "requiresQualification": c.requires_qualification,
            "subcategories": [
                {"id": sc.id, "name": sc.name, "requiresRegistration": sc.requires_registration}
                for sc in c.subcategories
            ],
        }
        for c in categories
    ]
