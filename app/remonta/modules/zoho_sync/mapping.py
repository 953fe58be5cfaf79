"""
Field mapping between Zoho CRM records and local rows.

Zoho custom fields are loosely typed: booleans arrive as real booleans, "Yes"/"No"
strings or single-element pick-list arrays, and names may only be present as a
combined "Last, First" string. Everything here is tolerant and returns None rather
than raising on odd input.
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from app.remonta.modules.workers.models import WorkerProfile
from app.remonta.utils import as_str_list, clean_str

CONTRACTORS_MODULE = "Contractors"
CONTACTS_MODULE = "Contacts"
LEADS_MODULE = "Leads"
JOB_LEAD_STAGE = "Recruitment End"
REGISTRATION_SOURCE = "Remonta Website"

_TRUE = {"yes", "true", "y", "1"}
_FALSE = {"no", "false", "n", "0"}


def parse_zoho_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, str):
        v = value.strip().lower()
        if v in _TRUE:
            return True
        if v in _FALSE:
            return False
    return None


def parse_zoho_datetime(value: Any) -> datetime | None:
    """Zoho timestamps look like 2024-05-01T09:30:00+10:00; converted to naive UTC like the rest of the schema."""
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.replace(tzinfo=None)


def _split_name(full: str) -> tuple[str, str]:
    if "," in full:
        last, _, first = full.partition(",")
        return first.strip(), last.strip()
    parts = full.split()
    return (parts[0] if parts else ""), " ".join(parts[1:])


def parse_name(record: dict[str, Any]) -> tuple[str, str] | None:
    """
    (first, last) for a Zoho record, trying First/Last, then Full_Name, then Name.
    A single missing half becomes "N/A"; None when no name is present at all.
    """
    first = clean_str(record.get("First_Name") or record.get("First_Name_1")) or ""
    last = clean_str(record.get("Last_Name") or record.get("Last_Name_1")) or ""

    for key in ("Full_Name", "Name"):
        if first or last:
            break
        full = clean_str(record.get(key))
        if full:
            first, last = _split_name(full)

    if "," in first and not last:
        first, _, last = (x.strip() for x in first.partition(","))

    if not first and last:
        first = "N/A"
    if first and not last:
        last = "N/A"
    if not first or not last:
        return None
    return first, last


def _years(value: Any) -> int | None:
    try:
        n = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return n if 0 <= n <= 100 else None


def _lookup_name(value: Any) -> Any:
    # lookup fields come back as {"name": ..., "id": ...}
    return value.get("name") if isinstance(value, dict) else value


def lead_to_job_fields(lead: dict[str, Any]) -> dict[str, Any]:
    return {
        "status": clean_str(lead.get("Lead_Status"), max_len=64),
        "first_name": clean_str(lead.get("First_Name"), max_len=100),
        "last_name": clean_str(lead.get("Last_Name"), max_len=100),
        "recruitment_title": clean_str(lead.get("Recruitment_Title"), max_len=255),
        "service": clean_str(lead.get("Service"), max_len=255),
        "description": clean_str(lead.get("Description")),
        "job_description": clean_str(lead.get("Job_Description")),
        "city": clean_str(lead.get("City"), max_len=128),
        "state": clean_str(lead.get("State"), max_len=32),
        "posted_at": parse_zoho_datetime(lead.get("Created_Time")),
    }


def contractor_fields(record: dict[str, Any]) -> dict[str, Any] | None:
    """Directory fields for a Contractors record, or None when the record has no usable name."""
    names = parse_name(record)
    if names is None:
        return None
    first, last = names
    email = clean_str(record.get("Email") or record.get("Email_Address"), max_len=320)
    return {
        "first_name": first[:100],
        "last_name": last[:100],
        "email": email.lower() if email else None,
        "phone": clean_str(record.get("Phone") or record.get("Mobile") or record.get("Contact_Number"), max_len=32),
        "title_role": clean_str(record.get("Title_Role"), max_len=255),
        "company_name": clean_str(record.get("Company_Name") or _lookup_name(record.get("Account_Name")), max_len=255),
        "years_of_experience": _years(record.get("Years_of_Experience")),
        "street": clean_str(record.get("Street") or record.get("Mailing_Street"), max_len=255),
        "city": clean_str(record.get("City") or record.get("Mailing_City"), max_len=128),
        "state": clean_str(
            record.get("State") or record.get("State_Region_Province") or record.get("Mailing_State"), max_len=32
        ),
        "postal_code": clean_str(
            record.get("Postal_Zip_Code") or record.get("Zip_Code") or record.get("Mailing_Zip"), max_len=8
        ),
        "services_offered": as_str_list(record.get("Services_Offered")),
        "languages": as_str_list(record.get("Language_Spoken")),
        "has_vehicle_access": parse_zoho_bool(record.get("Do_you_drive_and_have_access_to_vehicle")),
        "about": clean_str(record.get("About_You")),
    }


def contractor_address(fields: dict[str, Any]) -> str | None:
    parts = [fields.get("street"), fields.get("city"), fields.get("state"), fields.get("postal_code")]
    text = ", ".join(p for p in parts if p)
    return text or None


def worker_to_contact(profile: WorkerProfile, *, today: date | None = None) -> dict[str, Any]:
    """Zoho Contacts record for a registered worker (submit-contractor)."""
    services = list(profile.services or [])
    return {
        "First_Name": profile.first_name,
        "Last_Name": profile.last_name,
        "Email": profile.user.email if profile.user else None,
        "Mobile": profile.mobile,
        "Title_Role": services[0] if services else "",
        "Location": profile.location or ", ".join(p for p in (profile.city, profile.state) if p),
        "Services_Offered": ", ".join(services),
        "Years_of_Experience": profile.experience or "",
        "Hobbies_and_or_Interests": profile.hobbies or "",
        "What_Makes_Your_Business_Unique": profile.unique_service or "",
        "Why_Do_You_Enjoy_Your_Work": profile.why_enjoy_work or "",
        "Additional_Information": profile.additional_info or "",
        "Qualifications_and_Certifications": profile.qualifications or "",
        "Do_you_drive_and_have_access_to_vehicle": [profile.has_vehicle or "No"],
        "Profile_Sharing_Consent": True,
        "Marketing_Consent": bool((profile.extra or {}).get("consentMarketing", False)),
        "Registration_Source": REGISTRATION_SOURCE,
        "Registration_Date": (today or date.today()).isoformat(),
        "Status": "New Application",
    }
