"""
Compliance requirement catalogue.

Requirement types are stable slugs stored on VerificationRequirement.requirement_type.
"""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RequirementSpec:
    type: str
    name: str
    group: str  # mandatory | additional | qualification
    is_required: bool
    has_expiry: bool = False
    description: str = ""


MANDATORY_REQUIREMENTS: tuple[RequirementSpec, ...] = (
    RequirementSpec("worker-screening-check", "NDIS Worker Screening Check", "mandatory", True, True),
    RequirementSpec("police-check", "National Police Check", "mandatory", True, True),
    RequirementSpec("working-with-children", "Working With Children Check", "mandatory", True, True),
    RequirementSpec("ndis-orientation", "NDIS Worker Orientation Module", "mandatory", True),
    RequirementSpec("ndis-training", "NDIS Training", "mandatory", True),
    RequirementSpec("infection-control", "Infection Control Training", "mandatory", True),
    RequirementSpec("other-requirements", "Other Requirements", "mandatory", False),
)

ADDITIONAL_REQUIREMENTS: tuple[RequirementSpec, ...] = (
    RequirementSpec(
        "identity-points-100",
        "100 Points of Identification",
        "additional",
        True,
        description="Primary and secondary identity documents totalling 100 points.",
    ),
    RequirementSpec("abn-contractor", "ABN Contractor Agreement", "additional", False),
    RequirementSpec(
        "right-to-work",
        "Right to Work in Australia",
        "additional",
        False,
        True,
        description="Visa or citizenship evidence.",
    ),
    RequirementSpec(
        "vehicle-drivers-license",
        "Vehicle/Driver's Licence",
        "additional",
        False,
        description="Photo of your driver's licence, for workers offering transport.",
    ),
)

VEHICLE_PHOTO_TYPE = "vehicle-drivers-license"
PHOTO_CONTENT_TYPES = frozenset({"image/jpeg", "image/png", "image/webp", "image/heic", "image/heif"})

SERVICE_QUALIFICATIONS: dict[str, tuple[RequirementSpec, ...]] = {
    "Support Worker": (
        RequirementSpec("cert3-aged-care", "Certificate 3 Aged Care", "qualification", False),
        RequirementSpec("cert3-disabilities", "Certificate 3 in Disabilities", "qualification", False),
        RequirementSpec("cert3-individual-support", "Certificate 3 Individual Support", "qualification", False),
        RequirementSpec(
            "cert3-individual-support-aged-care",
            "Certificate 3 Individual Support (Aged Care)",
            "qualification",
            False,
        ),
        RequirementSpec(
            "cert3-individual-support-disability",
            "Certificate 3 Individual Support (Disability)",
            "qualification",
            False,
        ),
        RequirementSpec(
            "cert3-home-community-care", "Certificate 3 in Home and Community Care", "qualification", False
        ),
        RequirementSpec("cert4-aged-care", "Certificate 4 Aged Care", "qualification", False),
        RequirementSpec("cert4-disabilities", "Certificate 4 in Disabilities", "qualification", False),
    ),
}

ALLOWED_CONTENT_TYPES = frozenset(
    {
        "application/pdf",
        "image/jpeg",
        "image/png",
        "image/webp",
        "image/heic",
        "image/heif",
    }
)
ALLOWED_EXTENSIONS = frozenset({".pdf", ".jpg", ".jpeg", ".png", ".webp", ".heic", ".heif"})
MAX_DOCUMENT_BYTES = 50 * 1024 * 1024


def all_requirements() -> list[RequirementSpec]:
    specs = list(MANDATORY_REQUIREMENTS) + list(ADDITIONAL_REQUIREMENTS)
    for quals in SERVICE_QUALIFICATIONS.values():
        specs.extend(quals)
    return specs


def get_requirement(requirement_type: str) -> RequirementSpec | None:
    for spec in all_requirements():
        if spec.type == requirement_type:
            return spec
    return None


def qualifications_for_service(service_title: str) -> list[RequirementSpec]:
    return list(SERVICE_QUALIFICATIONS.get(service_title, ()))


def qualifications_for_services(service_titles: list[str]) -> list[RequirementSpec]:
    seen: set[str] = set()
    out: list[RequirementSpec] = []
    for title in service_titles:
        for q in qualifications_for_service(title):
            if q.type not in seen:
                seen.add(q.type)
                out.append(q)
    return out


def catalogue_for_services(service_titles: list[str]) -> list[RequirementSpec]:
    return list(MANDATORY_REQUIREMENTS) + list(ADDITIONAL_REQUIREMENTS) + qualifications_for_services(service_titles)


def required_types() -> list[str]:
    """Requirement types that must be SUBMITTED or APPROVED before a worker can request verification."""
    return [r.type for r in MANDATORY_REQUIREMENTS + ADDITIONAL_REQUIREMENTS if r.is_required]


DOCUMENT_CATEGORIES: tuple[tuple[str, str], ...] = (
    ("mandatory", "Mandatory"),
    ("additional", "Additional"),
    ("qualification", "Qualifications"),
)
