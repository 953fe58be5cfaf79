"""
Idempotent seed data: permissions, roles and the service category catalogue.

Shared by scripts/init_db.py (release), registration (role lookup) and tests.
"""
from __future__ import annotations

from sqlalchemy.orm import Session

from app.remonta.models import Permission, Role

PERMISSIONS: dict[str, str] = {
    # Worker
    "dashboard.worker": "Dashboard: worker",
    "worker.profile": "Worker: edit own profile",
    "worker.compliance": "Worker: upload compliance documents",
    "jobs.apply": "Jobs: apply",
    # Client / coordinator
    "dashboard.client": "Dashboard: client",
    "dashboard.coordinator": "Dashboard: coordinator",
    "participants.manage": "Participants: manage own",
    "service_requests.manage": "Service requests: manage own",
    "workers.search": "Workers: search",
    # Admin
    "admin.view": "Admin: view console",
    "admin.users": "Admin: manage users",
    "admin.compliance": "Admin: review compliance",
    "admin.impersonate": "Admin: impersonate users",
    "admin.zoho": "Admin: Zoho integration",
    "admin.queue": "Admin: background queue",
    "admin.audit": "Admin: audit trail",
    "compliance.download": "Compliance: download any document",
}

ROLE_NAMES: dict[str, str] = {
    "worker": "Support Worker",
    "client": "Client",
    "coordinator": "Support Coordinator",
    "admin": "Administrator",
}

ROLE_PERMISSIONS: dict[str, tuple[str, ...]] = {
    "worker": ("dashboard.worker", "worker.profile", "worker.compliance", "jobs.apply"),
    "client": ("dashboard.client", "participants.manage", "service_requests.manage", "workers.search"),
    "coordinator": ("dashboard.coordinator", "participants.manage", "service_requests.manage", "workers.search"),
    "admin": (
        "admin.view",
        "admin.users",
        "admin.compliance",
        "admin.impersonate",
        "admin.zoho",
        "admin.queue",
        "admin.audit",
        "compliance.download",
        "workers.search",
    ),
}

# (id, name, requires_qualification, [(subcategory id, name, requires_registration)])
CATEGORIES: list[tuple[str, str, bool, list[tuple[str, str, bool]]]] = [
    (
        "support-worker",
        "Support Worker",
        True,
        [
            ("support-worker-personal-care", "Personal Care", False),
            ("support-worker-community-access", "Community Access", False),
            ("support-worker-domestic-assistance", "Domestic Assistance", False),
            ("support-worker-social-support", "Social & Recreational Support", False),
            ("support-worker-transport", "Transport", False),
            ("support-worker-high-intensity", "High Intensity Supports", False),
        ],
    ),
    (
        "therapeutic-supports",
        "Therapeutic Supports",
        True,
        [
            ("therapeutic-occupational-therapy", "Occupational Therapy", True),
            ("therapeutic-physiotherapy", "Physiotherapy", True),
            ("therapeutic-psychology", "Psychology", True),
            ("therapeutic-speech-pathology", "Speech Pathology", True),
            ("therapeutic-behaviour-support", "Positive Behaviour Support", False),
        ],
    ),
    (
        "nursing-services",
        "Nursing Services",
        True,
        [
            ("nursing-registered-nurse", "Registered Nurse", True),
            ("nursing-enrolled-nurse", "Enrolled Nurse", True),
        ],
    ),
    ("home-modifications", "Home Modifications", False, []),
    ("cleaning-services", "Cleaning Services", False, []),
    ("gardening-services", "Home and Yard Maintenance", False, []),
    ("fitness-and-rehabilitation", "Fitness and Rehabilitation", False, []),
]


def ensure_permission(s: Session, key: str) -> Permission:
    p = s.query(Permission).filter(Permission.key == key).one_or_none()
    if not p:
        p = Permission(key=key, name=PERMISSIONS.get(key, key))
        s.add(p)
        s.flush()
    return p


def get_or_create_role(s: Session, key: str) -> Role:
    """
    Role with its seeded permission set; missing permissions are (re)attached.
    """
    if key not in ROLE_PERMISSIONS:
        raise ValueError(f"Unknown role: {key}")
    role = s.query(Role).filter(Role.key == key).one_or_none()
    if not role:
        role = Role(key=key, name=ROLE_NAMES[key])
        s.add(role)
        s.flush()
    for perm_key in ROLE_PERMISSIONS[key]:
        p = ensure_permission(s, perm_key)
        if p not in role.permissions:
            role.permissions.append(p)
    return role


def seed_roles(s: Session) -> dict[str, Role]:
    return {key: get_or_create_role(s, key) for key in ROLE_PERMISSIONS}


def seed_categories(s: Session) -> int:
    from app.remonta.modules.workers.models import Category, Subcategory

    created = 0
    for order, (cat_id, name, requires_qual, subs) in enumerate(CATEGORIES):
        cat = s.get(Category, cat_id)
        if not cat:
            cat = Category(id=cat_id, name=name, requires_qualification=requires_qual, sort_order=order)
            s.add(cat)
            created += 1
        else:
            cat.name = name
            cat.requires_qualification = requires_qual
            cat.sort_order = order
        existing = {sc.id for sc in cat.subcategories}
        for sub_id, sub_name, requires_reg in subs:
            if sub_id in existing:
                continue
            cat.subcategories.append(
                Subcategory(id=sub_id, category_id=cat_id, name=sub_name, requires_registration=requires_reg)
            )
            created += 1
    s.flush()
    return created


def seed_all(s: Session) -> None:
    seed_roles(s)
    seed_categories(s)
