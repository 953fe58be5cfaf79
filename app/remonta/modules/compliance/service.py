"""
Compliance document workflow.

Document status: PENDING -> SUBMITTED (worker upload) -> APPROVED / REJECTED (admin review).
Admins may also reset a document back to PENDING, which clears the stored file.

Worker verification status: NOT_STARTED -> IN_PROGRESS (first upload) -> PENDING_REVIEW
(worker submits) -> APPROVED / REJECTED (admin decision). A rejected worker who uploads
again returns to IN_PROGRESS.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.remonta.audit import record_event
from app.remonta.models import User
from app.remonta.modules.compliance.catalog import (
    ADDITIONAL_REQUIREMENTS,
    ALLOWED_CONTENT_TYPES,
    ALLOWED_EXTENSIONS,
    DOCUMENT_CATEGORIES,
    MANDATORY_REQUIREMENTS,
    MAX_DOCUMENT_BYTES,
    PHOTO_CONTENT_TYPES,
    VEHICLE_PHOTO_TYPE,
    RequirementSpec,
    all_requirements,
    catalogue_for_services,
    get_requirement,
    qualifications_for_service,
    required_types,
)
from app.remonta.modules.compliance.models import VerificationRequirement
from app.remonta.modules.workers.models import WorkerProfile
from app.remonta.storage import Storage, build_key, delete_quietly, file_digest_and_size
from app.remonta.utils import iso

VERIFICATION_STATUSES = ("NOT_STARTED", "IN_PROGRESS", "PENDING_REVIEW", "APPROVED", "REJECTED")
DOCUMENT_STATUSES = ("PENDING", "SUBMITTED", "APPROVED", "REJECTED")
SUBMISSION_FILTERS = {
    "with_documents": "Has submitted documents",
    "without_documents": "No documents submitted",
    "all_approved": "All documents approved",
}


class TransitionError(ValueError):
    """Requested status change is not allowed from the current status."""


class MissingDocumentsError(ValueError):
    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__("Required documents are missing: " + ", ".join(missing))


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    content_type: str
    data: bytes


def serialize_requirement(req: VerificationRequirement | None, spec: RequirementSpec | None = None) -> dict[str, Any]:
    spec = spec or (get_requirement(req.requirement_type) if req else None)
    out: dict[str, Any] = {
        "requirementType": spec.type if spec else req.requirement_type,
        "requirementName": spec.name if spec else req.requirement_name,
        "group": spec.group if spec else "other",
        "isRequired": spec.is_required if spec else bool(req and req.is_required),
        "hasExpiry": bool(spec and spec.has_expiry),
        "description": spec.description if spec else "",
        "status": req.status if req else "PENDING",
        "id": req.id if req else None,
        "hasDocument": bool(req and req.has_document),
    }
    if req is not None:
        out.update(
            {
                "filename": req.filename,
                "contentType": req.content_type,
                "sizeBytes": req.size_bytes,
                "uploadedAt": iso(req.document_uploaded_at),
                "submittedAt": iso(req.submitted_at),
                "reviewedAt": iso(req.reviewed_at),
                "reviewedBy": req.reviewed_by,
                "approvedAt": iso(req.approved_at),
                "rejectedAt": iso(req.rejected_at),
                "rejectionReason": req.rejection_reason,
                "expiryDate": iso(req.expiry_date),
                "documentNumber": req.document_number,
                "metadata": req.metadata_json or {},
            }
        )
    return out


def requirements_for_profile(s: Session, profile: WorkerProfile) -> dict[str, VerificationRequirement]:
    rows = s.query(VerificationRequirement).filter(VerificationRequirement.worker_profile_id == profile.id).all()
    return {r.requirement_type: r for r in rows}


def overlay_requirements(s: Session, profile: WorkerProfile, specs: list[RequirementSpec] | None = None) -> list[dict[str, Any]]:
    """
    Catalogue entries for the worker's services overlaid with their stored rows.
    Stored rows outside the catalogue (e.g. qualifications for a service since removed) are appended.
    """
    stored = requirements_for_profile(s, profile)
    if specs is None:
        specs = catalogue_for_services(profile.services or [])
    out = [serialize_requirement(stored.get(spec.type), spec) for spec in specs]
    listed = {spec.type for spec in specs}
    out.extend(serialize_requirement(req) for t, req in stored.items() if t not in listed)
    return out


def requirements_grouped(s: Session, profile: WorkerProfile, service_title: str | None = None) -> dict[str, Any]:
    stored = requirements_for_profile(s, profile)
    quals = qualifications_for_service(service_title) if service_title else []
    return {
        "serviceTitle": service_title,
        "mandatory": [serialize_requirement(stored.get(r.type), r) for r in MANDATORY_REQUIREMENTS],
        "additional": [serialize_requirement(stored.get(r.type), r) for r in ADDITIONAL_REQUIREMENTS],
        "qualifications": [serialize_requirement(stored.get(r.type), r) for r in quals],
    }


def _validate_file(upload: UploadedFile) -> None:
    if not upload.filename:
        raise ValueError("No file uploaded")
    ext = os.path.splitext(upload.filename)[1].lower()
    if ext not in ALLOWED_EXTENSIONS or (upload.content_type or "").lower() not in ALLOWED_CONTENT_TYPES:
        raise ValueError("File must be a PDF, JPEG, PNG, WebP or HEIC document")
    if not upload.data:
        raise ValueError("Uploaded file is empty")
    if len(upload.data) > MAX_DOCUMENT_BYTES:
        raise ValueError("File must be 50MB or smaller")


def upload_document(
    s: Session,
    storage: Storage,
    profile: WorkerProfile,
    requirement_type: str,
    upload: UploadedFile,
    *,
    actor: User,
    expiry_date: date | None = None,
    document_number: str | None = None,
    service_title: str | None = None,
) -> VerificationRequirement:
    spec = get_requirement(requirement_type)
    if spec is None:
        raise LookupError(f"Unknown requirement type: {requirement_type}")
    _validate_file(upload)

    req = (
        s.query(VerificationRequirement)
        .filter(
            VerificationRequirement.worker_profile_id == profile.id,
            VerificationRequirement.requirement_type == requirement_type,
        )
        .one_or_none()
    )
    if req is not None and req.status == "APPROVED":
        raise TransitionError("This document has already been approved and cannot be replaced.")

    sha256, size = file_digest_and_size(upload.data)
    key = build_key("compliance", str(profile.id), requirement_type, filename=upload.filename)
    storage.put_bytes(key, upload.data, content_type=upload.content_type)

    now = datetime.utcnow()
    old_key = req.storage_key if req is not None else None
    if req is None:
        req = VerificationRequirement(
            worker_profile_id=profile.id,
            requirement_type=spec.type,
            requirement_name=spec.name,
            is_required=spec.is_required,
        )
        s.add(req)
    req.status = "SUBMITTED"
    req.storage_key = key
    req.filename = upload.filename
    req.content_type = upload.content_type
    req.sha256 = sha256
    req.size_bytes = size
    req.document_uploaded_at = now
    req.submitted_at = now
    req.reviewed_at = None
    req.reviewed_by = None
    req.rejected_at = None
    req.rejection_reason = None
    req.expiry_date = expiry_date
    req.document_number = document_number
    if service_title:
        req.metadata_json = {**(req.metadata_json or {}), "serviceTitle": service_title}

    if profile.verification_status in ("NOT_STARTED", "REJECTED"):
        profile.verification_status = "IN_PROGRESS"
    s.flush()
    record_event(
        s,
        actor=actor,
        action="compliance.document_upload",
        entity_type="VerificationRequirement",
        entity_id=str(req.id),
        metadata={"requirement_type": requirement_type, "sha256": sha256, "size_bytes": size},
    )
    if old_key and old_key != key:
        delete_quietly(storage, old_key)
    return req


def delete_document(s: Session, storage: Storage, profile: WorkerProfile, requirement_type: str, *, actor: User) -> None:
    req = (
        s.query(VerificationRequirement)
        .filter(
            VerificationRequirement.worker_profile_id == profile.id,
            VerificationRequirement.requirement_type == requirement_type,
        )
        .one_or_none()
    )
    if req is None:
        raise LookupError("Document not found")
    if req.status == "APPROVED":
        raise TransitionError("Approved documents cannot be deleted.")
    key = req.storage_key
    record_event(
        s,
        actor=actor,
        action="compliance.document_delete",
        entity_type="VerificationRequirement",
        entity_id=str(req.id),
        metadata={"requirement_type": requirement_type},
    )
    s.delete(req)
    s.flush()
    delete_quietly(storage, key)


def upload_vehicle_photo(s: Session, storage: Storage, profile: WorkerProfile, upload: UploadedFile, *, actor: User) -> VerificationRequirement:
    """The licence photo is an ordinary optional requirement that only accepts images."""
    if upload.filename and (upload.content_type or "").lower() not in PHOTO_CONTENT_TYPES:
        raise ValueError("Vehicle photo must be a JPEG, PNG, WebP or HEIC image")
    return upload_document(s, storage, profile, VEHICLE_PHOTO_TYPE, upload, actor=actor)


def vehicle_photo(s: Session, profile: WorkerProfile) -> VerificationRequirement | None:
    req = requirements_for_profile(s, profile).get(VEHICLE_PHOTO_TYPE)
    return req if req is not None and req.has_document else None


# --- Admin document review ---


def _reviewed(req: VerificationRequirement, reviewer: User) -> datetime:
    now = datetime.utcnow()
    req.reviewed_at = now
    req.reviewed_by = reviewer.email
    return now


def approve_document(s: Session, req: VerificationRequirement, *, reviewer: User) -> bool:
    """Returns False when the document was already approved (no-op)."""
    if req.status == "APPROVED":
        return False
    if req.status not in ("SUBMITTED", "REJECTED"):
        raise TransitionError(f"Cannot approve a document in status {req.status}.")
    now = _reviewed(req, reviewer)
    req.status = "APPROVED"
    req.approved_at = now
    req.rejected_at = None
    req.rejection_reason = None
    record_event(
        s,
        actor=reviewer,
        action="compliance.document_approve",
        entity_type="VerificationRequirement",
        entity_id=str(req.id),
        metadata={"requirement_type": req.requirement_type, "worker_profile_id": req.worker_profile_id},
    )
    return True


def reject_document(s: Session, req: VerificationRequirement, *, reviewer: User, reason: str | None) -> bool:
    """Returns False when the document was already rejected (no-op)."""
    reason = (reason or "").strip()
    if not reason:
        raise ValueError("A rejection reason is required.")
    if req.status == "REJECTED":
        return False
    if req.status not in ("SUBMITTED", "APPROVED"):
        raise TransitionError(f"Cannot reject a document in status {req.status}.")
    now = _reviewed(req, reviewer)
    req.status = "REJECTED"
    req.rejected_at = now
    req.approved_at = None
    req.rejection_reason = reason[:2000]
    record_event(
        s,
        actor=reviewer,
        action="compliance.document_reject",
        entity_type="VerificationRequirement",
        entity_id=str(req.id),
        reason=reason[:512],
        metadata={"requirement_type": req.requirement_type, "worker_profile_id": req.worker_profile_id},
    )
    return True


def reset_document(s: Session, storage: Storage, req: VerificationRequirement, *, reviewer: User) -> None:
    key = req.storage_key
    _reviewed(req, reviewer)
    req.status = "PENDING"
    req.storage_key = None
    req.filename = None
    req.content_type = None
    req.sha256 = None
    req.size_bytes = None
    req.document_uploaded_at = None
    req.submitted_at = None
    req.approved_at = None
    req.rejected_at = None
    req.rejection_reason = None
    req.expiry_date = None
    req.document_number = None
    record_event(
        s,
        actor=reviewer,
        action="compliance.document_reset",
        entity_type="VerificationRequirement",
        entity_id=str(req.id),
        metadata={"requirement_type": req.requirement_type, "worker_profile_id": req.worker_profile_id},
    )
    s.flush()
    delete_quietly(storage, key)


def update_expiry(s: Session, req: VerificationRequirement, expiry: date | None, *, reviewer: User) -> None:
    if expiry is None:
        raise ValueError("expiryDate is required (YYYY-MM-DD).")
    old = req.expiry_date
    req.expiry_date = expiry
    record_event(
        s,
        actor=reviewer,
        action="compliance.document_update_expiry",
        entity_type="VerificationRequirement",
        entity_id=str(req.id),
        metadata={"old": iso(old), "new": iso(expiry)},
    )


# --- Worker-level verification ---


def missing_required_documents(s: Session, profile: WorkerProfile) -> list[str]:
    stored = requirements_for_profile(s, profile)
    return [t for t in required_types() if t not in stored or stored[t].status not in ("SUBMITTED", "APPROVED")]


def submit_verification(s: Session, profile: WorkerProfile, *, actor: User) -> WorkerProfile:
    if profile.verification_status == "PENDING_REVIEW":
        raise TransitionError("Your documents are already under review.")
    if profile.verification_status == "APPROVED":
        raise TransitionError("Your profile is already verified.")
    missing = missing_required_documents(s, profile)
    if missing:
        raise MissingDocumentsError(missing)
    profile.verification_status = "PENDING_REVIEW"
    profile.verification_submitted_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="compliance.verification_submit",
        entity_type="WorkerProfile",
        entity_id=str(profile.id),
    )
    return profile


def _submitted_documents(s: Session, profile: WorkerProfile) -> list[VerificationRequirement]:
    return (
        s.query(VerificationRequirement)
        .filter(
            VerificationRequirement.worker_profile_id == profile.id,
            VerificationRequirement.status == "SUBMITTED",
        )
        .all()
    )


def approve_worker(s: Session, profile: WorkerProfile, *, reviewer: User, notes: str | None = None) -> int:
    """Approve and publish the worker; SUBMITTED documents are approved with them. Returns the document count."""
    now = datetime.utcnow()
    docs = _submitted_documents(s, profile)
    for req in docs:
        req.status = "APPROVED"
        req.approved_at = now
        req.reviewed_at = now
        req.reviewed_by = reviewer.email
    profile.verification_status = "APPROVED"
    profile.verification_reviewed_at = now
    profile.verification_reviewed_by = reviewer.email
    profile.verification_notes = (notes or "").strip() or None
    profile.is_published = True
    record_event(
        s,
        actor=reviewer,
        action="compliance.verification_approve",
        entity_type="WorkerProfile",
        entity_id=str(profile.id),
        metadata={"documents_approved": len(docs)},
    )
    return len(docs)


def reject_worker(s: Session, profile: WorkerProfile, *, reviewer: User, notes: str | None) -> int:
    notes = (notes or "").strip()
    if not notes:
        raise ValueError("Notes are required when rejecting a verification.")
    now = datetime.utcnow()
    docs = _submitted_documents(s, profile)
    for req in docs:
        req.status = "REJECTED"
        req.rejected_at = now
        req.reviewed_at = now
        req.reviewed_by = reviewer.email
        req.rejection_reason = notes[:2000]
    profile.verification_status = "REJECTED"
    profile.verification_reviewed_at = now
    profile.verification_reviewed_by = reviewer.email
    profile.verification_notes = notes
    profile.is_published = False
    record_event(
        s,
        actor=reviewer,
        action="compliance.verification_reject",
        entity_type="WorkerProfile",
        entity_id=str(profile.id),
        reason=notes[:512],
        metadata={"documents_rejected": len(docs)},
    )
    return len(docs)


def set_published(s: Session, profile: WorkerProfile, published: bool, *, reviewer: User) -> None:
    if published and profile.verification_status != "APPROVED":
        raise TransitionError("Only verified workers can be published.")
    profile.is_published = published
    record_event(
        s,
        actor=reviewer,
        action="compliance.publish" if published else "compliance.unpublish",
        entity_type="WorkerProfile",
        entity_id=str(profile.id),
    )


def verification_stats(s: Session) -> dict[str, int]:
    counts = {status: 0 for status in VERIFICATION_STATUSES}
    for status, n in (
        s.query(WorkerProfile.verification_status, func.count(WorkerProfile.id))
        .group_by(WorkerProfile.verification_status)
        .all()
    ):
        counts[status] = int(n)
    counts["total"] = sum(counts[st] for st in VERIFICATION_STATUSES)
    return counts


def worker_summary(s: Session, profile: WorkerProfile) -> dict[str, Any]:
    stored = requirements_for_profile(s, profile)
    by_status: dict[str, int] = {"PENDING": 0, "SUBMITTED": 0, "APPROVED": 0, "REJECTED": 0}
    for req in stored.values():
        by_status[req.status] = by_status.get(req.status, 0) + 1
    return {
        "id": profile.id,
        "userId": profile.user_id,
        "name": profile.full_name,
        "email": profile.user.email if profile.user else None,
        "mobile": profile.mobile,
        "city": profile.city,
        "state": profile.state,
        "services": profile.services or [],
        "verificationStatus": profile.verification_status,
        "verificationSubmittedAt": iso(profile.verification_submitted_at),
        "isPublished": profile.is_published,
        "documents": by_status,
        "missingRequired": [t for t in required_types() if t not in stored or stored[t].status != "APPROVED"],
    }


def workers_by_status(s: Session, status: str | None) -> list[WorkerProfile]:
    q = s.query(WorkerProfile)
    if status:
        q = q.filter(WorkerProfile.verification_status == status)
    return q.order_by(WorkerProfile.verification_submitted_at.desc(), WorkerProfile.id.desc()).all()


def compliant_workers(s: Session) -> list[WorkerProfile]:
    """Workers whose every required document is APPROVED."""
    needed = set(required_types())
    approved: dict[int, set[str]] = {}
    for profile_id, req_type in (
        s.query(VerificationRequirement.worker_profile_id, VerificationRequirement.requirement_type)
        .filter(VerificationRequirement.status == "APPROVED")
        .all()
    ):
        approved.setdefault(profile_id, set()).add(req_type)
    ids = [pid for pid, types in approved.items() if needed <= types]
    if not ids:
        return []
    return s.query(WorkerProfile).filter(WorkerProfile.id.in_(ids)).order_by(WorkerProfile.id.asc()).all()


# --- Admin filters ---


def _profiles_with_documents(s: Session) -> set[int]:
    return {
        pid
        for (pid,) in s.query(VerificationRequirement.worker_profile_id)
        .filter(VerificationRequirement.storage_key.isnot(None))
        .distinct()
    }


def _profiles_all_approved(s: Session) -> set[int]:
    not_approved = {
        pid
        for (pid,) in s.query(VerificationRequirement.worker_profile_id)
        .filter(VerificationRequirement.status != "APPROVED")
        .distinct()
    }
    return _profiles_with_documents(s) - not_approved


def filter_options(s: Session) -> dict[str, Any]:
    total = s.query(func.count(WorkerProfile.id)).scalar() or 0
    with_docs = len(_profiles_with_documents(s))
    return {
        "documentStatuses": list(DOCUMENT_STATUSES),
        "requirementTypes": [{"type": r.type, "name": r.name, "group": r.group} for r in all_requirements()],
        "documentCategories": [{"value": v, "label": label} for v, label in DOCUMENT_CATEGORIES],
        "documentSubmissionFilters": [{"value": v, "label": label} for v, label in SUBMISSION_FILTERS.items()],
        "stats": {
            "totalWorkers": int(total),
            "withDocuments": with_docs,
            "withoutDocuments": int(total) - with_docs,
            "allApproved": len(_profiles_all_approved(s)),
        },
    }


def filter_profile_ids(
    s: Session,
    *,
    submission: str | None = None,
    document_status: str | None = None,
    requirement_type: str | None = None,
) -> set[int] | None:
    """Worker profile ids matching the document filters, or None when no filter is set."""
    if not (submission or document_status or requirement_type):
        return None
    if submission and submission not in SUBMISSION_FILTERS:
        raise ValueError(f"Unknown document filter: {submission}")
    if document_status and document_status not in DOCUMENT_STATUSES:
        raise ValueError(f"Unknown document status: {document_status}")
    if requirement_type and get_requirement(requirement_type) is None:
        raise ValueError(f"Unknown requirement type: {requirement_type}")

    ids = {pid for (pid,) in s.query(WorkerProfile.id)}
    if document_status or requirement_type:
        q = s.query(VerificationRequirement.worker_profile_id)
        if document_status:
            q = q.filter(VerificationRequirement.status == document_status)
        if requirement_type:
            q = q.filter(VerificationRequirement.requirement_type == requirement_type)
        ids &= {pid for (pid,) in q.distinct()}
    if submission == "with_documents":
        ids &= _profiles_with_documents(s)
    elif submission == "without_documents":
        ids -= _profiles_with_documents(s)
    elif submission == "all_approved":
        ids &= _profiles_all_approved(s)
    return ids
