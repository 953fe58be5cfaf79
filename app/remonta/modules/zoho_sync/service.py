from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.remonta.audit import record_event
from app.remonta.geocoding import geocode_address
from app.remonta.models import User
from app.remonta.modules.jobs.models import Job
from app.remonta.modules.workers.models import WorkerProfile
from app.remonta.modules.zoho_sync.mapping import (
    CONTACTS_MODULE,
    CONTRACTORS_MODULE,
    JOB_LEAD_STAGE,
    contractor_address,
    contractor_fields,
    lead_to_job_fields,
    worker_to_contact,
)
from app.remonta.modules.zoho_sync.models import Contractor, ZohoSyncRun
from app.remonta.modules.zoho_sync.zoho_client import ZohoClient
from app.remonta.storage import Storage, StorageError, build_key, delete_quietly
from app.remonta.utils import iso

logger = logging.getLogger(__name__)

# One sync of each kind at a time per process; a second caller is turned away rather than queued.
_sync_locks = {"jobs": threading.Lock(), "contractors": threading.Lock()}

WEBHOOK_OPERATIONS = ("insert", "update", "delete")


class SyncInProgressError(RuntimeError):
    pass


@dataclass
class SyncStats:
    seen: int = 0
    created: int = 0
    updated: int = 0
    deactivated: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def is_syncing(kind: str = "jobs") -> bool:
    return _sync_locks[kind].locked()


def _acquire(kind: str) -> threading.Lock:
    lock = _sync_locks[kind]
    if not lock.acquire(blocking=False):
        raise SyncInProgressError("Sync already in progress")
    return lock


def last_run(s: Session, kind: str) -> ZohoSyncRun | None:
    return (
        s.query(ZohoSyncRun)
        .filter(ZohoSyncRun.kind == kind)
        .order_by(ZohoSyncRun.ran_at.desc(), ZohoSyncRun.id.desc())
        .first()
    )


def sync_status(s: Session, kind: str = "jobs") -> dict[str, Any]:
    run = last_run(s, kind)
    return {
        "isSyncing": is_syncing(kind),
        "lastSyncTime": iso(run.ran_at) if run else None,
        "message": run.message if run else None,
        "stats": serialize_run(run) if run else None,
    }


def serialize_run(run: ZohoSyncRun) -> dict[str, Any]:
    return {
        "id": run.id,
        "kind": run.kind,
        "ranAt": iso(run.ran_at),
        "seen": run.seen_count,
        "created": run.created_count,
        "updated": run.updated_count,
        "deactivated": run.deactivated_count,
        "errors": run.error_count,
        "durationSeconds": run.duration_seconds,
        "message": run.message,
    }


def _record_run(s: Session, kind: str, stats: SyncStats, started: float, message: str) -> ZohoSyncRun:
    run = ZohoSyncRun(
        kind=kind,
        seen_count=stats.seen,
        created_count=stats.created,
        updated_count=stats.updated,
        deactivated_count=stats.deactivated,
        error_count=stats.errors,
        duration_seconds=int(time.time() - started),
        message=message,
    )
    s.add(run)
    return run


def record_failed_run(s: Session, kind: str, error: str, *, started: float | None = None) -> ZohoSyncRun:
    """Log a sync that could not read Zoho. Call after rolling back the partial sync."""
    return _record_run(
        s,
        kind,
        SyncStats(errors=1),
        started if started is not None else time.time(),
        f"Sync failed: {error}"[:500],
    )


# --- Jobs (Zoho leads) ---


def sync_jobs(s: Session, client: ZohoClient, *, actor: User | None = None) -> ZohoSyncRun:
    """
    Mirror "Recruitment End" leads into jobs.

    Leads seen are upserted by zoho_id and marked active; every other active job is
    deactivated. Raises SyncInProgressError when a jobs sync is already running and
    ZohoError when Zoho cannot be read (nothing is changed in that case).
    """
    lock = _acquire("jobs")
    try:
        started = time.time()
        now = datetime.utcnow()
        leads = client.get_leads_by_stage(JOB_LEAD_STAGE)

        stats = SyncStats(seen=len(leads))
        seen_ids: set[str] = set()
        existing = {j.zoho_id: j for j in s.query(Job).all()}
        for lead in leads:
            zoho_id = str(lead.get("id") or "").strip()
            if not zoho_id:
                stats.errors += 1
                continue
            try:
                fields = lead_to_job_fields(lead)
            except (TypeError, ValueError) as e:
                logger.warning("Skipping Zoho lead %s: %s", zoho_id, e)
                stats.errors += 1
                continue
            seen_ids.add(zoho_id)
            job = existing.get(zoho_id)
            if job is None:
                job = Job(zoho_id=zoho_id)
                s.add(job)
                existing[zoho_id] = job
                stats.created += 1
            else:
                stats.updated += 1
            for k, v in fields.items():
                setattr(job, k, v)
            job.active = True
            job.last_synced_at = now

        for job in existing.values():
            if job.active and job.zoho_id not in seen_ids:
                job.active = False
                job.last_synced_at = now
                stats.deactivated += 1

        run = _record_run(
            s,
            "jobs",
            stats,
            started,
            f"Jobs synced: created={stats.created} updated={stats.updated} "
            f"deactivated={stats.deactivated} errors={stats.errors}",
        )
        record_event(
            s,
            actor=actor,
            action="zoho.jobs_synced",
            entity_type="ZohoSyncRun",
            metadata=stats.as_dict(),
        )
        s.flush()
        logger.info("Zoho jobs sync: %s", run.message)
        return run
    finally:
        lock.release()


# --- Contractors directory ---


def serialize_contractor(c: Contractor) -> dict[str, Any]:
    return {
        "id": c.id,
        "zohoId": c.zoho_id,
        "firstName": c.first_name,
        "lastName": c.last_name,
        "titleRole": c.title_role,
        "companyName": c.company_name,
        "yearsOfExperience": c.years_of_experience,
        "city": c.city,
        "state": c.state,
        "postalCode": c.postal_code,
        "latitude": c.latitude,
        "longitude": c.longitude,
        "servicesOffered": c.services_offered or [],
        "languages": c.languages or [],
        "hasVehicleAccess": c.has_vehicle_access,
        "about": c.about,
        "hasPhoto": bool(c.profile_image_key),
        "lastSyncedAt": iso(c.last_synced_at),
    }


def list_contractors(s: Session, *, state: str | None = None, area: str | None = None) -> list[Contractor]:
    q = s.query(Contractor).filter(Contractor.deleted_at.is_(None))
    if state:
        q = q.filter(func.upper(Contractor.state) == state.strip().upper())
    if area:
        like = f"%{area.strip()}%"
        q = q.filter((Contractor.city.ilike(like)) | (Contractor.postal_code.ilike(like)))
    return q.order_by(Contractor.last_name.asc(), Contractor.first_name.asc()).all()


def _store_photo(client: ZohoClient, storage: Storage, c: Contractor) -> None:
    try:
        data = client.download_photo(CONTRACTORS_MODULE, c.zoho_id)
    except Exception as e:
        # Directory entries are still useful without a photo.
        logger.warning("Photo download failed for contractor %s: %s", c.zoho_id, e)
        return
    if not data:
        return
    key = build_key("contractors", c.zoho_id, filename="photo.jpg")
    try:
        storage.put_bytes(key, data, content_type="image/jpeg")
    except StorageError as e:
        logger.warning("Photo upload failed for contractor %s: %s", c.zoho_id, e)
        return
    delete_quietly(storage, c.profile_image_key)
    c.profile_image_key = key


def upsert_contractor(
    s: Session,
    record: dict[str, Any],
    *,
    client: ZohoClient | None = None,
    storage: Storage | None = None,
    geocode_api_key: str = "",
) -> str | None:
    """
    Insert or refresh one directory row from a Zoho record.

    Returns "created" or "updated", or None when the record was skipped (no id or no usable name).
    Re-geocodes only when the address changed; downloads the photo when Zoho has one and we don't.
    """
    zoho_id = str(record.get("id") or "").strip()
    fields = contractor_fields(record) if zoho_id else None
    if fields is None:
        return None

    c = s.query(Contractor).filter(Contractor.zoho_id == zoho_id).one_or_none()
    action = "updated"
    old_address = None
    if c is None:
        c = Contractor(zoho_id=zoho_id)
        s.add(c)
        action = "created"
    else:
        old_address = contractor_address(
            {"street": c.street, "city": c.city, "state": c.state, "postal_code": c.postal_code}
        )

    for k, v in fields.items():
        setattr(c, k, v)
    c.deleted_at = None
    c.last_synced_at = datetime.utcnow()

    address = contractor_address(fields)
    if address and (address != old_address or c.latitude is None):
        geo = geocode_address(address, api_key=geocode_api_key)
        c.latitude = geo.latitude if geo else None
        c.longitude = geo.longitude if geo else None
    elif not address:
        c.latitude = None
        c.longitude = None

    if client is not None and storage is not None and record.get("Record_Image") and not c.profile_image_key:
        s.flush()
        _store_photo(client, storage, c)
    return action


def soft_delete_contractor(s: Session, zoho_id: str) -> bool:
    c = s.query(Contractor).filter(Contractor.zoho_id == str(zoho_id)).one_or_none()
    if c is None or c.deleted_at is not None:
        return False
    c.deleted_at = datetime.utcnow()
    return True


def sync_contractors(
    s: Session,
    client: ZohoClient,
    *,
    storage: Storage | None = None,
    geocode_api_key: str = "",
    actor: User | None = None,
) -> ZohoSyncRun:
    """Full pull of the Contractors module. Records missing from Zoho are soft-deleted."""
    lock = _acquire("contractors")
    try:
        started = time.time()
        records = client.list_records(CONTRACTORS_MODULE)
        stats = SyncStats(seen=len(records))
        seen_ids: set[str] = set()
        for record in records:
            action = upsert_contractor(s, record, client=client, storage=storage, geocode_api_key=geocode_api_key)
            if action is None:
                logger.warning("Skipping Zoho contractor %s: missing id or name", record.get("id"))
                stats.errors += 1
                continue
            seen_ids.add(str(record["id"]).strip())
            if action == "created":
                stats.created += 1
            else:
                stats.updated += 1

        for c in s.query(Contractor).filter(Contractor.deleted_at.is_(None)).all():
            if c.zoho_id not in seen_ids:
                c.deleted_at = datetime.utcnow()
                stats.deactivated += 1

        run = _record_run(
            s,
            "contractors",
            stats,
            started,
            f"Contractors synced: created={stats.created} updated={stats.updated} "
            f"removed={stats.deactivated} skipped={stats.errors}",
        )
        record_event(s, actor=actor, action="zoho.contractors_synced", entity_type="ZohoSyncRun", metadata=stats.as_dict())
        s.flush()
        logger.info("Zoho contractors sync: %s", run.message)
        return run
    finally:
        lock.release()


def handle_webhook(
    s: Session,
    client: ZohoClient,
    payload: dict[str, Any],
    *,
    storage: Storage | None = None,
    geocode_api_key: str = "",
) -> dict[str, Any]:
    """
    Apply a Zoho workflow notification: {"module", "ids", "operation"}.

    insert/update re-fetch each record (the notification carries ids only); delete soft-deletes.
    Per-id failures are reported in the result rather than raised.
    """
    operation = str(payload.get("operation") or "update").strip().lower()
    if operation not in WEBHOOK_OPERATIONS:
        raise ValueError(f"Unsupported operation: {operation}")
    module = str(payload.get("module") or CONTRACTORS_MODULE).strip()
    ids = [str(i).strip() for i in (payload.get("ids") or []) if str(i).strip()]
    if not ids:
        raise ValueError("No record ids supplied")

    results: list[dict[str, Any]] = []
    for zoho_id in ids:
        if operation == "delete":
            removed = soft_delete_contractor(s, zoho_id)
            results.append({"id": zoho_id, "success": True, "action": "deleted" if removed else "skipped"})
            continue
        record = client.get_record(module, zoho_id)
        if record is None:
            results.append({"id": zoho_id, "success": False, "error": "Record not found in Zoho"})
            continue
        action = upsert_contractor(s, record, client=client, storage=storage, geocode_api_key=geocode_api_key)
        if action is None:
            results.append({"id": zoho_id, "success": False, "error": "Record has no usable name"})
        else:
            results.append({"id": zoho_id, "success": True, "action": action})

    record_event(
        s,
        actor=None,
        action="zoho.webhook",
        entity_type="Contractor",
        metadata={"operation": operation, "module": module, "ids": ids},
    )
    return {
        "operation": operation,
        "processed": sum(1 for r in results if r["success"]),
        "errors": sum(1 for r in results if not r["success"]),
        "results": results,
    }


# --- Outbound: worker -> Zoho Contacts ---


def submit_worker(s: Session, client: ZohoClient, profile: WorkerProfile, *, actor: User) -> str:
    """Create a Zoho Contacts record for a worker and remember its id. Returns the Zoho id."""
    details = client.create_record(CONTACTS_MODULE, worker_to_contact(profile))
    zoho_id = str(details.get("id") or "")
    if not zoho_id:
        raise ValueError("Zoho did not return a record id")
    profile.zoho_contact_id = zoho_id
    record_event(
        s,
        actor=actor,
        action="zoho.contact_created",
        entity_type="WorkerProfile",
        entity_id=str(profile.id),
        metadata={"zoho_id": zoho_id},
    )
    return zoho_id
