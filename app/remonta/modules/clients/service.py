from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from app.remonta.audit import record_event
from app.remonta.geocoding import parse_location
from app.remonta.models import User
from app.remonta.modules.clients.models import ClientProfile, CoordinatorProfile, Participant, ServiceRequest
from app.remonta.modules.clients.schemas import (
    ParticipantCreate,
    ParticipantUpdate,
    ServiceRequestCreate,
    ServiceRequestUpdate,
)
from app.remonta.utils import iso


def serialize_participant(p: Participant) -> dict[str, Any]:
    return {
        "id": p.id,
        "firstName": p.first_name,
        "lastName": p.last_name,
        "dateOfBirth": iso(p.date_of_birth),
        "fundingType": p.funding_type,
        "relationshipToClient": p.relationship_to_client,
        "location": p.location,
        "city": p.city,
        "state": p.state,
        "postalCode": p.postal_code,
        "servicesRequested": p.services_requested or [],
        "additionalInfo": p.additional_info,
        "serviceRequestCount": len(p.service_requests),
        "createdAt": iso(p.created_at),
        "updatedAt": iso(p.updated_at),
    }


def serialize_service_request(r: ServiceRequest) -> dict[str, Any]:
    return {
        "id": r.id,
        "participantId": r.participant_id,
        "participantName": r.participant.full_name if r.participant else None,
        "services": r.services or [],
        "details": r.details or {},
        "location": r.location or {},
        "status": r.status,
        "createdAt": iso(r.created_at),
        "updatedAt": iso(r.updated_at),
    }


def owner_profile(s: Session, user: User) -> ClientProfile | CoordinatorProfile | None:
    return (
        s.query(ClientProfile).filter(ClientProfile.user_id == user.id).one_or_none()
        or s.query(CoordinatorProfile).filter(CoordinatorProfile.user_id == user.id).one_or_none()
    )


def list_participants(s: Session, owner: User) -> list[Participant]:
    return (
        s.query(Participant)
        .filter(Participant.owner_user_id == owner.id)
        .order_by(Participant.created_at.desc(), Participant.id.desc())
        .all()
    )


def get_participant(s: Session, owner: User, participant_id: int) -> Participant | None:
    """Owner-scoped lookup. Another account's participant is reported as missing, not forbidden."""
    p = s.get(Participant, participant_id)
    if p is None or p.owner_user_id != owner.id:
        return None
    return p


def _apply_location(p: Participant, location: str | None) -> None:
    parsed = parse_location(location)
    p.location = location
    p.city = parsed.city
    p.state = parsed.state
    p.postal_code = parsed.postal_code


def create_participant(s: Session, owner: User, data: ParticipantCreate) -> Participant:
    p = Participant(
        owner_user_id=owner.id,
        first_name=data.first_name,
        last_name=data.last_name,
        date_of_birth=data.date_of_birth,
        funding_type=data.funding_type.value if data.funding_type else None,
        relationship_to_client=data.relationship_to_client.value if data.relationship_to_client else None,
        services_requested=data.services_requested,
        additional_info=data.additional_info,
    )
    _apply_location(p, data.location)
    s.add(p)
    s.flush()
    record_event(s, actor=owner, action="participant.create", entity_type="Participant", entity_id=str(p.id))
    return p


def update_participant(s: Session, owner: User, p: Participant, data: ParticipantUpdate) -> list[str]:
    changes = data.model_dump(exclude_unset=True)
    for field, value in changes.items():
        if field == "location":
            _apply_location(p, value)
        elif field in ("funding_type", "relationship_to_client"):
            setattr(p, field, value.value if value is not None else None)
        elif field in ("first_name", "last_name") and not value:
            continue
        else:
            setattr(p, field, value)
    record_event(
        s,
        actor=owner,
        action="participant.update",
        entity_type="Participant",
        entity_id=str(p.id),
        metadata={"fields": sorted(changes)},
    )
    return sorted(changes)


def delete_participant(s: Session, owner: User, p: Participant) -> None:
    record_event(s, actor=owner, action="participant.delete", entity_type="Participant", entity_id=str(p.id))
    s.delete(p)


def list_service_requests(s: Session, owner: User, *, status: str | None = None) -> list[ServiceRequest]:
    q = s.query(ServiceRequest).filter(ServiceRequest.requester_user_id == owner.id)
    if status:
        q = q.filter(ServiceRequest.status == status)
    return q.order_by(ServiceRequest.created_at.desc(), ServiceRequest.id.desc()).all()


def get_service_request(s: Session, owner: User, request_id: int) -> ServiceRequest | None:
    r = s.get(ServiceRequest, request_id)
    if r is None or r.requester_user_id != owner.id:
        return None
    return r


def create_service_request(s: Session, owner: User, data: ServiceRequestCreate) -> ServiceRequest:
    participant = get_participant(s, owner, data.participant_id)
    if participant is None:
        raise LookupError("Participant not found")
    r = ServiceRequest(
        requester_user_id=owner.id,
        participant_id=participant.id,
        services=data.services,
        details=data.details,
        location=data.location,
        status="PENDING",
    )
    s.add(r)
    s.flush()
    record_event(
        s,
        actor=owner,
        action="service_request.create",
        entity_type="ServiceRequest",
        entity_id=str(r.id),
        metadata={"participant_id": participant.id, "services": data.services},
    )
    return r


def update_service_request(s: Session, owner: User, r: ServiceRequest, data: ServiceRequestUpdate) -> list[str]:
    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    if r.status in ("COMPLETED", "CANCELLED") and changes:
        raise ValueError(f"A {r.status.lower()} request cannot be changed.")
    if "services" in changes:
        services = [x.strip() for x in changes["services"] if x and x.strip()]
        if not services:
            raise ValueError("Select at least one service.")
        r.services = services
    if "details" in changes:
        r.details = changes["details"]
    if "location" in changes:
        r.location = changes["location"]
    if "status" in changes:
        r.status = changes["status"].value
    record_event(
        s,
        actor=owner,
        action="service_request.update",
        entity_type="ServiceRequest",
        entity_id=str(r.id),
        metadata={"fields": sorted(changes), "status": r.status},
    )
    return sorted(changes)


def delete_service_request(s: Session, owner: User, r: ServiceRequest) -> None:
    record_event(s, actor=owner, action="service_request.delete", entity_type="ServiceRequest", entity_id=str(r.id))
    s.delete(r)
