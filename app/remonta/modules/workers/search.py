from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from app.remonta.geocoding import bounding_box, distance_km, geocode_location
from app.remonta.modules.workers.models import WorkerProfile
from app.remonta.modules.workers.service import serialize_profile
from app.remonta.utils import as_str_list

DEFAULT_RADIUS_KM = 50.0


@dataclass
class WorkerSearchFilters:
    latitude: float | None = None
    longitude: float | None = None
    radius_km: float = DEFAULT_RADIUS_KM
    services: list[str] = field(default_factory=list)
    languages: list[str] = field(default_factory=list)
    gender: str | None = None
    has_vehicle: str | None = None
    state: str | None = None
    verified_only: bool = True
    limit: int = 50
    offset: int = 0


def _matches_any(values: list[str] | None, wanted: list[str]) -> bool:
    if not wanted:
        return True
    have = {v.strip().lower() for v in (values or [])}
    return any(w.strip().lower() in have for w in wanted)


def search_workers(s: Session, filters: WorkerSearchFilters) -> dict[str, Any]:
    """
    Published workers matching the filters. When a point is given, results are limited to
    radius_km and ordered by distance (nearest first); otherwise newest first.

    JSON list columns are filtered in Python so the query stays portable across SQLite and Postgres.
    """
    q = s.query(WorkerProfile).filter(WorkerProfile.is_published.is_(True))
    if filters.verified_only:
        q = q.filter(WorkerProfile.verification_status == "APPROVED")
    if filters.gender:
        q = q.filter(WorkerProfile.gender == filters.gender.strip().lower())
    if filters.has_vehicle:
        q = q.filter(WorkerProfile.has_vehicle == filters.has_vehicle)
    if filters.state:
        q = q.filter(WorkerProfile.state == filters.state.strip().upper())

    has_point = filters.latitude is not None and filters.longitude is not None
    if has_point:
        min_lat, max_lat, min_lon, max_lon = bounding_box(filters.latitude, filters.longitude, filters.radius_km)
        q = q.filter(
            WorkerProfile.latitude.is_not(None),
            WorkerProfile.longitude.is_not(None),
            WorkerProfile.latitude.between(min_lat, max_lat),
            WorkerProfile.longitude.between(min_lon, max_lon),
        )
    else:
        q = q.order_by(WorkerProfile.created_at.desc())

    hits: list[tuple[WorkerProfile, float | None]] = []
    for profile in q.all():
        if not _matches_any(profile.services, filters.services):
            continue
        if not _matches_any(profile.languages, filters.languages):
            continue
        dist: float | None = None
        if has_point:
            dist = distance_km(filters.latitude, filters.longitude, profile.latitude, profile.longitude)
            if dist > filters.radius_km:
                continue
        hits.append((profile, dist))

    if has_point:
        hits.sort(key=lambda h: h[1] if h[1] is not None else float("inf"))

    total = len(hits)
    page = hits[filters.offset : filters.offset + filters.limit]
    workers = []
    for profile, dist in page:
        item = serialize_profile(profile, private=False)
        if dist is not None:
            item["distanceKm"] = round(dist, 1)
        workers.append(item)
    return {"workers": workers, "total": total, "limit": filters.limit, "offset": filters.offset}


def _float_arg(args, *names: str) -> float | None:
    for name in names:
        raw = (args.get(name) or "").strip()
        if raw:
            try:
                return float(raw)
            except ValueError:
                return None
    return None


def _list_arg(args, *names: str) -> list[str]:
    out: list[str] = []
    for name in names:
        for raw in args.getlist(name):
            out.extend(as_str_list(raw))
    return out


def filters_from_args(args, *, geocode_api_key: str = "") -> WorkerSearchFilters:
    """
    Build filters from query args. A free-text `location` is geocoded when no lat/lng is given;
    an ungeocodable location falls back to a state filter.
    """
    f = WorkerSearchFilters(
        latitude=_float_arg(args, "lat", "latitude"),
        longitude=_float_arg(args, "lng", "lon", "longitude"),
        services=_list_arg(args, "services", "service"),
        languages=_list_arg(args, "languages", "language"),
        gender=(args.get("gender") or "").strip() or None,
        has_vehicle=(args.get("hasVehicle") or args.get("has_vehicle") or "").strip() or None,
        state=(args.get("state") or "").strip() or None,
    )
    radius = _float_arg(args, "radius", "radiusKm")
    if radius is not None and radius > 0:
        f.radius_km = min(radius, 500.0)
    verified = (args.get("verifiedOnly") or args.get("verified_only") or "").strip().lower()
    if verified in ("0", "false", "no"):
        f.verified_only = False
    try:
        f.limit = max(1, min(100, int(args.get("limit") or 50)))
        f.offset = max(0, int(args.get("offset") or 0))
    except ValueError:
        pass

    location = (args.get("location") or "").strip()
    if location and (f.latitude is None or f.longitude is None):
        geo = geocode_location(location, api_key=geocode_api_key)
        if geo["latitude"] is not None:
            f.latitude, f.longitude = geo["latitude"], geo["longitude"]
        elif geo["state"] and not f.state:
            f.state = geo["state"]
    return f
