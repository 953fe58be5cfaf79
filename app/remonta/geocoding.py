"""
Address geocoding (Google Geocoding API) and distance helpers.

Geocoding is always best-effort: callers get None on any failure and carry on
without coordinates.
"""
from __future__ import annotations

import json
import logging
import math
import re
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

from app.remonta.cache import TTLCache

logger = logging.getLogger(__name__)

GOOGLE_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
EARTH_RADIUS_KM = 6371.0

_cache = TTLCache(ttl_seconds=7 * 24 * 3600, max_entries=1000)

STATE_MAPPING = {
    "newsouthwales": "NSW",
    "nsw": "NSW",
    "victoria": "VIC",
    "vic": "VIC",
    "queensland": "QLD",
    "qld": "QLD",
    "southaustralia": "SA",
    "sa": "SA",
    "westernaustralia": "WA",
    "wa": "WA",
    "tasmania": "TAS",
    "tas": "TAS",
    "northernterritory": "NT",
    "nt": "NT",
    "australiancapitalterritory": "ACT",
    "act": "ACT",
}

_STATE_ABBREV_RE = re.compile(r"\b(NSW|VIC|QLD|SA|WA|TAS|NT|ACT)\b", re.IGNORECASE)
_STATE_FULL_RE = re.compile(
    r"\b(New South Wales|Victoria|Queensland|South Australia|Western Australia|Tasmania|"
    r"Northern Territory|Australian Capital Territory)\b",
    re.IGNORECASE,
)
_POSTCODE_RE = re.compile(r"\b\d{3,4}\b")


@dataclass(frozen=True)
class GeocodeResult:
    latitude: float
    longitude: float
    formatted_address: str


@dataclass(frozen=True)
class ParsedLocation:
    city: str | None
    state: str | None
    postal_code: str | None


def parse_location(location: str | None) -> ParsedLocation:
    """
    Split "Suburb, STATE 2000"-style strings into parts. Any part may be missing.
    """
    text = (location or "").strip()
    if not text:
        return ParsedLocation(None, None, None)

    state: str | None = None
    m_abbrev = _STATE_ABBREV_RE.search(text)
    m_full = _STATE_FULL_RE.search(text)
    if m_abbrev:
        state = m_abbrev.group(0).upper()
    elif m_full:
        state = STATE_MAPPING.get(re.sub(r"\s+", "", m_full.group(0).lower()), m_full.group(0))
    else:
        state = STATE_MAPPING.get(re.sub(r"\s+", "", text.lower()))

    m_post = _POSTCODE_RE.search(text)
    postal_code = m_post.group(0) if m_post else None

    city = _STATE_ABBREV_RE.sub("", text)
    city = _STATE_FULL_RE.sub("", city)
    city = _POSTCODE_RE.sub("", city)
    city = re.sub(r"\s+", " ", city.replace(",", " ")).strip()
    return ParsedLocation(city or text, state, postal_code)


def _fetch_json(url: str, timeout_seconds: int = 10) -> dict[str, Any]:
    req = urllib.request.Request(url, method="GET")
    req.add_header("Accept", "application/json")
    with urllib.request.urlopen(req, timeout=timeout_seconds) as resp:
        return json.loads(resp.read().decode("utf-8"))


def geocode_address(address: str | None, *, api_key: str) -> GeocodeResult | None:
    query = (address or "").strip()
    if not query:
        return None
    cache_key = query.lower()
    cached = _cache.get(cache_key)
    if cached is not None:
        return cached
    if not api_key:
        logger.info("GEOMAP_API not configured; skipping geocode for %r", query)
        return None

    url = GOOGLE_GEOCODE_URL + "?" + urllib.parse.urlencode(
        {"address": f"{query}, Australia", "region": "au", "key": api_key}
    )
    try:
        data = _fetch_json(url)
    except Exception as e:
        logger.warning("Geocoding request failed for %r: %s", query, e)
        return None

    results = data.get("results") or []
    if data.get("status") != "OK" or not results:
        logger.info("Geocoding returned status=%s for %r", data.get("status"), query)
        return None
    first = results[0]
    loc = (first.get("geometry") or {}).get("location") or {}
    try:
        result = GeocodeResult(
            latitude=float(loc["lat"]),
            longitude=float(loc["lng"]),
            formatted_address=str(first.get("formatted_address") or query),
        )
    except (KeyError, TypeError, ValueError):
        logger.warning("Geocoding response missing coordinates for %r", query)
        return None
    _cache.set(cache_key, result)
    return result


def geocode_location(location: str | None, *, api_key: str) -> dict[str, Any]:
    """
    Parsed parts plus coordinates (None when geocoding fails) for a free-text location.
    """
    parsed = parse_location(location)
    geo = geocode_address(location, api_key=api_key) if location else None
    return {
        "city": parsed.city,
        "state": parsed.state,
        "postal_code": parsed.postal_code,
        "latitude": geo.latitude if geo else None,
        "longitude": geo.longitude if geo else None,
        "formatted_address": geo.formatted_address if geo else None,
    }


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle (haversine) distance in kilometres."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def bounding_box(lat: float, lon: float, radius_km: float) -> tuple[float, float, float, float]:
    """
    (min_lat, max_lat, min_lon, max_lon) enclosing a radius; used as a cheap prefilter before haversine.
    """
    d_lat = math.degrees(radius_km / EARTH_RADIUS_KM)
    cos_lat = max(math.cos(math.radians(lat)), 1e-6)
    d_lon = math.degrees(radius_km / (EARTH_RADIUS_KM * cos_lat))
    return (lat - d_lat, lat + d_lat, lon - d_lon, lon + d_lon)


def clear_cache() -> None:
    _cache.clear()
