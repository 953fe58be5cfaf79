from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, jsonify

from app.remonta import ratelimit
from app.remonta.cache import TTLCache
from app.remonta.modules.cms.sanity_client import SanityError, client_from_config
from app.remonta.utils import query_int

bp = Blueprint("cms", __name__)

_cache = TTLCache(ttl_seconds=5 * 60, max_entries=256)

ARTICLE_FIELDS = """
  _id,
  title,
  "slug": slug.current,
  excerpt,
  author,
  publishedAt,
  readTime,
  "imageUrl": mainImage.asset->url,
  "categories": categories[]->title
"""

ARTICLES_QUERY = (
    '*[_type == "article" && defined(slug.current) && publishedAt <= now()]'
    " | order(publishedAt desc) [0...$limit] {" + ARTICLE_FIELDS + "}"
)
ARTICLE_BY_SLUG_QUERY = '*[_type == "article" && slug.current == $slug][0] {' + ARTICLE_FIELDS + ", body}"
FEATURED_PROFILES_QUERY = """
*[_type == "workerProfile" && featured == true] | order(displayOrder asc) {
  _id,
  name,
  "slug": slug.current,
  jobRole,
  "imageUrl": image.asset->url,
  "imageAlt": image.alt,
  languages,
  location,
  hasVehicleAccess,
  bio,
  displayOrder
}
"""


def clear_cache() -> None:
    _cache.clear()


def _cached_query(key: str, groq: str, params: dict[str, Any] | None = None) -> Any:
    hit = _cache.get(key)
    if hit is not None:
        return hit
    result = client_from_config(current_app.config).query(groq, params)
    if result is not None:
        _cache.set(key, result)
    return result


def _cms_unavailable(e: SanityError):
    current_app.logger.error("CMS request failed: %s", e)
    return jsonify({"error": "Content is temporarily unavailable"}), 502


@bp.get("/api/articles")
@ratelimit.rate_limited(ratelimit.PUBLIC_API)
def articles_list():
    limit = query_int("limit", 20, minimum=1, maximum=100)
    try:
        articles = _cached_query(f"articles:{limit}", ARTICLES_QUERY, {"limit": limit}) or []
    except SanityError as e:
        return _cms_unavailable(e)
    return jsonify({"articles": articles, "total": len(articles)})


@bp.get("/api/articles/<slug>")
@ratelimit.rate_limited(ratelimit.PUBLIC_API)
def article_detail(slug: str):
    try:
        article = _cached_query(f"article:{slug}", ARTICLE_BY_SLUG_QUERY, {"slug": slug})
    except SanityError as e:
        return _cms_unavailable(e)
    if not article:
        return jsonify({"error": "Article not found"}), 404
    return jsonify({"article": article})


@bp.get("/api/featured-profiles")
@ratelimit.rate_limited(ratelimit.PUBLIC_API)
def featured_profiles():
    try:
        profiles = _cached_query("featured-profiles", FEATURED_PROFILES_QUERY) or []
    except SanityError as e:
        return _cms_unavailable(e)
    return jsonify({"profiles": profiles, "total": len(profiles)})
