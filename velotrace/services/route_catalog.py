"""
Route Catalog Service.

Static reference data for cycling routes. The catalog is supplied by an
external provider (scripts/seed_data/routes.py by default) and seeded
once; existing routes are never overwritten.

Usage:
    from velotrace.services import route_catalog
    route_catalog.seed_routes(ROUTES)
    routes = route_catalog.list_routes(category="diverse")
"""

from __future__ import annotations

import logging

from flask import current_app

from velotrace.core.exceptions import NotFoundError, ValidationError
from velotrace.models import db
from velotrace.models.route import CATEGORY_ORDER, Route, RouteCategory

logger = logging.getLogger(__name__)

_FALLBACK_LIMIT = 30


def default_limit_for_category(category: str, category_limits: dict | None = None) -> int:
    """Category default completion limit from configuration."""
    limits = category_limits
    if limits is None:
        limits = current_app.config.get("CATEGORY_COMPLETION_LIMITS", {})
    if category in limits:
        return int(limits[category])
    return int(limits.get(RouteCategory.OTHER.value, _FALLBACK_LIMIT))


def limit_for(route, category_limits: dict | None = None) -> int:
    """Effective limit: the route's own override, else its category default.

    ``route`` may be a Route row or a plain dict from the catalog provider.
    """
    if isinstance(route, dict):
        override = route.get("completion_limit")
        category = route.get("category") or RouteCategory.OTHER.value
    else:
        override = route.completion_limit
        category = route.category
    if override is not None:
        return int(override)
    return default_limit_for_category(category, category_limits)


def _validate_entry(entry: dict) -> dict:
    route_id = (entry.get("route_id") or entry.get("id") or "").strip()
    name = (entry.get("name") or "").strip()
    category = (entry.get("category") or RouteCategory.OTHER.value).strip()
    errors = {}
    if not route_id:
        errors["route_id"] = "required"
    if not name:
        errors["name"] = "required"
    if category not in CATEGORY_ORDER:
        errors["category"] = f"must be one of: {', '.join(CATEGORY_ORDER)}"
    limit = entry.get("completion_limit")
    if limit is not None and (not isinstance(limit, int) or limit < 0):
        errors["completion_limit"] = "must be a non-negative integer"
    if errors:
        raise ValidationError(f"Invalid route entry {route_id or '?'}", details=errors)
    return {
        "route_id": route_id,
        "name": name,
        "category": category,
        "completion_limit": limit,
        "description": entry.get("description"),
    }


def seed_routes(entries: list[dict]) -> dict:
    """Insert catalog routes that do not exist yet.

    Returns:
        {"created": int, "skipped": int}
    """
    cleaned = [_validate_entry(e) for e in entries]
    existing = {
        r.route_id
        for r in Route.query.filter(Route.route_id.in_([c["route_id"] for c in cleaned])).all()
    } if cleaned else set()

    created = 0
    for item in cleaned:
        if item["route_id"] in existing:
            continue
        db.session.add(Route(**item))
        existing.add(item["route_id"])
        created += 1
    db.session.commit()

    logger.info("Route catalog seeded: created=%d skipped=%d", created, len(cleaned) - created)
    return {"created": created, "skipped": len(cleaned) - created}


def list_routes(category: str | None = None) -> list[Route]:
    query = Route.query
    if category:
        query = query.filter_by(category=category)
    return query.order_by(Route.id).all()


def get_route(route_id: str) -> Route:
    route = Route.query.filter_by(route_id=route_id).first()
    if route is None:
        raise NotFoundError(resource="Route", resource_id=route_id)
    return route


def route_to_dict(route: Route) -> dict:
    data = route.to_dict()
    data["effective_limit"] = limit_for(route)
    return data
