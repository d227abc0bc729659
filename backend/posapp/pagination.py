"""Offset pagination shared by catalog and sales listings."""
from __future__ import annotations

from flask import current_app

DEFAULT_LIMIT = 10


def normalize_page(page: int | None, limit: int | None, default_limit: int = DEFAULT_LIMIT) -> tuple[int, int]:
    """Clamp page to >= 1 and limit to [1, PAGINATION_MAX_LIMIT]."""
    max_limit = current_app.config.get("PAGINATION_MAX_LIMIT", 100)
    page = max(page or 1, 1)
    limit = min(max(limit or default_limit, 1), max_limit)
    return page, limit


def paginate(query, page: int | None, limit: int | None, default_limit: int = DEFAULT_LIMIT) -> tuple[list, dict]:
    """
    Run an ordered query for one page.

    Returns (rows, pagination) where pagination carries page, limit, total,
    total_pages, has_next and has_prev computed from the same total.
    """
    page, limit = normalize_page(page, limit, default_limit)

    total = query.order_by(None).count()
    total_pages = (total + limit - 1) // limit if total > 0 else 0

    rows = query.offset((page - 1) * limit).limit(limit).all()

    return rows, {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }
