from sqlalchemy import func
from sqlmodel import select

MAX_PAGE_SIZE = 100


def paginate(
    *,
    session,
    query,
    page: int = 1,
    limit: int = 10,
):
    """Offset pagination over a select; out-of-range page/limit are clamped."""

    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)

    total = session.exec(
        select(func.count()).select_from(query.subquery())
    ).one()

    results = session.exec(
        query.offset((page - 1) * limit).limit(limit)
    ).all()

    return {
        "total_items": total,
        "total_pages": (total + limit - 1) // limit,
        "current_page": page,
        "limit": limit,
        "results": results,
    }
