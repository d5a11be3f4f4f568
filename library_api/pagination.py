import math
from typing import Any, List, Optional, Tuple

from library_api.config import settings
from library_api.errors import ValidationError


def clamp(page: Optional[int], limit: Optional[int]) -> Tuple[int, int]:
    page = page or 1
    limit = limit or settings.default_page_size
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be positive integers")
    return page, min(limit, settings.max_page_size)


def paginate(query, page: Optional[int], limit: Optional[int]) -> Tuple[List[Any], dict]:
    """
    Apply offset/limit pagination to an ORM query.

    Returns the page of items together with the counters every list
    response carries: count, total, page and pages.
    """
    page, limit = clamp(page, limit)
    total = query.order_by(None).count()
    items = query.offset((page - 1) * limit).limit(limit).all()
    return items, {
        "count": len(items),
        "total": total,
        "page": page,
        "pages": math.ceil(total / limit) if total else 0,
    }
