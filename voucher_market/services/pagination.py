from __future__ import annotations

import math
from typing import Any

from sqlalchemy.orm import Query

MAX_PAGE_SIZE = 100


def paginate(query: Query, page: int = 1, limit: int = 20) -> tuple[list[Any], dict[str, int]]:
    page = max(1, int(page or 1))
    limit = min(MAX_PAGE_SIZE, max(1, int(limit or 20)))
    total = query.order_by(None).count()
    items = query.offset((page - 1) * limit).limit(limit).all()
    return items, {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if total else 0}
