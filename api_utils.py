# api_utils.py
import json
from typing import Any, Callable, Iterable
from fastapi import HTTPException, Query
from fastapi.responses import JSONResponse
from tortoise.queryset import QuerySet

MAX_PAGE = 1000

# ---------- React-Admin list params ----------
def parse_range(range_param: str) -> tuple[int, int]:
    """'[start,end]' (inclusive) -> (skip, limit)."""
    try:
        start, end = (int(x) for x in json.loads(range_param))
    except Exception:
        raise HTTPException(422, f"Invalid range: {range_param}")
    if start < 0 or end < start:
        raise HTTPException(422, f"Invalid range: {range_param}")
    return start, min(end - start + 1, MAX_PAGE)

def parse_sort(sort_param: str | None, allowed_fields: Iterable[str], default: str = "id") -> str:
    """'["field","ASC|DESC"]' -> Tortoise order string; unknown or missing fields use `default`."""
    try:
        field, order = json.loads(sort_param or "")
    except Exception:
        return default
    if field not in set(allowed_fields):
        return default
    return f"-{field}" if str(order).upper() == "DESC" else field

def parse_filter(filter_param: str | None) -> dict:
    try:
        parsed = json.loads(filter_param or "{}")
    except Exception:
        return {}
    return parsed if isinstance(parsed, dict) else {}

# ---------- Query helpers ----------
def apply_filter_map(qs: QuerySet, filters: dict, fmap: dict[str, Callable[[QuerySet, Any], QuerySet]]) -> QuerySet:
    for key, value in filters.items():
        fn = fmap.get(key)
        if fn is not None and value is not None:
            qs = fn(qs, value)
    return qs

def _encode(to_pydantic: Callable[[Any], Any], obj: Any) -> Any:
    # round-trip through pydantic JSON for UUID/datetime safety
    return json.loads(to_pydantic(obj).model_dump_json())

async def paginate_and_respond(
    qs: QuerySet,
    skip: int,
    limit: int,
    order: str,
    to_pydantic: Callable[[Any], Any],
) -> JSONResponse:
    total = await qs.count()
    items = await qs.order_by(order).offset(skip).limit(limit)
    end_real = skip + max(len(items) - 1, 0)
    return JSONResponse(
        status_code=206,
        content=[_encode(to_pydantic, it) for it in items],
        headers={"Content-Range": f"items {skip}-{end_real}/{total}"},
    )

def respond_item(model_obj: Any, to_pydantic: Callable[[Any], Any], status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=_encode(to_pydantic, model_obj))

class RAListParams:
    def __init__(
        self,
        range: str = Query("[0,24]"),
        sort: str | None = Query(None),
        filter: str = Query("{}"),
    ):
        self.skip, self.limit = parse_range(range)
        self.filters = parse_filter(filter)
        self.sort = sort
