from __future__ import annotations

from typing import Any

import orjson
from fastapi import Request
from fastapi.responses import JSONResponse

from polyform.errors import SchemaError


class APIResponse(JSONResponse):
    """datetime をそのまま返せるよう orjson でシリアライズする。"""

    def render(self, content: Any) -> bytes:
        return orjson.dumps(content, option=orjson.OPT_NON_STR_KEYS)


async def json_body(request: Request) -> dict[str, Any]:
    body = await request.body()
    if not body:
        return {}
    try:
        payload = orjson.loads(body)
    except orjson.JSONDecodeError:
        raise SchemaError(["request body is not valid JSON"]) from None
    if not isinstance(payload, dict):
        raise SchemaError(["request body must be a JSON object"])
    return payload


def query_filters(request: Request) -> dict[str, Any]:
    params = request.query_params
    return {
        "search": params.get("search"),
        "date_from": params.get("date_from") or params.get("submitted_after"),
        "date_to": params.get("date_to") or params.get("submitted_before"),
    }
