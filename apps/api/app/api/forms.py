from __future__ import annotations

import json
from typing import Any

from starlette.requests import Request

from app.core.errors import ValidationError


_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


async def read_fields(request: Request) -> dict[str, Any]:
    """Submitted fields from a JSON object body or an HTML form body."""

    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    if content_type in _FORM_TYPES:
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}

    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        raise ValidationError({"_form": ["Request body must be valid JSON"]}) from None
    if not isinstance(body, dict):
        raise ValidationError({"_form": ["Request body must be an object"]})
    return body
