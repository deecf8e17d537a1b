from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import ColumnElement
from sqlalchemy.sql import Select


OWNER_COLUMN = "user_id"


def owner_clause(model: Any, owner_id: uuid.UUID) -> ColumnElement[bool]:
    """Row-level predicate restricting `model` to rows owned by `owner_id`."""

    column = getattr(model, OWNER_COLUMN, None)
    if column is None:
        raise TypeError(f"{model.__name__} has no {OWNER_COLUMN} column")
    return column == owner_id


def apply_owner_filter(query: Select[Any], owner_id: uuid.UUID) -> Select[Any]:
    """Apply the owner predicate to every selected entity exposing an owner column."""

    for description in query.column_descriptions:
        model = description.get("entity")
        if model is None or not hasattr(model, OWNER_COLUMN):
            continue
        query = query.where(owner_clause(model, owner_id))
    return query


def parse_record_id(value: Any) -> uuid.UUID | None:
    """Malformed ids resolve to no record, never to an error."""

    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None
