from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, ClassVar, Generic, TypeVar

from sqlalchemy import ColumnElement, asc, delete, desc, func, insert, or_, select, update
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from app.platform.security.rls import OWNER_COLUMN, apply_owner_filter, owner_clause, parse_record_id


ModelT = TypeVar("ModelT")


@dataclass
class Page(Generic[ModelT]):
    data: list[ModelT]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_more(self) -> bool:
        return self.page * self.limit < self.total

    def pagination(self) -> dict[str, Any]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "totalPages": self.total_pages,
            "hasMore": self.has_more,
        }


class OwnedRepository(Generic[ModelT]):
    """Data access for rows owned by a single identity.

    Every statement carries the owner predicate; writes are one statement each
    and report zero affected rows as `None`.
    """

    model: ClassVar[type[Any]]
    resource = ""
    search_columns: ClassVar[tuple[str, ...]] = ()
    sort_columns: ClassVar[dict[str, str]] = {"createdAt": "created_at"}
    default_order: ClassVar[str] = "created_at"

    def apply_scope_query(self, query: Select[Any], owner_id: uuid.UUID) -> Select[Any]:
        return apply_owner_filter(query, owner_id)

    def _by_id(self, owner_id: uuid.UUID, record_id: uuid.UUID) -> ColumnElement[bool]:
        return (self.model.id == record_id) & owner_clause(self.model, owner_id)

    def get_for_owner(self, db: Session, owner_id: uuid.UUID, record_id: Any) -> ModelT | None:
        parsed = parse_record_id(record_id)
        if parsed is None:
            return None
        return db.scalar(select(self.model).where(self._by_id(owner_id, parsed)))

    def count_for_owner(self, db: Session, owner_id: uuid.UUID, *conditions: ColumnElement[bool]) -> int:
        query = select(func.count()).select_from(self.model).where(owner_clause(self.model, owner_id), *conditions)
        return int(db.scalar(query) or 0)

    def search_conditions(self, term: str | None) -> list[ColumnElement[bool]]:
        if not term or not self.search_columns:
            return []
        pattern = f"%{term}%"
        return [or_(*(getattr(self.model, column).ilike(pattern) for column in self.search_columns))]

    def search(
        self,
        db: Session,
        owner_id: uuid.UUID,
        *,
        search: str | None = None,
        filters: list[ColumnElement[bool]] | None = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "createdAt",
        sort_order: str = "desc",
    ) -> Page[ModelT]:
        conditions = [*self.search_conditions(search), *(filters or [])]

        column = getattr(self.model, self.sort_columns.get(sort_by, self.default_order))
        order = asc(column) if sort_order == "asc" else desc(column)
        query = (
            self.apply_scope_query(select(self.model), owner_id)
            .where(*conditions)
            .order_by(order, self.model.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        data = list(db.scalars(query))
        total = self.count_for_owner(db, owner_id, *conditions)
        return Page(data=data, page=page, limit=limit, total=total)

    def filter_conditions(self, params: Any) -> list[ColumnElement[bool]]:
        return []

    def search_params(self, db: Session, owner_id: uuid.UUID, params: Any) -> Page[ModelT]:
        """Search driven by a validated search schema (`search`, paging and sort fields)."""

        return self.search(
            db,
            owner_id,
            search=params.search,
            filters=self.filter_conditions(params),
            page=params.page,
            limit=params.limit,
            sort_by=params.sort_by,
            sort_order=params.sort_order,
        )

    def prepare_values(self, values: dict[str, Any], *, creating: bool) -> dict[str, Any]:
        return values

    def create(self, db: Session, owner_id: uuid.UUID, values: dict[str, Any]) -> ModelT:
        prepared = self.prepare_values(dict(values), creating=True)
        prepared[OWNER_COLUMN] = owner_id
        statement = insert(self.model).values(**prepared).returning(self.model)
        return db.scalars(statement).one()

    def update(self, db: Session, owner_id: uuid.UUID, record_id: Any, values: dict[str, Any]) -> ModelT | None:
        parsed = parse_record_id(record_id)
        if parsed is None:
            return None
        prepared = self.prepare_values(dict(values), creating=False)
        # Ownership is fixed at creation.
        prepared.pop(OWNER_COLUMN, None)
        prepared["updated_at"] = datetime.now(timezone.utc)
        statement = (
            update(self.model)
            .where(self._by_id(owner_id, parsed))
            .values(**prepared)
            .returning(self.model)
            .execution_options(populate_existing=True)
        )
        return db.scalars(statement).one_or_none()

    def delete(self, db: Session, owner_id: uuid.UUID, record_id: Any) -> uuid.UUID | None:
        parsed = parse_record_id(record_id)
        if parsed is None:
            return None
        statement = delete(self.model).where(self._by_id(owner_id, parsed)).returning(self.model.id)
        return db.scalars(statement).one_or_none()
