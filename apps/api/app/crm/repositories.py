from __future__ import annotations

import uuid
from datetime import date
from typing import Any

from sqlalchemy import ColumnElement, asc, desc, func, insert, select, update
from sqlalchemy.orm import Session

from app.crm.models import DEAL_STAGES, Contact, Deal, Organization, UserProfile, utcnow
from app.crm.schemas import ContactSearch, DealSearch, OrganizationSearch
from app.platform.security.repository import OwnedRepository
from app.platform.security.rls import owner_clause, parse_record_id


CLOSED_STAGES = {"closed_won", "closed_lost"}


class ContactRepository(OwnedRepository[Contact]):
    model = Contact
    resource = "crm.contact"
    search_columns = ("first_name", "last_name", "email")
    sort_columns = {
        "firstName": "first_name",
        "lastName": "last_name",
        "email": "email",
        "createdAt": "created_at",
    }

    def filter_conditions(self, params: ContactSearch) -> list[ColumnElement[bool]]:
        filters: list[ColumnElement[bool]] = []
        if params.type is not None:
            filters.append(Contact.type == params.type)
        if params.organization_id is not None:
            filters.append(Contact.organization_id == params.organization_id)
        return filters

    def list_by_organization(self, db: Session, owner_id: uuid.UUID, organization_id: Any) -> list[Contact]:
        parsed = parse_record_id(organization_id)
        if parsed is None:
            return []
        query = (
            self.apply_scope_query(select(Contact), owner_id)
            .where(Contact.organization_id == parsed)
            .order_by(asc(Contact.last_name))
        )
        return list(db.scalars(query))


class OrganizationRepository(OwnedRepository[Organization]):
    model = Organization
    resource = "crm.organization"
    search_columns = ("name", "industry", "city")
    sort_columns = {"name": "name", "industry": "industry", "createdAt": "created_at"}

    def filter_conditions(self, params: OrganizationSearch) -> list[ColumnElement[bool]]:
        if params.industry:
            return [Organization.industry == params.industry]
        return []


class DealRepository(OwnedRepository[Deal]):
    model = Deal
    resource = "crm.deal"
    search_columns = ("title", "description")
    sort_columns = {
        "title": "title",
        "value": "value",
        "stage": "stage",
        "expectedCloseDate": "expected_close_date",
        "createdAt": "created_at",
    }

    def prepare_values(self, values: dict[str, Any], *, creating: bool) -> dict[str, Any]:
        # A deal entering a closed stage is stamped once; reopening clears the stamp.
        stage = values.get("stage")
        if stage in CLOSED_STAGES and "actual_close_date" not in values:
            if creating:
                values["actual_close_date"] = date.today()
            else:
                values["actual_close_date"] = func.coalesce(Deal.actual_close_date, date.today())
        elif stage is not None and stage not in CLOSED_STAGES and not creating:
            values["actual_close_date"] = None
        return values

    def filter_conditions(self, params: DealSearch) -> list[ColumnElement[bool]]:
        filters: list[ColumnElement[bool]] = []
        if params.stage is not None:
            filters.append(Deal.stage == params.stage)
        if params.contact_id is not None:
            filters.append(Deal.contact_id == params.contact_id)
        if params.organization_id is not None:
            filters.append(Deal.organization_id == params.organization_id)
        if params.min_value is not None:
            filters.append(Deal.value >= params.min_value)
        if params.max_value is not None:
            filters.append(Deal.value <= params.max_value)
        return filters

    def list_by_contact(self, db: Session, owner_id: uuid.UUID, contact_id: uuid.UUID) -> list[Deal]:
        query = (
            self.apply_scope_query(select(Deal), owner_id)
            .where(Deal.contact_id == contact_id)
            .order_by(desc(Deal.created_at), Deal.id)
        )
        return list(db.scalars(query))

    def pipeline_summary(self, db: Session, owner_id: uuid.UUID) -> list[dict[str, Any]]:
        query = (
            select(Deal.stage, func.count(Deal.id), func.coalesce(func.sum(Deal.value), 0))
            .where(owner_clause(Deal, owner_id))
            .group_by(Deal.stage)
        )
        totals = {stage: (int(count), int(total)) for stage, count, total in db.execute(query)}
        summary: list[dict[str, Any]] = []
        for stage in DEAL_STAGES:
            count, total = totals.get(stage, (0, 0))
            summary.append({"stage": stage, "count": count, "totalValue": total})
        return summary

    def won_value_since(self, db: Session, owner_id: uuid.UUID, since: date) -> int:
        query = select(func.coalesce(func.sum(Deal.value), 0)).where(
            owner_clause(Deal, owner_id),
            Deal.stage == "closed_won",
            Deal.actual_close_date >= since,
        )
        return int(db.scalar(query) or 0)


class UserRepository:
    resource = "auth.user"

    def get(self, db: Session, user_id: uuid.UUID) -> UserProfile | None:
        return db.get(UserProfile, user_id)

    def create_profile(
        self,
        db: Session,
        *,
        user_id: uuid.UUID,
        email: str,
        full_name: str | None,
    ) -> UserProfile:
        statement = (
            insert(UserProfile)
            .values(id=user_id, email=email, full_name=full_name)
            .returning(UserProfile)
        )
        return db.scalars(statement).one()

    def update_profile(self, db: Session, user_id: uuid.UUID, values: dict[str, Any]) -> UserProfile | None:
        statement = (
            update(UserProfile)
            .where(UserProfile.id == user_id)
            .values(**values, updated_at=utcnow())
            .returning(UserProfile)
            .execution_options(populate_existing=True)
        )
        return db.scalars(statement).one_or_none()


contact_repository = ContactRepository()
organization_repository = OrganizationRepository()
deal_repository = DealRepository()
user_repository = UserRepository()
