from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.auth import AuthUser
from app.crm.actions import EntityActions, contact_actions, deal_actions, organization_actions
from app.crm.api import require_user
from app.crm.repositories import (
    CLOSED_STAGES,
    contact_repository,
    deal_repository,
    organization_repository,
    user_repository,
)
from app.crm.schemas import ContactSearch, DealSearch, OrganizationSearch, SearchParams, UserProfileRead


router = APIRouter(tags=["pages"])

PAGE_SIZE = 20


def _display_name(db: Session, user: AuthUser) -> str | None:
    profile = user_repository.get(db, user.id)
    if profile is not None and profile.full_name:
        return profile.full_name
    name = user.metadata.get("full_name")
    return name if isinstance(name, str) and name else None


@router.get("/dashboard")
def dashboard(db: Session = Depends(get_db), user: AuthUser = Depends(require_user)) -> dict[str, Any]:
    pipeline = deal_repository.pipeline_summary(db, user.id)
    open_deals = sum(row["count"] for row in pipeline if row["stage"] not in CLOSED_STAGES)
    month_start = date.today().replace(day=1)
    name = _display_name(db, user)

    return {
        "title": "Dashboard",
        "description": f"Welcome back, {name}" if name else "Welcome back",
        "stats": {
            "totalContacts": contact_repository.count_for_owner(db, user.id),
            "organizations": organization_repository.count_for_owner(db, user.id),
            "openDeals": open_deals,
            "revenueThisMonth": deal_repository.won_value_since(db, user.id, month_start),
        },
        "pipeline": pipeline,
    }


def _list_page(
    request: Request,
    db: Session,
    user: AuthUser,
    actions: EntityActions,
    search_schema: type[SearchParams],
    title: str,
) -> dict[str, Any]:
    # Page filters are best effort; bad query values fall back to the defaults.
    query = {key: value for key, value in request.query_params.items() if value}
    try:
        params = search_schema.model_validate(query)
    except SchemaValidationError:
        params = search_schema.model_validate({})
    params.limit = min(params.limit, PAGE_SIZE)

    page = actions.repository.search_params(db, user.id, params)
    return {
        "title": title,
        "data": [actions.serialize(row) for row in page.data],
        "pagination": page.pagination(),
    }


@router.get("/contacts")
def contacts_page(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_user),
) -> dict[str, Any]:
    return _list_page(request, db, user, contact_actions, ContactSearch, "Contacts")


@router.get("/organizations")
def organizations_page(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_user),
) -> dict[str, Any]:
    return _list_page(request, db, user, organization_actions, OrganizationSearch, "Organizations")


@router.get("/deals")
def deals_page(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_user),
) -> dict[str, Any]:
    return _list_page(request, db, user, deal_actions, DealSearch, "Deals")


@router.get("/settings")
def settings_page(db: Session = Depends(get_db), user: AuthUser = Depends(require_user)) -> dict[str, Any]:
    profile = user_repository.get(db, user.id)
    return {
        "title": "Settings",
        "email": user.email,
        "profile": UserProfileRead.model_validate(profile).model_dump(mode="json", by_alias=True) if profile else None,
        "form": {"action": "/api/profile", "method": "PATCH", "fields": ["fullName", "avatarUrl"]},
    }
