from __future__ import annotations

from collections.abc import Callable
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.api.forms import read_fields
from app.core.auth import AuthUser, get_current_user
from app.core.database import get_db
from app.core.errors import ActionResult, AuthenticationError, NotFoundError, ValidationError
from app.crm.actions import EntityActions, contact_actions, deal_actions, organization_actions
from app.crm.models import Contact
from app.crm.repositories import contact_repository, deal_repository, organization_repository
from app.crm.schemas import ContactSearch, DealSearch, OrganizationSearch, SearchParams, flatten_errors


def require_user(user: AuthUser | None = Depends(get_current_user)) -> AuthUser:
    if user is None:
        raise AuthenticationError()
    return user


def build_entity_router(
    actions: EntityActions,
    search_schema: type[SearchParams],
    *,
    prefix: str,
    tag: str,
    related: Callable[[Session, AuthUser, Any], dict[str, Any]] | None = None,
) -> APIRouter:
    router = APIRouter(prefix=prefix, tags=[tag])
    repository = actions.repository

    @router.get("")
    def list_records(
        request: Request,
        db: Session = Depends(get_db),
        user: AuthUser = Depends(require_user),
    ) -> dict[str, Any]:
        try:
            params = search_schema.model_validate(dict(request.query_params))
        except SchemaValidationError as exc:
            raise ValidationError(flatten_errors(exc)) from None
        page = repository.search_params(db, user.id, params)
        return {
            "data": [actions.serialize(row) for row in page.data],
            "pagination": page.pagination(),
        }

    @router.get("/{record_id}")
    def get_record(
        record_id: str,
        db: Session = Depends(get_db),
        user: AuthUser = Depends(require_user),
    ) -> dict[str, Any]:
        row = repository.get_for_owner(db, user.id, record_id)
        if row is None:
            raise NotFoundError(actions.entity_label)
        data = actions.serialize(row)
        if related is not None:
            data.update(related(db, user, row))
        return {"data": data}

    @router.post("", status_code=status.HTTP_201_CREATED)
    async def create_record(
        request: Request,
        db: Session = Depends(get_db),
        user: AuthUser | None = Depends(get_current_user),
    ) -> JSONResponse:
        try:
            fields = await read_fields(request)
        except ValidationError as exc:
            return ActionResult.invalid(exc.errors).to_response()
        result = await run_in_threadpool(actions.create, db, user, fields)
        return result.to_response()

    @router.patch("/{record_id}")
    async def update_record(
        record_id: str,
        request: Request,
        db: Session = Depends(get_db),
        user: AuthUser | None = Depends(get_current_user),
    ) -> JSONResponse:
        try:
            fields = await read_fields(request)
        except ValidationError as exc:
            return ActionResult.invalid(exc.errors).to_response()
        result = await run_in_threadpool(actions.update, db, user, record_id, fields)
        return result.to_response()

    @router.delete("/{record_id}")
    async def delete_record(
        record_id: str,
        db: Session = Depends(get_db),
        user: AuthUser | None = Depends(get_current_user),
    ) -> JSONResponse:
        result = await run_in_threadpool(actions.delete, db, user, record_id)
        return result.to_response()

    return router


def contact_related(db: Session, user: AuthUser, contact: Contact) -> dict[str, Any]:
    organization = None
    if contact.organization_id is not None:
        organization = organization_repository.get_for_owner(db, user.id, contact.organization_id)
    deals = deal_repository.list_by_contact(db, user.id, contact.id)
    return {
        "organization": organization_actions.serialize(organization) if organization is not None else None,
        "deals": [deal_actions.serialize(deal) for deal in deals],
    }


contacts_router = build_entity_router(
    contact_actions,
    ContactSearch,
    prefix="/api/contacts",
    tag="crm.contacts",
    related=contact_related,
)
organizations_router = build_entity_router(
    organization_actions,
    OrganizationSearch,
    prefix="/api/organizations",
    tag="crm.organizations",
)
deals_router = build_entity_router(deal_actions, DealSearch, prefix="/api/deals", tag="crm.deals")


@organizations_router.get("/{record_id}/contacts")
def list_organization_contacts(
    record_id: str,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_user),
) -> dict[str, Any]:
    organization = organization_actions.repository.get_for_owner(db, user.id, record_id)
    if organization is None:
        raise NotFoundError(organization_actions.entity_label)
    contacts = contact_repository.list_by_organization(db, user.id, organization.id)
    return {"data": [contact_actions.serialize(row) for row in contacts]}
