from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit, events
from app.core.auth import AuthUser
from app.core.cache import revalidate_path
from app.core.errors import UNAUTHENTICATED_MESSAGE, ActionResult, NotFoundError, handle_action_error
from app.crm.repositories import (
    contact_repository,
    deal_repository,
    organization_repository,
)
from app.crm.schemas import (
    ContactCreate,
    ContactRead,
    ContactUpdate,
    DealCreate,
    DealRead,
    DealUpdate,
    FormModel,
    OrganizationCreate,
    OrganizationRead,
    OrganizationUpdate,
    ReadModel,
    flatten_errors,
)
from app.metrics import observe_mutation
from app.platform.security.repository import OwnedRepository


logger = logging.getLogger("app.crm.actions")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Reference:
    """A foreign key the caller may only point at rows they own."""

    attribute: str
    field_name: str
    label: str
    repository: OwnedRepository[Any]


@dataclass(frozen=True)
class EntityActions:
    """Authenticate, validate, write and invalidate for one owned entity.

    Each write is a single owner-scoped statement. A row that does not exist
    and a row owned by someone else produce the same not-found result.
    """

    entity_label: str
    entity_type: str
    collection_path: str
    create_schema: type[FormModel]
    update_schema: type[FormModel]
    read_schema: type[ReadModel]
    repository: OwnedRepository[Any]
    references: tuple[Reference, ...] = ()

    def create(self, session: Session, user: AuthUser | None, fields: Mapping[str, Any]) -> ActionResult:
        if user is None:
            return self._unauthenticated("create")

        try:
            dto = self.create_schema.model_validate(dict(fields))
        except SchemaValidationError as exc:
            observe_mutation(self.entity_type, "create", "invalid")
            return ActionResult.invalid(flatten_errors(exc))

        values = dto.model_dump(exclude_none=True)
        try:
            errors = self._unowned_references(session, user, values)
            if errors:
                session.rollback()
                observe_mutation(self.entity_type, "create", "invalid")
                return ActionResult.invalid(errors)
            row = self.repository.create(session, user.id, values)
            data = self.serialize(row)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            return self._failed("create", exc)

        self._after_write(user, "create", data["id"], after=data, paths=[self.collection_path])
        return ActionResult.ok(data, message=f"{self.entity_label} created successfully", status_code=201)

    def update(
        self,
        session: Session,
        user: AuthUser | None,
        record_id: Any,
        fields: Mapping[str, Any],
    ) -> ActionResult:
        if user is None:
            return self._unauthenticated("update")

        try:
            dto = self.update_schema.model_validate(dict(fields))
        except SchemaValidationError as exc:
            observe_mutation(self.entity_type, "update", "invalid")
            return ActionResult.invalid(flatten_errors(exc))

        values = dto.model_dump(exclude_unset=True)
        try:
            errors = self._unowned_references(session, user, values)
            if errors:
                session.rollback()
                observe_mutation(self.entity_type, "update", "invalid")
                return ActionResult.invalid(errors)
            row = self.repository.update(session, user.id, record_id, values)
            if row is None:
                session.rollback()
                return self._not_found("update")
            data = self.serialize(row)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            return self._failed("update", exc)

        self._after_write(
            user,
            "update",
            data["id"],
            after=data,
            paths=[self.collection_path, f"{self.collection_path}/{data['id']}"],
        )
        return ActionResult.ok(data, message=f"{self.entity_label} updated successfully")

    def delete(self, session: Session, user: AuthUser | None, record_id: Any) -> ActionResult:
        if user is None:
            return self._unauthenticated("delete")

        try:
            deleted_id = self.repository.delete(session, user.id, record_id)
            if deleted_id is None:
                session.rollback()
                return self._not_found("delete")
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            return self._failed("delete", exc)

        self._after_write(
            user,
            "delete",
            str(deleted_id),
            after=None,
            paths=[self.collection_path, f"{self.collection_path}/{deleted_id}"],
        )
        return ActionResult.ok(message=f"{self.entity_label} deleted successfully")

    def serialize(self, row: Any) -> dict[str, Any]:
        return self.read_schema.model_validate(row).model_dump(mode="json", by_alias=True)

    def _unowned_references(
        self,
        session: Session,
        user: AuthUser,
        values: Mapping[str, Any],
    ) -> dict[str, list[str]]:
        # Another owner's row reads exactly like a missing one.
        errors: dict[str, list[str]] = {}
        for reference in self.references:
            target_id = values.get(reference.attribute)
            if target_id is None:
                continue
            if reference.repository.get_for_owner(session, user.id, target_id) is None:
                errors[reference.field_name] = [f"{reference.label} not found"]
        return errors

    def _unauthenticated(self, action: str) -> ActionResult:
        observe_mutation(self.entity_type, action, "unauthenticated")
        return ActionResult.fail(UNAUTHENTICATED_MESSAGE, 401)

    def _not_found(self, action: str) -> ActionResult:
        observe_mutation(self.entity_type, action, "not_found")
        return handle_action_error(NotFoundError(self.entity_label), action=f"{self.entity_type}.{action}")

    def _failed(self, action: str, exc: Exception) -> ActionResult:
        result = handle_action_error(exc, action=f"{self.entity_type}.{action}")
        observe_mutation(self.entity_type, action, "conflict" if result.status_code == 409 else "error")
        return result

    def _after_write(
        self,
        user: AuthUser,
        action: str,
        entity_id: str,
        *,
        after: dict[str, Any] | None,
        paths: list[str],
    ) -> None:
        for path in paths:
            revalidate_path(path)

        audit.record(
            actor_user_id=str(user.id),
            entity_type=self.entity_type,
            entity_id=entity_id,
            action=action,
            after=after,
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": f"{self.entity_type}.{action}d",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": str(user.id),
                "payload": {"id": entity_id},
            }
        )
        observe_mutation(self.entity_type, action, "success")
        logger.info(
            "crm.mutation",
            extra={"entity": self.entity_type, "action": action, "entity_id": entity_id, "outcome": "success"},
        )


contact_actions = EntityActions(
    entity_label="Contact",
    entity_type="crm.contact",
    collection_path="/contacts",
    create_schema=ContactCreate,
    update_schema=ContactUpdate,
    read_schema=ContactRead,
    repository=contact_repository,
    references=(Reference("organization_id", "organizationId", "Organization", organization_repository),),
)

organization_actions = EntityActions(
    entity_label="Organization",
    entity_type="crm.organization",
    collection_path="/organizations",
    create_schema=OrganizationCreate,
    update_schema=OrganizationUpdate,
    read_schema=OrganizationRead,
    repository=organization_repository,
)

deal_actions = EntityActions(
    entity_label="Deal",
    entity_type="crm.deal",
    collection_path="/deals",
    create_schema=DealCreate,
    update_schema=DealUpdate,
    read_schema=DealRead,
    repository=deal_repository,
    references=(
        Reference("contact_id", "contactId", "Contact", contact_repository),
        Reference("organization_id", "organizationId", "Organization", organization_repository),
    ),
)
