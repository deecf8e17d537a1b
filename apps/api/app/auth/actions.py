from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app import audit, events
from app.core.auth import AuthProviderError, AuthUser, get_auth_provider
from app.core.cache import revalidate_path
from app.core.config import get_settings
from app.core.errors import UNAUTHENTICATED_MESSAGE, ActionResult, handle_action_error
from app.crm.repositories import UserRepository, user_repository
from app.crm.schemas import (
    ForgotPasswordInput,
    LoginInput,
    RegisterInput,
    ResetPasswordInput,
    UpdateProfileInput,
    UserProfileRead,
    flatten_errors,
)
from app.metrics import observe_auth_action
from app.middleware.route_guard import safe_redirect_path
from app.services.email import send_welcome_email
from app.services.storage import StorageError, get_storage_client


logger = logging.getLogger("app.auth.actions")

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
REGISTRATION_FAILED_MESSAGE = "Failed to create account. Please try again."
ACCOUNT_EXISTS_MESSAGE = "An account with this email already exists"
PASSWORD_RESET_SENT_MESSAGE = "If an account exists for this email, a reset link has been sent"
UPLOAD_FAILED_MESSAGE = "Failed to upload file. Please try again."
AVATAR_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp", "image/gif": "gif"}


class AuthActions:
    def __init__(self, users: UserRepository = user_repository) -> None:
        self.users = users

    async def login(self, fields: Mapping[str, Any]) -> ActionResult:
        try:
            dto = LoginInput.model_validate(dict(fields))
        except SchemaValidationError as exc:
            observe_auth_action("login", "invalid")
            return ActionResult.invalid(flatten_errors(exc))

        try:
            session = await get_auth_provider().sign_in_with_password(dto.email, dto.password)
        except AuthProviderError as exc:
            observe_auth_action("login", "rejected")
            logger.info("auth.login.failed", extra={"error": exc.message})
            return ActionResult.fail(INVALID_CREDENTIALS_MESSAGE, 401)

        settings = get_settings()
        redirect_to = safe_redirect_path(_text(fields.get("redirectTo")), settings.default_landing_path)
        result = ActionResult.ok({"redirectTo": redirect_to})
        result.session = session
        observe_auth_action("login", "success")
        logger.info("auth.login.succeeded", extra={"entity_id": str(session.user.id)})
        return result

    async def register(self, db: Session, fields: Mapping[str, Any]) -> ActionResult:
        try:
            dto = RegisterInput.model_validate(dict(fields))
        except SchemaValidationError as exc:
            observe_auth_action("register", "invalid")
            return ActionResult.invalid(flatten_errors(exc))

        try:
            user, session = await get_auth_provider().sign_up(dto.email, dto.password, dto.full_name)
        except AuthProviderError as exc:
            if "already registered" in exc.message.lower():
                observe_auth_action("register", "conflict")
                return ActionResult(success=False, errors={"email": [ACCOUNT_EXISTS_MESSAGE]}, status_code=409)
            observe_auth_action("register", "failed")
            logger.warning("auth.register.failed", extra={"error": exc.message})
            return ActionResult.fail(REGISTRATION_FAILED_MESSAGE, 400 if exc.status_code else 502)

        # The identity exists from here on; a missing profile row must not undo it.
        await run_in_threadpool(self._create_profile, db, user, dto.email, dto.full_name)
        await send_welcome_email(dto.email, dto.full_name)

        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "auth.user.registered",
                "occurred_at": datetime.now(timezone.utc).isoformat(),
                "actor_user_id": str(user.id),
                "payload": {"id": str(user.id)},
            }
        )
        observe_auth_action("register", "success")

        result = ActionResult.ok({"redirectTo": get_settings().default_landing_path}, status_code=201)
        result.session = session
        return result

    def _create_profile(self, db: Session, user: AuthUser, email: str, full_name: str) -> None:
        try:
            self.users.create_profile(db, user_id=user.id, email=user.email or email, full_name=full_name)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("auth.register.profile_failed", extra={"entity_id": str(user.id), "error": str(exc)})

    async def logout(self, access_token: str | None) -> ActionResult:
        if access_token:
            try:
                await get_auth_provider().sign_out(access_token)
            except AuthProviderError as exc:
                logger.warning("auth.logout.provider_failed", extra={"error": exc.message})

        observe_auth_action("logout", "success")
        result = ActionResult.ok({"redirectTo": get_settings().login_path})
        result.clear_session = True
        return result

    async def forgot_password(self, fields: Mapping[str, Any]) -> ActionResult:
        try:
            dto = ForgotPasswordInput.model_validate(dict(fields))
        except SchemaValidationError as exc:
            observe_auth_action("forgot_password", "invalid")
            return ActionResult.invalid(flatten_errors(exc))

        settings = get_settings()
        try:
            await get_auth_provider().send_password_reset(
                dto.email,
                redirect_to=f"{settings.app_url.rstrip('/')}/reset-password",
            )
        except AuthProviderError as exc:
            # Same answer either way so the endpoint never reveals whether an account exists.
            logger.warning("auth.password_reset.provider_failed", extra={"error": exc.message})

        observe_auth_action("forgot_password", "success")
        return ActionResult.ok(message=PASSWORD_RESET_SENT_MESSAGE)

    async def reset_password(
        self,
        user: AuthUser | None,
        access_token: str | None,
        fields: Mapping[str, Any],
    ) -> ActionResult:
        if user is None or not access_token:
            observe_auth_action("reset_password", "unauthenticated")
            return ActionResult.fail(UNAUTHENTICATED_MESSAGE, 401)

        try:
            dto = ResetPasswordInput.model_validate(dict(fields))
        except SchemaValidationError as exc:
            observe_auth_action("reset_password", "invalid")
            return ActionResult.invalid(flatten_errors(exc))

        try:
            await get_auth_provider().update_password(access_token, dto.password)
        except AuthProviderError as exc:
            observe_auth_action("reset_password", "failed")
            logger.warning("auth.password_reset.failed", extra={"error": exc.message})
            return ActionResult.fail("Failed to update password. Please try again.", 400)

        audit.record(
            actor_user_id=str(user.id),
            entity_type="auth.user",
            entity_id=str(user.id),
            action="password_reset",
        )
        observe_auth_action("reset_password", "success")
        return ActionResult.ok(
            {"redirectTo": get_settings().default_landing_path},
            message="Password updated successfully",
        )

    async def upload_avatar(
        self,
        db: Session,
        user: AuthUser | None,
        access_token: str | None,
        content_type: str | None,
        content: bytes,
    ) -> ActionResult:
        if user is None or not access_token:
            observe_auth_action("upload_avatar", "unauthenticated")
            return ActionResult.fail(UNAUTHENTICATED_MESSAGE, 401)

        settings = get_settings()
        errors = _avatar_errors(content_type, content, settings.storage_max_avatar_bytes)
        if errors:
            observe_auth_action("upload_avatar", "invalid")
            return ActionResult.invalid({"avatar": errors})

        path = f"{user.id}/avatar.{AVATAR_EXTENSIONS[content_type or '']}"
        try:
            stored = await get_storage_client().upload(
                settings.storage_avatar_bucket,
                path,
                content,
                content_type=content_type,
                upsert=True,
                access_token=access_token,
            )
        except StorageError as exc:
            observe_auth_action("upload_avatar", "failed")
            logger.warning("auth.avatar.upload_failed", extra={"error": exc.message})
            return ActionResult.fail(UPLOAD_FAILED_MESSAGE, 502)

        observe_auth_action("upload_avatar", "success")
        return await run_in_threadpool(self.update_profile, db, user, {"avatarUrl": stored.url})

    def update_profile(self, db: Session, user: AuthUser | None, fields: Mapping[str, Any]) -> ActionResult:
        if user is None:
            observe_auth_action("update_profile", "unauthenticated")
            return ActionResult.fail(UNAUTHENTICATED_MESSAGE, 401)

        try:
            dto = UpdateProfileInput.model_validate(dict(fields))
        except SchemaValidationError as exc:
            observe_auth_action("update_profile", "invalid")
            return ActionResult.invalid(flatten_errors(exc))

        try:
            profile = self.users.update_profile(db, user.id, dto.model_dump(exclude_unset=True))
            if profile is None:
                db.rollback()
                observe_auth_action("update_profile", "not_found")
                return ActionResult.fail("Profile not found", 404)
            data = UserProfileRead.model_validate(profile).model_dump(mode="json", by_alias=True)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            return handle_action_error(exc, action="auth.profile.update")

        revalidate_path("/settings")
        audit.record(
            actor_user_id=str(user.id),
            entity_type="auth.user",
            entity_id=str(user.id),
            action="update",
            after=data,
        )
        observe_auth_action("update_profile", "success")
        return ActionResult.ok(data, message="Profile updated successfully")


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _avatar_errors(content_type: str | None, content: bytes, max_bytes: int) -> list[str]:
    if not content:
        return ["File is required"]
    if content_type not in AVATAR_EXTENSIONS:
        return ["File must be a PNG, JPEG, WebP or GIF image"]
    if len(content) > max_bytes:
        return [f"File must be smaller than {max_bytes // (1024 * 1024)}MB"]
    return []


auth_actions = AuthActions()
