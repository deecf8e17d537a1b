from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from app.api.forms import read_fields
from app.auth.actions import auth_actions
from app.core.auth import (
    AuthUser,
    apply_session_cookies,
    clear_session_cookies,
    current_access_token,
    get_current_user,
)
from app.core.database import get_db
from app.core.errors import ActionResult, ValidationError


router = APIRouter(prefix="/api/auth", tags=["auth"])
profile_router = APIRouter(prefix="/api", tags=["auth"])


def _respond(result: ActionResult) -> JSONResponse:
    response = result.to_response()
    if result.session is not None:
        apply_session_cookies(response, result.session)
    elif result.clear_session:
        clear_session_cookies(response)
    return response


async def _fields_or_invalid(request: Request) -> dict | JSONResponse:
    try:
        return await read_fields(request)
    except ValidationError as exc:
        return ActionResult.invalid(exc.errors).to_response()


@router.post("/login")
async def login(request: Request) -> JSONResponse:
    fields = await _fields_or_invalid(request)
    if isinstance(fields, JSONResponse):
        return fields
    return _respond(await auth_actions.login(fields))


@router.post("/register", status_code=201)
async def register(request: Request, db: Session = Depends(get_db)) -> JSONResponse:
    fields = await _fields_or_invalid(request)
    if isinstance(fields, JSONResponse):
        return fields
    return _respond(await auth_actions.register(db, fields))


@router.post("/logout")
async def logout(request: Request) -> JSONResponse:
    result = await auth_actions.logout(current_access_token(request))
    return _respond(result)


@router.post("/forgot-password")
async def forgot_password(request: Request) -> JSONResponse:
    fields = await _fields_or_invalid(request)
    if isinstance(fields, JSONResponse):
        return fields
    return _respond(await auth_actions.forgot_password(fields))


@router.post("/reset-password")
async def reset_password(request: Request, user: AuthUser | None = Depends(get_current_user)) -> JSONResponse:
    fields = await _fields_or_invalid(request)
    if isinstance(fields, JSONResponse):
        return fields
    result = await auth_actions.reset_password(user, current_access_token(request), fields)
    return _respond(result)


@profile_router.patch("/profile")
async def update_profile(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser | None = Depends(get_current_user),
) -> JSONResponse:
    fields = await _fields_or_invalid(request)
    if isinstance(fields, JSONResponse):
        return fields
    result = await run_in_threadpool(auth_actions.update_profile, db, user, fields)
    return _respond(result)


@profile_router.post("/profile/avatar")
async def upload_avatar(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser | None = Depends(get_current_user),
) -> JSONResponse:
    form = await request.form()
    upload = form.get("avatar")
    content_type: str | None = None
    content = b""
    if isinstance(upload, UploadFile):
        content_type = upload.content_type
        content = await upload.read()
    result = await auth_actions.upload_avatar(db, user, current_access_token(request), content_type, content)
    return _respond(result)
