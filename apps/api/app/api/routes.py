from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.auth.api import profile_router, router as auth_router
from app.auth.pages import router as auth_pages_router
from app.core.auth import AuthUser
from app.core.config import get_settings
from app.core.database import get_db
from app.core.errors import AuthorizationError, NotFoundError
from app.crm.api import contacts_router, deals_router, organizations_router, require_user
from app.crm.pages import router as crm_pages_router
from app.crm.repositories import user_repository
from app.crm.schemas import UserProfileRead
from app.metrics import generate_metrics_payload, metrics_content_type
from app.webhooks.api import router as webhooks_router


logger = logging.getLogger("app.health")

METRICS_ROLES = {"admin", "super_admin"}

router = APIRouter()
router.include_router(contacts_router)
router.include_router(organizations_router)
router.include_router(deals_router)
router.include_router(auth_router)
router.include_router(profile_router)
router.include_router(webhooks_router)
router.include_router(crm_pages_router)
router.include_router(auth_pages_router)


def _health(db: Session) -> JSONResponse:
    settings = get_settings()
    started = time.perf_counter()
    payload: dict[str, Any] = {
        "service": settings.app_name,
        "environment": settings.app_env,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("health.database_unavailable", extra={"error": str(exc)})
        payload.update(status="unhealthy", database="disconnected", error="database unavailable")
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=payload)

    response_ms = round((time.perf_counter() - started) * 1000, 2)
    payload.update(status="healthy", database="connected", responseTime=f"{response_ms}ms")
    return JSONResponse(content=payload)


@router.get("/health", tags=["system"])
def health(db: Session = Depends(get_db)) -> JSONResponse:
    return _health(db)


@router.get("/api/health", tags=["system"])
def api_health(db: Session = Depends(get_db)) -> JSONResponse:
    return _health(db)


@router.get("/api/me", tags=["auth"])
def me(db: Session = Depends(get_db), user: AuthUser = Depends(require_user)) -> dict[str, Any]:
    profile = user_repository.get(db, user.id)
    return {
        "id": str(user.id),
        "email": user.email,
        "profile": UserProfileRead.model_validate(profile).model_dump(mode="json", by_alias=True) if profile else None,
    }


@router.get("/metrics", tags=["system"])
def metrics(db: Session = Depends(get_db), user: AuthUser = Depends(require_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise NotFoundError("Page")
    profile = user_repository.get(db, user.id)
    if profile is None or profile.role not in METRICS_ROLES:
        raise AuthorizationError("Missing role: admin")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
