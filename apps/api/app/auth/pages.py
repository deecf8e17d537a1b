from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from app.core.config import get_settings
from app.middleware.route_guard import safe_redirect_path


router = APIRouter(tags=["pages"])


@router.get("/login")
def login_page(request: Request) -> dict[str, Any]:
    redirect_to = safe_redirect_path(request.query_params.get("redirectTo"), get_settings().default_landing_path)
    return {
        "title": "Sign in",
        "description": "Sign in to your account",
        "form": {
            "action": "/api/auth/login",
            "method": "POST",
            "fields": ["email", "password", "redirectTo"],
            "values": {"redirectTo": redirect_to},
        },
        "links": {"register": "/register", "resetPassword": "/reset-password"},
    }


@router.get("/register")
def register_page() -> dict[str, Any]:
    return {
        "title": "Create an account",
        "description": "Enter your details to get started",
        "form": {
            "action": "/api/auth/register",
            "method": "POST",
            "fields": ["fullName", "email", "password", "confirmPassword"],
        },
        "links": {"login": "/login"},
    }


@router.get("/reset-password")
def reset_password_page() -> dict[str, Any]:
    return {
        "title": "Reset your password",
        "description": "Enter your email and we'll send you a reset link",
        "form": {"action": "/api/auth/forgot-password", "method": "POST", "fields": ["email"]},
        "links": {"login": "/login"},
    }
