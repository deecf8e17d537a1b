from __future__ import annotations

import uuid

import pytest
from pydantic import ValidationError

from app.crm.schemas import (
    ContactCreate,
    ContactSearch,
    ContactUpdate,
    DealCreate,
    RegisterInput,
    flatten_errors,
)


def _errors(schema, payload: dict) -> dict[str, list[str]]:  # type: ignore[no-untyped-def]
    with pytest.raises(ValidationError) as exc_info:
        schema.model_validate(payload)
    return flatten_errors(exc_info.value)


def test_contact_create_normalizes_input() -> None:
    organization_id = uuid.uuid4()

    contact = ContactCreate.model_validate(
        {
            "firstName": " Grace ",
            "lastName": "Hopper",
            "email": " GRACE@Example.COM ",
            "phone": "",
            "organizationId": str(organization_id),
            "unexpected": "ignored",
        }
    )

    assert contact.first_name == "Grace"
    assert contact.email == "grace@example.com"
    assert contact.phone is None
    assert contact.type == "lead"
    assert contact.organization_id == organization_id


def test_contact_create_requires_names_and_email() -> None:
    assert _errors(ContactCreate, {}) == {
        "firstName": ["First name is required"],
        "lastName": ["Last name is required"],
        "email": ["Email is required"],
    }


def test_contact_field_lengths() -> None:
    errors = _errors(
        ContactCreate,
        {"firstName": "x" * 101, "lastName": "Doe", "email": "a@example.com", "notes": "n" * 2001},
    )

    assert errors == {
        "firstName": ["First name must be less than 100 characters"],
        "notes": ["Notes must be less than 2000 characters"],
    }


def test_contact_update_only_tracks_submitted_fields() -> None:
    update = ContactUpdate.model_validate({"title": "CTO"})

    assert update.model_dump(exclude_unset=True) == {"title": "CTO"}
    assert _errors(ContactUpdate, {"lastName": ""}) == {"lastName": ["Last name is required"]}


def test_deal_numbers_must_be_whole() -> None:
    assert DealCreate.model_validate({"title": "Deal", "value": "1500", "probability": 40}).value == 1500

    errors = _errors(DealCreate, {"title": "Deal", "value": "12.5", "probability": "-1"})
    assert errors == {"value": ["Must be a whole number"], "probability": ["Must be at least 0"]}


def test_register_confirmation_mismatch() -> None:
    errors = _errors(
        RegisterInput,
        {
            "fullName": "Jane Roe",
            "email": "jane@example.com",
            "password": "Password123",
            "confirmPassword": "Different123",
        },
    )

    assert list(errors) == ["confirmPassword"]
    assert "do not match" in errors["confirmPassword"][0]


def test_search_params_bounds() -> None:
    params = ContactSearch.model_validate({"page": "2", "limit": "50", "sortBy": "lastName", "sortOrder": "asc"})
    assert (params.page, params.limit, params.sort_by, params.sort_order) == (2, 50, "lastName", "asc")

    with pytest.raises(ValidationError):
        ContactSearch.model_validate({"limit": "0"})
    with pytest.raises(ValidationError):
        ContactSearch.model_validate({"sortBy": "password"})
