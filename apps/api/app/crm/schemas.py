from __future__ import annotations

import re
import uuid
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Literal

from email_validator import EmailNotValidError, validate_email
from pydantic import AnyUrl, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticCustomError


ContactType = Literal["lead", "customer", "partner", "vendor", "other"]
DealStage = Literal["lead", "qualified", "proposal", "negotiation", "closed_won", "closed_lost"]
SortOrder = Literal["asc", "desc"]

PHONE_RE = re.compile(r"^\+?[1-9]\d{1,14}$")
CURRENCY_CODE_RE = re.compile(r"^[A-Za-z]{3}$")
_url_adapter = TypeAdapter(AnyUrl)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def required_text(value: Any, *, required_message: str, max_length: int, max_message: str) -> str:
    text = "" if value is None else str(value).strip()
    if not text:
        raise PydanticCustomError("required", required_message)
    if len(text) > max_length:
        raise PydanticCustomError("too_long", max_message)
    return text


def optional_text(value: Any, *, max_length: int, max_message: str) -> str | None:
    if _is_blank(value):
        return None
    text = str(value).strip()
    if len(text) > max_length:
        raise PydanticCustomError("too_long", max_message)
    return text


def email_address(value: Any) -> str:
    text = "" if value is None else str(value).strip().lower()
    if not text:
        raise PydanticCustomError("required", "Email is required")
    try:
        validated = validate_email(text, check_deliverability=False)
    except EmailNotValidError:
        raise PydanticCustomError("invalid_email", "Invalid email address") from None
    return validated.normalized


def optional_phone(value: Any) -> str | None:
    if _is_blank(value):
        return None
    text = str(value).strip()
    if not PHONE_RE.match(text):
        raise PydanticCustomError("invalid_phone", "Invalid phone number format")
    return text


def optional_url(value: Any) -> str | None:
    if _is_blank(value):
        return None
    text = str(value).strip()
    try:
        _url_adapter.validate_python(text)
    except ValidationError:
        raise PydanticCustomError("invalid_url", "Invalid URL format") from None
    return text


def optional_uuid(value: Any) -> uuid.UUID | None:
    if _is_blank(value):
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except ValueError:
        raise PydanticCustomError("invalid_id", "Invalid ID format") from None


def whole_number(
    value: Any,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    min_message: str = "",
    max_message: str = "",
) -> int | None:
    if _is_blank(value):
        return None
    if isinstance(value, bool):
        raise PydanticCustomError("int_type", "Must be a whole number")
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        raise PydanticCustomError("int_type", "Must be a whole number") from None
    if not number.is_finite() or number != number.to_integral_value():
        raise PydanticCustomError("int_type", "Must be a whole number")

    result = int(number)
    if minimum is not None and result < minimum:
        raise PydanticCustomError("too_small", min_message)
    if maximum is not None and result > maximum:
        raise PydanticCustomError("too_big", max_message)
    return result


def currency_amount(value: Any) -> int | None:
    """Amounts are integers in minor units (cents)."""

    return whole_number(value, minimum=0, min_message="Amount must be positive")


def percentage(value: Any) -> int | None:
    return whole_number(
        value,
        minimum=0,
        maximum=100,
        min_message="Must be at least 0",
        max_message="Must be at most 100",
    )


def choice(value: Any, *, choices: tuple[str, ...], message: str) -> str:
    text = "" if value is None else str(value).strip()
    if text not in choices:
        raise PydanticCustomError("invalid_choice", message)
    return text


def optional_date(value: Any) -> date | None:
    if _is_blank(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise PydanticCustomError("invalid_date", "Invalid date format") from None


def password_strength(value: Any) -> str:
    text = "" if value is None else str(value)
    if len(text) < 8:
        raise PydanticCustomError("too_short", "Password must be at least 8 characters")
    if not re.search(r"[A-Z]", text):
        raise PydanticCustomError("password_upper", "Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", text):
        raise PydanticCustomError("password_lower", "Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", text):
        raise PydanticCustomError("password_digit", "Password must contain at least one number")
    return text


def flatten_errors(exc: ValidationError) -> dict[str, list[str]]:
    """Group validation messages by submitted field name."""

    errors: dict[str, list[str]] = {}
    for error in exc.errors(include_url=False):
        loc = error.get("loc") or ()
        field_name = str(loc[0]) if loc else "_form"
        # Defaults are reported under the attribute name, submitted values under the alias.
        if "_" in field_name.strip("_"):
            field_name = to_camel(field_name)
        errors.setdefault(field_name, []).append(str(error.get("msg", "Invalid value")))
    return errors


class FormModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ReadModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# Contacts

CONTACT_TYPES: tuple[str, ...] = ("lead", "customer", "partner", "vendor", "other")


class ContactCreate(FormModel):
    first_name: str = Field(default="", validate_default=True)
    last_name: str = Field(default="", validate_default=True)
    email: str = Field(default="", validate_default=True)
    phone: str | None = None
    title: str | None = None
    type: ContactType = "lead"
    organization_id: uuid.UUID | None = None
    notes: str | None = None
    linkedin_url: str | None = None
    twitter_url: str | None = None

    @field_validator("first_name", mode="before")
    @classmethod
    def _first_name(cls, value: Any) -> str:
        return required_text(
            value,
            required_message="First name is required",
            max_length=100,
            max_message="First name must be less than 100 characters",
        )

    @field_validator("last_name", mode="before")
    @classmethod
    def _last_name(cls, value: Any) -> str:
        return required_text(
            value,
            required_message="Last name is required",
            max_length=100,
            max_message="Last name must be less than 100 characters",
        )

    @field_validator("email", mode="before")
    @classmethod
    def _email(cls, value: Any) -> str:
        return email_address(value)

    @field_validator("phone", mode="before")
    @classmethod
    def _phone(cls, value: Any) -> str | None:
        return optional_phone(value)

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, value: Any) -> str | None:
        return optional_text(value, max_length=100, max_message="Title must be less than 100 characters")

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> str:
        return choice(value, choices=CONTACT_TYPES, message="Invalid contact type")

    @field_validator("organization_id", mode="before")
    @classmethod
    def _organization_id(cls, value: Any) -> uuid.UUID | None:
        return optional_uuid(value)

    @field_validator("notes", mode="before")
    @classmethod
    def _notes(cls, value: Any) -> str | None:
        return optional_text(value, max_length=2000, max_message="Notes must be less than 2000 characters")

    @field_validator("linkedin_url", "twitter_url", mode="before")
    @classmethod
    def _urls(cls, value: Any) -> str | None:
        return optional_url(value)


class ContactUpdate(ContactCreate):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    type: ContactType | None = None


class ContactRead(ReadModel):
    id: uuid.UUID
    user_id: uuid.UUID
    organization_id: uuid.UUID | None
    first_name: str
    last_name: str
    email: str
    phone: str | None
    title: str | None
    type: str
    notes: str | None
    linkedin_url: str | None
    twitter_url: str | None
    created_at: datetime
    updated_at: datetime


# Organizations


class OrganizationCreate(FormModel):
    name: str = Field(default="", validate_default=True)
    website: str | None = None
    industry: str | None = None
    description: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    postal_code: str | None = None
    employee_count: int | None = None
    annual_revenue: int | None = None
    linkedin_url: str | None = None
    logo_url: str | None = None

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, value: Any) -> str:
        return required_text(
            value,
            required_message="Organization name is required",
            max_length=200,
            max_message="Name must be less than 200 characters",
        )

    @field_validator("website", "linkedin_url", "logo_url", mode="before")
    @classmethod
    def _urls(cls, value: Any) -> str | None:
        return optional_url(value)

    @field_validator("industry", mode="before")
    @classmethod
    def _industry(cls, value: Any) -> str | None:
        return optional_text(value, max_length=100, max_message="Industry must be less than 100 characters")

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, value: Any) -> str | None:
        return optional_text(value, max_length=2000, max_message="Description must be less than 2000 characters")

    @field_validator("address", mode="before")
    @classmethod
    def _address(cls, value: Any) -> str | None:
        return optional_text(value, max_length=200, max_message="Address must be less than 200 characters")

    @field_validator("city", mode="before")
    @classmethod
    def _city(cls, value: Any) -> str | None:
        return optional_text(value, max_length=100, max_message="City must be less than 100 characters")

    @field_validator("state", mode="before")
    @classmethod
    def _state(cls, value: Any) -> str | None:
        return optional_text(value, max_length=100, max_message="State must be less than 100 characters")

    @field_validator("country", mode="before")
    @classmethod
    def _country(cls, value: Any) -> str | None:
        return optional_text(value, max_length=100, max_message="Country must be less than 100 characters")

    @field_validator("postal_code", mode="before")
    @classmethod
    def _postal_code(cls, value: Any) -> str | None:
        return optional_text(value, max_length=20, max_message="Postal code must be less than 20 characters")

    @field_validator("employee_count", mode="before")
    @classmethod
    def _employee_count(cls, value: Any) -> int | None:
        return whole_number(value, minimum=0, min_message="Employee count must be positive")

    @field_validator("annual_revenue", mode="before")
    @classmethod
    def _annual_revenue(cls, value: Any) -> int | None:
        return currency_amount(value)


class OrganizationUpdate(OrganizationCreate):
    name: str | None = None


class OrganizationRead(ReadModel):
    id: uuid.UUID
    user_id: uuid.UUID
    name: str
    website: str | None
    industry: str | None
    description: str | None
    address: str | None
    city: str | None
    state: str | None
    country: str | None
    postal_code: str | None
    employee_count: int | None
    annual_revenue: int | None
    linkedin_url: str | None
    logo_url: str | None
    created_at: datetime
    updated_at: datetime


# Deals

DEAL_STAGES: tuple[str, ...] = ("lead", "qualified", "proposal", "negotiation", "closed_won", "closed_lost")


class DealCreate(FormModel):
    title: str = Field(default="", validate_default=True)
    description: str | None = None
    value: int | None = None
    currency: str = "USD"
    stage: DealStage = "lead"
    probability: int | None = None
    contact_id: uuid.UUID | None = None
    organization_id: uuid.UUID | None = None
    expected_close_date: date | None = None
    notes: str | None = None

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, value: Any) -> str:
        return required_text(
            value,
            required_message="Deal title is required",
            max_length=200,
            max_message="Title must be less than 200 characters",
        )

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, value: Any) -> str | None:
        return optional_text(value, max_length=2000, max_message="Description must be less than 2000 characters")

    @field_validator("value", mode="before")
    @classmethod
    def _value(cls, value: Any) -> int | None:
        return currency_amount(value)

    @field_validator("currency", mode="before")
    @classmethod
    def _currency(cls, value: Any) -> str:
        text = "" if value is None else str(value).strip()
        if not CURRENCY_CODE_RE.match(text):
            raise PydanticCustomError("invalid_currency", "Currency must be a 3-letter code")
        return text.upper()

    @field_validator("stage", mode="before")
    @classmethod
    def _stage(cls, value: Any) -> str:
        return choice(value, choices=DEAL_STAGES, message="Invalid deal stage")

    @field_validator("probability", mode="before")
    @classmethod
    def _probability(cls, value: Any) -> int | None:
        return percentage(value)

    @field_validator("contact_id", "organization_id", mode="before")
    @classmethod
    def _references(cls, value: Any) -> uuid.UUID | None:
        return optional_uuid(value)

    @field_validator("expected_close_date", mode="before")
    @classmethod
    def _expected_close_date(cls, value: Any) -> date | None:
        return optional_date(value)

    @field_validator("notes", mode="before")
    @classmethod
    def _notes(cls, value: Any) -> str | None:
        return optional_text(value, max_length=2000, max_message="Notes must be less than 2000 characters")


class DealUpdate(DealCreate):
    title: str | None = None
    currency: str | None = None
    stage: DealStage | None = None


class DealRead(ReadModel):
    id: uuid.UUID
    user_id: uuid.UUID
    contact_id: uuid.UUID | None
    organization_id: uuid.UUID | None
    title: str
    description: str | None
    value: int | None
    currency: str
    stage: str
    probability: int | None
    expected_close_date: date | None
    actual_close_date: date | None
    notes: str | None
    created_at: datetime
    updated_at: datetime


# Auth and profile


class LoginInput(FormModel):
    email: str = Field(default="", validate_default=True)
    password: str = Field(default="", validate_default=True)

    @field_validator("email", mode="before")
    @classmethod
    def _email(cls, value: Any) -> str:
        return email_address(value)

    @field_validator("password", mode="before")
    @classmethod
    def _password(cls, value: Any) -> str:
        if value is None or value == "":
            raise PydanticCustomError("required", "Password is required")
        return str(value)


class _NewPasswordFields(FormModel):
    password: str = Field(default="", validate_default=True)
    confirm_password: str = Field(default="", validate_default=True)

    @field_validator("password", mode="before")
    @classmethod
    def _password(cls, value: Any) -> str:
        return password_strength(value)

    @field_validator("confirm_password", mode="before")
    @classmethod
    def _confirm_password(cls, value: Any, info: ValidationInfo) -> str:
        if value is None or value == "":
            raise PydanticCustomError("required", "Please confirm your password")
        password = info.data.get("password")
        if password is not None and str(value) != password:
            raise PydanticCustomError("password_mismatch", "Passwords do not match")
        return str(value)


class RegisterInput(_NewPasswordFields):
    email: str = Field(default="", validate_default=True)
    full_name: str = Field(default="", validate_default=True)

    @field_validator("email", mode="before")
    @classmethod
    def _email(cls, value: Any) -> str:
        return email_address(value)

    @field_validator("full_name", mode="before")
    @classmethod
    def _full_name(cls, value: Any) -> str:
        return _full_name_text(value)


class ResetPasswordInput(_NewPasswordFields):
    pass


class ForgotPasswordInput(FormModel):
    email: str = Field(default="", validate_default=True)

    @field_validator("email", mode="before")
    @classmethod
    def _email(cls, value: Any) -> str:
        return email_address(value)


def _full_name_text(value: Any) -> str:
    text = "" if value is None else str(value).strip()
    if len(text) < 2:
        raise PydanticCustomError("too_short", "Name must be at least 2 characters")
    if len(text) > 100:
        raise PydanticCustomError("too_long", "Name must be less than 100 characters")
    return text


class UpdateProfileInput(FormModel):
    full_name: str | None = None
    avatar_url: str | None = None

    @field_validator("full_name", mode="before")
    @classmethod
    def _full_name(cls, value: Any) -> str:
        return _full_name_text(value)

    @field_validator("avatar_url", mode="before")
    @classmethod
    def _avatar_url(cls, value: Any) -> str | None:
        if _is_blank(value):
            return None
        text = str(value).strip()
        try:
            _url_adapter.validate_python(text)
        except ValidationError:
            raise PydanticCustomError("invalid_url", "Invalid URL") from None
        return text


class UserProfileRead(ReadModel):
    id: uuid.UUID
    email: str
    full_name: str | None
    avatar_url: str | None
    role: str
    created_at: datetime
    updated_at: datetime


# Search and pagination


class SearchParams(FormModel):
    search: str | None = Field(default=None, max_length=100)
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    sort_order: SortOrder = "desc"

    @field_validator("search", mode="before")
    @classmethod
    def _search(cls, value: Any) -> str | None:
        return None if _is_blank(value) else str(value).strip()


class ContactSearch(SearchParams):
    type: ContactType | None = None
    organization_id: uuid.UUID | None = None
    sort_by: Literal["firstName", "lastName", "email", "createdAt"] = "createdAt"


class OrganizationSearch(SearchParams):
    industry: str | None = Field(default=None, max_length=100)
    sort_by: Literal["name", "industry", "createdAt"] = "createdAt"


class DealSearch(SearchParams):
    stage: DealStage | None = None
    contact_id: uuid.UUID | None = None
    organization_id: uuid.UUID | None = None
    min_value: int | None = Field(default=None, ge=0)
    max_value: int | None = Field(default=None, ge=0)
    sort_by: Literal["title", "value", "stage", "expectedCloseDate", "createdAt"] = "createdAt"
