from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatehouse.storage.models import SessionRecord

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})

SORTABLE_USER_COLUMNS = frozenset({"name", "email", "created_at", "updated_at"})
SORTABLE_POST_COLUMNS = frozenset({"title", "created_at", "updated_at"})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_name(value: str) -> str:
    cleaned = _normalize_unicode(value).strip()
    if not cleaned:
        raise ValueError("name must not be blank")
    if len(cleaned) > 100:
        raise ValueError("name must be at most 100 characters")
    return cleaned


class RegisterRequest(BaseModel):
    name: str
    email: str
    password: str

    @field_validator("name")
    @classmethod
    def _validate_register_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UserUpdateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _validate_update_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value) if value is not None else None

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


class PostCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1, max_length=65536)


class PostUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    content: Optional[str] = Field(default=None, min_length=1, max_length=65536)


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    created_at: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    token: str
    session_id: str
    token_type: Literal["bearer"] = "bearer"
    expires_in: int


class TokenResponse(BaseModel):
    token: str
    session_id: str
    token_type: Literal["bearer"] = "bearer"
    expires_in: int


def _epoch_to_datetime(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SessionResponse(BaseModel):
    id: str
    user_id: str
    created_at: datetime
    last_used_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_current: bool = False

    @classmethod
    def from_record(cls, record: SessionRecord) -> "SessionResponse":
        return cls(
            id=record.session_id,
            user_id=record.user_id,
            created_at=_epoch_to_datetime(record.login_time),
            last_used_at=_epoch_to_datetime(record.last_activity),
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            is_current=record.is_current,
        )


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class PostResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    title: str
    content: str
    user_id: str
    created_at: datetime
    updated_at: datetime


class PageResponse(BaseModel):
    data: List[Any]
    page: int
    limit: int
    total: int
    total_pages: int


def parse_sort(value: Optional[str], allowed: frozenset) -> List[tuple[str, str]]:
    """Parse ``col:asc,col2:desc`` into (column, order) pairs."""
    if not value:
        return []
    pairs: List[tuple[str, str]] = []
    for chunk in value.split(","):
        column, _, order = chunk.strip().partition(":")
        order = (order or "asc").lower()
        if column not in allowed or order not in {"asc", "desc"}:
            raise ValueError(f"unsupported sort '{chunk.strip()}'")
        pairs.append((column, order))
    return pairs

