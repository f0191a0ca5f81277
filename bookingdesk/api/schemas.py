from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "invalid_mfa_code",
    "insufficient_privilege",
    "mfa_enrollment_failed",
    "transport_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
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
    """NFKC-normalize and strip zero-width characters used for spoofing."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if not _EMAIL_RE.match(normalized):
        raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=256)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class MFACodeRequest(BaseModel):
    code: str = Field(..., max_length=10, description="6-digit TOTP code")


class EnrollmentResponse(BaseModel):
    factor_id: str
    secret: str
    qr_payload: str = Field(..., description="otpauth:// URI to render as a QR code")


class LoginStateResponse(BaseModel):
    flow_id: str
    step: str
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    enrollment: Optional[EnrollmentResponse] = None
    error: Optional[str] = None


class BookingResponse(BaseModel):
    id: str
    order_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    pickup_address: Optional[str] = None
    dropoff_address: Optional[str] = None
    route_from: Optional[str] = None
    route_via: Optional[str] = None
    route_to: Optional[str] = None
    pickup_time: Optional[str] = None
    travel_date: Optional[str] = None
    passengers: Optional[int] = None
    total_price: Optional[str] = None
    payment_status: Optional[str] = None
    notes: Optional[str] = None
    payment_proof_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class BookingStatsResponse(BaseModel):
    total: int
    pending: int
    waiting_verification: int
    paid: int
    cancelled: int


class BookingViewResponse(BaseModel):
    bookings: List[BookingResponse]
    stats: BookingStatsResponse
    is_loading: bool = False
    degraded: bool = False
    error: Optional[str] = None
    last_loaded_at: Optional[float] = None
    limit: int


class AdminAccountResponse(BaseModel):
    user_id: str
    email: Optional[str] = None
    role: str
    created_at: datetime
    phone_number: Optional[str] = None
    is_mfa_enabled: bool = False
    email_confirmed: bool = False


class AdminListResponse(BaseModel):
    items: List[AdminAccountResponse]


class AdminCreateRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)
    role: Literal["admin", "super_admin"] = "admin"
    phone_number: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_admin_email(cls, value: str) -> str:
        return _validate_email(value)


class AdminDeleteResponse(BaseModel):
    user_id: str
    roles_removed: int
    sessions_revoked: int
    user_deleted: bool


class MFAResetResponse(BaseModel):
    user_id: str
    factors_removed: int


class SiteContentResponse(BaseModel):
    resource: str
    items: List[Dict[str, Any]]
