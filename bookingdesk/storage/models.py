from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

ROLE_ADMIN = "admin"
ROLE_SUPER_ADMIN = "super_admin"
CONSOLE_ROLES = (ROLE_ADMIN, ROLE_SUPER_ADMIN)

PAYMENT_STATUSES = ("pending", "waiting_verification", "paid", "cancelled")

FACTOR_PENDING = "pending"
FACTOR_VERIFIED = "verified"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Coerce ISO strings and naive datetimes to aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise TypeError(f"unsupported timestamp value: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Identity:
    id: str
    email: str
    created_at: datetime = field(default_factory=utcnow)
    email_confirmed: bool = True
    meta: Dict | None = None


@dataclass
class RoleAssignment:
    user_id: str
    role: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AdminProfile:
    user_id: str
    phone_number: Optional[str] = None
    is_mfa_enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    mfa_required: bool = False
    mfa_verified: bool = False
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 12,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Dict | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )

    @property
    def is_step_up_pending(self) -> bool:
        return self.mfa_required and not self.mfa_verified


@dataclass
class MFAFactor:
    id: str
    user_id: str
    status: str = FACTOR_PENDING
    friendly_name: str = "Authenticator"
    factor_type: str = "totp"
    created_at: datetime = field(default_factory=utcnow)
    verified_at: Optional[datetime] = None

    @property
    def is_verified(self) -> bool:
        return self.status == FACTOR_VERIFIED


@dataclass
class ActivityLogEntry:
    id: str
    user_email: str
    action: str
    details: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


_BOOKING_FIELDS = (
    "order_id",
    "customer_name",
    "customer_phone",
    "customer_email",
    "pickup_address",
    "dropoff_address",
    "route_from",
    "route_via",
    "route_to",
    "pickup_time",
    "travel_date",
    "notes",
    "payment_proof_url",
)


@dataclass
class Booking:
    id: str
    created_at: datetime
    updated_at: datetime
    payment_status: str = "pending"
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
    passengers: int = 1
    total_price: Decimal = Decimal("0")
    notes: Optional[str] = None
    payment_proof_url: Optional[str] = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Booking":
        if not record.get("id"):
            raise ValueError("booking record without id")
        created_at = parse_timestamp(record.get("created_at")) or utcnow()
        updated_at = parse_timestamp(record.get("updated_at")) or created_at
        payment_status = str(record.get("payment_status") or "pending")
        if payment_status not in PAYMENT_STATUSES:
            raise ValueError(f"unknown payment status: {payment_status}")
        values = {}
        for name in _BOOKING_FIELDS:
            raw = record.get(name)
            values[name] = str(raw) if raw is not None else None
        return cls(
            id=str(record["id"]),
            created_at=created_at,
            updated_at=updated_at,
            payment_status=payment_status,
            passengers=int(record.get("passengers") or 1),
            total_price=Decimal(str(record.get("total_price") or 0)),
            **values,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        data["total_price"] = str(self.total_price)
        return data


@dataclass(frozen=True)
class BookingStats:
    total: int = 0
    pending: int = 0
    waiting_verification: int = 0
    paid: int = 0
    cancelled: int = 0

    @classmethod
    def from_bookings(cls, bookings: Iterable[Booking]) -> "BookingStats":
        counts = {status: 0 for status in PAYMENT_STATUSES}
        total = 0
        for booking in bookings:
            total += 1
            if booking.payment_status in counts:
                counts[booking.payment_status] += 1
        return cls(total=total, **counts)

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class Subscription:
    """Owned handle for a realtime table subscription.

    ``release()`` is idempotent; the store forgets the subscriber on the
    first call.
    """

    id: str
    table: str
    _release: Callable[["Subscription"], None] = field(repr=False, compare=False)
    active: bool = True

    def release(self) -> None:
        if not self.active:
            return
        self.active = False
        self._release(self)
