from __future__ import annotations

import datetime
import uuid
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Dict, Optional

# Version tag written into checkout session metadata
INTENT_VERSION = "1"


class Role(str, Enum):
    USER = "user"
    MANAGER = "manager"
    ADMIN = "admin"


class ClubStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class EventKind(str, Enum):
    FREE = "free"
    PAID = "paid"


class EventStatus(str, Enum):
    UPCOMING = "upcoming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RegistrationStatus(str, Enum):
    FREE = "free"
    PAID = "paid"


class PaymentKind(str, Enum):
    CLUB_MEMBERSHIP = "club_membership"
    EVENT_REGISTRATION = "event_registration"
    LEGACY = "legacy"


class SubjectKind(str, Enum):
    CLUB_MEMBERSHIP = "club_membership"
    EVENT_REGISTRATION = "event_registration"


def new_id() -> str:
    """Return a random UUID based identifier for new records."""
    return uuid.uuid4().hex


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _as_dict(obj) -> dict:
    data = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime.datetime):
            value = value.isoformat()
        data[f.name] = value
    return data


@dataclass
class User:
    """Account data; ``role`` is the only authorization attribute."""

    email: str
    name: str | None = None
    photo_url: str | None = None
    role: Role = Role.USER
    id: str = field(default_factory=new_id)
    created_at: datetime.datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return _as_dict(self)


@dataclass
class Club:
    name: str
    creator_email: str
    # minor currency units
    membership_fee: int
    status: ClubStatus = ClubStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    tracking_code: str | None = None
    member_count: int = 0
    description: str | None = None
    category: str | None = None
    location: str | None = None
    banner_url: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime.datetime = field(default_factory=utcnow)
    paid_at: datetime.datetime | None = None

    def to_dict(self) -> dict:
        return _as_dict(self)


@dataclass
class Event:
    club_id: str
    title: str
    date_time: str
    creator_email: str
    club_name: str | None = None
    description: str | None = None
    location: str | None = None
    kind: EventKind = EventKind.FREE
    # minor currency units, 0 for free events
    price: int = 0
    # ``None`` means unlimited
    max_attendees: Optional[int] = None
    attendees: int = 0
    status: EventStatus = EventStatus.UPCOMING
    id: str = field(default_factory=new_id)
    created_at: datetime.datetime = field(default_factory=utcnow)

    @property
    def is_full(self) -> bool:
        return self.max_attendees is not None and self.attendees >= self.max_attendees

    def to_dict(self) -> dict:
        return _as_dict(self)


@dataclass
class EventRegistration:
    """Registration of ``email`` for an event, unique per pair."""

    event_id: str
    email: str
    event_title: str | None = None
    payment_status: RegistrationStatus = RegistrationStatus.FREE
    transaction_id: str | None = None
    amount_minor: int = 0
    currency: str | None = None
    id: str = field(default_factory=new_id)
    registered_at: datetime.datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        data = _as_dict(self)
        data["amount"] = self.amount_minor / 100
        return data


@dataclass
class Payment:
    """Append-only ledger entry, one per gateway transaction."""

    kind: PaymentKind
    subject_id: str
    amount_minor: int
    currency: str
    payer_email: str
    transaction_id: str
    subject_name: str | None = None
    # creator of the club or event at confirmation time
    owner_email: str | None = None
    status: str = "paid"
    id: str = field(default_factory=new_id)
    paid_at: datetime.datetime = field(default_factory=utcnow)

    @property
    def amount(self) -> float:
        return self.amount_minor / 100

    def to_dict(self) -> dict:
        data = _as_dict(self)
        data["amount"] = self.amount
        return data


@dataclass
class CheckoutIntent:
    """Server-asserted intent carried through the gateway metadata channel."""

    subject_kind: SubjectKind
    subject_ref: str
    payer_email: str
    display_name: str = ""
    # decoded from metadata written before intents were versioned
    legacy: bool = False

    def to_metadata(self) -> Dict[str, str]:
        return {
            "v": INTENT_VERSION,
            "subject_kind": self.subject_kind.value,
            "subject_ref": self.subject_ref,
            "payer_email": self.payer_email,
            "display_name": self.display_name,
        }

    @classmethod
    def from_metadata(cls, metadata: dict | None, fallback_email: str | None = None) -> "CheckoutIntent":
        """Validate ``metadata`` and return the intent, raising ``ValueError``."""
        if not metadata:
            raise ValueError("metadata missing")
        version = metadata.get("v")
        if version is None and metadata.get("clubId"):
            if not fallback_email:
                raise ValueError("legacy metadata without payer email")
            return cls(
                subject_kind=SubjectKind.CLUB_MEMBERSHIP,
                subject_ref=str(metadata["clubId"]),
                payer_email=fallback_email,
                display_name=str(metadata.get("clubName") or ""),
                legacy=True,
            )
        if version != INTENT_VERSION:
            raise ValueError(f"unsupported metadata version {version!r}")
        try:
            kind = SubjectKind(metadata.get("subject_kind"))
        except ValueError:
            raise ValueError(f"unknown subject kind {metadata.get('subject_kind')!r}")
        ref = metadata.get("subject_ref")
        email = metadata.get("payer_email")
        if not ref or not email:
            raise ValueError("subject_ref and payer_email are required")
        return cls(
            subject_kind=kind,
            subject_ref=str(ref),
            payer_email=str(email),
            display_name=str(metadata.get("display_name") or ""),
        )
