from typing import Optional
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field, Column, JSON, UniqueConstraint
from datetime import datetime, timezone
from decimal import Decimal
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    SQLite hands timestamps back without tzinfo; every stored value is UTC.
    """
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def timestamp_field(nullable: bool = False, **kwargs):
    return Field(sa_column=Column(DateTime(timezone=True), nullable=nullable), **kwargs)


def normalize_phone(raw: Optional[str]) -> str:
    """
    "+591 700-12345" -> "59170012345". WhatsApp ids are digits only.
    """
    return "".join(ch for ch in str(raw or "") if ch.isdigit())


class GroupStatus:
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"


class InvitationStatus:
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"


class OrderStatus:
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    CLAIMED_BY_USER = "CLAIMED_BY_USER"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    phone_number: str = Field(unique=True, index=True)
    username: Optional[str] = None
    stellar_public_key: Optional[str] = None
    preferred_currency: str = Field(default="USD")
    created_at: datetime = timestamp_field(default_factory=utcnow)


class Group(SQLModel, table=True):
    __tablename__ = "groups"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    status: str = Field(default=GroupStatus.DRAFT, index=True)
    contract_address: Optional[str] = None
    group_whatsapp_id: Optional[str] = None
    total_cycle_amount_usdc: Optional[Decimal] = Field(default=None, max_digits=18, decimal_places=2)
    frequency_days: Optional[int] = None
    yield_enabled: bool = Field(default=True)
    created_at: datetime = timestamp_field(default_factory=utcnow)


class Membership(SQLModel, table=True):
    __tablename__ = "memberships"
    __table_args__ = (UniqueConstraint("user_id", "group_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id")
    group_id: int = Field(foreign_key="groups.id", index=True)
    is_admin: bool = Field(default=False)
    turn_number: int
    created_at: datetime = timestamp_field(default_factory=utcnow)


class GroupInvitation(SQLModel, table=True):
    __tablename__ = "group_invitations"

    id: Optional[int] = Field(default=None, primary_key=True)
    group_id: int = Field(foreign_key="groups.id")
    inviter_phone: str
    invited_phone: str = Field(index=True)
    invite_code: str = Field(unique=True)
    status: str = Field(default=InvitationStatus.PENDING)
    created_at: datetime = timestamp_field(default_factory=utcnow)
    responded_at: Optional[datetime] = timestamp_field(nullable=True, default=None)
    expires_at: Optional[datetime] = timestamp_field(nullable=True, default=None)
    invited_user_id: Optional[int] = Field(default=None, foreign_key="users.id")
    membership_id: Optional[int] = Field(default=None, foreign_key="memberships.id")


class VerificationCode(SQLModel, table=True):
    __tablename__ = "verification_codes"

    id: Optional[int] = Field(default=None, primary_key=True)
    phone: str = Field(unique=True)
    code: Optional[str] = None  # bcrypt hash, cleared once consumed
    expires_at: Optional[datetime] = timestamp_field(nullable=True, default=None)
    verified: bool = Field(default=False)
    verified_at: Optional[datetime] = timestamp_field(nullable=True, default=None)
    whatsapp_username: Optional[str] = None
    whatsapp_number: Optional[str] = None


class PaymentOrder(SQLModel, table=True):
    __tablename__ = "payment_orders"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    user_id: Optional[int] = Field(default=None, foreign_key="users.id")
    group_id: Optional[int] = Field(default=None, foreign_key="groups.id", index=True)
    amount_crypto_usdc: Optional[Decimal] = Field(default=None, max_digits=18, decimal_places=2)
    amount_fiat: Optional[Decimal] = Field(default=None, max_digits=18, decimal_places=2)
    currency_fiat: Optional[str] = None
    payment_method: str = Field(default="QR_SIMPLE")
    status: str = Field(default=OrderStatus.DRAFT)
    xdr_challenge: Optional[str] = None
    qr_payload_url: Optional[str] = None
    proof_metadata: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    tx_hash: Optional[str] = None
    created_at: datetime = timestamp_field(default_factory=utcnow)
    updated_at: datetime = timestamp_field(default_factory=utcnow)


class CyclePayout(SQLModel, table=True):
    """
    One row per paid-out cycle. Inserting it is the claim on the pot, so a
    second request for the same cycle finds the row and stops.
    """
    __tablename__ = "cycle_payouts"
    __table_args__ = (UniqueConstraint("group_id", "cycle_index"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    group_id: int = Field(foreign_key="groups.id")
    cycle_index: int
    winner_phone: str
    tx_hash: Optional[str] = None
    created_at: datetime = timestamp_field(default_factory=utcnow)
