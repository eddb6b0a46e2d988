"""SQLAlchemy models for membership persistence."""

import uuid
import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from sqlalchemy import (
    String,
    Integer,
    Boolean,
    DateTime,
    ForeignKey,
    Text,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
import enum


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in every column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC already."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class MembershipStatus(str, enum.Enum):
    """Membership statuses, mirroring the billing provider's subscription statuses."""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    UNPAID = "unpaid"
    DELETED = "deleted"
    COMPLIMENTARY = "complimentary"
    LEGACY = "legacy"


# Statuses that count towards "the" active membership of a user
NON_TERMINAL_STATUSES = (
    MembershipStatus.ACTIVE.value,
    MembershipStatus.TRIALING.value,
    MembershipStatus.PAST_DUE.value,
    MembershipStatus.COMPLIMENTARY.value,
    MembershipStatus.LEGACY.value,
)


class PlanType(str, enum.Enum):
    INDIVIDUAL = "individual"
    FAMILY = "family"


class AuditAction(str, enum.Enum):
    """Closed set of audit log actions."""
    MEMBER_CREATED = "MEMBER_CREATED"
    MEMBER_UPDATED = "MEMBER_UPDATED"
    MEMBER_DELETED = "MEMBER_DELETED"
    MEMBERSHIP_EXTENDED = "MEMBERSHIP_EXTENDED"
    MEMBERSHIP_PAUSED = "MEMBERSHIP_PAUSED"
    EMAIL_CHANGED = "EMAIL_CHANGED"
    STRIPE_SYNCED = "STRIPE_SYNCED"
    REFUND_ISSUED = "REFUND_ISSUED"
    BULK_IMPORT = "BULK_IMPORT"
    ADMIN_ROLE_CHANGE = "ADMIN_ROLE_CHANGE"
    MEMBERSHIP_ADJUSTMENT = "MEMBERSHIP_ADJUSTMENT"
    RECONCILIATION = "RECONCILIATION"


class WebhookStatus(str, enum.Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class User(Base):
    """Member identity, optionally linked to a billing customer."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "phone": self.phone,
            "stripe_customer_id": self.stripe_customer_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class Membership(Base):
    """One membership per (user, billing subscription)."""
    __tablename__ = "memberships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    plan_type: Mapped[str] = mapped_column(String(20), nullable=False, default=PlanType.INDIVIDUAL.value)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default=MembershipStatus.ACTIVE.value)
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "stripe_subscription_id", name="uq_memberships_user_subscription"),
        Index("ix_memberships_status", "status"),
        Index("ix_memberships_end_date", "end_date"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "plan_type": self.plan_type,
            "status": self.status,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "auto_renew": self.auto_renew,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class MembershipCard(Base):
    """Live membership card, one per user. The membership number is write-once."""
    __tablename__ = "membership_cards"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, unique=True)
    membership_id: Mapped[str] = mapped_column(String(36), ForeignKey("memberships.id"), nullable=False)
    membership_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    member_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    plan_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    valid_from: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    valid_until: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Signed payload rendered into the card's QR code
    verification_data: Mapped[str] = mapped_column(Text, nullable=False)
    document_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "membership_id": self.membership_id,
            "membership_number": self.membership_number,
            "member_name": self.member_name,
            "email": self.email,
            "plan_type": self.plan_type,
            "status": self.status,
            "valid_from": self.valid_from.isoformat() if self.valid_from else None,
            "valid_until": self.valid_until.isoformat() if self.valid_until else None,
            "document_url": self.document_url,
        }


class MembershipCounter(Base):
    """Per-year sequence backing membership number allocation."""
    __tablename__ = "membership_counters"

    year: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    last_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class WebhookEvent(Base):
    """Ledger of provider webhook events; the event id is the idempotency key."""
    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=WebhookStatus.PROCESSING.value)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    processed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_webhook_events_processed_at", "processed_at"),
    )


class AuditLogEntry(Base):
    """Append-only audit trail of administrative and reconciliation writes."""
    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    performed_by: Mapped[str] = mapped_column(String(255), nullable=False)
    performed_by_email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    details_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_audit_log_action", "action"),
        Index("ix_audit_log_created_at", "created_at"),
    )

    @property
    def details(self) -> Optional[Dict[str, Any]]:
        """Get details as dictionary."""
        if self.details_json:
            return json.loads(self.details_json)
        return None

    @details.setter
    def details(self, value: Optional[Dict[str, Any]]) -> None:
        """Set details from dictionary."""
        if value is not None:
            self.details_json = json.dumps(value, default=str)
        else:
            self.details_json = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action,
            "performed_by": self.performed_by,
            "performed_by_email": self.performed_by_email,
            "details": self.details,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
