from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class PaymentProvider(str, enum.Enum):
    PAYSTACK = "paystack"
    PAYPAL = "paypal"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    TRIAL = "TRIAL"
    EXPIRED = "EXPIRED"
    SUSPENDED = "SUSPENDED"
    CANCELLED = "CANCELLED"


class NotificationStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class NotificationType(str, enum.Enum):
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"


class ClientProfile(Base):
    """
    CRM tenant profile.

    Owned by the CRM; billing only writes the subscription mirror columns, which
    must always equal the authoritative `Subscription` row for the tenant.
    """

    __tablename__ = "crm_client_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    business_name: Mapped[str] = mapped_column(String(200), default="")
    notify_by_email: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_by_whatsapp: Mapped[bool] = mapped_column(Boolean, default=False)
    subscription_status: Mapped[Optional[SubscriptionStatus]] = mapped_column(
        Enum(SubscriptionStatus, native_enum=False), nullable=True
    )
    subscription_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    subscription_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    subscription: Mapped[Optional["Subscription"]] = relationship(back_populates="client_profile")


class Subscription(Base):
    __tablename__ = "billing_subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    client_profile_id: Mapped[str] = mapped_column(ForeignKey("crm_client_profiles.id"), unique=True, index=True)
    plan: Mapped[str] = mapped_column(String(64), index=True)
    amount_minor: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(8), default="GHS")
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    last_payment_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_payment_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus, native_enum=False), default=SubscriptionStatus.ACTIVE
    )
    auto_renew: Mapped[bool] = mapped_column(Boolean, default=True)
    provider: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    provider_subscription_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    client_profile: Mapped[ClientProfile] = relationship(back_populates="subscription")
    payments: Mapped[list["PaymentRecord"]] = relationship(back_populates="subscription")


class PaymentRecord(Base):
    """
    Ledger row for one checkout attempt.

    Created at checkout time (outside reconciliation) and updated in place by
    webhook reconciliation. Never deleted: failed attempts stay for audit.
    """

    __tablename__ = "billing_payments"
    __table_args__ = (
        UniqueConstraint("provider", "provider_correlation_id", name="uq_billing_payments_provider_correlation"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    client_profile_id: Mapped[str] = mapped_column(String(36), index=True)
    plan_id: Mapped[str] = mapped_column(String(64))
    provider: Mapped[PaymentProvider] = mapped_column(Enum(PaymentProvider, native_enum=False))
    provider_correlation_id: Mapped[str] = mapped_column(String(128))
    amount_minor: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(8), default="GHS")
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, native_enum=False), default=PaymentStatus.PENDING, index=True
    )
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    payment_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    subscription_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("billing_subscriptions.id"), nullable=True, index=True
    )
    version: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    subscription: Mapped[Optional[Subscription]] = relationship(back_populates="payments")


class Notification(Base):
    __tablename__ = "crm_notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    client_profile_id: Mapped[str] = mapped_column(String(36), index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    type: Mapped[NotificationType] = mapped_column(Enum(NotificationType, native_enum=False))
    title: Mapped[str] = mapped_column(String(200))
    message: Mapped[str] = mapped_column(Text)
    channels: Mapped[list[str]] = mapped_column(JSON, default=list)
    status: Mapped[NotificationStatus] = mapped_column(
        Enum(NotificationStatus, native_enum=False), default=NotificationStatus.PENDING, index=True
    )
    dedupe_key: Mapped[Optional[str]] = mapped_column(String(160), nullable=True, unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class WebhookAuditLog(Base):
    """
    Append-only webhook audit log.

    Records every delivery attempt, including rejected and acknowledged-but-ignored
    ones, with the raw body for dispute resolution.
    """

    __tablename__ = "billing_webhook_audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    provider: Mapped[str] = mapped_column(String(32), index=True)
    event_type: Mapped[str] = mapped_column(String(64), index=True)
    provider_event_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    provider_correlation_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    signature: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    signature_valid: Mapped[bool] = mapped_column(Boolean, default=False)
    raw_payload: Mapped[str] = mapped_column(Text)
    outcome: Mapped[str] = mapped_column(String(32), index=True)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


Index("ix_billing_subscriptions_status_end", Subscription.status, Subscription.end_date)
Index("ix_billing_payments_profile_status", PaymentRecord.client_profile_id, PaymentRecord.status)
Index("ix_crm_notifications_status_created", Notification.status, Notification.created_at)
