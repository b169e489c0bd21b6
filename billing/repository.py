from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Select, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .lifecycle import is_terminal, transition
from .models import (
    ClientProfile,
    Notification,
    NotificationStatus,
    NotificationType,
    PaymentProvider,
    PaymentRecord,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    WebhookAuditLog,
)
from .plans import PlanDefinition
from .schemas import merge_metadata


def _as_utc_aware(dt: datetime) -> datetime:
    """
    Normalize datetimes to UTC aware.

    SQLite often returns offset-naive datetimes even when SQLAlchemy models use
    DateTime(timezone=True). Treat naive values as UTC to avoid TypeError when
    comparing with timezone-aware "now".
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _now(now: Optional[datetime]) -> datetime:
    return _as_utc_aware(now) if now else datetime.now(timezone.utc)


class BillingStateError(RuntimeError):
    pass


class BillingRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    # -- client profiles -------------------------------------------------

    def create_client_profile(
        self,
        *,
        user_id: str,
        business_name: str = "",
        notify_by_email: bool = True,
        notify_by_whatsapp: bool = False,
        profile_id: Optional[str] = None,
    ) -> ClientProfile:
        normalized_user = str(user_id or "").strip()
        if not normalized_user:
            raise BillingStateError("client profile user_id is required")
        profile = ClientProfile(
            user_id=normalized_user,
            business_name=str(business_name or "").strip(),
            notify_by_email=bool(notify_by_email),
            notify_by_whatsapp=bool(notify_by_whatsapp),
        )
        if profile_id:
            profile.id = str(profile_id).strip()
        self.session.add(profile)
        self.session.flush()
        return profile

    def get_client_profile(self, client_profile_id: str) -> Optional[ClientProfile]:
        key = str(client_profile_id or "").strip()
        if not key:
            return None
        return self.session.get(ClientProfile, key)

    def sync_client_profile_mirror(self, client_profile_id: str, subscription: Subscription) -> ClientProfile:
        """Copy the subscription window and status onto the profile mirror columns."""

        profile = self.get_client_profile(client_profile_id)
        if profile is None:
            raise BillingStateError(f"client profile not found: {client_profile_id}")
        if str(subscription.client_profile_id) != str(profile.id):
            raise BillingStateError(
                f"subscription {subscription.id} belongs to {subscription.client_profile_id}, not {profile.id}"
            )
        profile.subscription_status = subscription.status
        profile.subscription_start = subscription.start_date
        profile.subscription_end = subscription.end_date
        self.session.flush()
        return profile

    # -- payments ----------------------------------------------------------

    def create_payment(
        self,
        *,
        client_profile_id: str,
        plan_id: str,
        provider: PaymentProvider,
        provider_correlation_id: str,
        amount_minor: int,
        currency: str = "GHS",
        metadata: Optional[dict[str, Any]] = None,
    ) -> PaymentRecord:
        correlation = str(provider_correlation_id or "").strip()
        if not correlation:
            raise BillingStateError("provider_correlation_id is required")
        provider_value = PaymentProvider(provider)
        existing = self.get_payment_by_correlation(provider_value, correlation)
        if existing:
            return existing

        payment = PaymentRecord(
            client_profile_id=str(client_profile_id),
            plan_id=str(plan_id or "").strip().upper(),
            provider=provider_value,
            provider_correlation_id=correlation,
            amount_minor=int(amount_minor),
            currency=str(currency or "GHS").upper(),
            status=PaymentStatus.PENDING,
            metadata_json=dict(metadata or {}),
        )
        try:
            with self.session.begin_nested():
                self.session.add(payment)
                self.session.flush()
        except IntegrityError:
            # Concurrent duplicate checkout; fall back to the existing row.
            existing = self.get_payment_by_correlation(provider_value, correlation)
            if existing:
                return existing
            raise
        return payment

    def get_payment(self, payment_id: str, *, refresh: bool = False) -> Optional[PaymentRecord]:
        if refresh:
            return self.session.get(PaymentRecord, payment_id, populate_existing=True)
        return self.session.get(PaymentRecord, payment_id)

    def get_payment_by_correlation(
        self,
        provider: PaymentProvider,
        provider_correlation_id: str,
    ) -> Optional[PaymentRecord]:
        correlation = str(provider_correlation_id or "").strip()
        if not correlation:
            return None
        query = select(PaymentRecord).where(
            PaymentRecord.provider == PaymentProvider(provider),
            PaymentRecord.provider_correlation_id == correlation,
        )
        return self.session.scalar(query)

    def _transition_payment_if_pending(
        self,
        payment: PaymentRecord,
        *,
        target: PaymentStatus,
        metadata_patch: Optional[dict[str, Any]],
        payment_date: Optional[datetime],
        now: datetime,
    ) -> bool:
        values: dict[str, Any] = {
            "status": target,
            "version": PaymentRecord.version + 1,
            "updated_at": now,
            "metadata_json": merge_metadata(payment.metadata_json, metadata_patch or {}),
        }
        if payment_date is not None:
            values["payment_date"] = payment_date
        result = self.session.execute(
            update(PaymentRecord)
            .where(
                PaymentRecord.id == payment.id,
                PaymentRecord.status == PaymentStatus.PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        won = int(result.rowcount or 0) == 1
        self.get_payment(payment.id, refresh=True)
        return won

    def complete_payment_if_pending(
        self,
        payment: PaymentRecord,
        *,
        metadata_patch: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Atomically move PENDING -> COMPLETED.

        Returns False when another delivery already left PENDING; the caller must
        then treat the event as a replay and touch nothing else.
        """

        current = _now(now)
        return self._transition_payment_if_pending(
            payment,
            target=PaymentStatus.COMPLETED,
            metadata_patch=metadata_patch,
            payment_date=current,
            now=current,
        )

    def fail_payment_if_pending(
        self,
        payment: PaymentRecord,
        *,
        metadata_patch: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        current = _now(now)
        return self._transition_payment_if_pending(
            payment,
            target=PaymentStatus.FAILED,
            metadata_patch=metadata_patch,
            payment_date=None,
            now=current,
        )

    def link_payment_subscription(self, payment: PaymentRecord, subscription: Subscription) -> PaymentRecord:
        if payment.subscription_id and str(payment.subscription_id) != str(subscription.id):
            raise BillingStateError(f"payment {payment.id} already linked to subscription {payment.subscription_id}")
        payment.subscription_id = subscription.id
        self.session.flush()
        return payment

    def list_payments(
        self,
        *,
        client_profile_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[PaymentRecord]:
        query: Select[Any] = select(PaymentRecord).order_by(PaymentRecord.created_at.desc())
        if client_profile_id:
            query = query.where(PaymentRecord.client_profile_id == str(client_profile_id))
        if status:
            query = query.where(PaymentRecord.status == status)
        query = query.limit(max(1, min(int(limit), 200))).offset(max(0, int(offset)))
        return list(self.session.scalars(query).all())

    # -- subscriptions -----------------------------------------------------

    def get_subscription_by_client_profile(self, client_profile_id: str) -> Optional[Subscription]:
        key = str(client_profile_id or "").strip()
        if not key:
            return None
        return self.session.scalar(select(Subscription).where(Subscription.client_profile_id == key))

    def get_subscription_by_provider_id(
        self,
        provider: PaymentProvider,
        provider_subscription_id: str,
    ) -> Optional[Subscription]:
        key = str(provider_subscription_id or "").strip()
        if not key:
            return None
        query = select(Subscription).where(
            Subscription.provider == PaymentProvider(provider).value,
            Subscription.provider_subscription_id == key,
        )
        return self.session.scalar(query)

    def upsert_subscription(
        self,
        *,
        client_profile_id: str,
        plan: PlanDefinition,
        start_date: datetime,
        end_date: datetime,
        provider: Optional[PaymentProvider] = None,
        provider_subscription_id: Optional[str] = None,
    ) -> Subscription:
        """
        Create or renew the tenant's single subscription row as ACTIVE.

        Only the settlement flow calls this; plan, amount and the billing window
        are overwritten from the settled plan.
        """

        start = _as_utc_aware(start_date)
        end = _as_utc_aware(end_date)
        if end < start:
            raise BillingStateError("subscription end_date must not precede start_date")

        subscription = self.get_subscription_by_client_profile(client_profile_id)
        if subscription is None:
            subscription = Subscription(
                client_profile_id=str(client_profile_id),
                status=transition(None, SubscriptionStatus.ACTIVE, settlement=True),
                start_date=start,
                end_date=end,
                plan=plan.plan_id,
                amount_minor=plan.amount_minor,
                currency=plan.currency,
            )
            try:
                with self.session.begin_nested():
                    self.session.add(subscription)
                    self.session.flush()
            except IntegrityError:
                # Another writer created the tenant row first; renew it instead.
                subscription = self.get_subscription_by_client_profile(client_profile_id)
                if subscription is None:
                    raise

        subscription.status = transition(subscription.status, SubscriptionStatus.ACTIVE, settlement=True)
        subscription.plan = plan.plan_id
        subscription.amount_minor = plan.amount_minor
        subscription.currency = plan.currency
        subscription.start_date = start
        subscription.end_date = end
        subscription.last_payment_date = start
        subscription.next_payment_date = end
        subscription.auto_renew = True
        if provider is not None:
            subscription.provider = PaymentProvider(provider).value
        if provider_subscription_id:
            subscription.provider_subscription_id = str(provider_subscription_id).strip()
        subscription.updated_at = start
        self.session.flush()
        return subscription

    def cancel_subscription(self, subscription: Subscription, *, now: Optional[datetime] = None) -> bool:
        """Mark CANCELLED; returns False when it already was."""

        if is_terminal(subscription.status):
            return False
        subscription.status = transition(subscription.status, SubscriptionStatus.CANCELLED)
        subscription.auto_renew = False
        subscription.next_payment_date = None
        subscription.updated_at = _now(now)
        self.session.flush()
        return True

    def expire_due_subscriptions(self, now: Optional[datetime] = None, *, limit: int = 500) -> list[Subscription]:
        """
        Move ACTIVE rows whose end_date has passed to EXPIRED and resync mirrors.

        Returns the rows that changed so the caller can notify tenants.
        """

        current = _now(now)
        query = (
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.end_date <= current,
            )
            .order_by(Subscription.end_date.asc())
            .limit(max(1, int(limit)))
        )
        expired: list[Subscription] = []
        for subscription in self.session.scalars(query).all():
            subscription.status = transition(subscription.status, SubscriptionStatus.EXPIRED)
            subscription.updated_at = current
            self.session.flush()
            if self.get_client_profile(subscription.client_profile_id) is not None:
                self.sync_client_profile_mirror(subscription.client_profile_id, subscription)
            expired.append(subscription)
        return expired

    # -- notifications -----------------------------------------------------

    def get_notification_by_dedupe_key(self, dedupe_key: str) -> Optional[Notification]:
        return self.session.scalar(select(Notification).where(Notification.dedupe_key == dedupe_key))

    def create_notification(
        self,
        *,
        client_profile_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        channels: list[str],
        user_id: Optional[str] = None,
        dedupe_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> tuple[Notification, bool]:
        """Insert a PENDING notification; returns (row, created)."""

        if dedupe_key:
            existing = self.get_notification_by_dedupe_key(dedupe_key)
            if existing:
                return existing, False
        notification = Notification(
            client_profile_id=str(client_profile_id),
            user_id=str(user_id) if user_id else None,
            type=notification_type,
            title=str(title)[:200],
            message=str(message),
            channels=[str(channel) for channel in channels],
            status=NotificationStatus.PENDING,
            dedupe_key=dedupe_key,
            created_at=_now(now),
        )
        try:
            with self.session.begin_nested():
                self.session.add(notification)
                self.session.flush()
        except IntegrityError:
            if dedupe_key:
                existing = self.get_notification_by_dedupe_key(dedupe_key)
                if existing:
                    return existing, False
            raise
        return notification, True

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        return self.session.get(Notification, notification_id)

    def mark_notification_sent(self, notification_id: str, *, now: Optional[datetime] = None) -> bool:
        result = self.session.execute(
            update(Notification)
            .where(
                Notification.id == notification_id,
                Notification.status == NotificationStatus.PENDING,
            )
            .values(status=NotificationStatus.SENT, sent_at=_now(now))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0) == 1

    def mark_notification_failed(self, notification_id: str) -> bool:
        result = self.session.execute(
            update(Notification)
            .where(
                Notification.id == notification_id,
                Notification.status == NotificationStatus.PENDING,
            )
            .values(status=NotificationStatus.FAILED)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0) == 1

    def list_pending_notifications(
        self,
        *,
        limit: int = 100,
        created_before: Optional[datetime] = None,
    ) -> list[Notification]:
        query = (
            select(Notification)
            .where(Notification.status == NotificationStatus.PENDING)
            .order_by(Notification.created_at.asc())
            .limit(max(1, min(int(limit), 1000)))
        )
        if created_before is not None:
            query = query.where(Notification.created_at <= _as_utc_aware(created_before))
        return list(self.session.scalars(query).all())

    def list_notifications(self, *, client_profile_id: str, limit: int = 50) -> list[Notification]:
        query = (
            select(Notification)
            .where(Notification.client_profile_id == str(client_profile_id))
            .order_by(Notification.created_at.desc())
            .limit(max(1, min(int(limit), 200)))
        )
        return list(self.session.scalars(query).all())

    # -- webhook audit -----------------------------------------------------

    def record_audit_log(
        self,
        *,
        provider: str,
        event_type: str,
        raw_payload: str,
        outcome: str,
        signature: Optional[str] = None,
        signature_valid: bool = False,
        provider_event_id: Optional[str] = None,
        provider_correlation_id: Optional[str] = None,
        detail: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> WebhookAuditLog:
        log = WebhookAuditLog(
            provider=str(provider or "unknown")[:32],
            event_type=str(event_type or "")[:64] or "unknown",
            provider_event_id=str(provider_event_id)[:128] if provider_event_id else None,
            provider_correlation_id=str(provider_correlation_id)[:128] if provider_correlation_id else None,
            signature=str(signature)[:1024] if signature else None,
            signature_valid=bool(signature_valid),
            raw_payload=str(raw_payload or ""),
            outcome=str(outcome or "")[:32] or "unknown",
            detail=str(detail) if detail else None,
            occurred_at=_now(occurred_at),
        )
        self.session.add(log)
        self.session.flush()
        return log

    def list_audit_logs(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        provider: Optional[str] = None,
        provider_correlation_id: Optional[str] = None,
        outcome: Optional[str] = None,
    ) -> list[WebhookAuditLog]:
        query = select(WebhookAuditLog).order_by(WebhookAuditLog.occurred_at.desc())
        if provider:
            query = query.where(WebhookAuditLog.provider == provider)
        if provider_correlation_id:
            query = query.where(WebhookAuditLog.provider_correlation_id == provider_correlation_id)
        if outcome:
            query = query.where(WebhookAuditLog.outcome == outcome)
        query = query.limit(max(1, min(int(limit), 200))).offset(max(0, int(offset)))
        return list(self.session.scalars(query).all())
